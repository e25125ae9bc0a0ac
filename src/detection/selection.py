from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterator, List, Tuple

from detection.errors import RuleCompileError
from detection.matchers import (
    DEFAULT_POLICY,
    FieldPredicate,
    MatchPolicy,
    Pattern,
    coerce_str,
    compile_predicate,
    glob_to_regex,
)
from detection.models import Record


def _iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        yield coerce_str(value)
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item)


class Clause:
    def evaluate(self, record: Record) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class FieldClause(Clause):
    """Conjunction of field predicates."""
    predicates: Tuple[Tuple[str, FieldPredicate], ...]

    def evaluate(self, record: Record) -> bool:
        for field_name, predicate in self.predicates:
            if not predicate.matches(record, field_name):
                return False
        return True


@dataclass(frozen=True)
class KeywordClause(Clause):
    """Full-text OR search over every string value in the record."""
    keywords: Tuple[Pattern, ...]

    def evaluate(self, record: Record) -> bool:
        for text in _iter_strings(dict(record.fields)):
            for keyword in self.keywords:
                if keyword.compiled.search(text) is not None:
                    return True
        return False


@dataclass(frozen=True)
class Selection:
    """
    A named selection. A mapping compiles to a single FieldClause; a list of
    mappings is an OR across clauses; a list of strings is a keyword search.
    """
    name: str
    clauses: Tuple[Clause, ...]

    def evaluate(self, record: Record) -> bool:
        for clause in self.clauses:
            if clause.evaluate(record):
                return True
        return False

    @property
    def fields(self) -> Tuple[str, ...]:
        names: List[str] = []
        for clause in self.clauses:
            if isinstance(clause, FieldClause):
                names.extend(name for name, _ in clause.predicates if name not in names)
        return tuple(names)


def evaluate(selection: Selection, record: Record) -> bool:
    return selection.evaluate(record)


def _compile_field_clause(name: str, definition: dict, policy: MatchPolicy) -> FieldClause:
    if not definition:
        raise RuleCompileError(f"Selection {name!r} has no field predicates")
    predicates = tuple(compile_predicate(str(key), value, policy) for key, value in definition.items())
    return FieldClause(predicates=predicates)


def _compile_keyword(keyword: Any, policy: MatchPolicy) -> Pattern:
    text = coerce_str(keyword)
    if not text:
        raise RuleCompileError("Empty keyword in selection")
    flags = re.DOTALL | (re.IGNORECASE if policy.case_insensitive else 0)
    return Pattern(source=text, compiled=re.compile(glob_to_regex(text), flags), anchored=False)


def compile_selection(name: str, definition: Any, policy: MatchPolicy = DEFAULT_POLICY) -> Selection:
    if isinstance(definition, dict):
        return Selection(name=name, clauses=(_compile_field_clause(name, definition, policy),))

    if isinstance(definition, list):
        if not definition:
            raise RuleCompileError(f"Selection {name!r} is an empty list")
        clauses: List[Clause] = []
        keywords: List[Pattern] = []
        for item in definition:
            if isinstance(item, dict):
                clauses.append(_compile_field_clause(name, item, policy))
            elif isinstance(item, (list, tuple)) or item is None:
                raise RuleCompileError(f"Selection {name!r} contains an unsupported item {item!r}")
            else:
                keywords.append(_compile_keyword(item, policy))
        if keywords:
            clauses.append(KeywordClause(keywords=tuple(keywords)))
        return Selection(name=name, clauses=tuple(clauses))

    if definition is None:
        raise RuleCompileError(f"Selection {name!r} is empty")

    return Selection(name=name, clauses=(KeywordClause(keywords=(_compile_keyword(definition, policy),)),))
