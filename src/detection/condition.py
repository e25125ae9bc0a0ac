"""
Condition expressions.

A rule's condition combines its named selections with `and`, `or`, `not`,
parentheses and quantifiers (`all of sel*`, `1 of them`, ...), optionally
followed by an aggregation clause:

    (sel_a or sel_b) and not filter | count(TargetUserName) by WorkstationName > 3

The text is compiled once, at rule load, into a tree of frozen nodes.
Evaluation only walks that tree; no string handling happens per record.
"""
from __future__ import annotations

import fnmatch
import operator
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from detection.errors import RuleCompileError
from detection.matchers import get_field_value
from detection.models import Record

SelectionLookup = Callable[[str], bool]

COMPARATORS: Dict[str, Callable[[int, int], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
}

_KEYWORDS = frozenset({"and", "or", "not", "of", "all", "any", "them", "by"})

_TOKEN_RE = re.compile(r"\s*(?:(\()|(\))|([<>=!]+)|([A-Za-z0-9_.*?\-]+))")
_AGG_FUNC_RE = re.compile(r"\s*(\w+)\s*\(\s*([^()\s]*)\s*\)\s*(.*)$", re.DOTALL)
_TIMEFRAME_RE = re.compile(r"^\s*(\d+)\s*([smhd])\s*$", re.IGNORECASE)
_TIMEFRAME_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


class ConditionNode:
    def evaluate(self, get_selection: SelectionLookup) -> bool:
        raise NotImplementedError

    def selection_names(self) -> Tuple[str, ...]:
        raise NotImplementedError


@dataclass(frozen=True)
class SelectionRef(ConditionNode):
    name: str

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return get_selection(self.name)

    def selection_names(self) -> Tuple[str, ...]:
        return (self.name,)


@dataclass(frozen=True)
class Not(ConditionNode):
    node: ConditionNode

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return not self.node.evaluate(get_selection)

    def selection_names(self) -> Tuple[str, ...]:
        return self.node.selection_names()


@dataclass(frozen=True)
class And(ConditionNode):
    left: ConditionNode
    right: ConditionNode

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return self.left.evaluate(get_selection) and self.right.evaluate(get_selection)

    def selection_names(self) -> Tuple[str, ...]:
        return self.left.selection_names() + self.right.selection_names()


@dataclass(frozen=True)
class Or(ConditionNode):
    left: ConditionNode
    right: ConditionNode

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return self.left.evaluate(get_selection) or self.right.evaluate(get_selection)

    def selection_names(self) -> Tuple[str, ...]:
        return self.left.selection_names() + self.right.selection_names()


@dataclass(frozen=True)
class AllOf(ConditionNode):
    selections: Tuple[str, ...]

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return all(get_selection(name) for name in self.selections)

    def selection_names(self) -> Tuple[str, ...]:
        return self.selections


@dataclass(frozen=True)
class OneOf(ConditionNode):
    selections: Tuple[str, ...]

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return any(get_selection(name) for name in self.selections)

    def selection_names(self) -> Tuple[str, ...]:
        return self.selections


@dataclass(frozen=True)
class NOf(ConditionNode):
    required: int
    selections: Tuple[str, ...]

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        matched = 0
        for name in self.selections:
            if get_selection(name):
                matched += 1
                if matched >= self.required:
                    return True
        return False

    def selection_names(self) -> Tuple[str, ...]:
        return self.selections


@dataclass(frozen=True)
class Aggregate(ConditionNode):
    """Top-level node: a boolean subtree plus the counting clause."""
    subtree: ConditionNode
    counted_field: Optional[str]
    group_by_field: Optional[str]
    comparator: str
    threshold: int
    timeframe: Optional[timedelta] = None

    def evaluate(self, get_selection: SelectionLookup) -> bool:
        return self.subtree.evaluate(get_selection)

    def selection_names(self) -> Tuple[str, ...]:
        return self.subtree.selection_names()

    def compare(self, count: int) -> bool:
        return COMPARATORS[self.comparator](count, self.threshold)

    def extract(self, record: Record) -> Tuple[Any, Any]:
        """Return (group key, counted value) for a record that matched the subtree."""
        group_key = None
        if self.group_by_field:
            group_key = get_field_value(record.fields, self.group_by_field)
            if isinstance(group_key, list):
                group_key = tuple(group_key)
        counted_value = None
        if self.counted_field:
            counted_value = get_field_value(record.fields, self.counted_field)
            if isinstance(counted_value, list):
                counted_value = tuple(counted_value)
        return group_key, counted_value

    def describe(self) -> str:
        text = f"count({self.counted_field or ''})"
        if self.group_by_field:
            text += f" by {self.group_by_field}"
        return f"{text} {self.comparator} {self.threshold}"


def tokenize(text: str) -> List[str]:
    tokens: List[str] = []
    pos = 0
    stripped = text.rstrip()
    while pos < len(stripped):
        match = _TOKEN_RE.match(stripped, pos)
        if match is None or match.end() == pos:
            raise RuleCompileError(f"Unexpected character {stripped[pos:].lstrip()[:1]!r} in condition {text!r}")
        tokens.append(next(group for group in match.groups() if group is not None))
        pos = match.end()
    return tokens


class _ConditionParser:
    """Recursive descent: `or` < `and` < `not` < atoms."""

    def __init__(self, tokens: List[str], selection_names: Sequence[str]):
        self.tokens = tokens
        self.selection_names = list(selection_names)
        self.pos = 0

    def _peek(self) -> Optional[str]:
        if self.pos >= len(self.tokens):
            return None
        return self.tokens[self.pos]

    def _peek_keyword(self) -> Optional[str]:
        tok = self._peek()
        return tok.lower() if tok is not None else None

    def _consume(self) -> Optional[str]:
        tok = self._peek()
        if tok is None:
            return None
        self.pos += 1
        return tok

    def _expect(self, expected: str) -> None:
        tok = self._consume()
        if tok is None:
            raise RuleCompileError(f"Expected {expected!r}, got end of condition")
        if tok.lower() != expected.lower():
            raise RuleCompileError(f"Expected {expected!r}, got {tok!r}")

    def parse(self) -> ConditionNode:
        self._check_parentheses()
        if not self.tokens:
            raise RuleCompileError("Condition is empty")
        node = self._parse_or()
        if self._peek() is not None:
            raise RuleCompileError(f"Unexpected trailing tokens: {self.tokens[self.pos:]}")
        return node

    def _check_parentheses(self) -> None:
        depth = 0
        for tok in self.tokens:
            if tok == "(":
                depth += 1
            elif tok == ")":
                depth -= 1
                if depth < 0:
                    raise RuleCompileError("Unbalanced parentheses: unexpected ')'")
        if depth:
            raise RuleCompileError("Unbalanced parentheses: missing ')'")

    def _parse_or(self) -> ConditionNode:
        node = self._parse_and()
        while self._peek_keyword() == "or":
            self._consume()
            node = Or(node, self._parse_and())
        return node

    def _parse_and(self) -> ConditionNode:
        node = self._parse_not()
        while self._peek_keyword() == "and":
            self._consume()
            node = And(node, self._parse_not())
        return node

    def _parse_not(self) -> ConditionNode:
        if self._peek_keyword() == "not":
            self._consume()
            return Not(self._parse_not())
        return self._parse_atom()

    def _parse_atom(self) -> ConditionNode:
        tok = self._peek()
        if tok is None:
            raise RuleCompileError("Unexpected end of condition")

        if tok == "(":
            self._consume()
            node = self._parse_or()
            self._expect(")")
            return node

        lower = tok.lower()
        if lower in ("all", "any") or tok.isdigit():
            return self._parse_quantifier()

        if tok == ")" or lower in _KEYWORDS or not re.match(r"^[A-Za-z0-9_.\-]+$", tok):
            raise RuleCompileError(f"Unexpected token {tok!r}")

        self._consume()
        if tok not in self.selection_names:
            raise RuleCompileError(f"Unknown selection {tok!r} referenced in condition")
        return SelectionRef(tok)

    def _parse_quantifier(self) -> ConditionNode:
        quantifier = self._consume()
        self._expect("of")
        pattern = self._consume()
        if pattern is None or pattern in ("(", ")"):
            raise RuleCompileError(f"Missing selection pattern after '{quantifier} of'")

        if pattern.lower() == "them":
            matched = tuple(self.selection_names)
        else:
            matched = tuple(name for name in self.selection_names if fnmatch.fnmatchcase(name, pattern))
        if not matched:
            raise RuleCompileError(f"No selection matches {pattern!r} in '{quantifier} of {pattern}'")

        lower = quantifier.lower()
        if lower == "all":
            return AllOf(matched)
        if lower == "any":
            return OneOf(matched)
        required = int(quantifier)
        if required <= 0:
            raise RuleCompileError(f"Quantifier must be positive, got {quantifier!r}")
        if required == 1:
            return OneOf(matched)
        return NOf(required, matched)


def parse_timeframe(value: Any) -> Optional[timedelta]:
    if value is None or value == "":
        return None
    match = _TIMEFRAME_RE.match(str(value))
    if not match:
        raise RuleCompileError(f"Invalid timeframe {value!r} (expected e.g. '30s', '5m', '1h', '2d')")
    amount, unit = int(match.group(1)), match.group(2).lower()
    if amount <= 0:
        raise RuleCompileError(f"Timeframe must be positive, got {value!r}")
    return timedelta(**{_TIMEFRAME_UNITS[unit]: amount})


def _parse_aggregation(text: str, subtree: ConditionNode,
                       timeframe: Optional[timedelta]) -> Aggregate:
    match = _AGG_FUNC_RE.match(text)
    if not match:
        raise RuleCompileError(f"Malformed aggregation clause {text.strip()!r}")
    function, counted_field, rest = match.group(1), match.group(2), match.group(3)
    if function.lower() != "count":
        raise RuleCompileError(f"Unsupported aggregation function {function!r}")

    tokens = tokenize(rest)
    group_by_field: Optional[str] = None
    if tokens and tokens[0].lower() == "by":
        if len(tokens) < 2 or tokens[1] in COMPARATORS or not re.match(r"^[A-Za-z0-9_.\-]+$", tokens[1]):
            raise RuleCompileError(f"Aggregation clause {text.strip()!r} is missing the 'by' field")
        group_by_field = tokens[1]
        tokens = tokens[2:]

    if not tokens:
        raise RuleCompileError(f"Aggregation clause {text.strip()!r} has no comparator")
    comparator = tokens[0]
    if comparator not in COMPARATORS:
        raise RuleCompileError(f"Unrecognized comparator {comparator!r} in aggregation clause")
    if len(tokens) != 2:
        raise RuleCompileError(f"Aggregation clause {text.strip()!r} needs exactly one threshold")
    try:
        threshold = int(tokens[1])
    except ValueError:
        raise RuleCompileError(f"Threshold {tokens[1]!r} is not an integer") from None

    return Aggregate(
        subtree=subtree,
        counted_field=counted_field or None,
        group_by_field=group_by_field,
        comparator=comparator,
        threshold=threshold,
        timeframe=timeframe,
    )


def compile_condition(condition: str, selection_names: Sequence[str],
                      timeframe: Optional[timedelta] = None) -> ConditionNode:
    """
    Compile a condition string against the rule's declared selection names.

    Returns either a boolean tree or an Aggregate wrapping one. Raises
    RuleCompileError for unknown selections, unbalanced parentheses, bad
    comparators and malformed aggregation clauses.
    """
    if not isinstance(condition, str) or not condition.strip():
        raise RuleCompileError("Condition must be a non-empty string")

    boolean_part, sep, aggregation_part = condition.partition("|")
    subtree = _ConditionParser(tokenize(boolean_part), selection_names).parse()

    if not sep:
        # timeframe only bounds aggregation state
        return subtree
    if "|" in aggregation_part:
        raise RuleCompileError("Only one aggregation clause is supported")
    return _parse_aggregation(aggregation_part, subtree, timeframe)
