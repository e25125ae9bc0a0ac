from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Tuple

from detection.errors import RuleCompileError
from detection.models import Record

SUPPORTED_MODIFIERS = frozenset({"contains", "startswith", "endswith", "re", "all", "i"})

_WILDCARD_CHARS = re.compile(r"(?<!\\)[*?]")


@dataclass(frozen=True)
class MatchPolicy:
    """
    How literal values are compared.

    Windows event field values are conventionally case-insensitive, so
    comparisons ignore case unless the policy says otherwise.
    """
    case_insensitive: bool = True

    def normalize(self, text: str) -> str:
        return text.casefold() if self.case_insensitive else text


DEFAULT_POLICY = MatchPolicy()


def get_field_value(data: Mapping[str, Any], path: str) -> Optional[Any]:
    """
    Retrieves a value from a nested mapping using dot notation.
    Supports composite keys containing dots by attempting to match the
    remaining path as a single key when traversal fails.
    """
    if not path:
        return None
    if path in data:
        return data.get(path)

    keys = path.split(".")
    current: Any = data
    for i, key in enumerate(keys):
        if not isinstance(current, Mapping):
            return None

        if i < len(keys) - 1:
            remaining = ".".join(keys[i:])
            if remaining in current:
                return current.get(remaining)

        current = current.get(key)

    return current


def coerce_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_values(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def glob_to_regex(pattern: str) -> str:
    """Sigma-style wildcard: '*' and '?' with backslash escapes for literals."""
    parts: List[str] = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "*":
            parts.append(".*")
        elif c == "?":
            parts.append(".")
        elif c == "\\" and i + 1 < len(pattern) and pattern[i + 1] in ("*", "?", "\\"):
            parts.append(re.escape(pattern[i + 1]))
            i += 1
        else:
            parts.append(re.escape(c))
        i += 1
    return "".join(parts)


def _unescape_literal(text: str) -> str:
    return re.sub(r"\\([*?\\])", r"\1", text)


class FieldPredicate:
    """A pure test applied to the value of one record field."""

    def test(self, value: Any) -> bool:
        raise NotImplementedError

    def matches(self, record: Record, field_name: str) -> bool:
        value = get_field_value(record.fields, field_name)
        if value is None:
            return False
        if isinstance(value, (list, tuple)):
            return any(self.test(item) for item in value if item is not None)
        return self.test(value)


@dataclass(frozen=True)
class Equals(FieldPredicate):
    value: Any
    policy: MatchPolicy = DEFAULT_POLICY

    def test(self, actual: Any) -> bool:
        expected = self.value

        if isinstance(expected, bool):
            if isinstance(actual, bool):
                return actual is expected
            text = coerce_str(actual).strip().lower()
            return text in (("true", "1") if expected else ("false", "0"))

        if isinstance(expected, (int, float)):
            if isinstance(actual, bool):
                return False
            if isinstance(actual, (int, float)):
                return actual == expected
            try:
                return float(coerce_str(actual).strip()) == float(expected)
            except ValueError:
                return False

        return self.policy.normalize(coerce_str(actual)) == self.policy.normalize(coerce_str(expected))


@dataclass(frozen=True)
class AnyOf(FieldPredicate):
    options: Tuple[FieldPredicate, ...]

    def test(self, actual: Any) -> bool:
        return any(option.test(actual) for option in self.options)


@dataclass(frozen=True)
class AllOfValues(FieldPredicate):
    """The `all` modifier: every listed alternative must hold."""
    options: Tuple[FieldPredicate, ...]

    def test(self, actual: Any) -> bool:
        return all(option.test(actual) for option in self.options)


@dataclass(frozen=True)
class Wildcard(FieldPredicate):
    """Existence check written as a bare '*': present and non-empty."""

    def test(self, actual: Any) -> bool:
        if isinstance(actual, str):
            return actual != ""
        if isinstance(actual, (list, tuple)):
            return any(item is not None and self.test(item) for item in actual)
        if isinstance(actual, dict):
            return len(actual) > 0
        return True

    def matches(self, record: Record, field_name: str) -> bool:
        value = get_field_value(record.fields, field_name)
        if value is None:
            return False
        return self.test(value)


@dataclass(frozen=True)
class Pattern(FieldPredicate):
    """Glob or regular expression, compiled once when the rule is loaded."""
    source: str
    compiled: "re.Pattern[str]"
    anchored: bool = True

    def test(self, actual: Any) -> bool:
        text = coerce_str(actual)
        if self.anchored:
            return self.compiled.fullmatch(text) is not None
        return self.compiled.search(text) is not None


def matches(predicate: FieldPredicate, record: Record, field_name: str) -> bool:
    return predicate.matches(record, field_name)


def parse_field_key(raw_key: str) -> Tuple[str, Tuple[str, ...]]:
    """Split `Field|mod1|mod2` into the field name and its modifiers."""
    parts = [p for p in str(raw_key).split("|")]
    field_name = parts[0].strip()
    if not field_name:
        raise RuleCompileError(f"Empty field name in selection key {raw_key!r}")
    modifiers = tuple(p.strip().lower() for p in parts[1:] if p.strip())
    unknown = [m for m in modifiers if m not in SUPPORTED_MODIFIERS]
    if unknown:
        raise RuleCompileError(f"Unsupported modifier(s) {unknown} on field {field_name!r}")
    return field_name, modifiers


def _compile_glob(pattern: str, policy: MatchPolicy) -> Pattern:
    flags = re.DOTALL | (re.IGNORECASE if policy.case_insensitive else 0)
    try:
        compiled = re.compile(glob_to_regex(pattern), flags)
    except re.error as e:
        raise RuleCompileError(f"Invalid wildcard pattern {pattern!r}: {e}") from e
    return Pattern(source=pattern, compiled=compiled, anchored=True)


def _compile_single(value: Any, modifiers: Tuple[str, ...], policy: MatchPolicy) -> FieldPredicate:
    if value is None:
        raise RuleCompileError("Null values are not supported in selections")
    if isinstance(value, (dict, list, tuple)):
        raise RuleCompileError(f"Nested value {value!r} is not supported in selections")

    if "re" in modifiers:
        flags = re.IGNORECASE if "i" in modifiers else 0
        text = coerce_str(value)
        try:
            compiled = re.compile(text, flags)
        except re.error as e:
            raise RuleCompileError(f"Invalid regex {text!r}: {e}") from e
        return Pattern(source=text, compiled=compiled, anchored=False)

    text = coerce_str(value)
    if "contains" in modifiers:
        return _compile_glob(f"*{text}*", policy)
    if "startswith" in modifiers:
        return _compile_glob(f"{text}*", policy)
    if "endswith" in modifiers:
        return _compile_glob(f"*{text}", policy)

    if isinstance(value, str):
        if value.strip() == "*":
            return Wildcard()
        if _WILDCARD_CHARS.search(value):
            return _compile_glob(value, policy)
        return Equals(_unescape_literal(value), policy)

    return Equals(value, policy)


def compile_predicate(raw_key: str, raw_value: Any,
                      policy: MatchPolicy = DEFAULT_POLICY) -> Tuple[str, FieldPredicate]:
    """Compile one `field|modifiers: value` entry of a selection."""
    field_name, modifiers = parse_field_key(raw_key)

    if isinstance(raw_value, (list, tuple)):
        values = _as_values(raw_value)
        if not values:
            raise RuleCompileError(f"Empty value list for field {field_name!r}")
        options = tuple(_compile_single(v, modifiers, policy) for v in values)
        if "all" in modifiers:
            return field_name, AllOfValues(options)
        if len(options) == 1:
            return field_name, options[0]
        return field_name, AnyOf(options)

    return field_name, _compile_single(raw_value, modifiers, policy)
