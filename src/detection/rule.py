from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from detection.condition import Aggregate, ConditionNode, compile_condition, parse_timeframe
from detection.errors import RuleCompileError
from detection.matchers import DEFAULT_POLICY, MatchPolicy, coerce_str, get_field_value
from detection.models import (
    MATCH,
    NO_MATCH,
    Level,
    MatchOutcome,
    Record,
    SourceDescriptor,
    Status,
    aggregate_candidate,
)
from detection.selection import Selection, compile_selection

logger = logging.getLogger(__name__)

_RESERVED_DETECTION_KEYS = ("condition", "timeframe")

# Context fields surfaced with every detection when present in the record.
COMMON_FIELDS = (
    "EventID",
    "Computer",
    "Channel",
    "TargetUserName",
    "SubjectUserName",
    "IpAddress",
    "WorkstationName",
)


@dataclass(frozen=True)
class LogSource:
    product: Optional[str] = None
    service: Optional[str] = None
    category: Optional[str] = None

    @classmethod
    def from_definition(cls, raw: Any, source: str = "") -> "LogSource":
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            logger.warning(f"Ignoring malformed logsource {raw!r} in {source}; rule applies to all sources")
            return cls()

        def _norm(key: str) -> Optional[str]:
            value = coerce_str(raw.get(key)).strip().lower()
            return value or None

        return cls(product=_norm("product"), service=_norm("service"), category=_norm("category"))

    def is_compatible(self, source: SourceDescriptor) -> bool:
        """
        A record is considered when every attribute the rule declares is
        either unknown for the record or equal to it.
        """
        for key in ("product", "service", "category"):
            expected = getattr(self, key)
            if expected is None:
                continue
            actual = source.get(key)
            if actual is None:
                continue
            if actual.strip().lower() != expected:
                return False
        return True


@dataclass(frozen=True, eq=False)
class CompiledRule:
    rule_id: str
    title: str
    level: Level
    status: Status
    source: str
    logsource: LogSource
    selections: Mapping[str, Selection]
    condition: ConditionNode
    condition_text: str
    tags: Tuple[str, ...] = ()
    falsepositives: Tuple[str, ...] = ()
    output_fields: Tuple[str, ...] = ()
    description: str = ""
    author: str = ""
    referenced_fields: Tuple[str, ...] = field(default=())

    @property
    def aggregate(self) -> Optional[Aggregate]:
        if isinstance(self.condition, Aggregate):
            return self.condition
        return None

    def evaluate(self, record: Record) -> MatchOutcome:
        """
        Structural match of one record. Returns NO_MATCH, MATCH, or an
        aggregate candidate carrying the group key and counted value.
        """
        cache: Dict[str, bool] = {}

        def get_selection(name: str) -> bool:
            if name in cache:
                return cache[name]
            result = self.selections[name].evaluate(record)
            cache[name] = result
            return result

        if not self.condition.evaluate(get_selection):
            return NO_MATCH

        aggregate = self.aggregate
        if aggregate is None:
            return MATCH
        group_key, counted_value = aggregate.extract(record)
        return aggregate_candidate(group_key, counted_value)

    def evidence(self, record: Record) -> Dict[str, Any]:
        """
        Field subset reported with a detection: the rule's declared `fields`,
        or, when none of those are present in the record, the fields the
        condition referenced plus COMMON_FIELDS.
        """
        data = self._collect(record, self.output_fields)
        if not data:
            data = self._collect(record, tuple(dict.fromkeys(self.referenced_fields + COMMON_FIELDS)))
        return data

    @staticmethod
    def _collect(record: Record, names: Tuple[str, ...]) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for name in names:
            value = get_field_value(record.fields, name)
            if value is None:
                continue
            data[name] = value
        return data


def evaluate(rule: CompiledRule, record: Record) -> MatchOutcome:
    return rule.evaluate(record)


def _string_tuple(raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        raw = [raw]
    return tuple(coerce_str(item).strip() for item in raw if coerce_str(item).strip())


def _condition_text(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list) and raw and all(isinstance(c, str) for c in raw):
        if len(raw) == 1:
            return raw[0]
        if any("|" in c for c in raw):
            raise RuleCompileError("Aggregation is not supported in multi-condition rules")
        return " or ".join(f"({c})" for c in raw)
    raise RuleCompileError("detection.condition must be a string")


def compile_rule(definition: Dict[str, Any], source: str = "",
                 policy: MatchPolicy = DEFAULT_POLICY,
                 level_override: Optional[Level] = None) -> CompiledRule:
    """Compile one parsed rule document. Raises RuleCompileError on any defect."""
    if not isinstance(definition, dict):
        raise RuleCompileError("Rule document is not a mapping", source=source)

    rule_id = coerce_str(definition.get("id")).strip() or None
    try:
        return _compile(definition, source, policy, level_override, rule_id)
    except RuleCompileError as e:
        raise e.with_context(rule_id, source)


def _compile(definition: Dict[str, Any], source: str, policy: MatchPolicy,
             level_override: Optional[Level], rule_id: Optional[str]) -> CompiledRule:
    title = coerce_str(definition.get("title")).strip() or os.path.basename(source)
    if rule_id is None:
        rule_id = source or title
        logger.debug(f"Rule without id in {source}, using {rule_id!r}")

    detection = definition.get("detection")
    if not isinstance(detection, dict):
        raise RuleCompileError("Missing or malformed 'detection' block")
    if "condition" not in detection:
        raise RuleCompileError("Detection block has no 'condition'")

    try:
        level = level_override or (Level.parse(definition["level"]) if definition.get("level") else Level.INFORMATIONAL)
        status = Status.parse(definition.get("status"))
    except ValueError as e:
        raise RuleCompileError(str(e)) from e

    selections: Dict[str, Selection] = {}
    for name, selection_def in detection.items():
        if name in _RESERVED_DETECTION_KEYS:
            continue
        selections[str(name)] = compile_selection(str(name), selection_def, policy)
    if not selections:
        raise RuleCompileError("Detection block declares no selections")

    condition_text = _condition_text(detection["condition"])
    timeframe = parse_timeframe(detection.get("timeframe"))
    condition = compile_condition(condition_text, list(selections.keys()), timeframe)

    referenced: List[str] = []
    for name in dict.fromkeys(condition.selection_names()):
        referenced.extend(f for f in selections[name].fields if f not in referenced)
    aggregate = condition if isinstance(condition, Aggregate) else None
    if aggregate is not None:
        for name in (aggregate.counted_field, aggregate.group_by_field):
            if name and name not in referenced:
                referenced.append(name)

    return CompiledRule(
        rule_id=rule_id,
        title=title,
        level=level,
        status=status,
        source=source,
        logsource=LogSource.from_definition(definition.get("logsource"), source),
        selections=selections,
        condition=condition,
        condition_text=condition_text,
        tags=_string_tuple(definition.get("tags")),
        falsepositives=_string_tuple(definition.get("falsepositives")),
        output_fields=_string_tuple(definition.get("fields")),
        description=coerce_str(definition.get("description")).strip(),
        author=coerce_str(definition.get("author")).strip(),
        referenced_fields=tuple(referenced),
    )
