from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Level(Enum):
    """Rule severity, ordered from least to most severe."""
    INFORMATIONAL = "informational"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def __lt__(self, other: "Level") -> bool:
        if not isinstance(other, Level):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "Level") -> bool:
        if not isinstance(other, Level):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: "Level") -> bool:
        if not isinstance(other, Level):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: "Level") -> bool:
        if not isinstance(other, Level):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Any) -> "Level":
        text = str(value or "").strip().lower()
        if text in ("info", "informational"):
            return cls.INFORMATIONAL
        if text == "crit":
            return cls.CRITICAL
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"Unknown level: {value!r}")


_LEVEL_RANK = {
    Level.INFORMATIONAL: 0,
    Level.LOW: 1,
    Level.MEDIUM: 2,
    Level.HIGH: 3,
    Level.CRITICAL: 4,
}


class Status(Enum):
    EXPERIMENTAL = "experimental"
    TEST = "test"
    STABLE = "stable"
    DEPRECATED = "deprecated"
    UNSUPPORTED = "unsupported"

    @classmethod
    def parse(cls, value: Any) -> "Status":
        text = str(value or "").strip().lower()
        if not text:
            return cls.EXPERIMENTAL
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"Unknown status: {value!r}")


@dataclass(frozen=True)
class SourceDescriptor:
    """Where a record came from: host, channel and logsource attributes."""
    product: Optional[str] = None
    service: Optional[str] = None
    category: Optional[str] = None
    host: Optional[str] = None
    channel: Optional[str] = None

    def get(self, key: str) -> Optional[str]:
        return getattr(self, key, None)


@dataclass(frozen=True)
class Record:
    """
    Read-only view of one decoded log entry.

    `sequence` is the record's position in the input stream and is used as
    the tie-breaker when detections are ordered by timestamp.
    """
    fields: Mapping[str, Any]
    timestamp: datetime = EPOCH
    source: SourceDescriptor = field(default_factory=SourceDescriptor)
    sequence: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.fields, MappingProxyType):
            object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)


class MatchKind(Enum):
    NO_MATCH = "no_match"
    MATCH = "match"
    AGGREGATE_CANDIDATE = "aggregate_candidate"


@dataclass(frozen=True)
class MatchOutcome:
    kind: MatchKind
    group_key: Any = None
    counted_value: Any = None

    @property
    def matched(self) -> bool:
        return self.kind is not MatchKind.NO_MATCH


NO_MATCH = MatchOutcome(MatchKind.NO_MATCH)
MATCH = MatchOutcome(MatchKind.MATCH)


def aggregate_candidate(group_key: Any, counted_value: Any) -> MatchOutcome:
    return MatchOutcome(MatchKind.AGGREGATE_CANDIDATE, group_key, counted_value)


@dataclass(frozen=True)
class Detection:
    rule_id: str
    rule_title: str
    level: Level
    tags: Tuple[str, ...]
    timestamp: datetime
    sequence: int
    source: SourceDescriptor
    fields: Mapping[str, Any]
    rule_source: str = ""
    group_key: Any = None
    count: Optional[int] = None

    @property
    def is_aggregate(self) -> bool:
        return self.count is not None

    def sort_key(self) -> Tuple[datetime, int, str]:
        return (self.timestamp, self.sequence, self.rule_id)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "rule_id": self.rule_id,
            "rule_title": self.rule_title,
            "rule_level": self.level.value,
            "rule_tags": list(self.tags),
            "rule_file": self.rule_source,
            "timestamp": self.timestamp.isoformat(),
            "host": self.source.host,
            "channel": self.source.channel,
            "log_data": dict(self.fields),
        }
        if self.is_aggregate:
            data["group_key"] = self.group_key
            data["count"] = self.count
        return data
