from typing import Optional


class DetectionError(Exception):
    """Base class for errors raised by the detection core."""


class RuleCompileError(DetectionError):
    """A single rule could not be compiled. Only that rule is excluded."""

    def __init__(self, message: str, rule_id: Optional[str] = None, source: str = ""):
        super().__init__(message)
        self.message = message
        self.rule_id = rule_id
        self.source = source

    def with_context(self, rule_id: Optional[str], source: str) -> "RuleCompileError":
        if self.rule_id is None:
            self.rule_id = rule_id
        if not self.source:
            self.source = source
        return self

    def __str__(self) -> str:
        where = self.source or "<unknown>"
        if self.rule_id:
            return f"{where} [{self.rule_id}]: {self.message}"
        return f"{where}: {self.message}"


class ConfigurationError(DetectionError):
    """The scan cannot start, e.g. no valid rule was loaded."""


class RecordDecodeError(DetectionError):
    """A raw log entry could not be turned into a Record."""


class AggregationOverflow(DetectionError):
    """A single aggregation key exceeded its capacity and stopped tracking."""
