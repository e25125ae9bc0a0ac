"""
Detection engine: drives records through the rule set.

Pure business logic, no I/O. A scan feeds records through a bounded queue to
a fixed pool of worker threads. Workers share the read-only RuleSet and one
AggregationTracker owned by the scan; everything else is per-record.
Detections are sorted by (record timestamp, input sequence) before they are
returned, since workers finish out of order.
"""
from __future__ import annotations

import logging
import os
import queue
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from detection.aggregation import FIRE_EVERY, FIRE_POLICIES, AggregationTracker
from detection.errors import ConfigurationError
from detection.matchers import coerce_str, get_field_value
from detection.models import Detection, Level, MatchKind, Record
from detection.pivot import PivotKeywords
from detection.rule import CompiledRule
from detection.ruleset import RuleSet

logger = logging.getLogger(__name__)

# Records queued ahead of the workers.
DEFAULT_QUEUE_SIZE = 5000

_STOP = object()


@dataclass(frozen=True)
class EngineConfig:
    workers: int = 0
    queue_size: int = DEFAULT_QUEUE_SIZE
    target_event_ids: FrozenSet[str] = frozenset()
    fire_policy: str = FIRE_EVERY
    max_values_per_key: Optional[int] = None

    @property
    def worker_count(self) -> int:
        return self.workers if self.workers > 0 else (os.cpu_count() or 1)

    @classmethod
    def from_config(cls, engine: Dict[str, Any], aggregation: Optional[Dict[str, Any]] = None) -> "EngineConfig":
        aggregation = aggregation or {}
        fire_policy = str(aggregation.get("fire_policy") or FIRE_EVERY).strip().lower()
        if fire_policy not in FIRE_POLICIES:
            raise ConfigurationError(f"Unknown aggregation.fire_policy {fire_policy!r}, expected one of {FIRE_POLICIES}")
        try:
            max_values = aggregation.get("max_values_per_key")
            return cls(
                workers=int(engine.get("workers") or 0),
                queue_size=int(engine.get("queue_size") or DEFAULT_QUEUE_SIZE),
                target_event_ids=frozenset(str(e).strip() for e in (engine.get("target_event_ids") or [])),
                fire_policy=fire_policy,
                max_values_per_key=int(max_values) if max_values else None,
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid engine configuration: {e}") from e


@dataclass
class ScanResult:
    detections: List[Detection] = field(default_factory=list)
    records_scanned: int = 0
    records_filtered: int = 0
    evaluation_errors: int = 0
    cancelled: bool = False
    aggregation: Dict[str, Any] = field(default_factory=dict)
    # scanned records per EventID, "-" for records without one
    event_ids: Counter = field(default_factory=Counter)
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None

    def at_or_above(self, level: Level) -> List[Detection]:
        """Detections eligible for forwarding to an alerting channel."""
        return filter_by_level(self.detections, level)

    def get_stats(self) -> Dict[str, Any]:
        by_level: Dict[str, int] = {}
        for detection in self.detections:
            by_level[detection.level.value] = by_level.get(detection.level.value, 0) + 1
        return {
            'records_scanned': self.records_scanned,
            'records_filtered': self.records_filtered,
            'evaluation_errors': self.evaluation_errors,
            'detections': len(self.detections),
            'detections_by_level': by_level,
            'event_ids': dict(self.event_ids.most_common()),
            'cancelled': self.cancelled,
        }

    def event_id_report(self) -> str:
        """Per-EventID record counts, most frequent first."""
        total = sum(self.event_ids.values())
        first = self.first_timestamp.isoformat() if self.first_timestamp else "n/a"
        last = self.last_timestamp.isoformat() if self.last_timestamp else "n/a"
        lines = [
            f"Total Event Records: {total}",
            f"First Timestamp: {first}",
            f"Last Timestamp: {last}",
            "",
            "Count (Percent)\tID",
        ]
        for event_id, count in sorted(self.event_ids.items(), key=lambda item: (-item[1], item[0])):
            lines.append(f"{count} ({count * 100 / total:.2f}%)\t{event_id}")
        return "\n".join(lines) + "\n"


def filter_by_level(detections: Iterable[Detection], level: Level) -> List[Detection]:
    return [d for d in detections if d.level >= level]


def order_detections(detections: Iterable[Detection]) -> List[Detection]:
    return sorted(detections, key=Detection.sort_key)


def _event_id_key(record: Record) -> str:
    event_id = coerce_str(get_field_value(record.fields, "EventID")).strip()
    return event_id or "-"


class _WorkerState:
    __slots__ = ("detections", "scanned", "filtered", "errors", "event_ids", "first", "last")

    def __init__(self) -> None:
        self.detections: List[Detection] = []
        self.scanned = 0
        self.filtered = 0
        self.errors = 0
        self.event_ids: Counter = Counter()
        self.first: Optional[datetime] = None
        self.last: Optional[datetime] = None

    def seen(self, record: Record) -> None:
        self.scanned += 1
        self.event_ids[_event_id_key(record)] += 1
        if self.first is None or record.timestamp < self.first:
            self.first = record.timestamp
        if self.last is None or record.timestamp > self.last:
            self.last = record.timestamp


class DetectionEngine:

    def __init__(self, ruleset: RuleSet, config: Optional[EngineConfig] = None,
                 pivot: Optional[PivotKeywords] = None):
        self.ruleset = ruleset
        self.config = config or EngineConfig()
        # fed with every record that produced a detection
        self.pivot = pivot
        self._cancel_event = threading.Event()

    def new_tracker(self) -> AggregationTracker:
        return AggregationTracker(
            fire_policy=self.config.fire_policy,
            max_values_per_key=self.config.max_values_per_key,
        )

    def cancel(self) -> None:
        """Stop scheduling new records. Records already taken by a worker finish."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def is_target(self, record: Record) -> bool:
        if not self.config.target_event_ids:
            return True
        event_id = get_field_value(record.fields, "EventID")
        if event_id is None:
            return True
        return coerce_str(event_id).strip() in self.config.target_event_ids

    def evaluate(self, record: Record, tracker: AggregationTracker,
                 sequence: Optional[int] = None, state: Optional["_WorkerState"] = None) -> List[Detection]:
        """
        Run every compatible rule against one record:
          1. Filter: rules whose logsource cannot apply are skipped
          2. Match: selections and condition are evaluated
          3. Count: aggregate candidates go through the tracker
          4. Emit: a Detection for each firing rule

        A rule that raises is logged and skipped; the other rules still run.
        """
        seq = record.sequence if sequence is None else sequence
        detections: List[Detection] = []
        for rule in self.ruleset.candidates(record.source):
            try:
                detection = self._evaluate_rule(rule, record, tracker, seq)
            except Exception as e:
                if state is not None:
                    state.errors += 1
                logger.error(f"Error evaluating rule {rule.title!r} ({rule.source}) on record #{seq}: {e}",
                             exc_info=True)
                continue
            if detection is not None:
                detections.append(detection)
        return detections

    def _evaluate_rule(self, rule: CompiledRule, record: Record, tracker: AggregationTracker,
                       sequence: int) -> Optional[Detection]:
        outcome = rule.evaluate(record)
        if outcome.kind is MatchKind.NO_MATCH:
            return None
        if outcome.kind is MatchKind.MATCH:
            return self._detection(rule, record, sequence)

        observation = tracker.record(
            rule.rule_id, rule.aggregate, outcome.group_key, outcome.counted_value, record.timestamp
        )
        if not observation.fired:
            return None
        return self._detection(rule, record, sequence, group_key=outcome.group_key, count=observation.count)

    @staticmethod
    def _detection(rule: CompiledRule, record: Record, sequence: int,
                   group_key: Any = None, count: Optional[int] = None) -> Detection:
        return Detection(
            rule_id=rule.rule_id,
            rule_title=rule.title,
            level=rule.level,
            tags=rule.tags,
            timestamp=record.timestamp,
            sequence=sequence,
            source=record.source,
            fields=rule.evidence(record),
            rule_source=rule.source,
            group_key=group_key,
            count=count,
        )

    def _process(self, record: Record, sequence: int, tracker: AggregationTracker,
                 state: _WorkerState) -> None:
        if not self.is_target(record):
            state.filtered += 1
            return
        state.seen(record)
        try:
            detections = self.evaluate(record, tracker, sequence, state)
            if detections and self.pivot is not None:
                self.pivot.collect(record)
            state.detections.extend(detections)
        except Exception as e:
            state.errors += 1
            logger.error(f"Error evaluating record #{sequence}: {e}", exc_info=True)

    def _worker(self, work: "queue.Queue[Any]", tracker: AggregationTracker, state: _WorkerState) -> None:
        while True:
            item = work.get()
            try:
                if item is _STOP:
                    return
                if self._cancel_event.is_set():
                    continue
                sequence, record = item
                self._process(record, sequence, tracker, state)
            finally:
                work.task_done()

    def _enqueue(self, work: "queue.Queue[Any]", item: Tuple[int, Record]) -> bool:
        while not self._cancel_event.is_set():
            try:
                work.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def scan(self, records: Iterable[Record]) -> ScanResult:
        """
        Evaluate a stream of records with a worker pool and return the
        ordered detections. The aggregation state lives only for this call.

        A cancel() issued before the scan starts stops it before any record
        is read. The cancel flag is reset when the scan returns.
        """
        if self._cancel_event.is_set():
            logger.warning("Scan cancelled before it started")
            self._cancel_event.clear()
            return ScanResult(cancelled=True, aggregation=self.new_tracker().get_stats())
        tracker = self.new_tracker()
        work: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, self.config.queue_size))
        states = [_WorkerState() for _ in range(self.config.worker_count)]
        threads = [
            threading.Thread(target=self._worker, args=(work, tracker, state),
                             name=f"detection-worker-{i}", daemon=True)
            for i, state in enumerate(states)
        ]
        for thread in threads:
            thread.start()

        logger.info(f"Scan started: {len(self.ruleset)} rules, {len(threads)} workers")
        try:
            for sequence, record in enumerate(records):
                if record is None:
                    continue
                if not self._enqueue(work, (sequence, record)):
                    break
        except KeyboardInterrupt:
            logger.info("Received interrupt, finishing in-flight records")
            self.cancel()
        finally:
            for _ in threads:
                work.put(_STOP)
            for thread in threads:
                thread.join()

        result = ScanResult(cancelled=self.cancelled, aggregation=tracker.get_stats())
        for state in states:
            result.detections.extend(state.detections)
            result.records_scanned += state.scanned
            result.records_filtered += state.filtered
            result.evaluation_errors += state.errors
            result.event_ids.update(state.event_ids)
            if state.first is not None and (result.first_timestamp is None or state.first < result.first_timestamp):
                result.first_timestamp = state.first
            if state.last is not None and (result.last_timestamp is None or state.last > result.last_timestamp):
                result.last_timestamp = state.last
        result.detections = order_detections(result.detections)

        if result.cancelled:
            tracker.discard()
            self._cancel_event.clear()
            logger.warning(f"Scan cancelled after {result.records_scanned} records")
        logger.info(f"Scan finished: {result.get_stats()}")
        return result
