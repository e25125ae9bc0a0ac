"""
Per-scan counting state for aggregate rules.

Counters live in a fixed number of shards, each guarded by its own lock, so
observations for one (rule, group) key are serialized while unrelated keys
rarely contend. A tracker belongs to exactly one scan and is discarded with it.

Firing policy
-------------
``every`` (default): the rule fires on every observation after which the
comparator holds. With ``> 3`` it fires on the 4th, 5th, 6th... record of a
group, each a separate detection.

``once``: the rule fires only when the comparator goes from false to true
for a key. If a timeframe later drops the count back below the threshold the
key is re-armed.

Timeframe windows are kept sorted by record timestamp and cover
``[newest - timeframe, newest]`` for the newest timestamp seen for the key.
A record older than the start of that window is dropped: it is not counted
and cannot fire. A record missing the counted field is never counted either.
"""
from __future__ import annotations

import bisect
import itertools
import logging
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Hashable, List, Optional, Tuple

from detection.condition import Aggregate
from detection.errors import AggregationOverflow

logger = logging.getLogger(__name__)

FIRE_EVERY = "every"
FIRE_ONCE = "once"
FIRE_POLICIES = (FIRE_EVERY, FIRE_ONCE)

_DEFAULT_SHARDS = 64


@dataclass(frozen=True)
class Observation:
    fired: bool
    count: int


class _KeyState:
    __slots__ = ("count", "seen", "window", "window_values", "newest", "arrivals", "satisfied", "overflowed")

    def __init__(self) -> None:
        self.count = 0
        self.seen: set = set()
        # (timestamp, arrival, value), sorted; arrival keeps values out of comparisons
        self.window: List[Tuple[datetime, int, Any]] = []
        self.window_values: Counter = Counter()
        self.newest: Optional[datetime] = None
        self.arrivals = itertools.count()
        self.satisfied = False
        self.overflowed = False

    def tracked_values(self) -> int:
        return max(len(self.seen), len(self.window))


def _freeze(value: Any) -> Hashable:
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, dict):
        return tuple(sorted((str(k), _freeze(v)) for k, v in value.items()))
    try:
        hash(value)
    except TypeError:
        return repr(value)
    return value


class AggregationTracker:

    def __init__(self, fire_policy: str = FIRE_EVERY, max_values_per_key: Optional[int] = None,
                 shards: int = _DEFAULT_SHARDS):
        if fire_policy not in FIRE_POLICIES:
            raise ValueError(f"Unknown fire policy {fire_policy!r}, expected one of {FIRE_POLICIES}")
        if shards <= 0:
            raise ValueError("shards must be positive")
        self.fire_policy = fire_policy
        self.max_values_per_key = max_values_per_key
        self._locks = [threading.Lock() for _ in range(shards)]
        self._shards: List[Dict[Tuple[str, Hashable], _KeyState]] = [{} for _ in range(shards)]

    def _shard_for(self, key: Tuple[str, Hashable]) -> int:
        return hash(key) % len(self._shards)

    def observe(self, rule_id: str, aggregate: Aggregate, group_key: Any, counted_value: Any,
                timestamp: Optional[datetime] = None) -> bool:
        """Count one matching record. Returns whether the rule fires for it."""
        return self.record(rule_id, aggregate, group_key, counted_value, timestamp).fired

    def record(self, rule_id: str, aggregate: Aggregate, group_key: Any, counted_value: Any,
               timestamp: Optional[datetime] = None) -> Observation:
        key = (rule_id, _freeze(group_key))
        index = self._shard_for(key)
        with self._locks[index]:
            shard = self._shards[index]
            state = shard.get(key)
            if state is None:
                state = _KeyState()
                shard[key] = state
            if state.overflowed:
                return Observation(False, self._count(state, aggregate))
            if aggregate.counted_field and counted_value is None:
                return Observation(False, self._count(state, aggregate))
            try:
                count = self._increment(state, aggregate, counted_value, timestamp)
            except AggregationOverflow as e:
                state.overflowed = True
                logger.warning(f"Aggregation stopped for rule {rule_id} group {group_key!r}: {e}")
                return Observation(False, self._count(state, aggregate))
            if count is None:
                return Observation(False, self._count(state, aggregate))
            return Observation(self._should_fire(state, aggregate.compare(count)), count)

    def _should_fire(self, state: _KeyState, satisfied: bool) -> bool:
        if self.fire_policy == FIRE_EVERY:
            return satisfied
        fired = satisfied and not state.satisfied
        state.satisfied = satisfied
        return fired

    def _count(self, state: _KeyState, aggregate: Aggregate) -> int:
        if aggregate.timeframe is not None:
            if aggregate.counted_field:
                return len(state.window_values)
            return len(state.window)
        if aggregate.counted_field:
            return len(state.seen)
        return state.count

    def _increment(self, state: _KeyState, aggregate: Aggregate, counted_value: Any,
                   timestamp: Optional[datetime]) -> Optional[int]:
        """Add one observation. Returns the new count, or None if it was dropped."""
        counting_distinct = bool(aggregate.counted_field)
        value = _freeze(counted_value)

        if aggregate.timeframe is not None:
            if timestamp is None:
                timestamp = datetime.now(timezone.utc)
            if state.newest is None or timestamp > state.newest:
                state.newest = timestamp
            cutoff = state.newest - aggregate.timeframe
            if timestamp < cutoff:
                logger.debug(f"Dropping observation at {timestamp.isoformat()}, window starts at {cutoff.isoformat()}")
                return None
            self._prune(state, cutoff)
            self._check_capacity(state)
            bisect.insort(state.window, (timestamp, next(state.arrivals), value))
            if counting_distinct:
                state.window_values[value] += 1
            return self._count(state, aggregate)

        if counting_distinct:
            if value not in state.seen:
                self._check_capacity(state)
                state.seen.add(value)
            return len(state.seen)

        state.count += 1
        return state.count

    def _check_capacity(self, state: _KeyState) -> None:
        if self.max_values_per_key is not None and state.tracked_values() >= self.max_values_per_key:
            raise AggregationOverflow(f"more than {self.max_values_per_key} tracked values")

    @staticmethod
    def _prune(state: _KeyState, cutoff: datetime) -> None:
        expired = bisect.bisect_left(state.window, (cutoff,))
        for _, _, value in state.window[:expired]:
            if value in state.window_values:
                state.window_values[value] -= 1
                if state.window_values[value] <= 0:
                    del state.window_values[value]
        del state.window[:expired]

    def count(self, rule_id: str, aggregate: Aggregate, group_key: Any) -> int:
        key = (rule_id, _freeze(group_key))
        index = self._shard_for(key)
        with self._locks[index]:
            state = self._shards[index].get(key)
            return self._count(state, aggregate) if state else 0

    def discard(self) -> None:
        """Drop all counters, e.g. when a scan is cancelled."""
        for lock, shard in zip(self._locks, self._shards):
            with lock:
                shard.clear()

    def get_stats(self) -> Dict[str, Any]:
        keys = 0
        overflowed = 0
        for lock, shard in zip(self._locks, self._shards):
            with lock:
                keys += len(shard)
                overflowed += sum(1 for state in shard.values() if state.overflowed)
        return {
            'tracked_keys': keys,
            'overflowed_keys': overflowed,
            'fire_policy': self.fire_policy,
        }
