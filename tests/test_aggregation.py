import sys
import os
import threading
import unittest
from datetime import datetime, timedelta, timezone
# Add src to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from detection.aggregation import FIRE_ONCE, AggregationTracker
from detection.condition import compile_condition

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _aggregate(clause, timeframe=None):
    return compile_condition(f'selection | {clause}', ['selection'], timeframe=timeframe)


class TestAggregationTracker(unittest.TestCase):
    def test_fires_on_every_satisfying_record(self):
        tracker = AggregationTracker()
        aggregate = _aggregate('count() by Host > 2')
        fired = [tracker.observe('r1', aggregate, 'WS01', None) for _ in range(5)]
        self.assertEqual(fired, [False, False, True, True, True])
        self.assertEqual(tracker.count('r1', aggregate, 'WS01'), 5)

    def test_once_policy_fires_on_rising_edge_only(self):
        tracker = AggregationTracker(fire_policy=FIRE_ONCE)
        aggregate = _aggregate('count() by Host > 2')
        fired = [tracker.observe('r1', aggregate, 'WS01', None) for _ in range(5)]
        self.assertEqual(fired, [False, False, True, False, False])

    def test_unknown_fire_policy(self):
        with self.assertRaises(ValueError):
            AggregationTracker(fire_policy='sometimes')

    def test_counts_distinct_values(self):
        tracker = AggregationTracker()
        aggregate = _aggregate('count(TargetUserName) by WorkstationName > 3')
        results = [tracker.record('r1', aggregate, 'WS01', user)
                   for user in ('a', 'b', 'a', 'c', 'b', 'd')]
        self.assertEqual([r.count for r in results], [1, 2, 2, 3, 3, 4])
        self.assertEqual([r.fired for r in results], [False, False, False, False, False, True])

    def test_missing_counted_value_is_not_counted(self):
        tracker = AggregationTracker()
        aggregate = _aggregate('count(TargetUserName) > 0')
        self.assertFalse(tracker.observe('r1', aggregate, None, None))
        self.assertTrue(tracker.observe('r1', aggregate, None, 'bob'))

    def test_missing_counted_value_never_fires(self):
        tracker = AggregationTracker()
        aggregate = _aggregate('count(TargetUserName) by Host > 1')
        results = [tracker.record('r1', aggregate, 'WS01', user) for user in ('a', 'b', None)]
        self.assertEqual([r.fired for r in results], [False, True, False])
        self.assertEqual(results[2].count, 2)

        windowed = _aggregate('count(TargetUserName) by Host > 1', timeframe=timedelta(minutes=5))
        self.assertFalse(tracker.observe('r2', windowed, 'WS01', 'a', T0))
        self.assertTrue(tracker.observe('r2', windowed, 'WS01', 'b', T0 + timedelta(seconds=1)))
        self.assertFalse(tracker.observe('r2', windowed, 'WS01', None, T0 + timedelta(seconds=2)))

    def test_missing_counted_value_with_less_than(self):
        tracker = AggregationTracker()
        aggregate = _aggregate('count(TargetUserName) by Host < 5')
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', None))
        self.assertEqual(tracker.count('r1', aggregate, 'WS01'), 0)
        self.assertTrue(tracker.observe('r1', aggregate, 'WS01', 'a'))

    def test_groups_and_rules_are_isolated(self):
        tracker = AggregationTracker()
        aggregate = _aggregate('count() by Host >= 2')
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', None))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS02', None))
        self.assertFalse(tracker.observe('r2', aggregate, 'WS01', None))
        self.assertTrue(tracker.observe('r1', aggregate, 'WS01', None))
        self.assertEqual(tracker.count('r1', aggregate, 'WS02'), 1)
        self.assertEqual(tracker.count('r2', aggregate, 'WS01'), 1)
        self.assertEqual(tracker.count('r3', aggregate, 'WS01'), 0)

    def test_timeframe_drops_old_observations(self):
        tracker = AggregationTracker()
        aggregate = _aggregate('count() by Host > 2', timeframe=timedelta(minutes=5))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', None, T0))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', None, T0 + timedelta(minutes=1)))
        # first observation falls out of the window
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', None, T0 + timedelta(minutes=5, seconds=30)))
        self.assertEqual(tracker.count('r1', aggregate, 'WS01'), 2)
        self.assertTrue(tracker.observe('r1', aggregate, 'WS01', None, T0 + timedelta(minutes=5, seconds=45)))

    def test_timeframe_ignores_records_older_than_window(self):
        tracker = AggregationTracker()
        aggregate = _aggregate('count() by Host >= 2', timeframe=timedelta(minutes=5))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', None, T0 + timedelta(minutes=10)))
        # ten minutes older than the newest record: not counted
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', None, T0))
        self.assertEqual(tracker.count('r1', aggregate, 'WS01'), 1)
        # late but still inside the window
        self.assertTrue(tracker.observe('r1', aggregate, 'WS01', None, T0 + timedelta(minutes=7)))
        self.assertEqual(tracker.count('r1', aggregate, 'WS01'), 2)

    def test_timeframe_window_follows_newest_record(self):
        tracker = AggregationTracker()
        aggregate = _aggregate('count(TargetUserName) by Host >= 3', timeframe=timedelta(minutes=5))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', 'a', T0 + timedelta(minutes=4)))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', 'b', T0))
        # newest moves to T0+6m, so the record at T0 leaves the window
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', 'c', T0 + timedelta(minutes=6)))
        self.assertEqual(tracker.count('r1', aggregate, 'WS01'), 2)
        self.assertTrue(tracker.observe('r1', aggregate, 'WS01', 'd', T0 + timedelta(minutes=2)))

    def test_timeframe_distinct_values(self):
        tracker = AggregationTracker()
        aggregate = _aggregate('count(TargetUserName) by Host >= 2', timeframe=timedelta(seconds=30))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', 'a', T0))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', 'a', T0 + timedelta(seconds=10)))
        self.assertTrue(tracker.observe('r1', aggregate, 'WS01', 'b', T0 + timedelta(seconds=20)))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', 'b', T0 + timedelta(minutes=5)))

    def test_once_policy_rearms_after_window_empties(self):
        tracker = AggregationTracker(fire_policy=FIRE_ONCE)
        aggregate = _aggregate('count() by Host >= 2', timeframe=timedelta(minutes=1))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', None, T0))
        self.assertTrue(tracker.observe('r1', aggregate, 'WS01', None, T0 + timedelta(seconds=10)))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', None, T0 + timedelta(seconds=20)))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', None, T0 + timedelta(minutes=5)))
        self.assertTrue(tracker.observe('r1', aggregate, 'WS01', None, T0 + timedelta(minutes=5, seconds=1)))

    def test_overflow_freezes_key(self):
        tracker = AggregationTracker(max_values_per_key=2)
        aggregate = _aggregate('count(TargetUserName) by Host >= 2')
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', 'a'))
        self.assertTrue(tracker.observe('r1', aggregate, 'WS01', 'b'))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', 'c'))
        self.assertFalse(tracker.observe('r1', aggregate, 'WS01', 'd'))
        self.assertEqual(tracker.get_stats()['overflowed_keys'], 1)
        # other keys keep counting
        self.assertFalse(tracker.observe('r1', aggregate, 'WS02', 'a'))
        self.assertTrue(tracker.observe('r1', aggregate, 'WS02', 'b'))

    def test_list_group_key_is_hashable(self):
        tracker = AggregationTracker()
        aggregate = _aggregate('count() by Groups >= 2')
        self.assertFalse(tracker.observe('r1', aggregate, ['a', 'b'], None))
        self.assertTrue(tracker.observe('r1', aggregate, ['a', 'b'], None))

    def test_discard(self):
        tracker = AggregationTracker()
        aggregate = _aggregate('count() > 0')
        tracker.observe('r1', aggregate, None, None)
        tracker.discard()
        self.assertEqual(tracker.get_stats()['tracked_keys'], 0)

    def test_concurrent_observations_are_not_lost(self):
        tracker = AggregationTracker()
        aggregate = _aggregate('count() by Host >= 4000')
        fired = []
        fired_lock = threading.Lock()

        def work():
            for _ in range(1000):
                if tracker.observe('r1', aggregate, 'WS01', None):
                    with fired_lock:
                        fired.append(1)

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(tracker.count('r1', aggregate, 'WS01'), 8000)
        self.assertEqual(len(fired), 4001)

    def test_concurrent_once_policy_fires_exactly_once(self):
        tracker = AggregationTracker(fire_policy=FIRE_ONCE)
        aggregate = _aggregate('count(User) by Host > 100')
        fired = []
        fired_lock = threading.Lock()

        def work(offset):
            for i in range(200):
                if tracker.observe('r1', aggregate, 'WS01', f'user-{offset}-{i}'):
                    with fired_lock:
                        fired.append(1)

        threads = [threading.Thread(target=work, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(fired), 1)
        self.assertEqual(tracker.count('r1', aggregate, 'WS01'), 800)


if __name__ == '__main__':
    unittest.main()
