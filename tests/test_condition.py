import sys
import os
import itertools
import unittest
from datetime import timedelta
# Add src to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from detection.condition import (
    Aggregate,
    AllOf,
    And,
    NOf,
    Not,
    OneOf,
    Or,
    SelectionRef,
    compile_condition,
    parse_timeframe,
    tokenize,
)
from detection.errors import RuleCompileError

NAMES = ['SELECTION_1', 'SELECTION_2', 'SELECTION_3', 'SELECTION_4']


def _lookup(truth):
    return lambda name: truth[name]


class TestTokenize(unittest.TestCase):
    def test_tokens(self):
        self.assertEqual(
            tokenize('(sel_a or sel_b) and not 1 of filter*'),
            ['(', 'sel_a', 'or', 'sel_b', ')', 'and', 'not', '1', 'of', 'filter*'],
        )

    def test_unexpected_character(self):
        with self.assertRaises(RuleCompileError):
            tokenize('sel_a & sel_b')


class TestPrecedence(unittest.TestCase):
    def test_single_reference(self):
        self.assertEqual(compile_condition('SELECTION_1', NAMES), SelectionRef('SELECTION_1'))

    def test_and_binds_tighter_than_or(self):
        node = compile_condition('SELECTION_1 or SELECTION_2 and SELECTION_3', NAMES)
        self.assertEqual(
            node,
            Or(SelectionRef('SELECTION_1'), And(SelectionRef('SELECTION_2'), SelectionRef('SELECTION_3'))),
        )

    def test_not_binds_tighter_than_and(self):
        node = compile_condition('not SELECTION_1 and SELECTION_2', NAMES)
        self.assertEqual(node, And(Not(SelectionRef('SELECTION_1')), SelectionRef('SELECTION_2')))

    def test_parentheses_override(self):
        node = compile_condition('(SELECTION_1 or SELECTION_2) and SELECTION_3', NAMES)
        self.assertEqual(
            node,
            And(Or(SelectionRef('SELECTION_1'), SelectionRef('SELECTION_2')), SelectionRef('SELECTION_3')),
        )

    def test_keywords_are_case_insensitive(self):
        node = compile_condition('SELECTION_1 AND NOT SELECTION_2', NAMES)
        self.assertEqual(node, And(SelectionRef('SELECTION_1'), Not(SelectionRef('SELECTION_2'))))

    def test_and_is_left_associative(self):
        node = compile_condition('SELECTION_1 and SELECTION_2 and SELECTION_3', NAMES)
        self.assertEqual(
            node,
            And(And(SelectionRef('SELECTION_1'), SelectionRef('SELECTION_2')), SelectionRef('SELECTION_3')),
        )


class TestQuantifiers(unittest.TestCase):
    names = ['selection_a', 'selection_b', 'filter']

    def test_all_of_pattern(self):
        self.assertEqual(compile_condition('all of selection_*', self.names),
                         AllOf(('selection_a', 'selection_b')))

    def test_one_of_pattern(self):
        self.assertEqual(compile_condition('1 of selection_*', self.names),
                         OneOf(('selection_a', 'selection_b')))
        self.assertEqual(compile_condition('any of selection_*', self.names),
                         OneOf(('selection_a', 'selection_b')))

    def test_them(self):
        self.assertEqual(compile_condition('all of them', self.names), AllOf(tuple(self.names)))

    def test_n_of(self):
        self.assertEqual(compile_condition('2 of them', self.names), NOf(2, tuple(self.names)))

    def test_quantifier_evaluation(self):
        truth = {'selection_a': True, 'selection_b': False, 'filter': True}
        self.assertFalse(compile_condition('all of selection_*', self.names).evaluate(_lookup(truth)))
        self.assertTrue(compile_condition('1 of selection_*', self.names).evaluate(_lookup(truth)))
        self.assertTrue(compile_condition('2 of them', self.names).evaluate(_lookup(truth)))
        self.assertFalse(compile_condition('1 of selection_* and not filter', self.names).evaluate(_lookup(truth)))

    def test_pattern_matching_nothing_is_an_error(self):
        with self.assertRaises(RuleCompileError):
            compile_condition('1 of nothing_*', self.names)


class TestCompileErrors(unittest.TestCase):
    def assertCompileError(self, condition):
        with self.assertRaises(RuleCompileError):
            compile_condition(condition, NAMES)

    def test_unknown_selection(self):
        self.assertCompileError('SELECTION_1 and SELECTION_X')

    def test_unbalanced_parentheses(self):
        self.assertCompileError('(SELECTION_1 or SELECTION_2')
        self.assertCompileError('SELECTION_1 or SELECTION_2)')

    def test_dangling_operator(self):
        self.assertCompileError('SELECTION_1 and')
        self.assertCompileError('and SELECTION_1')

    def test_empty(self):
        self.assertCompileError('')
        self.assertCompileError('   ')

    def test_unrecognized_comparator(self):
        self.assertCompileError('SELECTION_1 | count() by SELECTION_2 => 3')
        self.assertCompileError('SELECTION_1 | count() != 3')

    def test_by_without_comparator(self):
        self.assertCompileError('SELECTION_1 | count(TargetUserName) by WorkstationName')

    def test_unknown_aggregation_function(self):
        self.assertCompileError('SELECTION_1 | sum(Bytes) > 3')

    def test_non_integer_threshold(self):
        self.assertCompileError('SELECTION_1 | count() > three')


class TestAggregationClause(unittest.TestCase):
    def test_full_clause(self):
        node = compile_condition(
            '((SELECTION_1 or SELECTION_2) and SELECTION_3 and SELECTION_4) | count(TargetUserName) by WorkstationName > 3',
            NAMES,
        )
        self.assertIsInstance(node, Aggregate)
        self.assertEqual(node.counted_field, 'TargetUserName')
        self.assertEqual(node.group_by_field, 'WorkstationName')
        self.assertEqual(node.comparator, '>')
        self.assertEqual(node.threshold, 3)
        self.assertIsNone(node.timeframe)
        self.assertEqual(
            node.subtree,
            And(
                And(Or(SelectionRef('SELECTION_1'), SelectionRef('SELECTION_2')), SelectionRef('SELECTION_3')),
                SelectionRef('SELECTION_4'),
            ),
        )

    def test_count_without_field_or_group(self):
        node = compile_condition('SELECTION_1 | count() >= 10', NAMES)
        self.assertIsNone(node.counted_field)
        self.assertIsNone(node.group_by_field)
        self.assertEqual(node.comparator, '>=')

    def test_all_comparators(self):
        for comparator, count, expected in [('>', 4, True), ('>=', 3, True), ('<', 2, True),
                                            ('<=', 4, False), ('==', 3, True)]:
            node = compile_condition(f'SELECTION_1 | count() {comparator} 3', NAMES)
            self.assertEqual(node.compare(count), expected, comparator)

    def test_timeframe_is_attached(self):
        node = compile_condition('SELECTION_1 | count() > 3', NAMES, timeframe=timedelta(minutes=5))
        self.assertEqual(node.timeframe, timedelta(minutes=5))


class TestTimeframe(unittest.TestCase):
    def test_units(self):
        self.assertEqual(parse_timeframe('30s'), timedelta(seconds=30))
        self.assertEqual(parse_timeframe('5m'), timedelta(minutes=5))
        self.assertEqual(parse_timeframe('1h'), timedelta(hours=1))
        self.assertEqual(parse_timeframe('2d'), timedelta(days=2))
        self.assertIsNone(parse_timeframe(None))

    def test_invalid(self):
        for value in ('5 minutes', '0m', 'm'):
            with self.assertRaises(RuleCompileError):
                parse_timeframe(value)


class TestDeMorgan(unittest.TestCase):
    def test_not_and_equals_or_of_nots_for_every_truth_table(self):
        names = ['A', 'B']
        lhs = compile_condition('not (A and B)', names)
        rhs = compile_condition('not A or not B', names)
        for a, b in itertools.product([True, False], repeat=2):
            truth = {'A': a, 'B': b}
            self.assertEqual(lhs.evaluate(_lookup(truth)), rhs.evaluate(_lookup(truth)))
            self.assertEqual(lhs.evaluate(_lookup(truth)), (not a) or (not b))

    def test_nested_de_morgan(self):
        names = ['A', 'B', 'C']
        lhs = compile_condition('not (A or (B and C))', names)
        rhs = compile_condition('not A and (not B or not C)', names)
        for values in itertools.product([True, False], repeat=3):
            truth = dict(zip(names, values))
            self.assertEqual(lhs.evaluate(_lookup(truth)), rhs.evaluate(_lookup(truth)))


if __name__ == '__main__':
    unittest.main()
