"""
Bounded-Selection Operator Tests
================================

The filter is checked against a direct Python rendition of
"value == max({v in group : v < ceiling})".
"""

import polars as pl
import pytest
from hypothesis import given, strategies as st

from staged_query import (
    BoundedMaxStage, bounded_max, cross_group_max, expand, same_parent_max,
)

rows_strategy = st.lists(
    st.tuples(st.integers(0, 3), st.one_of(st.none(), st.integers(0, 20))),
    max_size=40,
)
ceiling_strategy = st.one_of(st.none(), st.integers(0, 25))


def _reference(rows, ceiling):
    peaks = {}
    for group, value in rows:
        if value is None or (ceiling is not None and value >= ceiling):
            continue
        peaks[group] = max(peaks.get(group, value), value)
    return [i for i, (group, value) in enumerate(rows)
            if value is not None and peaks.get(group) == value]


def _frame(rows):
    return pl.DataFrame(
        {'row': list(range(len(rows))), 'g': [g for g, _ in rows], 'v': [v for _, v in rows]},
        schema={'row': pl.Int64, 'g': pl.Int64, 'v': pl.Int64},
    )


class TestBoundedMax:
    @given(rows_strategy, ceiling_strategy)
    def test_matches_reference(self, rows, ceiling):
        out = bounded_max(_frame(rows).lazy(), 'v', by=['g'], ceiling=ceiling).collect()
        assert out['row'].to_list() == _reference(rows, ceiling)

    @given(rows_strategy, ceiling_strategy)
    def test_no_surviving_value_reaches_the_ceiling(self, rows, ceiling):
        out = bounded_max(_frame(rows).lazy(), 'v', by=['g'], ceiling=ceiling).collect()
        assert out['v'].null_count() == 0
        if ceiling is not None:
            assert all(v < ceiling for v in out['v'].to_list())

    def test_ties_survive_in_input_order(self):
        rows = [(0, 5), (0, 7), (0, 7), (0, 3)]
        out = bounded_max(_frame(rows).lazy(), 'v', by=['g'], ceiling=10).collect()
        assert out['row'].to_list() == [1, 2]

    def test_group_at_or_above_ceiling_disappears(self):
        rows = [(0, 10), (0, 12), (1, 4)]
        out = bounded_max(_frame(rows).lazy(), 'v', by=['g'], ceiling=10).collect()
        assert out['row'].to_list() == [2]

    def test_nulls_never_block(self):
        rows = [(0, None), (0, 2), (1, None)]
        out = bounded_max(_frame(rows).lazy(), 'v', by=['g']).collect()
        assert out['row'].to_list() == [1]

    def test_whole_frame_group(self):
        rows = [(0, 1), (1, 9), (2, 9)]
        out = bounded_max(_frame(rows).lazy(), 'v').collect()
        assert out['row'].to_list() == [1, 2]


class TestGroupings:
    def test_same_parent(self, opportunity_docs):
        lf = expand(pl.DataFrame(opportunity_docs, infer_schema_length=None).lazy(), 'contacts')
        lf = expand(lf, 'contacts.questions')
        lf = expand(lf, 'contacts.questions.answers')
        out = same_parent_max(
            lf, 'contacts.questions.answers.primary_answer_value',
            within='contacts.questions.answers', ceiling=9000,
        ).collect()
        assert out['_id'].to_list() == ['A', 'B', 'C', 'C']
        assert out['contacts.questions.answers.primary_answer_value'].to_list() == [120, 300, 300, 300]

    def test_cross_group(self):
        frame = pl.DataFrame({'customer': ['a', 'a', 'b', 'b'], 'price': [3.0, 5.0, 2.0, 2.0]})
        out = cross_group_max(frame.lazy(), 'price', keys=['customer']).collect()
        assert out.rows() == [('a', 5.0), ('b', 2.0), ('b', 2.0)]

    def test_cross_group_needs_keys(self):
        with pytest.raises(ValueError):
            cross_group_max(pl.LazyFrame({'price': [1]}), 'price', keys=[])

    def test_struct_path_keys(self):
        frame = pl.DataFrame({
            'customer': [{'id': 1}, {'id': 1}, {'id': 2}],
            'price': [1, 4, 2],
        })
        out = cross_group_max(frame.lazy(), 'price', keys=['customer.id']).collect()
        assert out['price'].to_list() == [4, 2]


class TestBoundedMaxStage:
    def test_within_groups_by_parent(self):
        stage = BoundedMaxStage('a.v', within='a', ceiling=5)
        assert stage.group_columns == ['a#parent']
        assert stage.required_fields() == frozenset({'a.v'})
        assert stage.describe() == {'stage': 'select_max', 'value': 'a.v', 'by': ['a#parent'], 'ceiling': 5}

    def test_within_and_by_are_exclusive(self):
        with pytest.raises(ValueError):
            BoundedMaxStage('v', by=['g'], within='a')
