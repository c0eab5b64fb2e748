"""
Predicate Classifier Tests
==========================
"""

import warnings

import polars as pl
import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from staged_query import (
    DocumentSchema, ElemMatch, IndexDefinition, Nor, UnsatisfiablePushdown,
    all_of, classify, compile_predicate, field,
)
from staged_query.classifier import covered_prefix

INDEX = IndexDefinition(
    'opportunities', ('initiativeId', 'contacts.questions.category_id', 'contacts.datePublished')
)

SCOPE = field('initiativeId') == 'S1'
CATEGORY = field('contacts.questions.category_id').is_in([105, 147])
PUBLISHED = ElemMatch('contacts', field('datePublished') != None)
SHORTLISTED = ElemMatch('contacts.shortListedVendors', field('name') == 'ADP')
EXCLUDED = Nor((field('contacts.questions.category_id') == 999,))

POOL = [SCOPE, CATEGORY, PUBLISHED, SHORTLISTED, EXCLUDED]


@pytest.fixture
def docs(opportunity_docs):
    return pl.DataFrame(opportunity_docs, infer_schema_length=None)


def _split(result):
    eligible = result.eligible.conjuncts() if result.eligible is not None else ()
    residual = result.residual.conjuncts() if result.residual is not None else ()
    return eligible, residual


class TestEligibility:
    def test_report_root_predicate(self):
        predicate = all_of(SCOPE, CATEGORY, PUBLISHED, SHORTLISTED)
        with warnings.catch_warnings():
            warnings.simplefilter('error')
            result = classify(predicate, INDEX)
        eligible, residual = _split(result)
        assert eligible == (SCOPE, CATEGORY, PUBLISHED)
        assert residual == (SHORTLISTED,)
        assert result.uses_index
        assert result.covered_keys == INDEX.keys

    def test_partial_prefix(self):
        result = classify(all_of(SCOPE, PUBLISHED), INDEX)
        eligible, residual = _split(result)
        # datePublished is the third key; without category_id the prefix stops at one key.
        assert eligible == (SCOPE,)
        assert residual == (PUBLISHED,)
        assert result.covered_keys == ('initiativeId',)

    def test_prefix_gap_is_unsatisfiable(self):
        with pytest.warns(UnsatisfiablePushdown):
            result = classify(CATEGORY, INDEX)
        assert result.eligible is None
        assert result.residual == CATEGORY
        assert not result.uses_index

    def test_no_index_warns(self):
        with pytest.warns(UnsatisfiablePushdown, match="no usable index"):
            result = classify(SCOPE, None)
        assert result.residual == SCOPE

    def test_disjunction_eligible_only_as_a_whole(self):
        whole = (field('initiativeId') == 'S1') | (field('initiativeId') == 'S2')
        result = classify(whole, INDEX)
        assert result.eligible == whole

        mixed = (field('initiativeId') == 'S1') | (field('contacts.id') == 'cA')
        with pytest.warns(UnsatisfiablePushdown):
            result = classify(mixed, INDEX)
        assert result.residual == mixed

    def test_negation_never_eligible(self):
        negated = Nor((field('initiativeId') == 'S2',))
        result = classify(all_of(SCOPE, negated), INDEX)
        eligible, residual = _split(result)
        assert eligible == (SCOPE,)
        assert residual == (negated,)

    def test_expanded_arrays_lose_locality(self, docs):
        schema = DocumentSchema.from_frame(docs)
        result = classify(all_of(SCOPE, CATEGORY), INDEX, schema=schema, expanded=['contacts'])
        eligible, residual = _split(result)
        # initiativeId sits above the expanded array and keeps its correlation.
        assert eligible == (SCOPE,)
        assert residual == (CATEGORY,)

        with pytest.warns(UnsatisfiablePushdown, match="arrays already expanded"):
            result = classify(CATEGORY, INDEX, schema=schema, expanded=['contacts'])
        assert result.residual == CATEGORY

    def test_no_predicate(self):
        result = classify(None, INDEX)
        assert result.eligible is None and result.residual is None

    def test_covered_prefix(self):
        assert covered_prefix(INDEX, {'initiativeId', 'contacts.datePublished'}) == ('initiativeId',)
        assert covered_prefix(INDEX, {'contacts.datePublished'}) == ()


class TestEquivalence:
    @settings(suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(st.lists(st.sampled_from(POOL), min_size=1, max_size=5, unique_by=id))
    def test_eligible_and_residual_equal_input(self, docs, conjuncts):
        predicate = all_of(*conjuncts)
        result = classify(predicate, INDEX, warn=False)
        eligible, residual = _split(result)
        assert sorted(map(repr, eligible + residual)) == sorted(map(repr, predicate.conjuncts()))

        schema = DocumentSchema.from_frame(docs)
        expected = docs.filter(compile_predicate(predicate, schema))['_id'].to_list()
        staged = docs
        for part in (result.eligible, result.residual):
            if part is not None:
                staged = staged.filter(compile_predicate(part, schema))
        assert staged['_id'].to_list() == expected
