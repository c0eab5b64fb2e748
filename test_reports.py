"""
Report Tests
============

End-to-end runs of the vendor answer report on the three-opportunity
scenario (scope S1, categories 105/147, vendor value 50, ceiling 9000) and of
the per-customer top purchase report.
"""

import warnings

import pytest

from staged_query import (
    InMemoryDocumentStore, LookupAmbiguous, StageType, UnsatisfiablePushdown, build_vendor_answer_query,
    declare_report_indexes, plan_query, top_purchase_per_customer, vendor_answer_report,
)

pytestmark = pytest.mark.pipeline


def _run(store, **overrides):
    params = dict(scope='S1', categories=[105, 147], values=[50], vendor_name='ADP', ceiling=9000)
    params.update(overrides)
    return vendor_answer_report(store, **params)


class TestVendorAnswerReport:
    def test_scenario(self, report_store):
        result = _run(report_store)
        rows = result.rows()

        assert [r['_id'] for r in rows] == [300, 300, 300]
        assert {r['count'] for r in rows} == {3}
        assert {r['answer_text'] for r in rows} == {'Standard'}

        answers = [r['answers'] for r in rows]
        assert [a['question_id'] for a in answers] == ['qb1', 'qc1', 'qc1']
        assert answers[0] == {
            'c': 'cB',
            'question_category': 147,
            'question_id': 'qb1',
            'ins': 50,
            'answer_value': 300,
            'selected': True,
            'value': 7,
            'text': 'Payroll',
            'definition': 'v-def 7',
            'client_winner': False,
            'competitor_winner': True,
        }
        for answer in answers[1:]:
            assert (answer['value'], answer['text'], answer['definition']) == (11, 'Benefits', 'top def 11')
            assert answer['client_winner'] is True
            assert answer['competitor_winner'] is False

    def test_excluded_and_non_maximal_answers_are_absent(self, report_store):
        values = {r['_id'] for r in _run(report_store).rows()}
        assert values.isdisjoint({120, 9500, 9200, 200, 100})

    def test_idempotent(self, report_store):
        assert _run(report_store).rows() == _run(report_store).rows()

    def test_other_scope_is_empty(self, report_store):
        assert _run(report_store, scope='S2').rows() == []

    def test_lower_ceiling(self, report_store):
        rows = _run(report_store, ceiling=250).rows()
        # C now holds a selected-vendor answer above the ceiling and drops out.
        assert [(r['_id'], r['answers']['question_id']) for r in rows] == [(200, 'qb1')]

    def test_ambiguous_criteria(self, report_store):
        report_store.insert_many('clientCriteria', [
            {'value': 7, 'label': 'Payroll duplicate', 'definition': None,
             'versions': [{'initiativeId': 'S1', 'definition': 'dup'}]},
        ])
        with pytest.warns(LookupAmbiguous):
            rows = _run(report_store).rows()
        assert rows[0]['answers']['text'] == 'Payroll'


class TestPlan:
    def test_root_predicate_uses_index(self, report_store):
        with warnings.catch_warnings():
            warnings.simplefilter('error')
            plan = plan_query(build_vendor_answer_query('S1', [105, 147], [50]), report_store)
        assert plan.classification.uses_index
        assert plan.source.index.keys == (
            'initiativeId', 'contacts.questions.category_id', 'contacts.datePublished',
        )
        assert plan.stage_types[:3] == [StageType.SOURCE, StageType.PROJECT, StageType.MATCH]
        assert plan.explain()[0]['index'] == 'initiativeId_1_contacts.questions.category_id_1_contacts.datePublished_1'

    def test_without_indexes_still_correct(self, opportunity_docs, criteria_docs, report_store):
        store_rows = _run(report_store).rows()

        bare = InMemoryDocumentStore()
        try:
            bare.insert_many('opportunities', opportunity_docs)
            bare.insert_many('clientCriteria', criteria_docs)
            with pytest.warns(UnsatisfiablePushdown):
                rows = _run(bare).rows()
        finally:
            bare.close()
        assert rows == store_rows

    def test_index_usage_recorded(self, report_store):
        _run(report_store)
        used = {(u.collection, u.index.name) for u in report_store.index_usage}
        assert used == {
            ('opportunities', 'initiativeId_1_contacts.questions.category_id_1_contacts.datePublished_1'),
            ('clientCriteria', 'value_1_versions.initiativeId_1'),
        }

    def test_declare_is_idempotent(self, report_store):
        declare_report_indexes(report_store)
        assert len(report_store.indexes('opportunities')) == 1


class TestTopPurchase:
    def test_most_expensive_product_per_customer(self, orders_store):
        rows = top_purchase_per_customer(orders_store).rows()
        assert [(r['company_name'], r['product_name'], r['price_per_item'], r['orders']) for r in rows] == [
            ('Alfreds Futterkiste', 'Ikura', 31.0, 1),
            ('Berglunds snabbkop', 'Ikura', 23.25, 1),
            ('Berglunds snabbkop', 'Tofu', 23.25, 1),
            ('Ana Trujillo', 'Chai', 18.0, 2),
        ]


def _winner_only_opportunity(is_client):
    """Category 147 opportunity whose only loop belongs to another vendor."""
    return {
        '_id': 'D',
        'initiativeId': 'S1',
        'contacts': [{
            'id': 'cD',
            'datePublished': '2019-04-01',
            'shortListedVendors': [{'name': 'ADP', 'value': 50, 'is_selected': True}],
            'win_vendor': {'name': 'ADP', 'value': 50, 'is_client': is_client},
            'questions': [{
                'id': 'qd1', 'category_id': 147, 'criteria_value': 7, 'label': 'Vendor choice',
                'answers': [{
                    'primary_answer_value': 400,
                    'primary_answer_text': 'Gold',
                    'criteria_value': None,
                    'loopInstances': [{'loop_instance': 70, 'loop_text': 'Rival', 'is_selected': True}],
                }],
            }],
        }],
    }


class TestWinnerBranch:
    def test_won_by_vendor_as_non_client(self, report_store):
        report_store.insert_many('opportunities', [_winner_only_opportunity(is_client=False)])
        rows = [r for r in _run(report_store).rows() if r['_id'] == 400]
        assert len(rows) == 1
        answer = rows[0]['answers']
        assert (answer['question_id'], answer['ins']) == ('qd1', 70)
        assert answer['client_winner'] is False
        assert answer['competitor_winner'] is True
        assert answer['text'] == 'Payroll'

    def test_won_by_vendor_as_client_is_absent(self, report_store):
        report_store.insert_many('opportunities', [_winner_only_opportunity(is_client=True)])
        assert 400 not in {r['_id'] for r in _run(report_store).rows()}


class TestMissingFields:
    def test_without_question_criteria(self, store, opportunity_docs, criteria_docs):
        for doc in opportunity_docs:
            for contact in doc['contacts']:
                for question in contact['questions']:
                    question.pop('criteria_value')
        store.insert_many('opportunities', opportunity_docs)
        store.insert_many('clientCriteria', criteria_docs)
        declare_report_indexes(store)

        answers = [r['answers'] for r in _run(store).rows()]
        assert [a['question_id'] for a in answers] == ['qb1', 'qc1', 'qc1']
        assert [a['value'] for a in answers] == [None, 11, 11]
        assert [a['text'] for a in answers] == [None, 'Benefits', 'Benefits']

    def test_without_winning_vendor(self, store, opportunity_docs, criteria_docs):
        for doc in opportunity_docs:
            for contact in doc['contacts']:
                contact.pop('win_vendor')
        store.insert_many('opportunities', opportunity_docs)
        store.insert_many('clientCriteria', criteria_docs)
        declare_report_indexes(store)

        answers = [r['answers'] for r in _run(store).rows()]
        assert [a['question_id'] for a in answers] == ['qb1', 'qc1', 'qc1']
        assert {a['client_winner'] for a in answers} == {None}
        assert {a['competitor_winner'] for a in answers} == {False}
