import copy

import pytest
from hypothesis import settings

from staged_query import InMemoryDocumentStore, declare_report_indexes

settings.register_profile("ci", max_examples=50, deadline=None)
settings.register_profile("dev", max_examples=10, deadline=None)
settings.load_profile("ci")


# ============================================================================
# Scenario data
# ============================================================================

def _loop(instance, text, selected=True):
    return {'loop_instance': instance, 'loop_text': text, 'is_selected': selected}


def _answer(value, text, loops, criteria_value=None):
    return {
        'primary_answer_value': value,
        'primary_answer_text': text,
        'criteria_value': criteria_value,
        'loopInstances': loops,
    }


def _opportunity(doc_id, scope, contact_id, question, win_vendor, date_published='2019-03-01'):
    return {
        '_id': doc_id,
        'initiativeId': scope,
        'contacts': [{
            'id': contact_id,
            'datePublished': date_published,
            'shortListedVendors': [{'name': 'ADP', 'value': 50, 'is_selected': True}],
            'win_vendor': win_vendor,
            'questions': [question],
        }],
    }


OPPORTUNITIES = [
    # Category 105 with a selected-vendor answer above the ceiling: excluded.
    _opportunity(
        'A', 'S1', 'cA',
        {
            'id': 'qa1', 'category_id': 105, 'criteria_value': None, 'label': 'Payroll size',
            'answers': [
                _answer(9500, 'Premium', [_loop(50, 'ADP')]),
                _answer(120, 'Basic', [_loop(50, 'ADP')]),
            ],
        },
        {'name': 'ADP', 'value': 50, 'is_client': True},
    ),
    # Category 147: best answer below the ceiling is 300.
    _opportunity(
        'B', 'S1', 'cB',
        {
            'id': 'qb1', 'category_id': 147, 'criteria_value': 7, 'label': 'Vendor choice',
            'answers': [
                _answer(300, 'Standard', [_loop(50, 'ADP')]),
                _answer(200, 'Basic', [_loop(50, 'ADP')]),
                _answer(9200, 'Premium', [_loop(50, 'ADP')]),
            ],
        },
        {'name': 'Other', 'value': 60, 'is_client': False},
    ),
    # Category 105: two answers tie at 300.
    _opportunity(
        'C', 'S1', 'cC',
        {
            'id': 'qc1', 'category_id': 105, 'criteria_value': None, 'label': 'Benefits plan',
            'answers': [
                _answer(300, 'Standard', [_loop(50, 'ADP'), _loop(60, 'Other', selected=False)], 11),
                _answer(300, 'Standard', [_loop(50, 'ADP')], 11),
                _answer(100, 'Basic', [_loop(50, 'ADP')], 11),
            ],
        },
        {'name': 'ADP', 'value': 50, 'is_client': True},
    ),
]

CLIENT_CRITERIA = [
    {'value': 7, 'label': 'Payroll', 'definition': 'top def 7',
     'versions': [{'initiativeId': 'S1', 'definition': 'v-def 7'}]},
    {'value': 11, 'label': 'Benefits', 'definition': 'top def 11',
     'versions': [{'initiativeId': 'S1', 'definition': None}]},
    {'value': 7, 'label': 'Payroll (S2)', 'definition': 'top def 7 s2',
     'versions': [{'initiativeId': 'S2', 'definition': 's2 def'}]},
]

ORDERS = [
    {'order_id': 1, 'customer_id': 'ALFKI', 'company_name': 'Alfreds Futterkiste',
     'details': [{'product_name': 'Chai', 'unit_price': 18.0, 'quantity': 1},
                 {'product_name': 'Chang', 'unit_price': 19.0, 'quantity': 2}]},
    {'order_id': 2, 'customer_id': 'ALFKI', 'company_name': 'Alfreds Futterkiste',
     'details': [{'product_name': 'Ikura', 'unit_price': 31.0, 'quantity': 1},
                 {'product_name': 'Tofu', 'unit_price': 23.25, 'quantity': 4}]},
    {'order_id': 3, 'customer_id': 'ANATR', 'company_name': 'Ana Trujillo',
     'details': [{'product_name': 'Chai', 'unit_price': 18.0, 'quantity': 3},
                 {'product_name': 'Konbu', 'unit_price': 6.0, 'quantity': 5}]},
    {'order_id': 4, 'customer_id': 'ANATR', 'company_name': 'Ana Trujillo',
     'details': [{'product_name': 'Chai', 'unit_price': 18.0, 'quantity': 1}]},
    {'order_id': 5, 'customer_id': 'BERGS', 'company_name': 'Berglunds snabbkop',
     'details': [{'product_name': 'Tofu', 'unit_price': 23.25, 'quantity': 2},
                 {'product_name': 'Ikura', 'unit_price': 23.25, 'quantity': 1}]},
]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def opportunity_docs():
    return copy.deepcopy(OPPORTUNITIES)


@pytest.fixture
def criteria_docs():
    return copy.deepcopy(CLIENT_CRITERIA)


@pytest.fixture
def store(tmp_path):
    """Empty in-memory store spilling under the test's temp dir."""
    store = InMemoryDocumentStore(spill_directory=tmp_path / 'spill')
    yield store
    if not store.closed:
        store.close()


@pytest.fixture
def report_store(store, opportunity_docs, criteria_docs):
    """Store loaded with the vendor answer scenario and its indexes."""
    store.insert_many('opportunities', opportunity_docs)
    store.insert_many('clientCriteria', criteria_docs)
    declare_report_indexes(store)
    return store


@pytest.fixture
def orders_store(store):
    store.insert_many('orders', copy.deepcopy(ORDERS))
    return store
