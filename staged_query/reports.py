"""
Staged Query: Reports
=====================

Queries built on the staged pipeline.

``vendor_answer_report``
    For one initiative (scope), the best answer below a ceiling of every
    category question in opportunities where a given vendor was shortlisted,
    grouped by answer value and enriched with the matching client criteria.

``top_purchase_per_customer``
    Each customer's most expensive purchased product, built from the two
    bounded maximal filters (per order, then per customer).
"""

from __future__ import annotations
from typing import Any, Iterable, List, Optional

import polars as pl

from .config import PipelineConfig
from .executor import QueryResult, run_query
from .planner import StagedQuery
from .predicates import ElemMatch, field, none_of
from .store import IndexDefinition

OPPORTUNITIES = 'opportunities'
CLIENT_CRITERIA = 'clientCriteria'
ORDERS = 'orders'

# Flattened paths of the opportunity hierarchy
CONTACT = 'contacts'
QUESTION = 'contacts.questions'
ANSWER = 'contacts.questions.answers'
LOOP = 'contacts.questions.answers.loopInstances'


def declare_report_indexes(store) -> List[IndexDefinition]:
    """Declare the compound indexes the vendor answer report relies on."""
    return [
        store.create_index(
            OPPORTUNITIES, ['initiativeId', f'{QUESTION}.category_id', f'{CONTACT}.datePublished']
        ),
        store.create_index(CLIENT_CRITERIA, ['value', 'versions.initiativeId']),
    ]


def build_vendor_answer_query(scope: Any, categories: Iterable[int], values: Iterable[int],
                              vendor_name: str = 'ADP', ceiling: float = 9000,
                              mandatory_category: int = 105,
                              winner_category: int = 147) -> StagedQuery:
    """
    Pipeline of the vendor answer report.

    Args:
        scope: Initiative identifier restricting opportunities and criteria
        categories: Question categories to report
        values: Loop instance / vendor values identifying the vendor
        vendor_name: Vendor name identifying the vendor
        ceiling: Exclusive upper bound of answer values
        mandatory_category: Category excluded when the vendor already holds
            an answer at or above the ceiling
        winner_category: Category reported through the contact's winning vendor
    """
    categories = list(categories)
    values = list(values)

    vendor_loop = field('is_selected') == True
    vendor_loop = vendor_loop & (field('loop_instance').is_in(values) | (field('loop_text') == vendor_name))

    shortlisted = (
        ((field('name') == vendor_name) & (field('is_selected') == True))
        | (field('value').is_in(values) & (field('value') < ceiling)
           & (field('is_selected') == True))
    )

    winner_by_client = (
        (field(f'{CONTACT}.win_vendor.is_client') == False)
        & (field(f'{QUESTION}.category_id') == winner_category)
        & (field(f'{CONTACT}.win_vendor.value').is_in(values)
           | (field(f'{CONTACT}.win_vendor.name') == vendor_name))
    )

    def criteria_value(schema):
        return pl.coalesce(
            schema.scalar_expr(f'{QUESTION}.criteria_value'),
            schema.scalar_expr(f'{ANSWER}.criteria_value'),
        )

    def client_winner(schema):
        return schema.scalar_expr(f'{CONTACT}.win_vendor.is_client')

    def competitor_winner(schema):
        return (
            (client_winner(schema) == False)
            & ((schema.scalar_expr(f'{LOOP}.loop_instance')
                == schema.scalar_expr(f'{CONTACT}.win_vendor.value'))
               | (schema.scalar_expr(f'{QUESTION}.category_id') == winner_category))
        ).fill_null(False)

    return (
        StagedQuery(OPPORTUNITIES)
        .match(
            field('initiativeId') == scope,
            field(f'{QUESTION}.category_id').is_in(categories),
            ElemMatch(CONTACT, field('datePublished') != None),
            ElemMatch(f'{CONTACT}.shortListedVendors', shortlisted),
        )
        .expand(CONTACT)
        .expand(QUESTION)
        .match(
            field(f'{QUESTION}.category_id').is_in(categories),
            none_of(
                (field(f'{QUESTION}.category_id') == mandatory_category)
                & ElemMatch(ANSWER, (field('primary_answer_value') >= ceiling)
                            & ElemMatch('loopInstances', vendor_loop))
            ),
            field(f'{ANSWER}.primary_answer_value') < ceiling,
        )
        .expand(ANSWER)
        .select_max(f'{ANSWER}.primary_answer_value', within=ANSWER, ceiling=ceiling)
        .expand(LOOP)
        .match(
            field(f'{LOOP}.loop_instance').is_in(values)
            | (field(f'{LOOP}.loop_text') == vendor_name)
            | winner_by_client
        )
        .derive(
            criteria_value=criteria_value,
            client_winner=client_winner,
            competitor_winner=competitor_winner,
            requires=[
                f'{QUESTION}.criteria_value', f'{ANSWER}.criteria_value',
                f'{CONTACT}.win_vendor', f'{LOOP}.loop_instance', f'{QUESTION}.category_id',
            ],
        )
        .lookup(
            CLIENT_CRITERIA,
            local_key='criteria_value',
            foreign_key='value',
            outputs={
                'criteria_text': 'label',
                'criteria_definition': ['versions.definition', 'definition'],
            },
            scope_path='versions.initiativeId',
            scope=scope,
        )
        .group(
            f'{ANSWER}.primary_answer_value',
            first={
                'answer_value': f'{ANSWER}.primary_answer_value',
                'answer_text': f'{ANSWER}.primary_answer_text',
            },
            push={
                'c': f'{CONTACT}.id',
                'question_category': f'{QUESTION}.category_id',
                'question_id': f'{QUESTION}.id',
                'ins': f'{LOOP}.loop_instance',
                'answer_value': f'{ANSWER}.primary_answer_value',
                'selected': f'{LOOP}.is_selected',
                'value': 'criteria_value',
                'text': 'criteria_text',
                'definition': 'criteria_definition',
                'client_winner': 'client_winner',
                'competitor_winner': 'competitor_winner',
            },
            push_as='answers',
        )
        .unwind('answers')
        .sort({'answer_text': 1, 'answers.question_id': 1, 'answers.answer_value': 1})
    )


def vendor_answer_report(store, scope: Any, categories: Iterable[int], values: Iterable[int],
                         vendor_name: str = 'ADP', ceiling: float = 9000,
                         config: Optional[PipelineConfig] = None) -> QueryResult:
    query = build_vendor_answer_query(scope, categories, values, vendor_name, ceiling)
    return run_query(query, store, config)


def build_top_purchase_query() -> StagedQuery:
    """Most expensive order line per order, then per customer, one row per product."""
    price = 'details.unit_price'
    return (
        StagedQuery(ORDERS)
        .expand('details')
        .select_max(price, within='details')
        .select_max(price, by=['customer_id'])
        .group(
            pl.struct([
                pl.col('company_name'),
                pl.col('details.product_name').alias('product_name'),
                pl.col(price).alias('price_per_item'),
            ]),
            first={
                'company_name': 'company_name',
                'product_name': 'details.product_name',
                'price_per_item': price,
            },
            count='orders',
        )
        .sort([('price_per_item', True), 'company_name', 'product_name'])
    )


def top_purchase_per_customer(store, config: Optional[PipelineConfig] = None) -> QueryResult:
    return run_query(build_top_purchase_query(), store, config)


__all__ = [
    'declare_report_indexes',
    'build_vendor_answer_query',
    'vendor_answer_report',
    'build_top_purchase_query',
    'top_purchase_per_customer',
    'OPPORTUNITIES',
    'CLIENT_CRITERIA',
    'ORDERS',
]
