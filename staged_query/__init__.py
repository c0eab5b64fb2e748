# staged_query/__init__.py
from __future__ import annotations
from .config import PipelineConfig
from .errors import (
    StagedQueryError, SchemaPathError, CollectionNotFound, StoreUnavailable,
    ExpansionOverflow, QueryTimeout, StageExecutionError,
    PushdownUnavailable, UnsatisfiablePushdown, LookupAmbiguous,
)
from .schema import DocumentSchema, parent_column, index_column
from .predicates import (
    Predicate, Compare, ElemMatch, And, Or, Nor,
    field, element, all_of, any_of, none_of, compile_predicate,
)
from .store import IndexDefinition, SpillManager, DocumentStore, InMemoryDocumentStore
from .classifier import Classification, classify
from .stages import StageType, Stage, StageContext, SourceStage, MatchStage, DeriveStage, DeriveSpec
from .pruner import AllowList, compute_allow_list, project_frame, ProjectStage
from .expansion import expand, explode_rows, projected_fanout, ExpandStage
from .selection import bounded_max, same_parent_max, cross_group_max, BoundedMaxStage
from .lookup import LookupStage, key_dtype, resolve_lookup
from .assembly import GroupStage, UnwindStage, SortStage
from .profiling import QueryProfile, StageProfile
from .planner import StagedQuery, QueryPlan, plan_query
from .executor import PipelineExecutor, QueryResult, run_query
from .reports import (
    declare_report_indexes, build_vendor_answer_query, vendor_answer_report,
    build_top_purchase_query, top_purchase_per_customer,
)

__version__ = '0.1.0'

__all__ = [
    'PipelineConfig',
    'StagedQueryError',
    'SchemaPathError',
    'CollectionNotFound',
    'StoreUnavailable',
    'ExpansionOverflow',
    'QueryTimeout',
    'StageExecutionError',
    'PushdownUnavailable',
    'UnsatisfiablePushdown',
    'LookupAmbiguous',
    'DocumentSchema',
    'parent_column',
    'index_column',
    'Predicate',
    'Compare',
    'ElemMatch',
    'And',
    'Or',
    'Nor',
    'field',
    'element',
    'all_of',
    'any_of',
    'none_of',
    'compile_predicate',
    'IndexDefinition',
    'SpillManager',
    'DocumentStore',
    'InMemoryDocumentStore',
    'Classification',
    'classify',
    'StageType',
    'Stage',
    'StageContext',
    'SourceStage',
    'MatchStage',
    'DeriveStage',
    'DeriveSpec',
    'AllowList',
    'compute_allow_list',
    'project_frame',
    'ProjectStage',
    'expand',
    'explode_rows',
    'projected_fanout',
    'ExpandStage',
    'bounded_max',
    'same_parent_max',
    'cross_group_max',
    'BoundedMaxStage',
    'LookupStage',
    'key_dtype',
    'resolve_lookup',
    'GroupStage',
    'UnwindStage',
    'SortStage',
    'QueryProfile',
    'StageProfile',
    'StagedQuery',
    'QueryPlan',
    'plan_query',
    'PipelineExecutor',
    'QueryResult',
    'run_query',
    'declare_report_indexes',
    'build_vendor_answer_query',
    'vendor_answer_report',
    'build_top_purchase_query',
    'top_purchase_per_customer',
]
