"""
Staged Query: Query Builder and Planner
=======================================

``StagedQuery`` describes a pipeline the way it is written; ``plan_query``
turns it into the stage list that actually runs:

    SourceStage(eligible predicate, index)   index-driven scan
    ProjectStage(allow-list)                 pruning before any expansion
    MatchStage(residual)                     root-level residual filter
    ... remaining stages in the order written

Leading ``match`` calls form the root predicate; it is split by the
predicate classifier against the best index the store declares. Expansion
order is validated against the collection schema at plan time.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import polars as pl

from .assembly import GroupStage, SortSpec, SortStage, UnwindStage, ValueSpec
from .classifier import Classification, classify
from .errors import SchemaPathError
from .expansion import ExpandStage
from .lookup import LookupStage, OutputSpec
from .predicates import Predicate, all_of
from .pruner import AllowList, ProjectStage, compute_allow_list
from .schema import DocumentSchema
from .selection import BoundedMaxStage
from .stages import DeriveSpec, DeriveStage, MatchStage, SourceStage, Stage, StageType


class StagedQuery:
    """
    Immutable pipeline builder; every method returns a new query.

    Example:
        query = (StagedQuery('opportunities')
                 .match(field('initiativeId') == scope)
                 .expand('contacts')
                 .expand('contacts.questions')
                 .select_max('contacts.questions.answers.primary_answer_value',
                             within='contacts.questions.answers', ceiling=9000))
    """

    def __init__(self, collection: str, stages: Sequence[Stage] = ()):
        self.collection = collection
        self.stages: Tuple[Stage, ...] = tuple(stages)

    def _then(self, stage: Stage) -> 'StagedQuery':
        return StagedQuery(self.collection, self.stages + (stage,))

    def match(self, *predicates: Predicate) -> 'StagedQuery':
        if not predicates:
            raise ValueError("match() needs at least one predicate")
        return self._then(MatchStage(all_of(*predicates)))

    def expand(self, path: str, outer: bool = False) -> 'StagedQuery':
        return self._then(ExpandStage(path, outer=outer))

    def select_max(self, value: str, by: Sequence[str] = (),
                   within: Optional[str] = None, ceiling: Optional[Any] = None) -> 'StagedQuery':
        return self._then(BoundedMaxStage(value, by=by, within=within, ceiling=ceiling))

    def derive(self, columns: Optional[Mapping[str, DeriveSpec]] = None,
               requires: Iterable[str] = (), **named: DeriveSpec) -> 'StagedQuery':
        merged = dict(columns or {})
        merged.update(named)
        return self._then(DeriveStage(merged, requires=requires))

    def lookup(self, collection: str, local_key: str, foreign_key: str,
               outputs: Mapping[str, OutputSpec],
               scope_path: Optional[str] = None, scope: Any = None) -> 'StagedQuery':
        return self._then(LookupStage(collection, local_key, foreign_key, outputs,
                                      scope_path=scope_path, scope=scope))

    def group(self, key: ValueSpec, first: Optional[Mapping[str, ValueSpec]] = None,
              push: Optional[Mapping[str, ValueSpec]] = None,
              push_as: str = 'answers', count: Optional[str] = 'count') -> 'StagedQuery':
        return self._then(GroupStage(key, first=first, push=push, push_as=push_as, count=count))

    def unwind(self, path: str, preserve_empty: bool = False) -> 'StagedQuery':
        return self._then(UnwindStage(path, preserve_empty=preserve_empty))

    def sort(self, keys: SortSpec) -> 'StagedQuery':
        return self._then(SortStage(keys))

    def __len__(self) -> int:
        return len(self.stages)

    def __repr__(self) -> str:
        return f"StagedQuery({self.collection!r}, {[s.name for s in self.stages]})"


@dataclass(frozen=True)
class QueryPlan:
    """Executable stage list plus the decisions that produced it."""
    collection: str
    stages: Tuple[Stage, ...]
    classification: Classification
    allow_list: Optional[AllowList] = None

    @property
    def stage_types(self) -> List[StageType]:
        return [s.stage_type for s in self.stages]

    @property
    def source(self) -> SourceStage:
        return self.stages[0]

    def explain(self) -> List[Dict[str, Any]]:
        return [s.describe() for s in self.stages]

    def __str__(self) -> str:
        lines = [f"QueryPlan on '{self.collection}':"]
        for i, stage in enumerate(self.stages):
            lines.append(f"  {i:2d}. {stage.describe()}")
        return '\n'.join(lines)


def _split_root(stages: Sequence[Stage]) -> Tuple[Optional[Predicate], List[Stage]]:
    """Leading match stages become the root predicate."""
    root: List[Predicate] = []
    position = 0
    while position < len(stages) and isinstance(stages[position], MatchStage):
        root.append(stages[position].predicate)
        position += 1
    predicate = all_of(*root) if root else None
    return predicate, list(stages[position:])


def validate_expansions(stages: Iterable[Stage], schema: DocumentSchema):
    """Every expansion must name an array whose enclosing arrays were expanded before it."""
    expanded: List[str] = []
    for stage in stages:
        if stage.closes_document_scope:
            break
        if not isinstance(stage, ExpandStage):
            continue
        chain = schema.array_chain(stage.path)
        if not chain or chain[-1] != stage.path:
            raise SchemaPathError(f"No array at '{stage.path}'", path=stage.path)
        pending = [p for p in chain[:-1] if p not in expanded]
        if pending:
            raise SchemaPathError(
                f"Cannot expand '{stage.path}' before its enclosing array '{pending[0]}'",
                path=stage.path,
            )
        expanded.append(stage.path)


def plan_query(query: StagedQuery, store, prune: bool = True, warn: bool = True) -> QueryPlan:
    """
    Build the executable plan for ``query`` against ``store``.

    Args:
        query: Pipeline as written
        store: Document store; queried for the collection schema and indexes
        prune: Insert the projection stage (disable for differential checks)
        warn: Emit pushdown warnings
    """
    schema = DocumentSchema.from_frame(store.scan(query.collection))
    predicate, remaining = _split_root(query.stages)
    validate_expansions(remaining, schema)

    index = store.usable_index(query.collection, predicate.fields()) if predicate else None
    classification = classify(predicate, index, schema=schema, warn=warn)

    downstream: List[Stage] = []
    if classification.residual is not None:
        downstream.append(MatchStage(classification.residual))
    downstream.extend(remaining)

    stages: List[Stage] = [SourceStage(query.collection, classification.eligible, classification.index)]
    allow_list = None
    if prune:
        allow_list = compute_allow_list(downstream)
        if allow_list:
            stages.append(ProjectStage(allow_list))
    stages.extend(downstream)

    return QueryPlan(query.collection, tuple(stages), classification, allow_list)


__all__ = ['StagedQuery', 'QueryPlan', 'plan_query', 'validate_expansions']
