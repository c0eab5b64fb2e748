"""
Staged Query: Stage Model
=========================

A pipeline is an ordered list of stages. Every stage is a pure transform
from one frame to the next (each expansion produces a new flat frame; no
stage keeps references into another stage's rows).

Stages also describe their data needs so the projection pruner can compute
the allow-list exhaustively:
- ``required_fields``: document paths the stage reads
- ``produced_fields``: names the stage adds (never document fields)
- ``structural_fields``: arrays the stage fans out over
- ``closes_document_scope``: after this stage rows are no longer documents
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Union

import polars as pl

from .predicates import Predicate, compile_predicate
from .schema import DocumentSchema, is_bookkeeping
from .store import IndexDefinition

if TYPE_CHECKING:
    from .config import PipelineConfig
    from .store import DocumentStore


class StageType(Enum):
    """Stage kinds, in the vocabulary of ``QueryPlan.explain``."""
    SOURCE = auto()
    PROJECT = auto()
    MATCH = auto()
    EXPAND = auto()
    SELECT_MAX = auto()
    DERIVE = auto()
    LOOKUP = auto()
    GROUP = auto()
    UNWIND = auto()
    SORT = auto()


@dataclass
class StageContext:
    """What a stage may touch while it runs."""
    store: 'DocumentStore'
    config: 'PipelineConfig'
    collection: str
    notes: Dict[str, Any] = field(default_factory=dict)


class Stage(ABC):
    """Base class for pipeline stages."""

    stage_type: StageType

    @abstractmethod
    def apply(self, frame: Optional[pl.LazyFrame], context: StageContext) -> pl.LazyFrame:
        """Transform the previous stage's output."""

    def required_fields(self) -> FrozenSet[str]:
        return frozenset()

    def produced_fields(self) -> FrozenSet[str]:
        return frozenset()

    def structural_fields(self) -> FrozenSet[str]:
        """Arrays whose shape the stage needs, without needing every field below them."""
        return frozenset()

    @property
    def closes_document_scope(self) -> bool:
        return False

    @property
    def name(self) -> str:
        return self.stage_type.name.lower()

    def describe(self) -> Dict[str, Any]:
        return {'stage': self.name}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.describe()})"


class SourceStage(Stage):
    """Initial scan of the root collection, carrying the index-eligible filter."""

    stage_type = StageType.SOURCE

    def __init__(self, collection: str,
                 predicate: Optional[Predicate] = None,
                 index: Optional[IndexDefinition] = None):
        self.collection = collection
        self.predicate = predicate
        self.index = index

    def apply(self, frame: Optional[pl.LazyFrame], context: StageContext) -> pl.LazyFrame:
        return context.store.find(self.collection, self.predicate, self.index)

    def describe(self) -> Dict[str, Any]:
        return {
            'stage': self.name,
            'collection': self.collection,
            'index': self.index.name if self.index else None,
            'filter': self.predicate.describe() if self.predicate else None,
        }


class MatchStage(Stage):
    """Filter evaluated against the current row shape."""

    stage_type = StageType.MATCH

    def __init__(self, predicate: Predicate):
        self.predicate = predicate

    def apply(self, frame: Optional[pl.LazyFrame], context: StageContext) -> pl.LazyFrame:
        schema = DocumentSchema.from_frame(frame)
        return frame.filter(compile_predicate(self.predicate, schema))

    def required_fields(self) -> FrozenSet[str]:
        return self.predicate.fields()

    def describe(self) -> Dict[str, Any]:
        return {'stage': self.name, 'filter': self.predicate.describe()}


def expression_fields(exprs: Iterable[pl.Expr]) -> FrozenSet[str]:
    """Column names an expression reads (bookkeeping columns excluded)."""
    names = set()
    for expr in exprs:
        names.update(expr.meta.root_names())
    return frozenset(n for n in names if not is_bookkeeping(n))


DeriveSpec = Union[str, pl.Expr, Callable[[DocumentSchema], pl.Expr]]


class DeriveStage(Stage):
    """
    Add computed columns over flattened paths.

    A column is given as a document path (read through the schema walker, so
    a missing path is null), a polars expression, or a callable building the
    expression from the current ``DocumentSchema``. ``requires`` lists the
    document paths a callable reads.

    Example:
        DeriveStage({'criteria_value': lambda schema: pl.coalesce(
            schema.scalar_expr('contacts.questions.criteria_value'),
            schema.scalar_expr('contacts.questions.answers.criteria_value'))},
            requires=['contacts.questions.criteria_value',
                      'contacts.questions.answers.criteria_value'])
    """

    stage_type = StageType.DERIVE

    def __init__(self, columns: Mapping[str, DeriveSpec], requires: Iterable[str] = ()):
        if not columns:
            raise ValueError("DeriveStage needs at least one column")
        self.columns: Dict[str, DeriveSpec] = dict(columns)
        self.requires = frozenset(requires)

    def _expr(self, schema: DocumentSchema, spec: DeriveSpec) -> pl.Expr:
        if isinstance(spec, str):
            return schema.scalar_expr(spec)
        if isinstance(spec, pl.Expr):
            return spec
        return spec(schema)

    def apply(self, frame: Optional[pl.LazyFrame], context: StageContext) -> pl.LazyFrame:
        schema = DocumentSchema.from_frame(frame)
        return frame.with_columns([
            self._expr(schema, spec).alias(name) for name, spec in self.columns.items()
        ])

    def required_fields(self) -> FrozenSet[str]:
        paths = {spec for spec in self.columns.values() if isinstance(spec, str)}
        exprs = [spec for spec in self.columns.values() if isinstance(spec, pl.Expr)]
        return frozenset(paths) | expression_fields(exprs) | self.requires

    def produced_fields(self) -> FrozenSet[str]:
        return frozenset(self.columns)

    def describe(self) -> Dict[str, Any]:
        return {'stage': self.name, 'columns': sorted(self.columns)}


__all__ = [
    'StageType',
    'StageContext',
    'Stage',
    'SourceStage',
    'MatchStage',
    'DeriveStage',
    'DeriveSpec',
    'expression_fields',
]
