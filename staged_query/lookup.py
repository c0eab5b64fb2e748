"""
Staged Query: Correlated Lookup Resolver
========================================

Attaches fields from a secondary collection to every row, matching a local
key against a secondary key inside a scope.

Resolution order:
1. Restrict the secondary collection to the keys the rows reference and to
   the scope (``versions.initiativeId`` equal to the query scope), once per
   query. Keys are compared in a common dtype; keys of incompatible dtypes
   (text against numbers) never match.
2. Reduce it to one entry per key: the first matching document in
   collection order wins; several matches raise ``LookupAmbiguous``.
3. Every output is a coalesce over candidate paths, taking the first array
   element at each array level (nested version field first, then the
   top-level field).
4. Left-join on the key. Rows without a match get explicit nulls, so the
   output columns always exist and the row count never changes.
"""

from __future__ import annotations
import warnings
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple, Union

import polars as pl

from .errors import LookupAmbiguous, PushdownUnavailable
from .predicates import Compare, Predicate, all_of
from .schema import DocumentSchema
from .stages import Stage, StageContext, StageType

_KEY = '__lookup_key__'
_ORDER = '__lookup_order__'
_LOCAL = '__lookup_local__'

OutputSpec = Union[str, Sequence[str]]


def _normalise_outputs(outputs: Mapping[str, OutputSpec]) -> Dict[str, Tuple[str, ...]]:
    normalised = {}
    for name, candidates in outputs.items():
        if isinstance(candidates, str):
            candidates = (candidates,)
        if not candidates:
            raise ValueError(f"Lookup output '{name}' needs at least one source path")
        normalised[name] = tuple(candidates)
    return normalised


def key_dtype(local: Optional[pl.DataType],
              foreign: Optional[pl.DataType]) -> Optional[pl.DataType]:
    """Dtype both key sides are compared in, or ``None`` when no value can be equal."""
    if local is None or foreign is None or local == pl.Null or foreign == pl.Null:
        return None
    if local == foreign:
        return local
    if local.is_integer() and foreign.is_integer():
        return pl.Int64
    if local.is_numeric() and foreign.is_numeric():
        return pl.Float64
    return None


def secondary_table(store, collection: str, foreign_key: str,
                    outputs: Mapping[str, OutputSpec],
                    scope_path: Optional[str] = None,
                    scope: Any = None,
                    keys: Optional[Sequence[Any]] = None,
                    warn: bool = True) -> pl.DataFrame:
    """
    One row per secondary key: ``__lookup_key__`` plus every output column.

    The restriction (``keys`` when given, and the scope) runs through the
    store. A declared index is used only when the restriction constrains its
    leading key.
    """
    outputs = _normalise_outputs(outputs)
    conditions: List[Predicate] = []
    if keys is not None:
        conditions.append(Compare(foreign_key, 'in', keys))
    if scope_path is not None:
        conditions.append(Compare(scope_path, 'eq', scope))
    restriction = all_of(*conditions) if conditions else None

    wanted = {foreign_key} | ({scope_path} if scope_path is not None else set())
    index = store.usable_index(collection, frozenset(wanted))
    if index is None and warn:
        warnings.warn(
            f"No index on '{collection}' covers {sorted(wanted)}; lookup scans the collection",
            PushdownUnavailable,
            stacklevel=3,
        )
    if index is not None and (restriction is None or index.leading_key not in restriction.fields()):
        index = None

    secondary = store.execute(store.find(collection, restriction, index))
    schema = DocumentSchema(secondary.schema)

    table = secondary.select(
        [schema.scalar_expr(foreign_key).alias(_KEY)]
        + [
            pl.coalesce([schema.first_value_expr(path) for path in candidates]).alias(name)
            for name, candidates in outputs.items()
        ]
    ).filter(pl.col(_KEY).is_not_null())

    duplicates = table.group_by(_KEY).len().filter(pl.col('len') > 1)
    if duplicates.height and warn:
        ambiguous = sorted(duplicates[_KEY].to_list(), key=repr)
        warnings.warn(
            f"{len(ambiguous)} key(s) match several '{collection}' documents {ambiguous[:5]}; "
            f"the first document wins",
            LookupAmbiguous,
            stacklevel=3,
        )

    return table.group_by(_KEY, maintain_order=True).agg(pl.all().first())


def attach(frame: pl.LazyFrame, table: pl.DataFrame, local_key: str) -> pl.LazyFrame:
    """Left-join ``table`` onto ``frame`` by ``local_key`` keeping row order."""
    schema = DocumentSchema.from_frame(frame)
    outputs = [c for c in table.columns if c != _KEY]
    clashing = [c for c in outputs if c in schema.columns]
    if clashing:
        frame = frame.drop(clashing)

    join_dtype = key_dtype(schema.dtype_of(local_key), table.schema[_KEY])
    if join_dtype is None:
        return frame.with_columns(
            [pl.lit(None, dtype=table.schema[name]).alias(name) for name in outputs]
        )

    # A value that does not fit the common dtype becomes null and matches nothing.
    right = table.lazy().with_columns(pl.col(_KEY).cast(join_dtype, strict=False))
    return (
        frame.with_row_index(_ORDER)
        .with_columns(schema.scalar_expr(local_key).cast(join_dtype, strict=False).alias(_LOCAL))
        .join(right, left_on=_LOCAL, right_on=_KEY, how='left')
        .sort(_ORDER)
        .drop([_ORDER, _LOCAL])
    )


def resolve_lookup(frame: pl.LazyFrame, store, collection: str,
                   local_key: str, foreign_key: str,
                   outputs: Mapping[str, OutputSpec],
                   scope_path: Optional[str] = None,
                   scope: Any = None) -> pl.LazyFrame:
    schema = DocumentSchema.from_frame(frame)
    foreign_dtype = DocumentSchema.from_frame(store.scan(collection)).dtype_of(foreign_key)
    join_dtype = key_dtype(schema.dtype_of(local_key), foreign_dtype)

    keys = None
    if join_dtype is not None and join_dtype == foreign_dtype:
        keys = (
            frame.select(schema.scalar_expr(local_key).cast(join_dtype, strict=False).alias(_LOCAL))
            .drop_nulls()
            .unique(maintain_order=True)
            .collect()[_LOCAL]
            .to_list()
        )
    table = secondary_table(store, collection, foreign_key, outputs, scope_path, scope, keys=keys)
    return attach(frame, table, local_key)


class LookupStage(Stage):
    """
    Correlated lookup against a secondary collection.

    Example:
        LookupStage('clientCriteria', local_key='criteria_value', foreign_key='value',
                    outputs={'criteria_text': 'label',
                             'criteria_definition': ['versions.definition', 'definition']},
                    scope_path='versions.initiativeId', scope=scope)
    """

    stage_type = StageType.LOOKUP

    def __init__(self, collection: str, local_key: str, foreign_key: str,
                 outputs: Mapping[str, OutputSpec],
                 scope_path: Optional[str] = None, scope: Any = None):
        self.collection = collection
        self.local_key = local_key
        self.foreign_key = foreign_key
        self.outputs = _normalise_outputs(outputs)
        self.scope_path = scope_path
        self.scope = scope

    def apply(self, frame: Optional[pl.LazyFrame], context: StageContext) -> pl.LazyFrame:
        return resolve_lookup(
            frame, context.store, self.collection, self.local_key, self.foreign_key,
            self.outputs, self.scope_path, self.scope,
        )

    def required_fields(self) -> FrozenSet[str]:
        return frozenset([self.local_key])

    def produced_fields(self) -> FrozenSet[str]:
        return frozenset(self.outputs)

    def describe(self) -> Dict[str, Any]:
        return {
            'stage': self.name,
            'from': self.collection,
            'local': self.local_key,
            'foreign': self.foreign_key,
            'scope': {self.scope_path: self.scope} if self.scope_path else None,
            'outputs': {k: list(v) for k, v in self.outputs.items()},
        }


__all__ = ['LookupStage', 'resolve_lookup', 'secondary_table', 'attach', 'key_dtype']
