"""
Staged Query: Expansion Engine
==============================

Controlled fan-out of exactly one nested array level per stage.

Each input row is replaced by one row per element of the array at ``path``:
- all other columns are copied down unchanged
- struct element fields land in dotted columns under ``path``
- ``path#parent`` holds the position of the source row in the stage input
- ``path#index`` holds the element's position inside its array

Element order is preserved. Empty or null arrays produce no rows (inner
semantics) unless ``outer=True``, which emits one row with null element
fields and a null ``#index``.

Because the projection pruner runs first, only fields that later stages
reference are copied: cost is O(sum of array lengths x pruned column count).
"""

from __future__ import annotations
from typing import Any, Dict, FrozenSet, Optional, Union

import polars as pl

from .schema import (
    DocumentSchema, index_column, is_struct_dtype, join_path, parent_column
)
from .stages import Stage, StageContext, StageType

_SOURCE_LENGTH = '__expand_source_length__'


def explode_rows(frame: pl.LazyFrame, column: str, element_dtype: pl.DataType,
                 order_column: str, keep_empty: bool = False) -> pl.LazyFrame:
    """
    Explode ``column`` of a frame carrying a row position in ``order_column``.

    Rows whose list is empty or null are exploded separately: dropped, or with
    ``keep_empty`` kept as one row holding a null element. Rows come back in
    ``order_column`` order with element order preserved.
    """
    has_elements = (pl.col(column).list.len() > 0).fill_null(False)
    out = frame.filter(has_elements).explode(column)
    if keep_empty:
        empty = frame.filter(~has_elements).with_columns(
            pl.lit(None, dtype=element_dtype).alias(column)
        )
        out = pl.concat([out, empty], how='vertical').sort(order_column, maintain_order=True)
    return out


def expand(frame: pl.LazyFrame, path: str, outer: bool = False,
           schema: Optional[DocumentSchema] = None) -> pl.LazyFrame:
    """Expand the array column ``path`` into one row per element."""
    schema = schema or DocumentSchema.from_frame(frame)
    element_dtype = schema.check_expandable(path)
    parent, index = parent_column(path), index_column(path)

    out = frame.with_row_index(parent)
    if outer:
        out = out.with_columns(pl.col(path).list.len().fill_null(0).alias(_SOURCE_LENGTH))
    out = explode_rows(out, path, element_dtype, parent, keep_empty=outer)
    position = pl.int_range(pl.len(), dtype=pl.UInt32).over(parent)
    if outer:
        out = out.with_columns(
            pl.when(pl.col(_SOURCE_LENGTH) > 0).then(position).otherwise(None).alias(index)
        ).drop(_SOURCE_LENGTH)
    else:
        out = out.with_columns(position.alias(index))

    if is_struct_dtype(element_dtype):
        out = out.with_columns([
            pl.col(path).struct.field(f.name).alias(join_path(path, f.name))
            for f in element_dtype.fields
        ]).drop(path)

    return out


def projected_fanout(frame: Union[pl.DataFrame, pl.LazyFrame], path: str,
                     record_column: Optional[str] = None,
                     outer: bool = False) -> int:
    """
    Largest number of rows a single root record will occupy after expanding ``path``.

    ``record_column`` identifies the root record of already expanded rows
    (the ``#parent`` column of the first expansion); without it each row is
    its own record. A lazy ``frame`` (a spilled intermediate) is aggregated
    without being loaded whole.
    """
    lazy = frame.lazy()
    columns = lazy.collect_schema().names()
    if path not in columns:
        return 0
    lengths = pl.col(path).list.len().fill_null(0)
    if outer:
        lengths = lengths.clip(lower_bound=1)

    if record_column is not None and record_column in columns:
        result = (
            lazy.group_by(record_column)
            .agg(lengths.sum().alias('rows'))
            .select(pl.col('rows').max())
        )
    else:
        result = lazy.select(lengths.max())

    value = result.collect().item()
    return int(value) if value is not None else 0


class ExpandStage(Stage):
    """Fan out one array level."""

    stage_type = StageType.EXPAND

    def __init__(self, path: str, outer: bool = False):
        self.path = path
        self.outer = outer

    def apply(self, frame: Optional[pl.LazyFrame], context: StageContext) -> pl.LazyFrame:
        return expand(frame, self.path, outer=self.outer)

    def structural_fields(self) -> FrozenSet[str]:
        return frozenset([self.path])

    def produced_fields(self) -> FrozenSet[str]:
        return frozenset([parent_column(self.path), index_column(self.path)])

    @property
    def parent_column(self) -> str:
        return parent_column(self.path)

    def describe(self) -> Dict[str, Any]:
        return {'stage': self.name, 'path': self.path, 'outer': self.outer}


__all__ = ['expand', 'explode_rows', 'projected_fanout', 'ExpandStage']
