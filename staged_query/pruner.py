"""
Staged Query: Projection Pruner
===============================

Computes the minimal field allow-list for a pipeline and applies it right
after the source scan, so every later expansion copies only what the rest of
the pipeline reads.

The allow-list is derived from the stages themselves, never guessed:
- ``fields``: paths some later stage reads; each keeps its whole subtree
- ``arrays``: arrays some later stage expands; their shape is kept while
  their element structs are rebuilt with only the allowed fields

Fields produced by an earlier stage are not document fields and are skipped,
as are bookkeeping columns. Collection stops after the first stage that
closes the document scope (grouping): past it rows are no longer documents.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set

import polars as pl

from .schema import DocumentSchema, is_bookkeeping, is_list_dtype, is_struct_dtype, join_path
from .stages import Stage, StageContext, StageType


def _covered_by(path: str, roots: Iterable[str]) -> bool:
    return any(path == r or path.startswith(r + '.') for r in roots)


@dataclass(frozen=True)
class AllowList:
    """Document paths a pipeline needs after the pruning point."""
    fields: FrozenSet[str] = frozenset()
    arrays: FrozenSet[str] = frozenset()

    def keeps_whole(self, path: str) -> bool:
        return _covered_by(path, self.fields)

    def reaches_below(self, path: str) -> bool:
        prefix = path + '.'
        return any(p == path or p.startswith(prefix) for p in self.fields | self.arrays)

    def paths(self) -> List[str]:
        return sorted(self.fields | self.arrays)

    def __bool__(self) -> bool:
        return bool(self.fields or self.arrays)


def compute_allow_list(stages: Iterable[Stage]) -> AllowList:
    """Union of document fields referenced by ``stages``, in pipeline order."""
    produced: Set[str] = set()
    fields: Set[str] = set()
    arrays: Set[str] = set()

    for stage in stages:
        for path in stage.required_fields():
            if is_bookkeeping(path) or _covered_by(path, produced):
                continue
            fields.add(path)
        for path in stage.structural_fields():
            if not _covered_by(path, produced):
                arrays.add(path)
        produced.update(stage.produced_fields())
        if stage.closes_document_scope:
            break

    return AllowList(frozenset(fields), frozenset(arrays))


def _project(expr: pl.Expr, dtype: pl.DataType, path: str,
             allow: AllowList) -> Optional[pl.Expr]:
    if allow.keeps_whole(path):
        return expr
    if not allow.reaches_below(path):
        return None

    if is_list_dtype(dtype):
        inner = _project(pl.element(), dtype.inner, path, allow)
        if inner is None:
            # An expanded array with no referenced field still sets the row count.
            return expr if path in allow.arrays else None
        return expr.list.eval(inner)

    if is_struct_dtype(dtype):
        children = []
        for f in dtype.fields:
            child = _project(expr.struct.field(f.name), f.dtype, join_path(path, f.name), allow)
            if child is not None:
                children.append(child.alias(f.name))
        if not children:
            return None
        return pl.when(expr.is_null()).then(None).otherwise(pl.struct(children))

    return expr


def project_frame(frame: pl.LazyFrame, allow: AllowList,
                  schema: Optional[DocumentSchema] = None) -> pl.LazyFrame:
    """Keep only allowed paths, rebuilding nested structs around them."""
    if not allow:
        return frame
    schema = schema or DocumentSchema.from_frame(frame)
    exprs = []
    for column in schema.columns:
        projected = _project(pl.col(column), schema.column_dtype(column), column, allow)
        if projected is not None:
            exprs.append(projected.alias(column))
    if not exprs:
        return frame
    return frame.select(exprs)


class ProjectStage(Stage):
    """Projection applied immediately after the source scan."""

    stage_type = StageType.PROJECT

    def __init__(self, allow: AllowList):
        self.allow = allow

    def apply(self, frame: Optional[pl.LazyFrame], context: StageContext) -> pl.LazyFrame:
        return project_frame(frame, self.allow)

    def describe(self) -> Dict[str, Any]:
        return {
            'stage': self.name,
            'fields': sorted(self.allow.fields),
            'arrays': sorted(self.allow.arrays),
        }


__all__ = ['AllowList', 'compute_allow_list', 'project_frame', 'ProjectStage']
