"""
Staged Query: Grouping & Assembly
=================================

Final shaping of the flattened rows into report records:
- ``GroupStage``: group by a derived key, ``first`` fields in input order,
  per-row detail structs pushed in encounter order, and a row count
- ``UnwindStage``: one output row per pushed detail
- ``SortStage``: stable multi-key sort; nulls sort lowest and ties keep
  their input order
"""

from __future__ import annotations
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import polars as pl

from .expansion import explode_rows
from .schema import DocumentSchema, is_list_dtype
from .stages import Stage, StageContext, StageType, expression_fields

ValueSpec = Union[str, pl.Expr]

GROUP_KEY = '_id'
_UNWIND_ORDER = '__unwind_order__'


def _value_expr(schema: DocumentSchema, spec: ValueSpec) -> pl.Expr:
    if isinstance(spec, pl.Expr):
        return spec
    return schema.scalar_expr(spec)


def _spec_fields(specs: Iterable[ValueSpec]) -> FrozenSet[str]:
    paths = set()
    exprs = []
    for spec in specs:
        if isinstance(spec, pl.Expr):
            exprs.append(spec)
        else:
            paths.add(spec)
    return frozenset(paths) | expression_fields(exprs)


class GroupStage(Stage):
    """
    Group rows by a key into ``{_id, <first fields>, <push>: [...], count}``.

    Example:
        GroupStage('contacts.questions.answers.primary_answer_value',
                   first={'answer_text': 'contacts.questions.answers.primary_answer_text'},
                   push={'question_id': 'contacts.questions.id'})
    """

    stage_type = StageType.GROUP

    def __init__(self, key: ValueSpec,
                 first: Optional[Mapping[str, ValueSpec]] = None,
                 push: Optional[Mapping[str, ValueSpec]] = None,
                 push_as: str = 'answers',
                 count: Optional[str] = 'count'):
        self.key = key
        self.first: Dict[str, ValueSpec] = dict(first or {})
        self.push: Dict[str, ValueSpec] = dict(push or {})
        self.push_as = push_as
        self.count = count

    @property
    def closes_document_scope(self) -> bool:
        return True

    def apply(self, frame: Optional[pl.LazyFrame], context: StageContext) -> pl.LazyFrame:
        schema = DocumentSchema.from_frame(frame)
        aggregations: List[pl.Expr] = [
            _value_expr(schema, spec).first().alias(name) for name, spec in self.first.items()
        ]
        if self.push:
            aggregations.append(
                pl.struct([
                    _value_expr(schema, spec).alias(name) for name, spec in self.push.items()
                ]).alias(self.push_as)
            )
        if self.count:
            aggregations.append(pl.len().alias(self.count))

        return frame.group_by(
            _value_expr(schema, self.key).alias(GROUP_KEY), maintain_order=True
        ).agg(aggregations)

    def required_fields(self) -> FrozenSet[str]:
        return _spec_fields([self.key, *self.first.values(), *self.push.values()])

    def produced_fields(self) -> FrozenSet[str]:
        produced = {GROUP_KEY, *self.first}
        if self.push:
            produced.add(self.push_as)
        if self.count:
            produced.add(self.count)
        return frozenset(produced)

    def describe(self) -> Dict[str, Any]:
        return {
            'stage': self.name,
            '_id': self.key if isinstance(self.key, str) else str(self.key),
            'first': sorted(self.first),
            'push': {self.push_as: sorted(self.push)} if self.push else None,
            'count': self.count,
        }


class UnwindStage(Stage):
    """One row per element of a list column; empty and null lists are dropped unless preserved."""

    stage_type = StageType.UNWIND

    def __init__(self, path: str, preserve_empty: bool = False):
        self.path = path
        self.preserve_empty = preserve_empty

    def apply(self, frame: Optional[pl.LazyFrame], context: StageContext) -> pl.LazyFrame:
        schema = DocumentSchema.from_frame(frame)
        dtype = schema.column_dtype(self.path)
        element_dtype = dtype.inner if is_list_dtype(dtype) else dtype
        return explode_rows(
            frame.with_row_index(_UNWIND_ORDER), self.path, element_dtype, _UNWIND_ORDER,
            keep_empty=self.preserve_empty,
        ).drop(_UNWIND_ORDER)

    def required_fields(self) -> FrozenSet[str]:
        return frozenset([self.path])

    def describe(self) -> Dict[str, Any]:
        return {'stage': self.name, 'path': self.path, 'preserve_empty': self.preserve_empty}


SortSpec = Union[Mapping[str, int], Sequence[Union[str, Tuple[str, bool]]]]


def _sort_keys(keys: SortSpec) -> List[Tuple[str, bool]]:
    """Normalise ``{'a': 1, 'b': -1}`` or ``['a', ('b', True)]`` to ``(path, descending)``."""
    if isinstance(keys, Mapping):
        normalised = []
        for path, direction in keys.items():
            if direction not in (1, -1):
                raise ValueError(f"Sort direction for '{path}' must be 1 or -1, got {direction!r}")
            normalised.append((path, direction == -1))
        return normalised
    return [(k, False) if isinstance(k, str) else (k[0], bool(k[1])) for k in keys]


class SortStage(Stage):
    """Stable multi-key sort; nulls sort lowest."""

    stage_type = StageType.SORT

    def __init__(self, keys: SortSpec):
        self.keys = _sort_keys(keys)
        if not self.keys:
            raise ValueError("SortStage needs at least one key")

    def apply(self, frame: Optional[pl.LazyFrame], context: StageContext) -> pl.LazyFrame:
        schema = DocumentSchema.from_frame(frame)
        descending = [desc for _, desc in self.keys]
        return frame.sort(
            [schema.scalar_expr(path) for path, _ in self.keys],
            descending=descending,
            nulls_last=descending,
            maintain_order=True,
        )

    def required_fields(self) -> FrozenSet[str]:
        return frozenset(path for path, _ in self.keys)

    def describe(self) -> Dict[str, Any]:
        return {'stage': self.name, 'keys': {p: -1 if d else 1 for p, d in self.keys}}


__all__ = ['GroupStage', 'UnwindStage', 'SortStage', 'GROUP_KEY']
