"""
Staged Query: Bounded-Selection Operator
========================================

"Keep the rows holding the largest value below a ceiling, per group."

For every group the operator finds the maximum of the group's values that
are strictly below the ceiling, then keeps exactly the rows whose value
equals it:
- ties at the maximum all survive, in input order
- null values never survive and never block another row
- a group whose values are all at or above the ceiling disappears

Two groupings are used by the reports: rows sharing an expansion parent
(``same_parent_max``, the per-question best answer) and rows sharing
correlation keys (``cross_group_max``, the per-customer best purchase).
"""

from __future__ import annotations
from typing import Any, Dict, FrozenSet, Optional, Sequence

import polars as pl

from .schema import DocumentSchema, is_bookkeeping, parent_column
from .stages import Stage, StageContext, StageType


def bounded_max(frame: pl.LazyFrame, value: str,
                by: Sequence[str] = (),
                ceiling: Optional[Any] = None) -> pl.LazyFrame:
    """
    Filter ``frame`` to the rows whose ``value`` is the group maximum below ``ceiling``.

    Args:
        frame: Input rows
        value: Path of the compared value (flattened column or struct path)
        by: Grouping columns; empty means the whole frame is one group
        ceiling: Exclusive upper bound, ``None`` for no bound
    """
    schema = DocumentSchema.from_frame(frame)
    target = schema.scalar_expr(value)
    candidates = target if ceiling is None else target.filter(target < ceiling)
    peak = candidates.max()
    if by:
        peak = peak.over([schema.scalar_expr(k) for k in by])
    return frame.filter((target == peak).fill_null(False))


def same_parent_max(frame: pl.LazyFrame, value: str, within: str,
                    ceiling: Optional[Any] = None) -> pl.LazyFrame:
    """Bounded maximum among elements expanded from the same parent row of ``within``."""
    return bounded_max(frame, value, by=[parent_column(within)], ceiling=ceiling)


def cross_group_max(frame: pl.LazyFrame, value: str, keys: Sequence[str],
                    ceiling: Optional[Any] = None) -> pl.LazyFrame:
    """Bounded maximum among rows sharing the correlation ``keys``."""
    if not keys:
        raise ValueError("cross_group_max needs at least one key")
    return bounded_max(frame, value, by=list(keys), ceiling=ceiling)


class BoundedMaxStage(Stage):
    """
    Pipeline stage for the bounded maximal filter.

    Either ``within`` (an already expanded array path, grouping by its parent)
    or ``by`` (correlation key columns) selects the groups; with neither the
    whole frame is one group.
    """

    stage_type = StageType.SELECT_MAX

    def __init__(self, value: str, by: Sequence[str] = (),
                 within: Optional[str] = None, ceiling: Optional[Any] = None):
        if within is not None and by:
            raise ValueError("Use either 'within' or 'by', not both")
        self.value = value
        self.by = tuple(by)
        self.within = within
        self.ceiling = ceiling

    @property
    def group_columns(self) -> Sequence[str]:
        if self.within is not None:
            return [parent_column(self.within)]
        return list(self.by)

    def apply(self, frame: Optional[pl.LazyFrame], context: StageContext) -> pl.LazyFrame:
        return bounded_max(frame, self.value, by=self.group_columns, ceiling=self.ceiling)

    def required_fields(self) -> FrozenSet[str]:
        return frozenset([self.value, *(k for k in self.by if not is_bookkeeping(k))])

    def describe(self) -> Dict[str, Any]:
        return {
            'stage': self.name,
            'value': self.value,
            'by': self.group_columns,
            'ceiling': self.ceiling,
        }


__all__ = ['bounded_max', 'same_parent_max', 'cross_group_max', 'BoundedMaxStage']
