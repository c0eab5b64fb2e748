"""
Staged Query: Pipeline Executor
===============================

Runs a ``QueryPlan`` as one logical cursor: stages execute sequentially and
each stage output is materialised through the store before the next stage
starts (polars may parallelise inside a stage).

Resource guards, in the order they are checked:
1. Timeout: between stages; the whole query is aborted, no partial results.
2. Fan-out ceiling: before an expansion, the projected rows per root record
   are compared with ``max_record_fanout``.
3. Memory budget: a materialised intermediate above ``memory_budget_bytes``
   is spilled to compressed parquet and the next stage scans it from disk.

Without ``allow_disk_use`` the last two raise ``ExpansionOverflow``.
Spill files are released when the query ends, successful or not.
"""

from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import polars as pl

from .config import PipelineConfig
from .errors import (
    ExpansionOverflow, QueryTimeout, StageExecutionError, StagedQueryError
)
from .expansion import ExpandStage, projected_fanout
from .planner import QueryPlan, StagedQuery, plan_query
from .profiling import QueryProfile, StageProfile, memory_monitor
from .stages import Stage, StageContext
from .store import SpillManager


@dataclass
class QueryResult:
    """Final rows of a query and how they were produced."""
    frame: pl.DataFrame
    profile: QueryProfile
    plan: Optional[QueryPlan] = None

    def rows(self) -> List[Dict[str, Any]]:
        return self.frame.to_dicts()

    @property
    def columns(self) -> List[str]:
        return self.frame.columns

    def __len__(self) -> int:
        return self.frame.height


class PipelineExecutor:
    """
    Executes query plans against a document store under a ``PipelineConfig``.

    Example:
        executor = PipelineExecutor(store, PipelineConfig(allow_disk_use=False))
        result = executor.run(plan_query(query, store))
        print(result.profile.report())
    """

    def __init__(self, store, config: Optional[PipelineConfig] = None):
        self.store = store
        self.config = config or PipelineConfig()
        self._spill_manager: Optional[SpillManager] = None

    @property
    def spill_manager(self) -> SpillManager:
        if self._spill_manager is None:
            if self.config.spill_directory is not None:
                self._spill_manager = SpillManager(self.config.spill_directory)
            else:
                self._spill_manager = self.store.spill_manager
        return self._spill_manager

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _check_timeout(self, profile: QueryProfile, stage: Optional[Stage]):
        limit = self.config.timeout_seconds
        if limit is None:
            return
        elapsed = profile.elapsed
        if elapsed > limit:
            where = f"before stage '{stage.name}'" if stage is not None else "after the last stage"
            raise QueryTimeout(
                f"Query exceeded {limit:.3f}s ({elapsed:.3f}s elapsed, {where})",
                elapsed=elapsed, limit=limit,
            )

    def _check_fanout(self, frame: pl.LazyFrame, stage: ExpandStage,
                      record_column: Optional[str]):
        limit = self.config.max_record_fanout
        observed = projected_fanout(frame, stage.path, record_column, outer=stage.outer)
        if observed > limit and not self.config.allow_disk_use:
            raise ExpansionOverflow(
                f"Expanding '{stage.path}' yields {observed:,} rows for one record "
                f"(limit {limit:,}) and disk use is not allowed",
                path=stage.path, observed=observed, limit=limit,
            )

    def _check_memory(self, size: int, stage: Stage) -> bool:
        """Return True when a stage output of ``size`` bytes must be spilled."""
        budget = self.config.memory_budget_bytes
        if size <= budget:
            return False
        if not self.config.allow_disk_use:
            raise ExpansionOverflow(
                f"Stage '{stage.name}' produced {size:,} bytes (budget {budget:,}) "
                f"and disk use is not allowed",
                path=getattr(stage, 'path', None), observed=size, limit=budget,
            )
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _materialise(self, stage: Stage, frame: Optional[pl.LazyFrame],
                     context: StageContext) -> pl.DataFrame:
        try:
            return self.store.execute(stage.apply(frame, context))
        except StagedQueryError:
            raise
        except pl.exceptions.PolarsError as e:
            raise StageExecutionError(
                f"Stage '{stage.name}' failed: {e}", stage=stage.describe()
            ) from e

    def run(self, plan: QueryPlan) -> QueryResult:
        config = self.config
        profile = QueryProfile(label=plan.collection)
        context = StageContext(self.store, config, plan.collection)
        spill_keys: List[str] = []

        # After a spill only the lazy scan and the row count stay alive.
        frame: Optional[pl.LazyFrame] = None
        current: Optional[pl.DataFrame] = None
        rows: Optional[int] = None
        record_column: Optional[str] = None

        profile.start()
        try:
            for stage in plan.stages:
                self._check_timeout(profile, stage)
                if isinstance(stage, ExpandStage) and frame is not None:
                    self._check_fanout(frame, stage, record_column)

                rows_in = rows
                stage_start = time.perf_counter()
                if config.profiling_enabled:
                    with memory_monitor() as memory_delta:
                        current = self._materialise(stage, frame, context)
                        delta = memory_delta()
                else:
                    current = self._materialise(stage, frame, context)
                    delta = 0.0
                seconds = time.perf_counter() - stage_start

                rows = current.height
                size = current.estimated_size()
                spilled = self._check_memory(size, stage)
                if spilled:
                    key = self.spill_manager.spill(current)
                    spill_keys.append(key)
                    current = None
                    frame = self.spill_manager.scan(key)
                else:
                    frame = current.lazy()

                if isinstance(stage, ExpandStage) and record_column is None:
                    record_column = stage.parent_column

                profile.record(StageProfile(
                    name=stage.name,
                    seconds=seconds,
                    rows_in=rows_in,
                    rows_out=rows,
                    memory_delta_mb=delta,
                    estimated_bytes=size,
                    spilled=spilled,
                ))

            self._check_timeout(profile, None)
            if current is None:
                current = self.store.execute(frame) if frame is not None else pl.DataFrame()
        finally:
            for key in spill_keys:
                self.spill_manager.release(key)
            profile.end()

        if config.verbose:
            print(profile.report())

        return QueryResult(current, profile, plan)


def run_query(query: StagedQuery, store, config: Optional[PipelineConfig] = None,
              prune: bool = True) -> QueryResult:
    """Plan and execute ``query`` in one call."""
    plan = plan_query(query, store, prune=prune)
    return PipelineExecutor(store, config).run(plan)


__all__ = ['PipelineExecutor', 'QueryResult', 'run_query']
