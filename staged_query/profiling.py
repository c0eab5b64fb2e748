"""
Staged Query: Timing Instrumentation
====================================

Per-query and per-stage execution statistics: wall time, rows in and out,
resident memory delta (psutil) and whether the stage output was spilled.
"""

from __future__ import annotations
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

import psutil


# ============================================================================
# MEMORY MONITORING
# ============================================================================

@contextmanager
def memory_monitor() -> Iterator[Callable[[], float]]:
    """Yield a callable returning the RSS growth in MB since entering the block."""
    process = psutil.Process()
    initial_memory = process.memory_info().rss / 1024 / 1024
    yield lambda: (process.memory_info().rss / 1024 / 1024) - initial_memory


# ============================================================================
# PROFILES
# ============================================================================

@dataclass
class StageProfile:
    """Statistics of one executed stage."""
    name: str
    seconds: float
    rows_in: Optional[int]
    rows_out: int
    memory_delta_mb: float = 0.0
    estimated_bytes: int = 0
    spilled: bool = False

    @property
    def selectivity(self) -> Optional[float]:
        """Output rows per input row (above 1 for expansions)."""
        if not self.rows_in:
            return None
        return self.rows_out / self.rows_in


@dataclass
class QueryProfile:
    """Wall-clock bounds of a query plus its stage statistics."""
    label: str = 'query'
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    stages: List[StageProfile] = field(default_factory=list)
    _perf_start: float = field(default=0.0, repr=False)
    _perf_end: float = field(default=0.0, repr=False)

    def start(self):
        self.started_at = time.time()
        self._perf_start = time.perf_counter()

    def end(self):
        self.finished_at = time.time()
        self._perf_end = time.perf_counter()

    @property
    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self._perf_end if self.finished_at is not None else time.perf_counter()
        return end - self._perf_start

    def record(self, stage: StageProfile):
        self.stages.append(stage)

    @property
    def spill_count(self) -> int:
        return sum(1 for s in self.stages if s.spilled)

    @property
    def peak_rows(self) -> int:
        return max((s.rows_out for s in self.stages), default=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'label': self.label,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'elapsed_seconds': self.elapsed,
            'stages': [
                {
                    'name': s.name,
                    'seconds': s.seconds,
                    'rows_in': s.rows_in,
                    'rows_out': s.rows_out,
                    'memory_delta_mb': s.memory_delta_mb,
                    'spilled': s.spilled,
                }
                for s in self.stages
            ],
        }

    def report(self) -> str:
        """Human-readable summary."""
        lines = [
            f"{self.label}: {self.elapsed * 1000:.1f}ms, {len(self.stages)} stages, "
            f"peak {self.peak_rows:,} rows, {self.spill_count} spill(s)"
        ]
        for i, s in enumerate(self.stages):
            rows_in = '-' if s.rows_in is None else f"{s.rows_in:,}"
            lines.append(
                f"  {i:2d}. {s.name:<12} {s.seconds * 1000:8.2f}ms "
                f"{rows_in:>10} -> {s.rows_out:<10,} {s.memory_delta_mb:+.1f}MB"
                + (" [spilled]" if s.spilled else "")
            )
        return '\n'.join(lines)


__all__ = ['StageProfile', 'QueryProfile', 'memory_monitor']
