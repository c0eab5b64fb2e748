"""
Staged Query: Execution Configuration
=====================================

Immutable execution context for one pipeline run. Defaults can be
overridden from the environment (``STAGED_QUERY_*``) or per call through
``with_overrides``.
"""

from __future__ import annotations
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

_ENV_PREFIX = 'STAGED_QUERY_'
_MB = 1024 * 1024


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class PipelineConfig:
    """Resource limits and switches for a pipeline run."""
    memory_budget_bytes: int = 512 * _MB
    max_record_fanout: int = 100_000
    allow_disk_use: bool = True
    spill_directory: Optional[Path] = None
    timeout_seconds: Optional[float] = None
    profiling_enabled: bool = True
    verbose: bool = False

    def __post_init__(self):
        if self.memory_budget_bytes <= 0:
            raise ValueError("memory_budget_bytes must be positive")
        if self.max_record_fanout <= 0:
            raise ValueError("max_record_fanout must be positive")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive when set")

    def with_overrides(self, **changes: Any) -> 'PipelineConfig':
        """Create new config with some fields replaced."""
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'PipelineConfig':
        """
        Build a config from environment variables.

        Recognised variables (all optional):
            STAGED_QUERY_MEMORY_BUDGET_MB
            STAGED_QUERY_MAX_RECORD_FANOUT
            STAGED_QUERY_ALLOW_DISK_USE
            STAGED_QUERY_SPILL_DIR
            STAGED_QUERY_TIMEOUT_SECONDS
            STAGED_QUERY_PROFILING
            STAGED_QUERY_VERBOSE
        """
        env = os.environ if environ is None else environ
        parsers: Dict[str, Tuple[str, Callable[[str], Any]]] = {
            'MEMORY_BUDGET_MB': ('memory_budget_bytes', lambda v: int(float(v) * _MB)),
            'MAX_RECORD_FANOUT': ('max_record_fanout', int),
            'ALLOW_DISK_USE': ('allow_disk_use', _env_bool),
            'SPILL_DIR': ('spill_directory', Path),
            'TIMEOUT_SECONDS': ('timeout_seconds', float),
            'PROFILING': ('profiling_enabled', _env_bool),
            'VERBOSE': ('verbose', _env_bool),
        }

        values: Dict[str, Any] = {}
        for suffix, (attr, parse) in parsers.items():
            raw = env.get(_ENV_PREFIX + suffix)
            if raw is None or raw == '':
                continue
            try:
                values[attr] = parse(raw)
            except ValueError as e:
                raise ValueError(f"Invalid {_ENV_PREFIX}{suffix}={raw!r}: {e}") from e

        return cls(**values)


__all__ = ['PipelineConfig']
