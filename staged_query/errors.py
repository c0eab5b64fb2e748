"""
Staged Query: Exceptions and Warning Categories
===============================================

Hard failures derive from ``StagedQueryError``. Soft conditions that only
degrade performance (or that are resolved by a fixed rule) are emitted
through ``warnings.warn`` with the categories defined here, so callers can
filter or escalate them.
"""

from __future__ import annotations
from typing import Any, Optional


# ==============================================================================
# ERRORS
# ==============================================================================

class StagedQueryError(Exception):
    """Base class for all pipeline errors."""


class SchemaPathError(StagedQueryError, ValueError):
    """A path cannot be addressed in the current row shape."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class CollectionNotFound(StagedQueryError, KeyError):
    """The store holds no collection of that name."""


class StoreUnavailable(StagedQueryError):
    """The document store cannot serve the request (closed, failing)."""


class ExpansionOverflow(StagedQueryError):
    """Fan-out or working set exceeds the configured ceiling without spill mode."""

    def __init__(self, message: str, path: Optional[str] = None,
                 observed: Optional[int] = None, limit: Optional[int] = None):
        super().__init__(message)
        self.path = path
        self.observed = observed
        self.limit = limit


class QueryTimeout(StagedQueryError):
    """Caller-imposed deadline passed; the whole query is aborted."""

    def __init__(self, message: str, elapsed: float, limit: float):
        super().__init__(message)
        self.elapsed = elapsed
        self.limit = limit


class StageExecutionError(StagedQueryError):
    """Stage execution error with context."""

    def __init__(self, message: str, stage: Optional[Any] = None):
        super().__init__(message)
        self.stage = stage


# ==============================================================================
# WARNINGS
# ==============================================================================

class PushdownUnavailable(UserWarning):
    """A predicate or projection could not run ahead of expansion / on an index."""


class UnsatisfiablePushdown(PushdownUnavailable):
    """No conjunct of the root predicate is index-eligible."""


class LookupAmbiguous(UserWarning):
    """A lookup key matched several secondary documents; the first one wins."""


__all__ = [
    'StagedQueryError',
    'SchemaPathError',
    'CollectionNotFound',
    'StoreUnavailable',
    'ExpansionOverflow',
    'QueryTimeout',
    'StageExecutionError',
    'PushdownUnavailable',
    'UnsatisfiablePushdown',
    'LookupAmbiguous',
]
