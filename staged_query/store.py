"""
Staged Query: Document Store Collaborator
=========================================

The pipeline relies on an external document store for three capabilities:
compound index declaration, stage execution, and disk spill of oversized
intermediates. ``DocumentStore`` is that contract; ``InMemoryDocumentStore``
implements it over polars frames (one row per root record, nested arrays as
``List(Struct)`` columns) and is what the reports and the test-suite run on.

The in-memory store does not build index structures. Declared indexes are a
capability the planner queries; index-driven scans are recorded in
``index_usage`` so plans can be verified.
"""

from __future__ import annotations
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any, AbstractSet, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence,
    Tuple, runtime_checkable
)
from uuid import uuid4

import polars as pl
import pyarrow.parquet as pq

from .errors import CollectionNotFound, StoreUnavailable
from .predicates import Predicate, compile_predicate
from .schema import DocumentSchema


# ============================================================================
# Index Capability
# ============================================================================

@dataclass(frozen=True)
class IndexDefinition:
    """Compound index declared on a collection (ascending keys)."""
    collection: str
    keys: Tuple[str, ...]

    def __post_init__(self):
        if not self.keys:
            raise ValueError("An index needs at least one key")
        object.__setattr__(self, 'keys', tuple(self.keys))

    @property
    def name(self) -> str:
        return '_'.join(f"{k}_1" for k in self.keys)

    @property
    def leading_key(self) -> str:
        return self.keys[0]

    def prefix_length(self, fields: AbstractSet[str]) -> int:
        length = 0
        for key in self.keys:
            if key not in fields:
                break
            length += 1
        return length


@dataclass
class IndexUsage:
    """One index-driven scan served by the store."""
    collection: str
    index: IndexDefinition
    timestamp: float = field(default_factory=time.time)


# ============================================================================
# Spill Manager
# ============================================================================

class SpillManager:
    """Compressed parquet spill files for intermediates that exceed the memory budget."""

    def __init__(self, spill_dir: Optional[Path] = None):
        self._requested_dir = Path(spill_dir) if spill_dir is not None else None
        self._spill_dir: Optional[Path] = None
        self._owns_dir = False
        self.active_spills: Dict[str, Dict[str, Any]] = {}
        self.spill_metrics = {
            'spill_count': 0,
            'total_spilled_bytes': 0,
            'spill_write_time_ms': 0.0,
            'spill_read_time_ms': 0.0,
        }

    @property
    def spill_dir(self) -> Path:
        if self._spill_dir is None:
            if self._requested_dir is not None:
                self._requested_dir.mkdir(parents=True, exist_ok=True)
                self._spill_dir = self._requested_dir
            else:
                self._spill_dir = Path(tempfile.mkdtemp(prefix='staged_query_spill_'))
                self._owns_dir = True
        return self._spill_dir

    def spill(self, frame: pl.DataFrame, key: Optional[str] = None) -> str:
        """Write ``frame`` to disk and return its spill key."""
        start_time = time.time()
        key = key or uuid4().hex
        spill_path = self.spill_dir / f"{key}.parquet"

        pq.write_table(
            frame.to_arrow(),
            spill_path,
            compression='zstd',
            compression_level=3,
            write_statistics=True,
        )

        size = spill_path.stat().st_size
        self.active_spills[key] = {
            'path': spill_path,
            'size': size,
            'rows': frame.height,
        }
        self.spill_metrics['spill_count'] += 1
        self.spill_metrics['total_spilled_bytes'] += size
        self.spill_metrics['spill_write_time_ms'] += (time.time() - start_time) * 1000
        return key

    def _info(self, key: str) -> Dict[str, Any]:
        if key not in self.active_spills:
            raise KeyError(f"No spilled data for key: {key}")
        return self.active_spills[key]

    def scan(self, key: str) -> pl.LazyFrame:
        """Lazy scan over a spill file; the next stage reads straight from disk."""
        return pl.scan_parquet(self._info(key)['path'])

    def load(self, key: str) -> pl.DataFrame:
        """Read spilled data with row-count validation."""
        start_time = time.time()
        info = self._info(key)
        table = pq.read_table(info['path'], memory_map=True)
        if table.num_rows != info['rows']:
            raise ValueError(f"Row count mismatch in spilled data {key}")
        self.spill_metrics['spill_read_time_ms'] += (time.time() - start_time) * 1000
        return pl.from_arrow(table)

    def release(self, key: str) -> None:
        info = self.active_spills.pop(key, None)
        if info is not None:
            Path(info['path']).unlink(missing_ok=True)

    def cleanup(self) -> None:
        for key in list(self.active_spills):
            self.release(key)
        if self._owns_dir and self._spill_dir is not None:
            shutil.rmtree(self._spill_dir, ignore_errors=True)
            self._spill_dir = None
            self._owns_dir = False


# ============================================================================
# Store Protocol
# ============================================================================

@runtime_checkable
class DocumentStore(Protocol):
    """Capabilities the pipeline needs from a document store."""

    def create_index(self, collection: str, keys: Sequence[str]) -> IndexDefinition:
        ...

    def usable_index(self, collection: str,
                     fields: AbstractSet[str]) -> Optional[IndexDefinition]:
        ...

    def scan(self, collection: str) -> pl.LazyFrame:
        ...

    def find(self, collection: str, predicate: Optional[Predicate] = None,
             index: Optional[IndexDefinition] = None) -> pl.LazyFrame:
        ...

    def execute(self, frame: pl.LazyFrame) -> pl.DataFrame:
        ...

    @property
    def spill_manager(self) -> SpillManager:
        ...


class InMemoryDocumentStore:
    """
    Polars-backed document store.

    Example:
        store = InMemoryDocumentStore()
        store.insert_many('opportunities', documents)
        store.create_index('opportunities', ['initiativeId', 'contacts.datePublished'])
    """

    def __init__(self, spill_directory: Optional[Path] = None):
        self._collections: Dict[str, pl.DataFrame] = {}
        self._indexes: Dict[str, List[IndexDefinition]] = {}
        self._spill_manager = SpillManager(spill_directory)
        self._closed = False
        self.index_usage: List[IndexUsage] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _ensure_open(self):
        if self._closed:
            raise StoreUnavailable("Document store is closed")

    def close(self) -> None:
        self._closed = True
        self._spill_manager.cleanup()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def spill_manager(self) -> SpillManager:
        return self._spill_manager

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def insert_many(self, collection: str, documents: Iterable[Mapping[str, Any]],
                    schema: Optional[Mapping[str, pl.DataType]] = None) -> int:
        """Append documents; nested arrays become list-of-struct columns."""
        self._ensure_open()
        docs = [dict(d) for d in documents]
        frame = pl.DataFrame(docs, schema=schema, infer_schema_length=None)
        existing = self._collections.get(collection)
        if existing is not None and existing.width > 0:
            frame = pl.concat([existing, frame], how='diagonal_relaxed')
        self._collections[collection] = frame
        return len(docs)

    def collection_names(self) -> List[str]:
        return list(self._collections)

    def count(self, collection: str) -> int:
        return self._frame(collection).height

    def drop(self, collection: str) -> None:
        self._collections.pop(collection, None)
        self._indexes.pop(collection, None)

    def _frame(self, collection: str) -> pl.DataFrame:
        self._ensure_open()
        if collection not in self._collections:
            raise CollectionNotFound(collection)
        return self._collections[collection]

    # ------------------------------------------------------------------
    # Indexes
    # ------------------------------------------------------------------

    def create_index(self, collection: str, keys: Sequence[str]) -> IndexDefinition:
        self._ensure_open()
        index = IndexDefinition(collection, tuple(keys))
        declared = self._indexes.setdefault(collection, [])
        if index not in declared:
            declared.append(index)
        return index

    def indexes(self, collection: str) -> List[IndexDefinition]:
        return list(self._indexes.get(collection, []))

    def usable_index(self, collection: str,
                     fields: AbstractSet[str]) -> Optional[IndexDefinition]:
        """Index with the longest key prefix covered by ``fields``, or ``None``."""
        self._ensure_open()
        best: Optional[IndexDefinition] = None
        best_length = 0
        for index in self._indexes.get(collection, []):
            length = index.prefix_length(fields)
            if length > best_length:
                best, best_length = index, length
        return best

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def scan(self, collection: str) -> pl.LazyFrame:
        return self._frame(collection).lazy()

    def find(self, collection: str, predicate: Optional[Predicate] = None,
             index: Optional[IndexDefinition] = None) -> pl.LazyFrame:
        """Scan ``collection`` filtered by a predicate tree, optionally via an index."""
        frame = self.scan(collection)
        if predicate is None:
            return frame
        if index is not None:
            if index not in self._indexes.get(collection, []):
                raise ValueError(f"Index {index.name} is not declared on '{collection}'")
            self.index_usage.append(IndexUsage(collection, index))
        expr = compile_predicate(predicate, DocumentSchema(self._frame(collection).schema))
        return frame.filter(expr)

    def execute(self, frame: pl.LazyFrame) -> pl.DataFrame:
        self._ensure_open()
        return frame.collect()


__all__ = [
    'IndexDefinition',
    'IndexUsage',
    'SpillManager',
    'DocumentStore',
    'InMemoryDocumentStore',
]
