"""
Staged Query: Document Schema Walker
====================================

Describes the nested-array shape of a record and exposes path-qualified
field access over a polars schema.

Row shape conventions:
- A root record is one frame row; nested arrays are ``List(Struct)`` columns
  and nested objects are ``Struct`` columns.
- Expansion flattens an array element into dotted columns, so a field keeps
  the same path before and after expansion
  (``contacts.questions.category_id``).
- Bookkeeping columns contain ``#`` and are never document fields.

A path is resolved against the longest matching column name; whatever
segments remain are navigated through struct fields (and, for arrays,
element-wise by the caller).
"""

from __future__ import annotations
from typing import Dict, Iterator, List, Mapping, Optional, Tuple, Union

import polars as pl

from .errors import SchemaPathError

BOOKKEEPING_MARK = '#'


def parent_column(path: str) -> str:
    """Name of the column holding the parent row position of an expansion."""
    return f"{path}{BOOKKEEPING_MARK}parent"


def index_column(path: str) -> str:
    """Name of the column holding the element position of an expansion."""
    return f"{path}{BOOKKEEPING_MARK}index"


def is_bookkeeping(name: str) -> bool:
    return BOOKKEEPING_MARK in name


def join_path(*parts: str) -> str:
    return '.'.join(p for p in parts if p)


def _struct_fields(dtype: pl.DataType) -> Dict[str, pl.DataType]:
    return {f.name: f.dtype for f in dtype.fields}


def is_list_dtype(dtype: Optional[pl.DataType]) -> bool:
    return isinstance(dtype, pl.List)


def is_struct_dtype(dtype: Optional[pl.DataType]) -> bool:
    return isinstance(dtype, pl.Struct)


class DocumentSchema:
    """
    Path-qualified view of a frame schema.

    The walker never touches data; it answers shape questions used by the
    classifier, the pruner and the expansion engine at plan and stage time.
    """

    def __init__(self, schema: Union[pl.Schema, Mapping[str, pl.DataType]]):
        self._schema: Dict[str, pl.DataType] = dict(schema)

    @classmethod
    def from_frame(cls, frame: Union[pl.DataFrame, pl.LazyFrame]) -> 'DocumentSchema':
        if isinstance(frame, pl.LazyFrame):
            return cls(frame.collect_schema())
        return cls(frame.schema)

    @property
    def columns(self) -> List[str]:
        return list(self._schema)

    def __contains__(self, path: str) -> bool:
        return self.resolve(path) is not None

    def __repr__(self) -> str:
        return f"DocumentSchema({len(self._schema)} columns)"

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, path: str) -> Optional[Tuple[str, List[str]]]:
        """Return ``(column, remaining_segments)`` for the longest column prefix."""
        segments = path.split('.')
        for cut in range(len(segments), 0, -1):
            name = '.'.join(segments[:cut])
            if name in self._schema:
                return name, segments[cut:]
        return None

    def column_dtype(self, column: str) -> pl.DataType:
        return self._schema[column]

    def walk(self, path: str) -> Iterator[Tuple[str, pl.DataType]]:
        """
        Yield ``(path_so_far, dtype)`` for every step of ``path``.

        Array steps yield the list dtype; navigation then continues into the
        element type. Stops early when a segment does not exist.
        """
        resolved = self.resolve(path)
        if resolved is None:
            return
        column, remaining = resolved
        current_path = column
        dtype = self._schema[column]
        yield current_path, dtype

        for segment in remaining:
            while is_list_dtype(dtype):
                dtype = dtype.inner
            if not is_struct_dtype(dtype):
                return
            fields = _struct_fields(dtype)
            if segment not in fields:
                return
            dtype = fields[segment]
            current_path = join_path(current_path, segment)
            yield current_path, dtype

    def dtype_of(self, path: str) -> Optional[pl.DataType]:
        """Dtype at ``path`` (``None`` if the path does not exist)."""
        steps = list(self.walk(path))
        if not steps or steps[-1][0] != path:
            return None
        return steps[-1][1]

    def is_array(self, path: str) -> bool:
        return is_list_dtype(self.dtype_of(path))

    def array_chain(self, path: str) -> List[str]:
        """Array-valued paths on the way to ``path`` (outermost first, inclusive)."""
        return [p for p, dtype in self.walk(path) if is_list_dtype(dtype)]

    def leaf_paths(self) -> List[str]:
        """Every scalar path reachable in the schema, in schema order."""
        leaves: List[str] = []

        def visit(prefix: str, dtype: pl.DataType):
            while is_list_dtype(dtype):
                dtype = dtype.inner
            if is_struct_dtype(dtype):
                for name, child in _struct_fields(dtype).items():
                    visit(join_path(prefix, name), child)
            else:
                leaves.append(prefix)

        for column, dtype in self._schema.items():
            if not is_bookkeeping(column):
                visit(column, dtype)
        return leaves

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def scalar_expr(self, path: str) -> pl.Expr:
        """
        Expression reading a path that crosses no unexpanded array.

        Missing paths read as null (null propagates, never throws).
        """
        resolved = self.resolve(path)
        if resolved is None:
            return pl.lit(None)
        column, remaining = resolved
        expr = pl.col(column)
        dtype = self._schema[column]
        for segment in remaining:
            if is_list_dtype(dtype):
                raise SchemaPathError(
                    f"Path '{path}' crosses the unexpanded array '{column}'", path=path
                )
            if not is_struct_dtype(dtype):
                return pl.lit(None)
            fields = _struct_fields(dtype)
            if segment not in fields:
                return pl.lit(None)
            expr = expr.struct.field(segment)
            dtype = fields[segment]
        return expr

    def first_value_expr(self, path: str) -> pl.Expr:
        """Expression reading ``path`` taking the first element at every array."""
        resolved = self.resolve(path)
        if resolved is None:
            return pl.lit(None)
        column, remaining = resolved
        expr = pl.col(column)
        dtype = self._schema[column]
        for segment in remaining:
            while is_list_dtype(dtype):
                expr = expr.list.first()
                dtype = dtype.inner
            if not is_struct_dtype(dtype):
                return pl.lit(None)
            fields = _struct_fields(dtype)
            if segment not in fields:
                return pl.lit(None)
            expr = expr.struct.field(segment)
            dtype = fields[segment]
        while is_list_dtype(dtype):
            expr = expr.list.first()
            dtype = dtype.inner
        return expr

    def check_expandable(self, path: str) -> pl.DataType:
        """
        Validate that ``path`` is the next array level and return its element dtype.

        Expansion handles exactly one array level: the path must name a
        column (outer levels already flattened) whose dtype is a list.
        """
        if path not in self._schema:
            chain = self.array_chain(path)
            pending = [p for p in chain if p != path]
            if pending:
                raise SchemaPathError(
                    f"Cannot expand '{path}' before its enclosing array '{pending[0]}'",
                    path=path,
                )
            raise SchemaPathError(f"No array at '{path}'", path=path)
        dtype = self._schema[path]
        if not is_list_dtype(dtype):
            raise SchemaPathError(f"'{path}' is not an array ({dtype})", path=path)
        return dtype.inner


__all__ = [
    'DocumentSchema',
    'parent_column',
    'index_column',
    'is_bookkeeping',
    'join_path',
    'is_list_dtype',
    'is_struct_dtype',
]
