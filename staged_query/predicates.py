"""
Staged Query: Predicate Expression Tree
=======================================

Boolean filters over path-qualified record fields, compiled to polars
expressions against the current row shape.

Semantics:
- A path that crosses an unexpanded array matches when ANY element matches.
- ``ElemMatch`` requires a single element to satisfy the whole sub-predicate.
  Once that element has been flattened into the row, the sub-predicate is
  evaluated against the row itself.
- Null propagates, never throws: a comparison on a null or missing value is
  false. ``== None`` and ``!= None`` test nullness explicitly.

Compilation returns either a polars expression or a Python bool when the
outcome is constant (missing fields, empty ``in`` lists); constants are folded
by the boolean combinators instead of being pushed into ``list.eval``.
"""

from __future__ import annotations
from dataclasses import dataclass
from functools import reduce
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

import polars as pl

from .schema import DocumentSchema, is_list_dtype, is_struct_dtype, join_path

Compiled = Union[pl.Expr, bool]

COMPARISON_OPS = ('eq', 'ne', 'lt', 'lte', 'gt', 'gte', 'in', 'nin')

_MONGO_NAMES = {
    'eq': '$eq', 'ne': '$ne', 'lt': '$lt', 'lte': '$lte',
    'gt': '$gt', 'gte': '$gte', 'in': '$in', 'nin': '$nin',
}


# ============================================================================
# Evaluation scopes
# ============================================================================

class _FrameScope:
    """Paths resolve against frame columns."""

    def __init__(self, schema: DocumentSchema):
        self.schema = schema

    def locate(self, path: str) -> Optional[Tuple[pl.Expr, pl.DataType, List[str]]]:
        resolved = self.schema.resolve(path)
        if resolved is None:
            return None
        column, remaining = resolved
        return pl.col(column), self.schema.column_dtype(column), remaining

    def has_flattened(self, path: str) -> bool:
        prefix = path + '.'
        return any(c.startswith(prefix) for c in self.schema.columns)


class _ElementScope:
    """Paths resolve relative to one array element (inside ``list.eval``)."""

    def __init__(self, expr: pl.Expr, dtype: pl.DataType):
        self.expr = expr
        self.dtype = dtype

    def locate(self, path: str) -> Optional[Tuple[pl.Expr, pl.DataType, List[str]]]:
        segments = path.split('.') if path else []
        return self.expr, self.dtype, segments

    def has_flattened(self, path: str) -> bool:
        return False


# ============================================================================
# Compilation helpers
# ============================================================================

def _as_expr(value: Compiled) -> pl.Expr:
    if isinstance(value, bool):
        return pl.lit(value)
    return value


def _any_element(list_expr: pl.Expr, inner: Compiled) -> Compiled:
    if inner is True:
        return (list_expr.list.len() > 0).fill_null(False)
    if inner is False:
        return False
    return list_expr.list.eval(inner).list.any().fill_null(False)


def _navigate(expr: pl.Expr, dtype: pl.DataType, segments: List[str],
              at_end: Callable[[pl.Expr, pl.DataType], Compiled],
              missing: Compiled) -> Compiled:
    """Walk struct fields, fanning out element-wise over arrays (any-semantics)."""
    if is_list_dtype(dtype):
        inner = _navigate(pl.element(), dtype.inner, segments, at_end, missing)
        return _any_element(expr, inner)
    if not segments:
        return at_end(expr, dtype)
    if not is_struct_dtype(dtype):
        return missing
    fields = {f.name: f.dtype for f in dtype.fields}
    head = segments[0]
    if head not in fields:
        return missing
    return _navigate(expr.struct.field(head), fields[head], segments[1:], at_end, missing)


def _and(parts: Iterable[Compiled]) -> Compiled:
    exprs = []
    for part in parts:
        if part is False:
            return False
        if part is True:
            continue
        exprs.append(part)
    if not exprs:
        return True
    return reduce(lambda a, b: a & b, exprs)


def _or(parts: Iterable[Compiled]) -> Compiled:
    exprs = []
    for part in parts:
        if part is True:
            return True
        if part is False:
            continue
        exprs.append(part)
    if not exprs:
        return False
    return reduce(lambda a, b: a | b, exprs)


def _not(part: Compiled) -> Compiled:
    if isinstance(part, bool):
        return not part
    return ~part


# ============================================================================
# Predicate nodes
# ============================================================================

class Predicate:
    """Base class for filter expressions."""

    def fields(self) -> FrozenSet[str]:
        raise NotImplementedError

    def conjuncts(self) -> Tuple['Predicate', ...]:
        return (self,)

    def rebase(self, prefix: str) -> 'Predicate':
        raise NotImplementedError

    def describe(self) -> Dict[str, Any]:
        raise NotImplementedError

    def _compile(self, scope) -> Compiled:
        raise NotImplementedError

    def __and__(self, other: 'Predicate') -> 'Predicate':
        return And(self.conjuncts() + other.conjuncts())

    def __or__(self, other: 'Predicate') -> 'Predicate':
        return Or((self, other))

    def __invert__(self) -> 'Predicate':
        return Nor((self,))


@dataclass(frozen=True)
class Compare(Predicate):
    path: str
    op: str
    value: Any = None

    def __post_init__(self):
        if self.op not in COMPARISON_OPS:
            raise ValueError(f"Unknown comparison operator '{self.op}'")
        if self.op in ('in', 'nin'):
            object.__setattr__(self, 'value', tuple(self.value))

    def fields(self) -> FrozenSet[str]:
        return frozenset([self.path])

    def rebase(self, prefix: str) -> 'Compare':
        return Compare(join_path(prefix, self.path), self.op, self.value)

    def describe(self) -> Dict[str, Any]:
        value = list(self.value) if self.op in ('in', 'nin') else self.value
        return {self.path: {_MONGO_NAMES[self.op]: value}}

    def _leaf(self, expr: pl.Expr, dtype: pl.DataType) -> Compiled:
        op, value = self.op, self.value
        if op in ('in', 'nin'):
            wanted = [v for v in value if v is not None]
            null_wanted = len(wanted) != len(value)
            member: Compiled = expr.is_in(wanted).fill_null(False) if wanted else False
            if null_wanted:
                member = _or([member, expr.is_null()])
            if op == 'in':
                return member
            return _and([_not(member), expr.is_not_null()])
        if value is None:
            if op == 'eq':
                return expr.is_null()
            if op == 'ne':
                return expr.is_not_null()
            return False
        if op == 'eq':
            cond = expr == value
        elif op == 'ne':
            cond = expr != value
        elif op == 'lt':
            cond = expr < value
        elif op == 'lte':
            cond = expr <= value
        elif op == 'gt':
            cond = expr > value
        else:
            cond = expr >= value
        return cond.fill_null(False)

    def _missing(self) -> bool:
        # A missing field behaves like null.
        if self.value is None:
            return self.op == 'eq'
        if self.op == 'in':
            return None in self.value
        return False

    def _compile(self, scope) -> Compiled:
        located = scope.locate(self.path)
        if located is None:
            return self._missing()
        expr, dtype, segments = located
        return _navigate(expr, dtype, segments, self._leaf, self._missing())


@dataclass(frozen=True)
class ElemMatch(Predicate):
    """At least one element of the array at ``path`` satisfies ``predicate``."""
    path: str
    predicate: Predicate

    def fields(self) -> FrozenSet[str]:
        return frozenset(join_path(self.path, f) for f in self.predicate.fields())

    def rebase(self, prefix: str) -> 'ElemMatch':
        return ElemMatch(join_path(prefix, self.path), self.predicate)

    def describe(self) -> Dict[str, Any]:
        return {self.path: {'$elemMatch': self.predicate.describe()}}

    def _on_element(self, expr: pl.Expr, dtype: pl.DataType) -> Compiled:
        return self.predicate._compile(_ElementScope(expr, dtype))

    def _compile(self, scope) -> Compiled:
        located = scope.locate(self.path)
        if located is None:
            if scope.has_flattened(self.path):
                return self.predicate.rebase(self.path)._compile(scope)
            return False
        expr, dtype, segments = located
        return _navigate(expr, dtype, segments, self._on_element, False)


@dataclass(frozen=True)
class And(Predicate):
    children: Tuple[Predicate, ...]

    def __post_init__(self):
        object.__setattr__(self, 'children', tuple(self.children))

    def fields(self) -> FrozenSet[str]:
        return frozenset().union(*(c.fields() for c in self.children))

    def conjuncts(self) -> Tuple[Predicate, ...]:
        out: Tuple[Predicate, ...] = ()
        for child in self.children:
            out += child.conjuncts()
        return out

    def rebase(self, prefix: str) -> 'And':
        return And(tuple(c.rebase(prefix) for c in self.children))

    def describe(self) -> Dict[str, Any]:
        return {'$and': [c.describe() for c in self.children]}

    def _compile(self, scope) -> Compiled:
        return _and(c._compile(scope) for c in self.children)


@dataclass(frozen=True)
class Or(Predicate):
    children: Tuple[Predicate, ...]

    def __post_init__(self):
        object.__setattr__(self, 'children', tuple(self.children))

    def fields(self) -> FrozenSet[str]:
        return frozenset().union(*(c.fields() for c in self.children))

    def rebase(self, prefix: str) -> 'Or':
        return Or(tuple(c.rebase(prefix) for c in self.children))

    def describe(self) -> Dict[str, Any]:
        return {'$or': [c.describe() for c in self.children]}

    def _compile(self, scope) -> Compiled:
        return _or(c._compile(scope) for c in self.children)


@dataclass(frozen=True)
class Nor(Predicate):
    children: Tuple[Predicate, ...]

    def __post_init__(self):
        object.__setattr__(self, 'children', tuple(self.children))

    def fields(self) -> FrozenSet[str]:
        return frozenset().union(*(c.fields() for c in self.children))

    def rebase(self, prefix: str) -> 'Nor':
        return Nor(tuple(c.rebase(prefix) for c in self.children))

    def describe(self) -> Dict[str, Any]:
        return {'$nor': [c.describe() for c in self.children]}

    def _compile(self, scope) -> Compiled:
        return _not(_or(c._compile(scope) for c in self.children))


def all_of(*predicates: Predicate) -> Predicate:
    """Flattened conjunction; a single predicate is returned as-is."""
    flat: Tuple[Predicate, ...] = ()
    for p in predicates:
        flat += p.conjuncts()
    if len(flat) == 1:
        return flat[0]
    return And(flat)


def any_of(*predicates: Predicate) -> Predicate:
    if len(predicates) == 1:
        return predicates[0]
    return Or(tuple(predicates))


def none_of(*predicates: Predicate) -> Predicate:
    return Nor(tuple(predicates))


# ============================================================================
# Builder
# ============================================================================

class FieldRef:
    """
    Path reference with comparison operators.

    Example:
        (field("contacts.questions.category_id").is_in([105, 147])
         & (field("initiativeId") == scope))
    """

    __slots__ = ('path',)

    def __init__(self, path: str):
        self.path = path

    def __eq__(self, value: Any) -> Compare:  # type: ignore[override]
        return Compare(self.path, 'eq', value)

    def __ne__(self, value: Any) -> Compare:  # type: ignore[override]
        return Compare(self.path, 'ne', value)

    def __lt__(self, value: Any) -> Compare:
        return Compare(self.path, 'lt', value)

    def __le__(self, value: Any) -> Compare:
        return Compare(self.path, 'lte', value)

    def __gt__(self, value: Any) -> Compare:
        return Compare(self.path, 'gt', value)

    def __ge__(self, value: Any) -> Compare:
        return Compare(self.path, 'gte', value)

    def __hash__(self) -> int:
        return hash(('FieldRef', self.path))

    def __repr__(self) -> str:
        return f"field({self.path!r})"

    def is_in(self, values: Iterable[Any]) -> Compare:
        return Compare(self.path, 'in', tuple(values))

    def not_in(self, values: Iterable[Any]) -> Compare:
        return Compare(self.path, 'nin', tuple(values))

    def elem_match(self, *predicates: Predicate) -> ElemMatch:
        return ElemMatch(self.path, all_of(*predicates))


def field(path: str) -> FieldRef:
    return FieldRef(path)


def element() -> FieldRef:
    """Reference to the array element itself (scalar arrays in ``elem_match``)."""
    return FieldRef('')


def compile_predicate(predicate: Predicate, schema: DocumentSchema) -> pl.Expr:
    """Compile a predicate into a boolean expression over the current row shape."""
    return _as_expr(predicate._compile(_FrameScope(schema)))


__all__ = [
    'Predicate',
    'Compare',
    'ElemMatch',
    'And',
    'Or',
    'Nor',
    'FieldRef',
    'field',
    'element',
    'all_of',
    'any_of',
    'none_of',
    'compile_predicate',
    'COMPARISON_OPS',
]
