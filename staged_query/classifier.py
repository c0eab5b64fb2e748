"""
Staged Query: Predicate Classifier
==================================

Splits a filter into an index-eligible part and a residual part such that
``eligible AND residual`` is equivalent to the input.

Eligibility of a top-level conjunct:
1. Every field it references belongs to the covered leading prefix of the
   compound index (the longest run of index keys, from the first one, that
   some candidate conjunct constrains).
2. No array on any of its field paths has been expanded yet; expansion
   destroys the positional correlation an index relies on.
3. Disjunctions are eligible only as a whole; negations never are.

When nothing is eligible the pipeline still runs correctly, so the classifier
only emits an ``UnsatisfiablePushdown`` warning.
"""

from __future__ import annotations
import warnings
from dataclasses import dataclass, field
from typing import AbstractSet, FrozenSet, List, Optional, Sequence, Tuple

from .errors import UnsatisfiablePushdown
from .predicates import Nor, Or, Predicate, all_of
from .schema import DocumentSchema
from .store import IndexDefinition


@dataclass(frozen=True)
class Classification:
    """Result of splitting a predicate against an index."""
    eligible: Optional[Predicate]
    residual: Optional[Predicate]
    index: Optional[IndexDefinition] = None
    covered_keys: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def uses_index(self) -> bool:
        return self.eligible is not None and self.index is not None


def _is_negation(predicate: Predicate) -> bool:
    if isinstance(predicate, Nor):
        return True
    if isinstance(predicate, Or):
        return any(_is_negation(c) for c in predicate.children)
    return False


def _locality_intact(paths: AbstractSet[str],
                     schema: Optional[DocumentSchema],
                     expanded: AbstractSet[str]) -> bool:
    if not expanded:
        return True
    for path in paths:
        if any(path == e or path.startswith(e + '.') for e in expanded):
            return False
        if schema is not None and any(a in expanded for a in schema.array_chain(path)):
            return False
    return True


def covered_prefix(index: IndexDefinition, constrained: AbstractSet[str]) -> Tuple[str, ...]:
    """Longest leading run of index keys present in ``constrained``."""
    prefix: List[str] = []
    for key in index.keys:
        if key not in constrained:
            break
        prefix.append(key)
    return tuple(prefix)


def classify(predicate: Optional[Predicate],
             index: Optional[IndexDefinition],
             schema: Optional[DocumentSchema] = None,
             expanded: Sequence[str] = (),
             warn: bool = True) -> Classification:
    """
    Split ``predicate`` into ``(eligible, residual)`` for ``index``.

    Args:
        predicate: Filter to classify (``None`` means no filter)
        index: Usable compound index, or ``None`` when the store offers none
        schema: Row shape, used to find the arrays enclosing each field
        expanded: Array paths already expanded at this point of the pipeline
        warn: Emit ``UnsatisfiablePushdown`` when nothing is eligible
    """
    if predicate is None:
        return Classification(eligible=None, residual=None, index=index)

    conjuncts = predicate.conjuncts()
    expanded_set = frozenset(expanded)

    candidates: List[Predicate] = []
    if index is not None:
        keys = frozenset(index.keys)
        for conjunct in conjuncts:
            paths = conjunct.fields()
            if not paths or _is_negation(conjunct):
                continue
            if not paths <= keys:
                continue
            if not _locality_intact(paths, schema, expanded_set):
                continue
            candidates.append(conjunct)

    prefix: Tuple[str, ...] = ()
    if index is not None and candidates:
        constrained: FrozenSet[str] = frozenset().union(*(c.fields() for c in candidates))
        prefix = covered_prefix(index, constrained)

    prefix_set = frozenset(prefix)
    eligible = [c for c in candidates if prefix_set and c.fields() <= prefix_set]
    residual = [c for c in conjuncts if not any(c is e for e in eligible)]

    if not eligible and warn:
        reason = "no usable index" if index is None else f"no conjunct covers a prefix of {index.name}"
        if expanded_set and index is not None:
            reason = "arrays already expanded"
        warnings.warn(
            f"Predicate pushdown unavailable ({reason}); filter runs after the scan",
            UnsatisfiablePushdown,
            stacklevel=2,
        )

    return Classification(
        eligible=all_of(*eligible) if eligible else None,
        residual=all_of(*residual) if residual else None,
        index=index if eligible else None,
        covered_keys=prefix if eligible else (),
    )


__all__ = ['Classification', 'classify', 'covered_prefix']
