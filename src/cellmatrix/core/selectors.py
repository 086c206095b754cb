"""
Selector resolution for AnnotatedMatrix subsetting.

A selector addresses one axis (features or samples) and is resolved to an
ordered array of integer positions. Supported forms:

    - ALL (or None): every position, in original order
    - integer positions: any order, duplicates allowed
    - boolean mask: exactly one flag per position
    - names: resolved through the axis' name index

Positions are the source of truth; names are an alternate addressing scheme.

Examples:
    >>> names = pd.Index(["g1", "g2", "g3"])
    >>> resolve_selector([2, 0], 3, names, "feature")
    array([2, 0])
    >>> resolve_selector(np.array([True, False, True]), 3, names, "feature")
    array([0, 2])
    >>> resolve_selector(["g3"], 3, names, "feature")
    array([2])
"""

from __future__ import annotations

import numbers
from typing import Any, Optional

import numpy as np
import pandas as pd

from cellmatrix.core.errors import LengthMismatch, UnknownName

__all__ = ['ALL', 'resolve_selector', 'make_unique']


class _SelectAll:
    """Sentinel meaning 'leave this axis unchanged'."""

    _instance: Optional[_SelectAll] = None

    def __new__(cls) -> _SelectAll:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ALL"

    def __reduce__(self):
        return (_SelectAll, ())


ALL = _SelectAll()


def resolve_selector(
    selector: Any,
    n: int,
    names: Optional[pd.Index],
    axis: str,
) -> np.ndarray:
    """
    Resolve a selector to integer positions along an axis of length n.

    Args:
        selector: ALL/None, slice, integer positions, boolean mask, or names.
            A bare int or str is treated as a one-element selection.
        n: Axis length
        names: Name index for the axis, or None if no names are set
        axis: "feature" or "sample" (used in error messages)

    Returns:
        1-D int64 array of positions, in selection order

    Raises:
        LengthMismatch: Boolean mask length differs from n
        IndexError: Integer position outside [0, n)
        UnknownName: Name not found, or names requested but none are set
        TypeError: Selector of an unsupported type
    """
    if selector is None or selector is ALL:
        return np.arange(n, dtype=np.int64)

    if isinstance(selector, slice):
        return np.arange(n, dtype=np.int64)[selector]

    if isinstance(selector, str) or (
        isinstance(selector, numbers.Integral) and not isinstance(selector, (bool, np.bool_))
    ):
        selector = [selector]

    if isinstance(selector, (pd.Series, pd.Index)):
        selector = selector.to_numpy()

    values = np.asarray(selector)
    if values.ndim != 1:
        raise TypeError(f"{axis} selector must be one-dimensional, got shape {values.shape}")

    if values.size == 0:
        return np.empty(0, dtype=np.int64)

    if values.dtype == bool:
        if len(values) != n:
            raise LengthMismatch(
                f"boolean {axis} mask length ({len(values)}) must match n_{axis}s ({n})"
            )
        return np.flatnonzero(values).astype(np.int64)

    if np.issubdtype(values.dtype, np.integer):
        out_of_range = (values < 0) | (values >= n)
        if out_of_range.any():
            bad = values[out_of_range][:5].tolist()
            raise IndexError(f"{axis} positions out of range [0, {n}): {bad}")
        return values.astype(np.int64)

    if values.dtype.kind in ("U", "S", "O"):
        if values.dtype.kind == "O" and not all(isinstance(v, str) for v in values):
            raise TypeError(f"{axis} selector mixes names with non-string values")
        return _resolve_names(values, names, axis)

    raise TypeError(f"Unsupported {axis} selector dtype: {values.dtype}")


def _resolve_names(values: np.ndarray, names: Optional[pd.Index], axis: str) -> np.ndarray:
    if names is None:
        raise UnknownName(f"cannot select {axis}s by name: no {axis} names are set")

    positions = names.get_indexer(values)
    missing = positions < 0
    if missing.any():
        unknown = [str(v) for v in values[missing][:5]]
        suffix = " ..." if missing.sum() > 5 else ""
        raise UnknownName(f"unknown {axis} name(s): {unknown}{suffix}")
    return positions.astype(np.int64)


def make_unique(index: pd.Index) -> pd.Index:
    """
    Make an index unique by suffixing repeats with -1, -2, ...

    The first occurrence keeps its name. Suffixed names never collide with
    existing names.

    Examples:
        >>> make_unique(pd.Index(["a", "b", "a", "a"])).tolist()
        ['a', 'b', 'a-1', 'a-2']
    """
    if index.is_unique:
        return index

    taken = set(index)
    seen: set = set()
    counters: dict = {}
    result = []
    for value in index:
        if value not in seen:
            seen.add(value)
            result.append(value)
            continue
        k = counters.get(value, 0)
        while True:
            k += 1
            candidate = f"{value}-{k}"
            if candidate not in taken:
                break
        counters[value] = k
        taken.add(candidate)
        result.append(candidate)
    return pd.Index(result)
