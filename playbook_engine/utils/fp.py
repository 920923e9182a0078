from __future__ import annotations
from typing import Any, Callable, Dict, Hashable, Iterable, List, TypeVar

from toolz import groupby as _groupby, pipe as _pipe
from more_itertools import take as _take, unique_everseen as _unique_everseen

A = TypeVar("A")
K = TypeVar("K", bound=Hashable)


def pipe(x: A, *fns: Callable[[Any], Any]) -> Any:
    return _pipe(x, *fns) if fns else x


def unique_stable(seq: Iterable[A], key: Callable[[A], Any] | None = None) -> List[A]:
    # first-seen order, optional key (e.g. str.lower for case-insensitive dedup)
    return list(_unique_everseen(seq, key=key))


def take(n: int, seq: Iterable[A]) -> List[A]:
    if n < 0:
        raise ValueError("n must be >= 0")
    return list(_take(n, seq))


def group_by(key: Callable[[A], K], seq: Iterable[A]) -> Dict[K, List[A]]:
    # insertion order of first occurrence is preserved
    return _groupby(key, seq)


def is_missing(x: Any) -> bool:
    """None, empty string, or float NaN (as produced by pandas-loaded rows)."""
    if x is None:
        return True
    if isinstance(x, str):
        return x.strip() == ""
    if isinstance(x, float):
        return x != x
    return False
