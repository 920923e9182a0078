from __future__ import annotations
from typing import Any, Callable, Dict, Iterable, List
import math

import numpy as np

from ..utils.log import get_child

log = get_child("aggregates")


def to_number(x: Any) -> float | None:
    """Numeric view of a cell: numbers pass, numeric strings (comma or period
    decimal) are parsed, everything else is None."""
    if x is None:
        return None
    if isinstance(x, bool):
        return float(x)
    if isinstance(x, (int, float, np.integer, np.floating)):
        f = float(x)
        return None if math.isnan(f) else f
    if isinstance(x, str):
        s = x.strip()
        if not s:
            return None
        if "," in s and "." in s:
            # 1.234,56 -> 1234.56 ; 1,234.56 -> 1234.56
            if s.rfind(",") > s.rfind("."):
                s = s.replace(".", "").replace(",", ".")
            else:
                s = s.replace(",", "")
        else:
            s = s.replace(",", ".", 1)
        try:
            f = float(s)
        except ValueError:
            return None
        return None if math.isnan(f) else f
    return None


def _numeric(values: Iterable[Any]) -> List[float]:
    out: List[float] = []
    for v in values:
        f = to_number(v)
        if f is not None:
            out.append(f)
    return out


def _median(xs: List[float]) -> float:
    if not xs:
        return 0.0
    if len(xs) == 1:
        return xs[0]
    return float(np.median(np.asarray(xs, dtype=float)))


_AGGREGATIONS: Dict[str, Callable[[List[float]], float]] = {
    "AVG": lambda xs: float(np.mean(xs)) if xs else 0.0,
    "SUM": lambda xs: float(np.sum(xs)) if xs else 0.0,
    "MIN": lambda xs: float(np.min(xs)) if xs else 0.0,
    "MAX": lambda xs: float(np.max(xs)) if xs else 0.0,
    "MEDIAN": _median,
}

AGGREGATION_NAMES = frozenset(_AGGREGATIONS) | {"COUNT"}


def aggregate(func: str, values: Iterable[Any]) -> float:
    """Apply AVG/SUM/COUNT/MIN/MAX/MEDIAN; empty input and unknown functions give 0."""
    name = (func or "").upper()
    vals = list(values)
    if name == "COUNT":
        return float(sum(1 for v in vals if v is not None))
    fn = _AGGREGATIONS.get(name)
    if fn is None:
        log.warning("unknown aggregation function", extra={"function": func})
        return 0.0
    return fn(_numeric(vals))
