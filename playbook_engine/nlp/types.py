from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence
import math
import re
import warnings

import numpy as np
import pandas as pd

from ..formula.aggregates import to_number
from ..utils.fp import is_missing
from .schema import type_family

# ---- Fallback config (used when validator cfg isn't passed) ----
class _DetectCfgFallback:
    sample_min: int = 10
    sample_fraction: float = 0.01
    excel_min_ratio: float = 90.0
    date_min_ratio: float = 85.0
    numeric_max_error_pct: float = 30.0
    bool_min_ratio: float = 90.0

_FALLBACK = _DetectCfgFallback()

def _cfg_from(validator_cfg: Any | None) -> _DetectCfgFallback:
    if validator_cfg is None:
        return _FALLBACK
    dc = _DetectCfgFallback()
    for k in ("sample_min", "excel_min_ratio", "date_min_ratio", "numeric_max_error_pct",
              "bool_min_ratio", "sample_fraction"):
        setattr(dc, k, type(getattr(_FALLBACK, k))(getattr(validator_cfg, k, getattr(_FALLBACK, k))))
    return dc

# ---- Constants ----
EXCEL_EPOCH = date(1899, 12, 30)
EXCEL_MIN_SERIAL = 1
EXCEL_MAX_SERIAL = 60000

INVALID_DATE_SENTINELS = ("1970-01-01", "0001-01-01", "1900-01-01")
_SENTINEL_DATES = {date(1970, 1, 1), date(1900, 1, 1)}

TRUE_TOKENS = frozenset({"true", "yes", "sim", "1", "t", "s", "y"})
FALSE_TOKENS = frozenset({"false", "no", "não", "nao", "0", "f", "n"})
_BOOL_TOKENS = TRUE_TOKENS | FALSE_TOKENS

_DATE_SHAPE = re.compile(r"\d{1,4}[-/.]\d{1,2}[-/.]\d{1,4}")
_STRICT_NUMBER = re.compile(r"^[+-]?\d+(\.\d+)?$")


@dataclass(frozen=True)
class TypeDetectionResult:
    inferred_type: str
    confidence: int
    parse_errors_pct: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


# ---- Local helpers ----
def _sample(values: Sequence[Any], dc: _DetectCfgFallback) -> List[Any]:
    n = max(int(dc.sample_min), int(math.floor(len(values) * dc.sample_fraction)))
    return list(values[:n])

def _excel_serial(v: Any) -> Optional[date]:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float, np.integer, np.floating)):
        f = float(v)
    elif isinstance(v, str) and _STRICT_NUMBER.match(v.strip()):
        f = float(v.strip())
    else:
        return None
    if not f.is_integer() or not (EXCEL_MIN_SERIAL <= f <= EXCEL_MAX_SERIAL):
        return None
    return EXCEL_EPOCH + timedelta(days=int(f))

def _parse_date(v: Any) -> Optional[date]:
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    if not isinstance(v, str):
        return None
    s = v.strip()
    if not _DATE_SHAPE.search(s):
        return None
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        ts = pd.to_datetime(s, errors="coerce", dayfirst=("/" in s and not s[:4].isdigit()))
    if ts is None or pd.isna(ts):
        return None
    return ts.date()

def _is_sentinel(v: Any, parsed: Optional[date]) -> bool:
    if isinstance(v, str) and v.strip().startswith(INVALID_DATE_SENTINELS):
        return True
    return parsed is not None and parsed in _SENTINEL_DATES


# ---- Cascade steps ----
def _try_excel(sample: List[Any], dc: _DetectCfgFallback) -> Optional[TypeDetectionResult]:
    ok = sum(1 for v in sample if _excel_serial(v) is not None)
    ratio = ok / len(sample) * 100.0
    if ratio < dc.excel_min_ratio:
        return None
    return TypeDetectionResult(
        "date", int(round(ratio)), round(100.0 - ratio, 2),
        {"is_excel_serial": True, "date_format": "excel_serial"},
    )

def _try_date(sample: List[Any], dc: _DetectCfgFallback) -> Optional[TypeDetectionResult]:
    ok = 0
    for v in sample:
        parsed = _parse_date(v)
        if _is_sentinel(v, parsed):
            return TypeDetectionResult(
                "text", 50, 100.0, {"invalid_date_sentinel": True},
            )
        if parsed is not None and 1900 < parsed.year < 2100:
            ok += 1
    ratio = ok / len(sample) * 100.0
    if ratio < dc.date_min_ratio:
        return None
    return TypeDetectionResult(
        "date", int(round(ratio)), round(100.0 - ratio, 2),
        {"is_excel_serial": False, "date_format": "standard"},
    )

def _try_numeric(sample: List[Any], dc: _DetectCfgFallback) -> Optional[TypeDetectionResult]:
    errors = 0
    comma = period = 0
    negatives = False
    for v in sample:
        if isinstance(v, str):
            comma += v.count(",")
            period += v.count(".")
        f = None if isinstance(v, bool) else to_number(v)
        if f is None or math.isinf(f):
            errors += 1
            continue
        negatives = negatives or f < 0
    err_pct = errors / len(sample) * 100.0
    if err_pct >= dc.numeric_max_error_pct:
        return None
    return TypeDetectionResult(
        "numeric", int(round(100.0 - err_pct)), round(err_pct, 2),
        {"decimal_separator": "comma" if comma > period else "period", "has_negatives": negatives},
    )

def _try_boolean(sample: List[Any], dc: _DetectCfgFallback) -> Optional[TypeDetectionResult]:
    ok = sum(1 for v in sample if isinstance(v, bool) or str(v).strip().lower() in _BOOL_TOKENS)
    ratio = ok / len(sample) * 100.0
    if ratio < dc.bool_min_ratio:
        return None
    return TypeDetectionResult("boolean", int(round(ratio)), round(100.0 - ratio, 2), {})


def detect_type(
    values: Sequence[Any],
    declared_type: Optional[str] = None,
    validator_cfg: Any | None = None,
) -> TypeDetectionResult:
    """
    Fixed-order cascade over a small head sample of the non-null values:
    Excel serial date -> standard date -> numeric -> boolean -> text.
    Ambiguity always ends in `text`; nothing here raises on bad data.
    """
    dc = _cfg_from(validator_cfg)
    present = [v for v in values if not is_missing(v)]
    if not present:
        # nothing to inspect: trust a recognizable declared type, weakly
        fam = type_family(declared_type)
        return TypeDetectionResult(fam or "text", 50, 0.0, {"declared_only": fam is not None})

    sample = _sample(present, dc)
    for step in (_try_excel, _try_date, _try_numeric, _try_boolean):
        res = step(sample, dc)
        if res is not None:
            return res
    return TypeDetectionResult("text", 80, 0.0, {})
