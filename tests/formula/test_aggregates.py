import math

import pytest

from playbook_engine.formula.aggregates import AGGREGATION_NAMES, aggregate, to_number

@pytest.mark.parametrize("raw,expected", [
    (3, 3.0),
    (2.5, 2.5),
    ("10,5", 10.5),
    ("1.234,56", 1234.56),
    ("1,234.56", 1234.56),
    (" 7 ", 7.0),
    (True, 1.0),
    ("abc", None),
    ("", None),
    (None, None),
    (float("nan"), None),
])
def test_to_number(raw, expected):
    assert to_number(raw) == expected

def test_empty_inputs_give_zero():
    for fn in ("AVG", "SUM", "MIN", "MAX", "MEDIAN", "COUNT"):
        assert aggregate(fn, []) == 0.0

def test_median_edges():
    assert aggregate("MEDIAN", [7]) == 7
    assert aggregate("MEDIAN", [1, 3, 2]) == 2.0
    assert aggregate("MEDIAN", [1, 2, 3, 4]) == 2.5

def test_nulls_are_skipped():
    vals = [1, None, 3, "x", "2"]
    assert aggregate("SUM", vals) == 6.0
    assert aggregate("AVG", vals) == 2.0
    assert aggregate("MIN", vals) == 1.0
    assert aggregate("MAX", vals) == 3.0
    # COUNT counts non-null values, numeric or not
    assert aggregate("COUNT", vals) == 4.0

def test_case_insensitive_and_unknown():
    assert aggregate("sum", [1, 2]) == 3.0
    assert aggregate("STDDEV", [1, 2]) == 0.0
    assert "COUNT" in AGGREGATION_NAMES and "MEDIAN" in AGGREGATION_NAMES

def test_results_are_floats():
    out = aggregate("SUM", [1, 2])
    assert isinstance(out, float) and not math.isnan(out)
