from __future__ import annotations

from .aggregates import AGGREGATION_NAMES, aggregate, to_number
from .dsl import AggregateContext, Formula, compile_aggregate, compile_formula, substitute_identifiers
