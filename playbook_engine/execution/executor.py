from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Optional, Sequence
import time

from ..errors import FormulaError
from ..formula.aggregates import aggregate
from ..formula.dsl import AggregateContext
from ..playbooks.model import GroupedQuery, Playbook, SimpleQuery
from ..utils.fp import is_missing, take
from ..utils.log import get_child

log = get_child("executor")

RAW_DATA_LIMIT = 20
MISSING_DIMENSION = "N/A"


@dataclass
class GroupAggregation:
    dimension: str
    dimension_value: str
    metrics: Dict[str, float]
    n: int = 0


@dataclass
class SectionResult:
    section_name: str
    metrics: Dict[str, float] = field(default_factory=dict)
    aggregations: List[GroupAggregation] = field(default_factory=list)
    raw_data: List[Dict[str, Any]] = field(default_factory=list)
    # result key (alias or grouped metric) -> names its query read
    sources: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class PlaybookExecutionResult:
    sections: Dict[str, SectionResult] = field(default_factory=dict)
    # metric name -> one value per row (None where evaluation failed)
    computed_metrics: Dict[str, List[Any]] = field(default_factory=dict)
    execution_metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self, include_metric_arrays: bool = False) -> Dict[str, Any]:
        out = {
            "sections": {k: asdict(v) for k, v in self.sections.items()},
            "execution_metadata": dict(self.execution_metadata),
        }
        if include_metric_arrays:
            out["computed_metrics"] = {k: list(v) for k, v in self.computed_metrics.items()}
        else:
            out["computed_metrics"] = {k: len(v) for k, v in self.computed_metrics.items()}
        return out


class _RowScope:
    """Row lookup: computed metric, then playbook alias, then raw column."""

    __slots__ = ("row", "mapping", "metrics")

    def __init__(self, row: Mapping[str, Any], mapping: Mapping[str, str], metrics: Mapping[str, Any]) -> None:
        self.row = row
        self.mapping = mapping
        self.metrics = metrics

    def get(self, name: str, default: Any = None) -> Any:
        if name in self.metrics:
            return self.metrics[name]
        if name in self.mapping:
            return self.row.get(self.mapping[name], default)
        return self.row.get(name, default)


def compute_metrics(
    playbook: Playbook,
    rows: Sequence[Mapping[str, Any]],
    column_mapping: Mapping[str, str] | None = None,
) -> Dict[str, List[Any]]:
    """One value array per metric, evaluated in dependency order."""
    mapping = dict(column_mapping or {})
    computed: Dict[str, List[Any]] = {}
    order = playbook.metric_order
    log.debug("metric order", extra={"playbook_id": playbook.id, "order": order})

    for name in order:
        formula = playbook.metrics_map[name].compiled
        values: List[Any] = []
        first_error: Optional[str] = None
        failures = 0
        for idx, row in enumerate(rows):
            scope = _RowScope(row, mapping, {m: computed[m][idx] for m in computed})
            try:
                values.append(formula.evaluate(scope))
            except (FormulaError, TypeError, ArithmeticError) as e:
                values.append(None)
                failures += 1
                if first_error is None:
                    first_error = str(e)
        if failures:
            log.warning("metric evaluation errors", extra={
                "playbook_id": playbook.id, "metric": name,
                "failed_rows": failures, "first_error": first_error,
            })
        computed[name] = values
    return computed


def _column_values(
    name: str,
    rows: Sequence[Mapping[str, Any]],
    computed: Mapping[str, List[Any]],
    mapping: Mapping[str, str],
) -> List[Any]:
    if name in computed:
        return list(computed[name])
    actual = mapping.get(name, name)
    return [None if is_missing(r.get(actual)) else r.get(actual) for r in rows]


def run_simple_query(
    query: SimpleQuery,
    rows: Sequence[Mapping[str, Any]],
    computed: Mapping[str, List[Any]],
    mapping: Mapping[str, str],
) -> Dict[str, float]:
    arrays = {n: _column_values(n, rows, computed, mapping) for n in query.referenced}
    ctx = AggregateContext(arrays, len(rows))
    try:
        value = query.compiled.evaluate(ctx)
    except (FormulaError, TypeError, ArithmeticError) as e:
        log.warning("section query failed", extra={"query": query.raw, "error": str(e)})
        value = None
    return {query.alias: 0.0 if value is None else float(value)}


def run_grouped_query(
    query: GroupedQuery,
    rows: Sequence[Mapping[str, Any]],
    computed: Mapping[str, List[Any]],
    mapping: Mapping[str, str],
) -> List[GroupAggregation]:
    dims = _column_values(query.dimension, rows, computed, mapping)
    vals = _column_values(query.metric, rows, computed, mapping)

    groups: Dict[str, List[Any]] = {}
    for d, v in zip(dims, vals):
        key = MISSING_DIMENSION if is_missing(d) else str(d)
        groups.setdefault(key, []).append(v)

    out = [
        GroupAggregation(query.dimension, key, {query.metric: aggregate(query.func, members)}, len(members))
        for key, members in groups.items()
    ]
    out.sort(key=lambda g: g.metrics[query.metric], reverse=True)
    return out


def _raw_rows(rows: Sequence[Mapping[str, Any]], names: Sequence[str],
              computed: Mapping[str, List[Any]], mapping: Mapping[str, str]) -> List[Dict[str, Any]]:
    head = take(RAW_DATA_LIMIT, enumerate(rows))
    return [{n: _RowScope(r, mapping, {m: computed[m][i] for m in computed}).get(n) for n in names}
            for i, r in head]


def execute_section(
    playbook: Playbook,
    section: str,
    rows: Sequence[Mapping[str, Any]],
    computed: Mapping[str, List[Any]],
    mapping: Mapping[str, str],
) -> SectionResult:
    result = SectionResult(section_name=section)
    for query in playbook.sections.get(section, []):
        if isinstance(query, GroupedQuery):
            result.aggregations.extend(run_grouped_query(query, rows, computed, mapping))
            result.sources[query.metric] = query.referenced
        else:
            result.metrics.update(run_simple_query(query, rows, computed, mapping))
            result.sources[query.alias] = query.referenced
    result.raw_data = _raw_rows(rows, playbook.section_tokens(section), computed, mapping)
    return result


def execute_playbook(
    playbook: Playbook,
    schema: Sequence[Any],
    rows: Sequence[Mapping[str, Any]],
    active_sections: Sequence[str],
    column_mapping: Mapping[str, str] | None = None,
) -> PlaybookExecutionResult:
    """
    Compute all metrics then run the queries of each active section.

    `column_mapping` maps playbook column aliases to dataset columns, as
    produced by the planner. Sections without queries are skipped.
    """
    started = time.perf_counter()
    mapping = dict(column_mapping or {})
    computed = compute_metrics(playbook, rows, mapping)

    sections: Dict[str, SectionResult] = {}
    for name in active_sections:
        if not playbook.sections.get(name):
            log.info("section has no queries", extra={"section": name})
            continue
        sections[name] = execute_section(playbook, name, rows, computed, mapping)

    elapsed = (time.perf_counter() - started) * 1000.0
    result = PlaybookExecutionResult(
        sections=sections,
        computed_metrics=computed,
        execution_metadata={
            "total_rows": len(rows),
            "schema_columns": len(schema),
            "sections_executed": len(sections),
            "metrics_computed": len(computed),
            "execution_time_ms": round(elapsed, 2),
        },
    )
    log.info("playbook executed", extra={"playbook_id": playbook.id, **result.execution_metadata})
    return result
