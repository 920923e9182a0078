from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence, Tuple
import time

from ..errors import FormulaError
from ..formula.dsl import Formula, compile_formula
from ..utils.graph import topological_order
from ..utils.log import get_child

log = get_child("derive")


@dataclass(frozen=True)
class DerivationError:
    column: str
    row_index: int
    error: str


@dataclass(frozen=True)
class DerivationResult:
    enriched_rows: List[Dict[str, Any]]
    columns_added: List[str]
    errors: List[DerivationError] = field(default_factory=list)
    execution_time_ms: float = 0.0


def topological_sort(derivations: Sequence[Any]) -> List[Any]:
    """Derivations ordered so that every dependency precedes its dependents.
    A cycle raises CircularDependencyError before any row is touched."""
    by_name = {d.name: d for d in derivations}
    order = topological_order({d.name: list(d.dependencies) for d in derivations})
    return [by_name[n] for n in order]


def validate_derivation(derivation: Any) -> Tuple[bool, List[str]]:
    errors: List[str] = []
    if not getattr(derivation, "name", ""):
        errors.append("derivation has no name")
    if not getattr(derivation, "formula", ""):
        errors.append("derivation has no formula")
    else:
        try:
            compiled = compile_formula(derivation.formula)
        except FormulaError as e:
            errors.append(f"invalid formula: {e}")
        else:
            undeclared = [n for n in compiled.names if n not in derivation.dependencies]
            if undeclared:
                errors.append(f"formula references undeclared columns: {', '.join(undeclared)}")
    if derivation.name in (derivation.dependencies or []):
        errors.append("derivation depends on itself")
    return (not errors), errors


def apply_derivations(rows: Sequence[Mapping[str, Any]], derivations: Sequence[Any]) -> DerivationResult:
    """
    Materialize derived columns onto copies of `rows`. Evaluation failures
    are per cell: the value becomes None, the error is recorded and the
    batch continues.
    """
    started = time.perf_counter()
    ordered = topological_sort(derivations)
    compiled: List[Tuple[str, Formula]] = [(d.name, compile_formula(d.formula)) for d in ordered]

    out: List[Dict[str, Any]] = [dict(r) for r in rows]
    errors: List[DerivationError] = []
    for name, formula in compiled:
        failures = 0
        for idx, row in enumerate(out):
            try:
                row[name] = formula.evaluate(row)
            except (FormulaError, TypeError, ArithmeticError) as e:
                row[name] = None
                errors.append(DerivationError(name, idx, str(e)))
                failures += 1
        if failures:
            log.warning("derivation row errors", extra={"column": name, "failed_rows": failures,
                                                        "total_rows": len(out)})

    elapsed = (time.perf_counter() - started) * 1000.0
    log.info("derivations applied", extra={"columns": [n for n, _ in compiled], "rows": len(out),
                                           "errors": len(errors), "ms": round(elapsed, 2)})
    return DerivationResult(out, [n for n, _ in compiled], errors, elapsed)


def derivation_stats(result: DerivationResult) -> Dict[str, Any]:
    n_rows = len(result.enriched_rows)
    n_cols = len(result.columns_added)
    cells = n_rows * n_cols
    by_column: Dict[str, int] = {}
    for e in result.errors:
        by_column[e.column] = by_column.get(e.column, 0) + 1
    return {
        "columns_added": n_cols,
        "rows_processed": n_rows,
        "errors": len(result.errors),
        "error_rate": round(len(result.errors) / cells * 100.0, 2) if cells else 0.0,
        "errors_by_column": by_column,
        "execution_time_ms": round(result.execution_time_ms, 2),
        "avg_time_per_row_ms": round(result.execution_time_ms / n_rows, 4) if n_rows else 0.0,
    }
