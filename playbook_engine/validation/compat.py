from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..config_model.model import ACCEPTANCE_MIN_SCORE
from ..nlp.normalize import SemanticDictionary, canonicalize, normalize
from ..nlp.schema import Column, as_columns, is_type_compatible
from ..nlp.types import detect_type
from ..utils.log import get_child

log = get_child("validation")


@dataclass(frozen=True)
class TypeMismatch:
    column: str
    expected: str
    actual: str


@dataclass(frozen=True)
class CompatibilityResult:
    compatible: bool
    score: int
    playbook_id: str
    missing_required: List[str] = field(default_factory=list)
    matched_columns: Dict[str, str] = field(default_factory=dict)
    type_mismatches: List[TypeMismatch] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "compatible": self.compatible,
            "score": self.score,
            "playbook_id": self.playbook_id,
            "missing_required": list(self.missing_required),
            "matched_columns": dict(self.matched_columns),
            "type_mismatches": [vars(m) for m in self.type_mismatches],
            "warnings": list(self.warnings),
        }


def is_accepted(score: int, missing_required: Sequence[str], min_score: int = ACCEPTANCE_MIN_SCORE) -> bool:
    """Acceptance gate: no partial credit around missing columns."""
    return score >= min_score and not missing_required


def compatibility_score(total_required: int, matched: int, type_correct: int) -> int:
    if total_required <= 0:
        return 0
    match_score = matched / total_required * 50.0
    type_score = type_correct / total_required * 50.0
    # half-up, not banker's rounding
    return int(match_score + type_score + 0.5)


def enrich_schema(
    schema: Iterable[Any],
    rows: Sequence[Mapping[str, Any]],
    *,
    dictionary: SemanticDictionary | None = None,
    validator_cfg: Any | None = None,
) -> List[Column]:
    """Detect type, canonical and normalized name for every column."""
    sample_n = int(getattr(validator_cfg, "enrich_sample_rows", 100))
    enriched: List[Column] = []
    for col in as_columns(schema):
        values = [row.get(col.name) for row in rows[:sample_n]]
        res = detect_type(values, col.type, validator_cfg)
        enriched.append(col.with_updates(
            inferred_type=res.inferred_type,
            confidence=res.confidence,
            sample_values=tuple(values[:5]),
            parse_errors_pct=res.parse_errors_pct,
            normalized_name=normalize(col.name),
            canonical_name=canonicalize(col.name, dictionary),
            metadata=dict(res.metadata),
        ))
    log.info("schema enriched", extra={
        "columns": len(enriched),
        "types": {c.name: c.inferred_type for c in enriched},
    })
    return enriched


def find_column(schema: Sequence[Column], required: str) -> Optional[Column]:
    """Dataset column whose canonical or normalized name equals `required`."""
    target = normalize(required)
    for col in schema:
        canonical = normalize(col.canonical_name or col.name)
        if canonical == target or (col.normalized_name or normalize(col.name)) == target:
            return col
    return None


def validate_compatibility(
    schema: Sequence[Any],
    playbook: Any,
    row_count: int,
    *,
    min_score: int = ACCEPTANCE_MIN_SCORE,
) -> CompatibilityResult:
    cols = as_columns(schema)
    required: Mapping[str, str] = playbook.required_columns
    missing: List[str] = []
    matched: Dict[str, str] = {}
    mismatches: List[TypeMismatch] = []
    warnings: List[str] = []

    for req, expected in required.items():
        col = find_column(cols, req)
        if col is None:
            missing.append(req)
            continue
        matched[req] = col.name
        if not is_type_compatible(col.effective_type, expected):
            mismatches.append(TypeMismatch(col.name, expected, col.effective_type))

    min_rows = playbook.guardrails.min_rows
    if min_rows and row_count < min_rows:
        warnings.append(f"Dataset tem {row_count} linhas, mas playbook requer mínimo de {min_rows}")

    total = len(required)
    score = compatibility_score(total, len(matched), len(matched) - len(mismatches))
    compatible = is_accepted(score, missing, min_score)

    log.info("playbook scored", extra={
        "playbook_id": playbook.id, "score": score, "compatible": compatible,
        "missing": missing, "type_mismatches": len(mismatches),
    })
    return CompatibilityResult(
        compatible=compatible,
        score=score,
        playbook_id=playbook.id,
        missing_required=missing,
        matched_columns=matched,
        type_mismatches=mismatches,
        warnings=warnings,
    )
