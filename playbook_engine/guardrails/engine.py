from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Sequence

from ..nlp.normalize import normalize
from ..nlp.schema import Column, as_columns
from ..planning.planner import DisabledSection
from ..utils.fp import take, unique_stable
from ..utils.log import get_child

log = get_child("guardrails")

# ---- Fallback config (used when guardrails cfg isn't passed) ----
class _GuardrailsCfgFallback:
    min_rows_default: int = 20
    temporal_min_rows: int = 24
    correlation_min_rows: int = 30
    correlation_min_numeric_cols: int = 2
    top_bottom_min_group_n: int = 10

_FALLBACK = _GuardrailsCfgFallback()

def _cfg_from(guardrails_cfg: Any | None) -> _GuardrailsCfgFallback:
    if guardrails_cfg is None:
        return _FALLBACK
    gc = _GuardrailsCfgFallback()
    for k in ("min_rows_default", "temporal_min_rows", "correlation_min_rows",
              "correlation_min_numeric_cols", "top_bottom_min_group_n"):
        setattr(gc, k, int(getattr(guardrails_cfg, k, getattr(_FALLBACK, k))))
    return gc

# Vocabulary that may only be used when the matching kind of column exists
FORBIDDEN_TERMS_MAP: Dict[str, List[str]] = {
    "no_valor": [
        "faturamento", "receita", "ticket médio", "ticket medio", "lucro",
        "margem", "revenue", "sales", "profit", "margin", "price", "pricing",
    ],
    "no_date": [
        "tendência", "tendencia", "sazonalidade", "crescimento", "evolução",
        "evolucao", "trend", "seasonality", "growth", "evolution", "temporal",
        "ao longo do tempo", "over time", "mês a mês", "month over month",
    ],
    "no_quantidade": [
        "volume", "unidades vendidas", "itens vendidos",
        "quantity sold", "units sold", "items sold",
    ],
    "no_cliente": [
        "por cliente", "by customer", "churn de cliente", "customer churn",
        "retenção de cliente", "customer retention",
    ],
    "no_produto": ["por produto", "by product", "mix de produtos", "product mix"],
}

_COLUMN_PATTERNS: Dict[str, List[str]] = {
    "no_valor": ["valor", "preco", "price", "amount"],
    "no_quantidade": ["quantidade", "qtd", "quantity", "qty"],
    "no_cliente": ["cliente", "customer", "client"],
    "no_produto": ["produto", "product", "item"],
}

SECTION_TITLES: Dict[str, str] = {
    "temporal_trend": "Análise Temporal",
    "relationship": "Análise de Correlação",
    "by_category": "Análise por Categoria",
    "by_location": "Análise por Localização",
    "by_group": "Análise por Grupo",
    "overview": "Visão Geral",
    "distribution": "Análise de Distribuição",
    "significance": "Análise de Significância Estatística",
}


@dataclass
class GuardrailsResult:
    active_sections: List[str] = field(default_factory=list)
    disabled_sections: List[DisabledSection] = field(default_factory=list)
    forbidden_terms: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    quality_score: int = 100

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def section_title(section: str) -> str:
    return SECTION_TITLES.get(section) or section.replace("_", " ").title()


# ---- Column helpers ----
def _find_column(name: str, schema: Sequence[Column]) -> Optional[Column]:
    target = normalize(name)
    for col in schema:
        if (col.normalized_name or normalize(col.name)) == target:
            return col
    for col in schema:
        keys = {col.normalized_name or normalize(col.name), normalize(col.canonical_name)}
        if any(target and target in k for k in keys if k):
            return col
    return None

def has_column_like(patterns: Sequence[str], schema: Sequence[Column]) -> bool:
    return any(_find_column(p, schema) is not None for p in patterns)


def quality_score(
    row_count: int,
    column_count: int,
    warnings_count: int,
    disabled_count: int,
    min_rows: int,
) -> int:
    score = 100.0
    if min_rows > 0 and row_count < min_rows:
        score -= min(30.0, (min_rows - row_count) / min_rows * 30.0)
    score -= min(20.0, warnings_count * 5.0)
    score -= min(30.0, disabled_count * 10.0)
    if column_count >= 10:
        score += 5.0
    return int(max(0.0, min(100.0, score)) + 0.5)


def evaluate_guardrails(
    playbook: Any,
    schema: Sequence[Any],
    row_count: int,
    guardrails_cfg: Any | None = None,
) -> GuardrailsResult:
    """
    Section gating, dynamic forbidden vocabulary and a 0-100 quality score,
    computed from the enriched schema alone. Runs independently of the
    planner's own section checks.
    """
    gc = _cfg_from(guardrails_cfg)
    cols = as_columns(schema)
    g = playbook.guardrails
    sections = playbook.sections
    warnings: List[str] = []
    disabled: List[DisabledSection] = []
    forbidden: List[str] = []

    min_rows = g.min_rows or gc.min_rows_default
    if row_count < min_rows:
        warnings.append(
            f"Dataset tem apenas {row_count} linhas. Recomendado mínimo de {min_rows} para resultados confiáveis."
        )

    for name in g.require_numeric:
        col = _find_column(name, cols)
        if col is None:
            warnings.append(f'Coluna numérica "{name}" não encontrada')
        elif col.kind != "numeric":
            warnings.append(f'Coluna "{name}" deveria ser numérica mas é {col.effective_type}')

    # temporal sections
    has_date = any(c.kind == "date" for c in cols)
    if not has_date:
        forbidden.extend(FORBIDDEN_TERMS_MAP["no_date"])
    if "temporal_trend" in sections:
        required_dates = list(g.temporal_sections_require)
        if required_dates:
            dates_ok = all((c := _find_column(d, cols)) is not None and c.kind == "date" for d in required_dates)
            requirement = ", ".join(required_dates)
        else:
            dates_ok, requirement = has_date, "coluna de data"
        if not dates_ok:
            disabled.append(DisabledSection(
                "temporal_trend", "Coluna de data não encontrada ou tipo incorreto", requirement,
                "Adicione uma coluna de data ao dataset para habilitar esta seção",
            ))
        elif row_count < gc.temporal_min_rows:
            disabled.append(DisabledSection(
                "temporal_trend", f"Amostra insuficiente ({row_count} < {gc.temporal_min_rows})", requirement,
                f"Adicione mais linhas (mínimo {gc.temporal_min_rows} para uma série robusta)",
            ))

    # correlation / relationship
    n_numeric = sum(1 for c in cols if c.kind == "numeric")
    if "relationship" in sections and (
        n_numeric < gc.correlation_min_numeric_cols or row_count < gc.correlation_min_rows
    ):
        few_cols = n_numeric < gc.correlation_min_numeric_cols
        disabled.append(DisabledSection(
            "relationship",
            f"Apenas {n_numeric} coluna(s) numérica(s) (mínimo {gc.correlation_min_numeric_cols})"
            if few_cols else f"Amostra insuficiente ({row_count} < {gc.correlation_min_rows})",
            f"Mínimo {gc.correlation_min_numeric_cols} colunas numéricas + {gc.correlation_min_rows} linhas",
            "Adicione mais colunas numéricas para análise de correlação"
            if few_cols else "Adicione mais linhas para uma correlação estatisticamente significativa",
        ))

    # vocabulary that needs a kind of column the dataset lacks
    for key, patterns in _COLUMN_PATTERNS.items():
        if not has_column_like(patterns, cols):
            forbidden.extend(FORBIDDEN_TERMS_MAP[key])
    forbidden.extend(playbook.forbidden_terms)

    disabled_names = {d.section for d in disabled}
    active = [s for s in sections if s not in disabled_names]

    result = GuardrailsResult(
        active_sections=active,
        disabled_sections=disabled,
        forbidden_terms=unique_stable(forbidden, key=str.lower),
        warnings=warnings,
        quality_score=quality_score(row_count, len(cols), len(warnings), len(disabled), min_rows),
    )
    log.info("guardrails evaluated", extra={
        "playbook_id": playbook.id, "active": active, "disabled": sorted(disabled_names),
        "forbidden_terms": len(result.forbidden_terms), "quality_score": result.quality_score,
    })
    return result


def contains_forbidden_terms(text: str, forbidden_terms: Sequence[str]) -> List[str]:
    """Forbidden terms found in `text` (case-insensitive substring)."""
    low = (text or "").lower()
    return [t for t in forbidden_terms if t and t.lower() in low]


def format_limitations_section(disabled: Sequence[DisabledSection]) -> str:
    if not disabled:
        return "**Todas as seções de análise estão disponíveis para este dataset.**"
    lines = ["## Limitações da Análise", "",
             "As seguintes seções não puderam ser geradas devido a requisitos não atendidos:", ""]
    for idx, ds in enumerate(disabled, 1):
        lines.append(f"**{idx}. {section_title(ds.section)}**")
        lines.append(f"- **Motivo:** {ds.reason}")
        lines.append(f"- **Requisito faltante:** {ds.missing_requirement}")
        if ds.call_to_action:
            lines.append(f"- {ds.call_to_action}")
        lines.append("")
    return "\n".join(lines)


def data_improvement_suggestions(disabled: Sequence[DisabledSection], schema: Sequence[Any]) -> List[str]:
    cols = as_columns(schema)
    suggestions: List[str] = []
    if not any(c.kind == "date" for c in cols):
        suggestions.append("Adicione uma coluna de data para habilitar análises por período")
    if sum(1 for c in cols if c.kind == "numeric") < 2:
        suggestions.append("Adicione mais colunas numéricas para habilitar análise de correlação")
    suggestions.extend(ds.call_to_action for ds in disabled if ds.call_to_action)
    return take(5, unique_stable(suggestions))
