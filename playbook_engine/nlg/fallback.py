from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Sequence

import pandas as pd

from ..formula.aggregates import to_number
from ..nlp.schema import Column, as_columns
from ..utils.fp import take
from ..utils.log import get_child

log = get_child("fallback")

FALLBACK_PLAYBOOK_ID = "generic_exploratory_v1"
MAX_NUMERIC_COLUMNS = 5
MAX_TEXT_COLUMNS = 3
TOP_VALUES_MAX_UNIQUE = 10
HIGH_CARDINALITY_RATIO = 0.9
MIN_ROWS_NOTICE = 20
MIN_ROWS_ROBUST = 50


@dataclass
class NumericProfile:
    column: str
    mean: float
    min: float
    max: float
    stddev: float
    unique_count: int


@dataclass
class TextProfile:
    column: str
    unique_count: int
    cardinality_pct: float
    top_values: List[tuple] = field(default_factory=list)


@dataclass
class FallbackAnalysisResult:
    fallback_reason: str
    metadata: Dict[str, int]
    numeric_profiles: List[NumericProfile] = field(default_factory=list)
    text_profiles: List[TextProfile] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    limitations: List[str] = field(default_factory=list)
    playbook_id: str = FALLBACK_PLAYBOOK_ID

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _kind_counts(schema: Sequence[Column], row_count: int) -> Dict[str, int]:
    kinds = [c.kind for c in schema]
    return {
        "row_count": row_count,
        "column_count": len(schema),
        "numeric_columns": kinds.count("numeric"),
        "date_columns": kinds.count("date"),
        "text_columns": kinds.count("text"),
        "boolean_columns": kinds.count("boolean"),
    }


def _numeric_profile(col: str, rows: Sequence[Mapping[str, Any]]) -> NumericProfile | None:
    s = pd.Series([to_number(r.get(col)) for r in rows], dtype="float64").dropna()
    if s.empty:
        return None
    return NumericProfile(
        column=col,
        mean=round(float(s.mean()), 2),
        min=round(float(s.min()), 2),
        max=round(float(s.max()), 2),
        stddev=round(float(s.std(ddof=0)), 2),
        unique_count=int(s.nunique()),
    )


def _text_profile(col: str, rows: Sequence[Mapping[str, Any]]) -> TextProfile:
    s = pd.Series([r.get(col) for r in rows], dtype="object")
    s = s[s.notna() & (s.astype("string").str.strip() != "")].astype("string")
    k = int(s.nunique(dropna=True))
    card = round(k / len(s) * 100.0, 1) if len(s) else 0.0
    top: List[tuple] = []
    if 0 < k <= TOP_VALUES_MAX_UNIQUE:
        top = [(str(v), int(n)) for v, n in s.value_counts().head(5).items()]
    return TextProfile(col, k, card, top)


def _high_cardinality(schema: Sequence[Column]) -> List[str]:
    out = []
    for c in schema:
        if c.kind != "text" or not c.sample_values:
            continue
        if len(set(map(str, c.sample_values))) / len(c.sample_values) > HIGH_CARDINALITY_RATIO:
            out.append(c.name)
    return out


def generate_safe_exploratory_analysis(
    schema: Sequence[Any],
    rows: Sequence[Mapping[str, Any]],
    reason: str,
) -> FallbackAnalysisResult:
    """
    Descriptive statistics grounded only in the schema and the rows; used
    when no playbook passes the acceptance gate. Nothing here names a
    business domain.
    """
    cols = as_columns(schema)
    meta = _kind_counts(cols, len(rows))

    numeric = [p for p in (_numeric_profile(c.name, rows) for c in take(MAX_NUMERIC_COLUMNS,
               (c for c in cols if c.kind == "numeric"))) if p is not None]
    text = [_text_profile(c.name, rows) for c in take(MAX_TEXT_COLUMNS, (c for c in cols if c.kind == "text"))]

    recs: List[str] = []
    if meta["date_columns"] == 0:
        recs.append("Adicione uma coluna de data para habilitar análises por período.")
    if meta["numeric_columns"] < 2:
        recs.append("Adicione mais colunas numéricas para habilitar comparações quantitativas entre variáveis.")
    if meta["row_count"] < MIN_ROWS_ROBUST:
        recs.append(
            f"Colete mais dados (atual: {meta['row_count']} registros); recomenda-se no mínimo "
            f"{MIN_ROWS_ROBUST} registros."
        )
    high_card = _high_cardinality(cols)
    if high_card:
        recs.append(
            f"Normalize colunas categóricas com cardinalidade muito alta ({', '.join(high_card)}) "
            "agrupando-as em categorias."
        )

    limitations = [
        reason,
        "Análises específicas de domínio não estão disponíveis para este dataset.",
        "Verifique se o dataset contém as colunas e os tipos de dados exigidos pelos playbooks disponíveis.",
    ]
    result = FallbackAnalysisResult(
        fallback_reason=reason,
        metadata=meta,
        numeric_profiles=numeric,
        text_profiles=text,
        recommendations=recs,
        limitations=limitations,
    )
    log.info("fallback analysis generated", extra={"reason": reason, **meta})
    return result


def _num(x: float) -> str:
    return f"{x:.2f}"


def format_fallback_analysis(result: FallbackAnalysisResult) -> str:
    m = result.metadata
    lines = [
        "## Sumário Executivo", "",
        "Esta é uma análise exploratória básica do dataset fornecido.", "",
        f"- Total de registros: {m['row_count']}",
        f"- Total de colunas: {m['column_count']}",
        f"- Colunas numéricas: {m['numeric_columns']}",
        f"- Colunas de data: {m['date_columns']}",
        f"- Colunas de texto: {m['text_columns']}", "",
    ]
    if m["row_count"] < MIN_ROWS_NOTICE:
        lines += [f"**Atenção:** o dataset tem apenas {m['row_count']} registros.", ""]

    lines += ["## Achados-Chave", ""]
    for p in result.numeric_profiles:
        lines += [
            f"**{p.column}:**",
            f"- Média: {_num(p.mean)}",
            f"- Mínimo: {_num(p.min)}",
            f"- Máximo: {_num(p.max)}",
            f"- Desvio padrão: {_num(p.stddev)}",
            f"- Valores únicos: {p.unique_count}", "",
        ]
    for t in result.text_profiles:
        lines += [f"**{t.column}:**", f"- Valores únicos: {t.unique_count}",
                  f"- Cardinalidade: {t.cardinality_pct:.1f}%"]
        if t.top_values:
            lines.append("- Top valores: " + ", ".join(f"{v} ({n})" for v, n in t.top_values))
        lines.append("")

    lines += ["## Recomendações", ""]
    if result.recommendations:
        lines += [f"{i}. {r}" for i, r in enumerate(result.recommendations, 1)]
    else:
        lines.append("O dataset está adequado para análises exploratórias básicas.")
    lines += ["", "## Limitações", ""]
    lines += [f"- {x}" for x in result.limitations]
    lines += [
        "", "---", "",
        "**Tipo de Análise:** Exploratória Genérica",
        f"**Playbook:** {result.playbook_id}",
        f"**Motivo:** {result.fallback_reason}",
    ]
    return "\n".join(lines)
