from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..execution.executor import GroupAggregation, PlaybookExecutionResult, SectionResult
from ..guardrails.engine import format_limitations_section
from ..nlp.normalize import normalize
from ..nlp.schema import Column, as_columns
from ..planning.planner import DisabledSection
from ..utils.fp import take
from ..utils.log import get_child

log = get_child("narrative")

NO_LIMITATIONS_TEXT = (
    "**Todas as seções de análise estão disponíveis para este dataset.**\n\n"
    "Não foram identificadas limitações significativas nos dados fornecidos."
)
LARGE_SAMPLE_ROWS = 100
TOP_N = 3


@dataclass(frozen=True)
class InsightWithTracking:
    text: str
    columns_used: Tuple[str, ...] = ()
    confidence: int = 100
    section: str = ""


@dataclass
class NarrativeContext:
    schema: List[Column]
    forbidden_terms: List[str] = field(default_factory=list)
    metrics_map: Mapping[str, Any] = field(default_factory=dict)
    # computed columns that may appear in columns_used
    derived_columns: List[str] = field(default_factory=list)
    # playbook alias -> dataset column
    column_mapping: Dict[str, str] = field(default_factory=dict)
    disabled_sections: List[DisabledSection] = field(default_factory=list)
    top_bottom_min_group_n: int = 10

    def __post_init__(self) -> None:
        self.schema = as_columns(self.schema)

    @property
    def known_columns(self) -> set:
        names = {c.name.lower() for c in self.schema}
        names.update(d.lower() for d in self.derived_columns)
        return names

    def satisfied(self, dep: str) -> bool:
        d = dep.lower()
        return (
            d in self.known_columns
            or dep in self.column_mapping
            or normalize(dep) in {c.normalized_name or normalize(c.name) for c in self.schema}
        )


@dataclass
class NarrativeOutput:
    executive_summary: List[InsightWithTracking] = field(default_factory=list)
    key_findings: List[InsightWithTracking] = field(default_factory=list)
    recommendations: List[InsightWithTracking] = field(default_factory=list)
    limitations: str = ""
    column_usage_summary: Dict[str, int] = field(default_factory=dict)
    validation_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---- helpers ----

def _label(name: str) -> str:
    return name.replace("_", " ")

def _fmt(value: Any) -> str:
    if isinstance(value, float):
        if value.is_integer():
            return f"{int(value):,}".replace(",", ".")
        return f"{value:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return str(value)

def _resolve(names: Sequence[str], ctx: NarrativeContext) -> Tuple[str, ...]:
    # playbook aliases are reported by the dataset column they resolved to
    return tuple(ctx.column_mapping.get(n, n) for n in names)


def validate_insight(insight: InsightWithTracking, ctx: NarrativeContext) -> Optional[str]:
    """None when the insight may be published, else the rejection reason."""
    text = insight.text.lower()
    for term in ctx.forbidden_terms:
        if term and term.lower() in text:
            return f'Insight contém termo proibido: "{term}"'

    known = ctx.known_columns
    for col in insight.columns_used:
        if col.lower() not in known:
            return f'Insight referencia coluna inexistente: "{col}"'

    for metric_name, metric in ctx.metrics_map.items():
        if metric_name.lower() not in text:
            continue
        deps = getattr(metric, "deps", None) or (metric.get("deps", []) if isinstance(metric, Mapping) else [])
        for dep in deps:
            if not ctx.satisfied(dep):
                return f'Métrica "{metric_name}" depende de coluna ausente: "{dep}"'
    return None


# ---- insight builders ----

def _overview_insights(section: SectionResult, total_rows: int, ctx: NarrativeContext) -> List[InsightWithTracking]:
    out = [InsightWithTracking(f"Dataset contém {total_rows} registros analisados.", (), 100, "overview")]
    for alias, value in section.metrics.items():
        out.append(InsightWithTracking(
            f"{_label(alias).capitalize()}: {_fmt(value)}.",
            _resolve(section.sources.get(alias, []), ctx), 95, "overview",
        ))
    return out


def _group_text(groups: Sequence[GroupAggregation], metric: str) -> str:
    return ", ".join(f"{g.dimension_value} ({_fmt(g.metrics[metric])})" for g in groups)


def _grouped_insights(
    section_name: str,
    groups: Sequence[GroupAggregation],
    sources: Sequence[str],
    ctx: NarrativeContext,
) -> List[InsightWithTracking]:
    dimension = groups[0].dimension
    metric = next(iter(groups[0].metrics))
    dim_col = ctx.column_mapping.get(dimension, dimension)
    used = _resolve(sources, ctx)

    if section_name == "temporal_trend":
        by_key = sorted(groups, key=lambda g: g.dimension_value)
        peak = groups[0]
        return [
            InsightWithTracking(
                f"Período analisado de {by_key[0].dimension_value} a {by_key[-1].dimension_value} "
                f"({len(groups)} datas distintas em {dim_col}).", (dim_col,), 90, section_name,
            ),
            InsightWithTracking(
                f"Maior {_label(metric)} registrado em {peak.dimension_value} ({_fmt(peak.metrics[metric])}).",
                used, 90, section_name,
            ),
        ]

    eligible = [g for g in groups if g.n >= ctx.top_bottom_min_group_n]
    if not eligible:
        return [InsightWithTracking(
            f"Nenhum grupo de {dim_col} atinge o mínimo de {ctx.top_bottom_min_group_n} registros "
            "para comparação entre grupos.", (dim_col,), 80, section_name,
        )]
    out = [InsightWithTracking(
        f"Top {min(TOP_N, len(eligible))} por {dim_col} em {_label(metric)}: "
        f"{_group_text(take(TOP_N, eligible), metric)}.", used, 90, section_name,
    )]
    if len(eligible) > TOP_N:
        bottom = list(reversed(eligible[-TOP_N:]))
        out.append(InsightWithTracking(
            f"Menores por {dim_col} em {_label(metric)}: {_group_text(bottom, metric)}.",
            used, 85, section_name,
        ))
    return out


def _section_insights(section: SectionResult, ctx: NarrativeContext) -> List[InsightWithTracking]:
    name = section.section_name
    out: List[InsightWithTracking] = []
    for alias, value in section.metrics.items():
        out.append(InsightWithTracking(
            f"{_label(alias).capitalize()}: {_fmt(value)}.",
            _resolve(section.sources.get(alias, []), ctx), 90, name,
        ))
    by_metric: Dict[Tuple[str, str], List[GroupAggregation]] = {}
    for g in section.aggregations:
        by_metric.setdefault((g.dimension, next(iter(g.metrics))), []).append(g)
    for (_, metric), groups in by_metric.items():
        out.extend(_grouped_insights(name, groups, section.sources.get(metric, []), ctx))
    return out


def _recommendations(total_rows: int, ctx: NarrativeContext, filtered_groups: bool) -> List[InsightWithTracking]:
    recs: List[InsightWithTracking] = []
    if total_rows < LARGE_SAMPLE_ROWS:
        recs.append(InsightWithTracking(
            "Considere coletar mais dados para aumentar a confiabilidade estatística da análise.",
            (), 80, "recommendations",
        ))
    if not any(c.kind == "date" for c in ctx.schema):
        recs.append(InsightWithTracking(
            "Inclua uma coluna de data no dataset para habilitar seções adicionais.",
            (), 85, "recommendations",
        ))
    if filtered_groups:
        recs.append(InsightWithTracking(
            f"Grupos com menos de {ctx.top_bottom_min_group_n} registros foram omitidos das comparações; "
            "consolide categorias pequenas para compará-las.",
            (), 75, "recommendations",
        ))
    return recs


def limitations_text(disabled: Sequence[DisabledSection]) -> str:
    if not disabled:
        return NO_LIMITATIONS_TEXT
    return format_limitations_section(disabled) + (
        "\n---\n\n**Sugestão:** Enriqueça seu dataset com as colunas sugeridas acima "
        "para obter análises mais completas.\n"
    )


def generate_narrative(
    results: PlaybookExecutionResult,
    ctx: NarrativeContext,
    playbook_id: str,
) -> NarrativeOutput:
    """
    Turn executed sections into tracked insights. Every insight passes
    validate_insight before it is kept; rejections are collected in
    validation_errors. The limitations section is always filled.
    """
    output = NarrativeOutput()
    usage: Dict[str, int] = {}
    total_rows = int(results.execution_metadata.get("total_rows", 0))

    def _accept(bucket: List[InsightWithTracking], insight: InsightWithTracking, label: str) -> None:
        error = validate_insight(insight, ctx)
        if error is not None:
            output.validation_errors.append(f"{label}: {error}")
            log.warning("insight rejected", extra={"playbook_id": playbook_id, "section": label, "error": error})
            return
        bucket.append(insight)
        for col in insight.columns_used:
            usage[col] = usage.get(col, 0) + 1

    overview = results.sections.get("overview")
    if overview is not None:
        for ins in _overview_insights(overview, total_rows, ctx):
            _accept(output.executive_summary, ins, "overview")

    filtered_groups = False
    for name, section in results.sections.items():
        if name == "overview":
            continue
        if any(g.n < ctx.top_bottom_min_group_n for g in section.aggregations) and name != "temporal_trend":
            filtered_groups = True
        for ins in _section_insights(section, ctx):
            _accept(output.key_findings, ins, name)

    for rec in _recommendations(total_rows, ctx, filtered_groups):
        _accept(output.recommendations, rec, "recommendations")

    output.limitations = limitations_text(ctx.disabled_sections)
    output.column_usage_summary = usage

    log.info("narrative generated", extra={
        "playbook_id": playbook_id,
        "summary": len(output.executive_summary),
        "findings": len(output.key_findings),
        "recommendations": len(output.recommendations),
        "validation_errors": len(output.validation_errors),
    })
    return output


def column_usage_summary(insights: Sequence[InsightWithTracking]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for ins in insights:
        for col in ins.columns_used:
            counts[col] = counts.get(col, 0) + 1
    return counts


def format_narrative_output(
    output: NarrativeOutput,
    include_limitations: bool = True,
    include_validation_errors: bool = True,
) -> str:
    parts: List[str] = []
    if output.executive_summary:
        parts.append("## Sumário Executivo\n")
        parts.extend(f"- {i.text}" for i in output.executive_summary)
        parts.append("")
    if output.key_findings:
        parts.append("## Achados-Chave\n")
        parts.extend(f"- {i.text}" for i in output.key_findings)
        parts.append("")
    if output.recommendations:
        parts.append("## Recomendações\n")
        parts.extend(f"- {i.text}" for i in output.recommendations)
        parts.append("")
    if include_limitations:
        parts.append(output.limitations)

    parts.append("\n---\n")
    parts.append("## Auditoria de Colunas\n")
    parts.append(f"**Colunas utilizadas na análise:** {len(output.column_usage_summary)}\n")
    if output.column_usage_summary:
        parts.append("| Coluna | Menções |")
        parts.append("|--------|---------|")
        for col, n in sorted(output.column_usage_summary.items(), key=lambda kv: -kv[1]):
            parts.append(f"| {col} | {n} |")

    if include_validation_errors and output.validation_errors:
        parts.append("\n---\n")
        parts.append("## Avisos de Validação\n")
        parts.extend(f"- {e}" for e in output.validation_errors)
    return "\n".join(parts)
