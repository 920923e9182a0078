from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence
import re

from ..nlp.normalize import normalize
from ..nlp.schema import as_columns
from ..utils.fp import unique_stable
from ..utils.log import get_child

log = get_child("hallucination")

Severity = Literal["low", "medium", "high", "critical"]
ViolationType = Literal["forbidden_term", "missing_column", "invalid_date", "impossible_value", "unsatisfied_metric"]


class _HallucinationCfgFallback:
    max_violations: int = 5
    penalty_cap: int = 30
    weight_critical: int = 20
    weight_high: int = 10
    weight_medium: int = 5
    weight_low: int = 2

_FALLBACK = _HallucinationCfgFallback()


INVALID_DATE_PATTERNS = (
    re.compile(r"1970-01-01"),
    re.compile(r"0001-01-01"),
    re.compile(r"1900-01-01"),
    re.compile(r"\b0000-"),
    re.compile(r"\bepoch\b", re.I),
)

_NUMBER = r"(-?\d+(?:[.,]\d+)?)"
# (pattern, is_impossible) evaluated on the captured literal
IMPOSSIBLE_VALUE_PATTERNS = (
    (re.compile(r"(?:taxa|percentual|porcentagem|rate|percent)\D*?" + _NUMBER + r"\s*%", re.I),
     lambda v: v > 100 or v < 0),
    (re.compile(r"(?:contagem|quantidade|count|qtd)\D*?" + _NUMBER, re.I),
     lambda v: v < 0),
)

_IDENTIFIER = re.compile(r"\b([A-Za-z_][A-Za-z0-9_]{2,})\b")
_CAMEL = re.compile(r"[a-z][A-Z]")
_COLUMN_SUFFIXES = ("_id", "_date", "_valor", "_qtd", "_total", "_medio")

COMMON_WORDS = frozenset({
    "the", "and", "for", "with", "from", "that", "this", "have", "has",
    "data", "analysis", "result", "value", "total", "count", "average",
    "sum", "min", "max", "para", "com", "por", "dos", "das", "uma",
    "analise", "dados", "resultado", "valor", "media", "grupo",
})

DATA_CONTEXT_KEYWORDS = (
    "média", "media", "total", "soma", "contagem", "quantidade",
    "average", "sum", "count", "value", "metric", "indicador",
    "coluna", "column", "campo", "field", "por", "by",
)


@dataclass(frozen=True)
class HallucinationViolation:
    type: ViolationType
    term: str
    context: str
    severity: Severity
    line_number: Optional[int] = None


@dataclass
class HallucinationReport:
    violations: List[HallucinationViolation] = field(default_factory=list)
    blocked_terms: List[str] = field(default_factory=list)
    confidence_penalty: int = 0
    should_block: bool = False
    summary: str = ""

    @property
    def critical(self) -> List[HallucinationViolation]:
        return [v for v in self.violations if v.severity == "critical"]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def looks_like_column(token: str) -> bool:
    """snake_case, camelCase or a known column suffix."""
    return "_" in token or bool(_CAMEL.search(token)) or token.lower().endswith(_COLUMN_SUFFIXES)

def is_data_context(line: str) -> bool:
    low = line.lower()
    return any(k in low for k in DATA_CONTEXT_KEYWORDS)

def _known_names(columns: Sequence[Any], extra: Iterable[str]) -> set:
    names = set()
    for col in as_columns(columns):
        names.add(col.name.lower())
        if col.canonical_name:
            names.add(col.canonical_name.lower())
        normalized = col.normalized_name or normalize(col.name)
        names.add(normalized.replace(" ", "_"))
    for e in extra:
        # grounded values such as "iPhone 13" are checked token by token
        names.add(str(e).lower())
        names.update(m.group(1).lower() for m in _IDENTIFIER.finditer(str(e)))
    return names

def _weight(severity: str, hc: Any) -> int:
    return int(getattr(hc, f"weight_{severity}", 0))


def confidence_penalty(violations: Sequence[HallucinationViolation], cfg: Any | None = None) -> int:
    hc = cfg or _FALLBACK
    return min(int(hc.penalty_cap), sum(_weight(v.severity, hc) for v in violations))


def should_block(violations: Sequence[HallucinationViolation], cfg: Any | None = None) -> bool:
    """More than max_violations, or any critical one. No averaging."""
    hc = cfg or _FALLBACK
    return len(violations) > int(hc.max_violations) or any(v.severity == "critical" for v in violations)


def _summary(violations: Sequence[HallucinationViolation], blocked: bool) -> str:
    if not violations:
        return "Nenhuma alucinação detectada. Texto validado com sucesso."
    labels = {
        "forbidden_term": "termo(s) proibido(s)",
        "missing_column": "referência(s) a coluna(s) inexistente(s)",
        "invalid_date": "data(s) inválida(s)",
        "impossible_value": "valor(es) impossível(is)",
        "unsatisfied_metric": "métrica(s) com dependências não satisfeitas",
    }
    counts: Dict[str, int] = {}
    for v in violations:
        counts[v.type] = counts.get(v.type, 0) + 1
    lines = [f"Detectadas {len(violations)} violações:"]
    lines.extend(f"- {n} {labels[t]}" for t, n in counts.items())
    if blocked:
        lines.append("")
        lines.append("**RESULTADO BLOQUEADO** devido a violações críticas.")
    return "\n".join(lines)


def scan_for_hallucinations(
    text: str,
    columns: Sequence[Any],
    forbidden_terms: Sequence[str],
    metrics_map: Mapping[str, Any] | None = None,
    cfg: Any | None = None,
    *,
    known_names: Iterable[str] = (),
) -> HallucinationReport:
    """
    Line-by-line scan of final narrative text.

    `known_names` extends the schema with names that are grounded
    elsewhere: derived columns, playbook aliases that were mapped and
    dimension values taken from the data.
    """
    known = _known_names(columns, known_names)
    violations: List[HallucinationViolation] = []
    blocked: List[str] = []
    lines = (text or "").split("\n")

    for idx, line in enumerate(lines, 1):
        low = line.lower()
        ctx = line.strip()

        for term in forbidden_terms:
            if term and term.lower() in low:
                violations.append(HallucinationViolation("forbidden_term", term, ctx, "high", idx))
                blocked.append(term)

        if is_data_context(line):
            for token in unique_stable(m.group(1) for m in _IDENTIFIER.finditer(line)):
                t = token.lower()
                if t in COMMON_WORDS or t in known:
                    continue
                if looks_like_column(token):
                    violations.append(HallucinationViolation("missing_column", t, ctx, "critical", idx))

        # one violation per line even when several sentinels match
        for pattern in INVALID_DATE_PATTERNS:
            if pattern.search(line):
                violations.append(HallucinationViolation("invalid_date", pattern.pattern, ctx, "high", idx))
                break

        for pattern, impossible in IMPOSSIBLE_VALUE_PATTERNS:
            for m in pattern.finditer(line):
                if impossible(float(m.group(1).replace(",", "."))):
                    violations.append(HallucinationViolation("impossible_value", m.group(0), ctx, "medium", idx))

    lowered = (text or "").lower()
    for metric_name, metric in (metrics_map or {}).items():
        if metric_name.lower() not in lowered:
            continue
        deps = getattr(metric, "deps", None) or (metric.get("deps", []) if isinstance(metric, Mapping) else [])
        for dep in deps:
            if dep.lower() not in known and normalize(dep).replace(" ", "_") not in known:
                violations.append(HallucinationViolation(
                    "unsatisfied_metric", metric_name,
                    f'Métrica "{metric_name}" requer coluna ausente: "{dep}"', "critical",
                ))

    block = should_block(violations, cfg)
    report = HallucinationReport(
        violations=violations,
        blocked_terms=unique_stable(blocked),
        confidence_penalty=confidence_penalty(violations, cfg),
        should_block=block,
        summary=_summary(violations, block),
    )
    log_fn = log.warning if violations else log.info
    log_fn("hallucination scan", extra={
        "violations": len(violations), "critical": len(report.critical),
        "should_block": block, "penalty": report.confidence_penalty,
    })
    return report


def format_violation_report(report: HallucinationReport) -> str:
    if not report.violations:
        return "No violations detected."
    out = [
        "========== HALLUCINATION REPORT ==========",
        f"Total violations: {len(report.violations)}",
        f"Confidence penalty: -{report.confidence_penalty} points",
        f"Should block: {'YES' if report.should_block else 'NO'}",
    ]
    for i, v in enumerate(report.violations, 1):
        out.append("")
        out.append(f"[{i}] {v.type.upper()} ({v.severity})")
        out.append(f'    Term: "{v.term}"')
        out.append(f'    Context: "{v.context}"')
        if v.line_number:
            out.append(f"    Line: {v.line_number}")
    out.append("==========================================")
    return "\n".join(out)


def generate_blocked_message(report: HallucinationReport) -> str:
    lines = [
        "## Análise Bloqueada por Inconsistências",
        "",
        "O sistema detectou conteúdo inconsistente com os dados fornecidos. "
        "Para garantir a qualidade da análise, o resultado foi bloqueado.",
        "",
        "### Problemas Detectados:",
        "",
    ]
    critical = report.critical
    if critical:
        lines.append("**Violações Críticas:**")
        lines.extend(f"{i}. {v.context}" for i, v in enumerate(critical, 1))
        lines.append("")
    else:
        lines.append(f"{len(report.violations)} violações encontradas (limite excedido).")
        lines.append("")
    lines += [
        "### Próximos Passos:",
        "",
        "1. Verifique se o arquivo carregado contém todas as colunas necessárias",
        "2. Tente novamente com um dataset mais completo",
        "3. Se o problema persistir, entre em contato com o suporte",
    ]
    return "\n".join(lines)


def sanitize_text(text: str, forbidden_terms: Sequence[str]) -> str:
    """Drop every line containing a forbidden term."""
    terms = [t.lower() for t in forbidden_terms if t]
    return "\n".join(
        line for line in (text or "").split("\n")
        if not any(t in line.lower() for t in terms)
    )
