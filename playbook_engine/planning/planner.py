from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..formula.dsl import compile_formula, substitute_identifiers
from ..nlp.normalize import SemanticDictionary, normalize, strip_accents
from ..nlp.schema import Column, as_columns, is_type_compatible
from ..utils.log import get_child

log = get_child("planner")

# defaults for the [guardrails] limits the planner shares with the guardrails engine
TEMPORAL_MIN_ROWS = 24
RELATIONSHIP_MIN_ROWS = 30
RELATIONSHIP_MIN_NUMERIC = 2

# keyword fragments (accent-free) -> intent label, first hit wins
_INTENT_KEYWORDS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("divergen", "diferen"), "comparar_estoques"),
    (("venda", "receita"), "analisar_vendas"),
    (("tenden", "temporal", "tempo"), "analisar_tendencias"),
    (("categoria", "grupo"), "agrupar_por_categoria"),
    (("local", "rua", "regiao"), "agrupar_por_localizacao"),
)

# domain synonyms used when mapping playbook columns onto dataset columns
DOMAIN_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "saldo_anterior": ("estoque_anterior", "saldo_inicial", "estoque_inicial", "qtd_inicial"),
    "entrada": ("entradas", "compras", "input", "recebimento"),
    "saida": ("saidas", "vendas", "output", "baixa"),
    "contagem_fisica": ("contagem_real", "inventario", "fisico", "contagem"),
    "divergencia": ("diferenca", "ajuste", "variance"),
    "quantidade": ("qtd", "qnt", "quantity", "qty", "volume"),
    "valor": ("preco", "price", "amount", "valor_unit"),
    "data": ("date", "periodo", "mes", "ano"),
    "categoria": ("category", "tipo", "class", "grupo"),
    "produto": ("product", "item", "sku", "material"),
    "cliente": ("customer", "client"),
    "vendedor": ("seller", "sales_rep", "representante"),
    "rua": ("endereco", "street", "location", "local", "posicao"),
    "andar": ("floor", "nivel", "piso"),
    "box": ("box_location", "gaveta", "drawer"),
    "qnt_atual": ("estoque_atual", "saldo_atual", "quantidade_atual", "qtd_sistema"),
}


@dataclass(frozen=True)
class DerivedColumn:
    name: str
    formula: str
    dependencies: List[str]
    type: str = "numeric"
    description: str = ""


@dataclass(frozen=True)
class DisabledSection:
    section: str
    reason: str
    missing_requirement: str
    call_to_action: str = ""


@dataclass
class SemanticPlan:
    playbook_id: str
    playbook_name: str
    user_intent: str
    confidence: int = 0
    available_columns: List[str] = field(default_factory=list)
    required_columns: Dict[str, str] = field(default_factory=dict)
    missing_columns: List[str] = field(default_factory=list)
    derivations: List[DerivedColumn] = field(default_factory=list)
    active_sections: List[str] = field(default_factory=list)
    disabled_sections: List[DisabledSection] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    limitations: List[str] = field(default_factory=list)

    @property
    def derived_names(self) -> List[str]:
        return [d.name for d in self.derivations]

    @property
    def column_mapping(self) -> Dict[str, str]:
        """Playbook column alias -> dataset column, derived metrics excluded."""
        derived = set(self.derived_names)
        return {k: v for k, v in self.required_columns.items() if k not in derived}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def extract_intent(question: str) -> str:
    q = strip_accents((question or "").lower())
    for fragments, intent in _INTENT_KEYWORDS:
        if any(f in q for f in fragments):
            return intent
    return "analise_geral"


# ---- Column matching ----

def _available_map(schema: Sequence[Column]) -> Dict[str, Column]:
    out: Dict[str, Column] = {}
    for col in schema:
        out.setdefault(col.normalized_name or normalize(col.name), col)
    return out


def _synonyms(required: str, dictionary: SemanticDictionary | None) -> List[str]:
    syns = [normalize(s) for s in DOMAIN_SYNONYMS.get(normalize(required).replace(" ", "_"), ())]
    if dictionary is not None:
        syns.extend(normalize(s) for s in dictionary.synonyms_for(required))
    return syns


def find_matching_column(
    required: str,
    required_type: str,
    schema: Sequence[Column],
    dictionary: SemanticDictionary | None = None,
    taken: Sequence[str] = (),
) -> Optional[Column]:
    """exact -> domain synonym -> canonical -> partial, each type-gated."""
    avail = {k: c for k, c in _available_map(schema).items() if c.name not in taken}
    target = normalize(required)

    def _ok(col: Optional[Column]) -> bool:
        return col is not None and is_type_compatible(col.effective_type, required_type)

    # 1. exact
    if _ok(avail.get(target)):
        return avail[target]

    # 2. synonyms
    syns = _synonyms(required, dictionary)
    for s in syns:
        if _ok(avail.get(s)):
            return avail[s]

    # 3. canonical names
    for col in avail.values():
        canon = normalize(col.canonical_name) if col.canonical_name else ""
        if canon and (canon == target or canon in syns) and _ok(col):
            return col

    # 4. partial; the dataset key must be a real word, not a 1-2 char fragment
    for key, col in avail.items():
        if (target in key or (len(key) >= 3 and key in target)) and _ok(col):
            return col
    return None


def _raw_column(name: str, schema: Sequence[Column]) -> Optional[Column]:
    target = normalize(name)
    for col in schema:
        if (col.normalized_name or normalize(col.name)) == target or col.name == name:
            return col
    return None


# ---- Derivations ----

def _resolve_dep(dep: str, mapped: Mapping[str, str], schema: Sequence[Column]) -> Optional[str]:
    if dep in mapped:
        return mapped[dep]
    raw = _raw_column(dep, schema)
    return raw.name if raw is not None else None


def create_derivation(name: str, metric: Any, mapped: Mapping[str, str], schema: Sequence[Column]) -> DerivedColumn:
    actual = {dep: _resolve_dep(dep, mapped, schema) or dep for dep in metric.deps}
    formula = substitute_identifiers(metric.formula, {k: v for k, v in actual.items() if k != v})
    out_type = "text" if compile_formula(formula).is_text else "numeric"
    return DerivedColumn(
        name=name,
        formula=formula,
        dependencies=[actual[d] for d in metric.deps],
        type=out_type,
        description=f"Calculado: {name} = {metric.formula}",
    )


# ---- Sections ----

def _limit(guardrails_cfg: Any | None, key: str, default: int) -> int:
    return int(getattr(guardrails_cfg, key, default)) if guardrails_cfg is not None else default


def _section_checks(
    section: str,
    schema: Sequence[Column],
    row_count: int,
    guardrails_cfg: Any | None = None,
) -> Optional[DisabledSection]:
    temporal_min = _limit(guardrails_cfg, "temporal_min_rows", TEMPORAL_MIN_ROWS)
    rel_min_rows = _limit(guardrails_cfg, "correlation_min_rows", RELATIONSHIP_MIN_ROWS)
    rel_min_numeric = _limit(guardrails_cfg, "correlation_min_numeric_cols", RELATIONSHIP_MIN_NUMERIC)
    if section == "temporal_trend":
        if not any(c.kind == "date" for c in schema):
            return DisabledSection(
                section, "Nenhuma coluna de data encontrada", "Coluna de data",
                "Adicione uma coluna de data ao dataset para habilitar esta seção",
            )
        if row_count < temporal_min:
            return DisabledSection(
                section, f"Amostra insuficiente ({row_count} < {temporal_min} linhas)",
                f"Mínimo {temporal_min} linhas",
                f"Adicione mais linhas (mínimo {temporal_min})",
            )
    if section == "relationship":
        n_numeric = sum(1 for c in schema if c.kind == "numeric")
        if n_numeric < rel_min_numeric:
            return DisabledSection(
                section,
                f"Apenas {n_numeric} coluna(s) numérica(s) (mínimo {rel_min_numeric}); falta uma segunda coluna numérica",
                f"Mínimo {rel_min_numeric} colunas numéricas",
                "Adicione mais colunas numéricas para habilitar a análise de relação entre variáveis",
            )
        if row_count < rel_min_rows:
            return DisabledSection(
                section, f"Amostra insuficiente ({row_count} < {rel_min_rows} linhas)",
                f"Mínimo {rel_min_rows} linhas",
                f"Adicione mais linhas (mínimo {rel_min_rows})",
            )
    return None


def plan_sections(
    playbook: Any,
    schema: Sequence[Column],
    mapped: Mapping[str, str],
    derivations: Sequence[DerivedColumn],
    row_count: int,
    guardrails_cfg: Any | None = None,
) -> Tuple[List[str], List[DisabledSection]]:
    active: List[str] = []
    disabled: List[DisabledSection] = []
    derived = {d.name for d in derivations}

    for section, queries in playbook.sections.items():
        if not queries:
            continue
        blocked = _section_checks(section, schema, row_count, guardrails_cfg)
        if blocked is not None:
            disabled.append(blocked)
            continue
        missing = [
            tok for tok in playbook.section_tokens(section)
            if tok not in derived and tok not in mapped and _raw_column(tok, schema) is None
        ]
        if missing:
            disabled.append(DisabledSection(
                section,
                f"Colunas necessárias não disponíveis: {', '.join(missing)}",
                ", ".join(missing),
                f"Inclua as colunas {', '.join(missing)} para habilitar esta seção",
            ))
            continue
        active.append(section)
    return active, disabled


def plan_analysis(
    user_question: str,
    schema: Sequence[Any],
    playbook: Any,
    row_count: int,
    dictionary: SemanticDictionary | None = None,
    guardrails_cfg: Any | None = None,
) -> SemanticPlan:
    cols = as_columns(schema)
    plan = SemanticPlan(
        playbook_id=playbook.id,
        playbook_name=playbook.name,
        user_intent=extract_intent(user_question),
        available_columns=[c.name for c in cols],
    )

    # 1. column mapping; optional columns never count as missing
    taken: List[str] = []
    for group, required in ((playbook.required_columns, True), (playbook.optional_columns, False)):
        for alias, typ in group.items():
            col = find_matching_column(alias, typ, cols, dictionary, taken)
            if col is not None:
                plan.required_columns[alias] = col.name
                taken.append(col.name)
            elif required:
                plan.missing_columns.append(alias)

    # 2. derivations in metric dependency order
    for name in playbook.metric_order:
        metric = playbook.metrics_map[name]
        unresolved = [d for d in metric.deps if _resolve_dep(d, plan.required_columns, cols) is None]
        if unresolved:
            log.info("metric not derivable", extra={"metric": name, "missing": unresolved})
            if not metric.optional:
                plan.warnings.append(
                    f"Métrica {name} não pôde ser calculada: dependências ausentes ({', '.join(unresolved)})"
                )
            continue
        plan.derivations.append(create_derivation(name, metric, plan.required_columns, cols))
        plan.required_columns[name] = name

    # 3. sections
    plan.active_sections, plan.disabled_sections = plan_sections(
        playbook, cols, plan.required_columns, plan.derivations, row_count, guardrails_cfg,
    )

    # 4. confidence
    total = len(playbook.required_columns)
    matched = sum(1 for k in playbook.required_columns if k in plan.required_columns)
    derived = len(plan.derivations)
    match_score = matched / total * 50.0 if total else 0.0
    derive_score = derived / total * 30.0 if total else 0.0
    section_score = 20.0 if plan.active_sections else 0.0
    plan.confidence = min(100, int(match_score + derive_score + section_score + 0.5))

    # 5. warnings / limitations
    if plan.missing_columns:
        plan.warnings.append(
            f"Colunas não encontradas: {', '.join(plan.missing_columns)}. "
            "Análise será limitada aos dados disponíveis."
        )
    if plan.derivations:
        plan.warnings.append(
            f"{len(plan.derivations)} coluna(s) será(ão) calculada(s) a partir dos dados existentes."
        )
    if plan.disabled_sections:
        plan.limitations.append(
            f"{len(plan.disabled_sections)} seção(ões) desabilitada(s) por falta de requisitos."
        )

    log.info("plan built", extra={
        "playbook_id": playbook.id, "confidence": plan.confidence,
        "derivations": len(plan.derivations), "active": plan.active_sections,
        "disabled": [d.section for d in plan.disabled_sections],
    })
    return plan
