import pytest

from playbook_engine.guardrails.engine import (
    FORBIDDEN_TERMS_MAP,
    contains_forbidden_terms,
    data_improvement_suggestions,
    evaluate_guardrails,
    format_limitations_section,
    has_column_like,
    quality_score,
    section_title,
)
from playbook_engine.nlp.normalize import normalize
from playbook_engine.nlp.schema import Column
from playbook_engine.planning.planner import DisabledSection


def _col(name, kind):
    return Column(name, kind, inferred_type=kind, normalized_name=normalize(name), canonical_name=normalize(name))


def _sales_schema():
    return [_col("valor", "numeric"), _col("data", "date"), _col("categoria", "text")]


def test_quality_score_formula():
    assert quality_score(100, 5, 0, 0, 20) == 100
    # 10/20 short -> -15, 2 warnings -> -10, 1 disabled -> -10
    assert quality_score(10, 5, 2, 1, 20) == 65
    # caps: rows 30, warnings 20, disabled 30
    assert quality_score(0, 5, 10, 10, 20) == 20
    # wide datasets get a bonus, clamped at 100
    assert quality_score(100, 12, 0, 0, 20) == 100
    assert quality_score(100, 12, 1, 0, 20) == 100
    assert quality_score(100, 12, 2, 0, 20) == 95


def test_has_column_like_is_one_way():
    schema = [_col("valor_total", "numeric")]
    assert has_column_like(["valor"], schema)
    # pattern longer than the column name does not match
    assert not has_column_like(["valor_total_bruto"], schema)
    assert not has_column_like(["cliente"], schema)


def test_sales_dataset_all_sections_active(registry):
    pb = registry.get_by_id("pb_vendas_basico_v1")
    schema = _sales_schema() + [_col("quantidade", "numeric")]
    res = evaluate_guardrails(pb, schema, 50)
    assert res.active_sections == ["overview", "by_category", "temporal_trend", "relationship"]
    assert res.disabled_sections == []
    assert res.warnings == []
    assert res.quality_score == 100
    # value, date and quantity exist: none of their vocabularies is forbidden
    assert "faturamento" not in res.forbidden_terms
    assert "tendência" not in res.forbidden_terms
    assert "volume" not in res.forbidden_terms
    # customer/product absent
    assert "por cliente" in res.forbidden_terms
    assert "por produto" in res.forbidden_terms
    # playbook's static terms appended
    assert "lucro" in res.forbidden_terms and "margem" in res.forbidden_terms


def test_no_date_forbids_temporal_vocabulary_and_disables_trend(registry):
    pb = registry.get_by_id("pb_vendas_basico_v1")
    schema = [_col("valor", "numeric"), _col("categoria", "text")]
    res = evaluate_guardrails(pb, schema, 50)
    for term in FORBIDDEN_TERMS_MAP["no_date"]:
        assert term in res.forbidden_terms
    disabled = {d.section: d for d in res.disabled_sections}
    assert "temporal_trend" in disabled
    assert disabled["temporal_trend"].missing_requirement == "data"
    assert "temporal_trend" not in res.active_sections


def test_temporal_needs_enough_rows(registry):
    pb = registry.get_by_id("pb_vendas_basico_v1")
    res = evaluate_guardrails(pb, _sales_schema(), 23)
    disabled = {d.section: d for d in res.disabled_sections}
    assert "Amostra insuficiente (23 < 24)" in disabled["temporal_trend"].reason


def test_temporal_without_declared_requirements_uses_any_date(registry):
    pb = registry.get_by_id("pb_rh_performance_v1").model_copy(update={
        "sections": {"temporal_trend": registry.get_by_id("pb_vendas_basico_v1").sections["temporal_trend"]},
    })
    res = evaluate_guardrails(pb, [_col("quando", "date"), _col("nota", "numeric")], 50)
    assert res.active_sections == ["temporal_trend"]


def test_relationship_gate(registry):
    pb = registry.get_by_id("pb_vendas_basico_v1")
    res = evaluate_guardrails(pb, _sales_schema(), 50)
    rel = {d.section: d for d in res.disabled_sections}["relationship"]
    assert rel.reason.startswith("Apenas 1 coluna(s) numérica(s)")
    res2 = evaluate_guardrails(pb, _sales_schema() + [_col("quantidade", "numeric")], 29)
    rel2 = {d.section: d for d in res2.disabled_sections}["relationship"]
    assert "29 < 30" in rel2.reason


def test_min_rows_and_require_numeric_warnings(registry):
    pb = registry.get_by_id("pb_vendas_basico_v1")
    schema = [_col("valor", "text"), _col("data", "date"), _col("categoria", "text")]
    res = evaluate_guardrails(pb, schema, 5)
    assert any("apenas 5 linhas" in w for w in res.warnings)
    assert any('Coluna "valor" deveria ser numérica' in w for w in res.warnings)
    res2 = evaluate_guardrails(pb, [_col("data", "date"), _col("categoria", "text")], 50)
    assert any('Coluna numérica "valor" não encontrada' in w for w in res2.warnings)


def test_forbidden_terms_deduplicated_case_insensitive(registry):
    pb = registry.get_by_id("pb_vendas_basico_v1").model_copy(update={"forbidden_terms": ["LUCRO", "margem"]})
    # no value column: financial vocabulary already contains lucro and margem
    res = evaluate_guardrails(pb, [_col("data", "date"), _col("categoria", "text")], 50)
    lowered = [t.lower() for t in res.forbidden_terms]
    assert lowered.count("lucro") == 1
    assert lowered.count("margem") == 1


def test_guardrails_cfg_overrides(registry, cfg):
    pb = registry.get_by_id("pb_vendas_basico_v1")
    tuned = cfg.guardrails.model_copy(update={"temporal_min_rows": 10})
    res = evaluate_guardrails(pb, _sales_schema(), 12, tuned)
    assert "temporal_trend" in res.active_sections


def test_contains_forbidden_terms():
    assert contains_forbidden_terms("O Lucro cresceu", ["lucro", "margem"]) == ["lucro"]
    assert contains_forbidden_terms("", ["lucro"]) == []


def test_format_limitations_section():
    assert "Todas as seções" in format_limitations_section([])
    text = format_limitations_section([
        DisabledSection("temporal_trend", "Sem data", "Coluna de data", "Adicione uma coluna de data"),
    ])
    assert text.startswith("## Limitações da Análise")
    assert "**1. Análise Temporal**" in text
    assert "- **Motivo:** Sem data" in text
    assert "- **Requisito faltante:** Coluna de data" in text
    assert "- Adicione uma coluna de data" in text


def test_section_title_fallback():
    assert section_title("by_category") == "Análise por Categoria"
    assert section_title("custom_view") == "Custom View"


def test_data_improvement_suggestions_top_five():
    disabled = [DisabledSection(f"s{i}", "r", "m", f"Faça {i}") for i in range(8)]
    out = data_improvement_suggestions(disabled, [_col("x", "text")])
    assert len(out) == 5
    assert out[0].startswith("Adicione uma coluna de data")
    assert out[1].startswith("Adicione mais colunas numéricas")
    assert out[2] == "Faça 0"


@pytest.mark.parametrize("key", sorted(FORBIDDEN_TERMS_MAP))
def test_vocabularies_are_lowercase(key):
    assert all(t == t.lower() for t in FORBIDDEN_TERMS_MAP[key])
