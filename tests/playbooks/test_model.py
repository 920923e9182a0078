import pytest
from pydantic import ValidationError

from playbook_engine.errors import CircularDependencyError, FormulaError
from playbook_engine.playbooks.model import GroupedQuery, Playbook, SimpleQuery, parse_query


def _raw(**over):
    raw = {
        "id": "pb_demo_v1",
        "domain": "demo",
        "required_columns": {"valor": "numeric", "categoria": "text"},
        "metrics_map": {
            "valor_limpo": {"deps": ["valor"], "formula": "COALESCE(valor, 0)"},
            "alto": {"deps": ["valor_limpo"], "formula": "CASE WHEN valor_limpo > 10 THEN 1 ELSE 0 END"},
        },
        "sections": {
            "overview": ["SUM(valor_limpo) AS total", "SUM(alto)/COUNT(*) AS proporcao_alta"],
            "by_category": ["SUM_BY(categoria, valor_limpo)"],
        },
    }
    raw.update(over)
    return raw


def test_parse_query_variants():
    g = parse_query("SUM_BY(categoria, valor)")
    assert g == {"kind": "grouped", "raw": "SUM_BY(categoria, valor)", "func": "SUM",
                 "dimension": "categoria", "metric": "valor"}
    s = parse_query("AVG(divergencia) AS divergencia_media")
    assert s["kind"] == "simple" and s["func"] == "AVG" and s["alias"] == "divergencia_media"
    ratio = parse_query("SUM(x)/COUNT(*) AS taxa")
    assert ratio["func"] == "EXPR"
    assert ratio["expression"] == "SUM(x)/COUNT(*)"
    with pytest.raises(ValueError):
        parse_query("SELECT * FROM vendas")


def test_playbook_parses_queries_into_variants():
    pb = Playbook.model_validate(_raw())
    overview = pb.sections["overview"]
    assert all(isinstance(q, SimpleQuery) for q in overview)
    assert isinstance(pb.sections["by_category"][0], GroupedQuery)
    assert overview[1].referenced == ["alto"]
    assert pb.section_tokens("by_category") == ["categoria", "valor_limpo"]
    assert pb.section_tokens("missing") == []


def test_metric_order_is_dependencies_first():
    raw = _raw(metrics_map={
        "b": {"deps": ["a"], "formula": "a * 2"},
        "a": {"deps": ["valor"], "formula": "valor + 1"},
    })
    assert Playbook.model_validate(raw).metric_order == ["a", "b"]


def test_metric_cycle_raises_circular_dependency():
    raw = _raw(metrics_map={
        "a": {"deps": ["b"], "formula": "b + 1"},
        "b": {"deps": ["a"], "formula": "a + 1"},
    })
    with pytest.raises(CircularDependencyError) as ei:
        Playbook.model_validate(raw)
    assert set(ei.value.cycle) == {"a", "b"}


def test_formula_must_declare_its_deps():
    raw = _raw(metrics_map={"x": {"deps": ["valor"], "formula": "valor + outra"}})
    with pytest.raises(ValidationError):
        Playbook.model_validate(raw)


def test_formula_syntax_error_fails_at_load():
    raw = _raw(metrics_map={"x": {"deps": ["valor"], "formula": "valor +"}})
    with pytest.raises((ValidationError, FormulaError)):
        Playbook.model_validate(raw)


def test_invalid_column_type_rejected():
    with pytest.raises(ValidationError):
        Playbook.model_validate(_raw(required_columns={"valor": "money"}))


def test_optional_columns_list_form():
    pb = Playbook.model_validate(_raw(optional_columns=["produto", "cliente"]))
    assert pb.optional_columns == {"produto": "text", "cliente": "text"}


def test_playbook_is_frozen_and_summarized():
    pb = Playbook.model_validate(_raw(description="Demo"))
    with pytest.raises(ValidationError):
        pb.id = "other"
    summary = pb.to_summary()
    assert summary["sections"] == ["overview", "by_category"]
    assert summary["metrics"] == ["valor_limpo", "alto"]
    assert pb.name == "Demo"
