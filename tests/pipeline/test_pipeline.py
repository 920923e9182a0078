import json
import runpy
import sys

import pandas as pd
import pytest

from playbook_engine import pipeline
from playbook_engine.errors import CircularDependencyError
from playbook_engine.nlg.fallback import FALLBACK_PLAYBOOK_ID
from playbook_engine.pipeline import run_analysis, select_playbook
from playbook_engine.playbooks.registry import PlaybookRegistry
from playbook_engine.validation.compat import enrich_schema


@pytest.fixture
def sales_df(sales_rows):
    return pd.DataFrame(sales_rows)


def _rows_of(df: pd.DataFrame):
    return df.astype(object).where(df.notna(), None).to_dict(orient="records")


def test_sales_dataset_is_delivered(sales_rows, sales_schema, cfg, registry):
    out = run_analysis(sales_rows, sales_schema, "Como foram as vendas por categoria?", registry=registry, cfg=cfg)
    assert out.status == "delivered"
    assert out.playbook_id == "pb_vendas_basico_v1"
    assert out.compatibility.score == 100
    assert set(out.execution.sections) == {"overview", "by_category", "temporal_trend"}
    disabled = {d.section: d.reason for d in out.guardrails.disabled_sections}
    assert "segunda coluna numérica" in disabled["relationship"]
    assert {"lucro", "margem"} <= set(out.guardrails.forbidden_terms)

    text = out.narrative_text
    assert text.startswith("## Sumário Executivo")
    assert "Total transacoes: 50." in text
    assert "## Limitações da Análise" in text
    assert out.blocked_message == ""
    assert out.hallucination_report.should_block is False
    # the delivered text never leaks the playbook's internal names
    body = text.split("## Limitações")[0]
    assert "valor_venda" not in body
    for term in ("lucro", "margem"):
        assert term not in body.lower()


def test_candidates_are_ranked(sales_rows, sales_schema, cfg, registry):
    out = run_analysis(sales_rows, sales_schema, "", registry=registry, cfg=cfg)
    scores = [c["score"] for c in out.candidates]
    assert scores == sorted(scores, reverse=True)
    assert out.candidates[0]["playbook_id"] == "pb_vendas_basico_v1"


def test_dataframe_input(sales_df, sales_schema, cfg, registry):
    out = run_analysis(_rows_of(sales_df), sales_schema, "", registry=registry, cfg=cfg)
    assert out.status == "delivered"
    assert out.execution.sections["overview"].metrics["total_transacoes"] == 50


def test_unmatched_dataset_falls_back(cfg, registry):
    rows = [{"x": i + 0.5, "rotulo": f"r{i % 4}"} for i in range(30)]
    schema = [{"name": "x", "type": "numeric"}, {"name": "rotulo", "type": "text"}]
    out = run_analysis(rows, schema, "", registry=registry, cfg=cfg)
    assert out.status == "fallback"
    assert out.playbook_id == FALLBACK_PLAYBOOK_ID
    assert out.fallback.fallback_reason.startswith("Nenhum playbook atingiu")
    assert "**Tipo de Análise:** Exploratória Genérica" in out.narrative_text
    assert out.execution is None


def test_empty_registry_falls_back(sales_rows, sales_schema, cfg):
    out = run_analysis(sales_rows, sales_schema, "", registry=PlaybookRegistry.from_playbooks([]), cfg=cfg)
    assert out.status == "fallback"
    assert out.fallback.fallback_reason == "Nenhum playbook cadastrado."


def test_critical_violation_blocks(sales_rows, sales_schema, cfg, registry, monkeypatch):
    real_scan = pipeline.scan_for_hallucinations

    def scan_with_unknown_column(text, *args, **kwargs):
        return real_scan(text + "\nMédia de margem_bruta: 10.", *args, **kwargs)

    monkeypatch.setattr(pipeline, "scan_for_hallucinations", scan_with_unknown_column)
    out = run_analysis(sales_rows, sales_schema, "", registry=registry, cfg=cfg)
    assert out.status == "blocked"
    assert out.narrative_text == ""
    assert out.blocked_message.startswith("## Análise Bloqueada por Inconsistências")
    assert out.hallucination_report.critical[0].term == "margem_bruta"


def test_select_playbook_respects_acceptance(sales_rows, sales_schema, registry):
    schema = enrich_schema(sales_schema, sales_rows)
    chosen, scores = select_playbook(registry, schema, len(sales_rows), 80)
    assert chosen.playbook_id == "pb_vendas_basico_v1"
    assert set(scores) == {pb.id for pb in registry.all()}
    none, _ = select_playbook(registry, schema, len(sales_rows), 101)
    assert none is None


def test_metric_cycle_is_a_configuration_error():
    raw = {
        "id": "pb_ciclo_v1", "domain": "teste",
        "required_columns": {"valor": "numeric"},
        "metrics_map": {
            "a": {"deps": ["b"], "formula": "b + 1"},
            "b": {"deps": ["a"], "formula": "a + 1"},
        },
        "sections": {"overview": ["SUM(a) AS total_a"]},
    }
    with pytest.raises(CircularDependencyError):
        PlaybookRegistry.from_playbooks([raw])


def test_to_dict_is_json_serializable(sales_rows, sales_schema, cfg, registry):
    d = run_analysis(sales_rows, sales_schema, "", registry=registry, cfg=cfg).to_dict()
    assert d["status"] == "delivered"
    assert d["plan"]["playbook_id"] == "pb_vendas_basico_v1"
    json.dumps(d, ensure_ascii=False, default=str)


def test_cli_prints_json(sales_df, tmp_out, project_root, cfg_path, monkeypatch, capsys):
    csv = tmp_out / "vendas.csv"
    sales_df.to_csv(csv, index=False)
    monkeypatch.setattr(sys, "argv", ["run_analysis", str(csv), "--config", str(cfg_path), "--sep", ","])
    runpy.run_path(str(project_root / "scripts" / "run_analysis.py"), run_name="__main__")
    printed = capsys.readouterr().out
    # log records share stdout; the result is the indented document at the end
    out = json.loads(printed[printed.index("{\n"):])
    assert out["status"] == "delivered"
    assert out["playbook_id"] == "pb_vendas_basico_v1"


def test_cli_missing_file(tmp_out, project_root, monkeypatch):
    monkeypatch.setattr(sys, "argv", ["run_analysis", str(tmp_out / "nope.csv")])
    with pytest.raises(SystemExit) as ei:
        runpy.run_path(str(project_root / "scripts" / "run_analysis.py"), run_name="__main__")
    assert ei.value.code == 2


def test_grounded_product_names_are_not_flagged(cfg, registry):
    products = ("iPhone 13", "Galaxy S23", "Moto G", "SKU_01-A", "McDonald's")
    rows = [{"produto": products[i % 5], "valor": round(12.25 + i * 1.5, 2)} for i in range(40)]
    schema = [{"name": "produto", "type": "text"}, {"name": "valor", "type": "numeric"}]
    out = run_analysis(rows, schema, "", registry=registry, cfg=cfg)
    assert out.playbook_id == "pb_pareto_abc_generico_v1"
    assert out.hallucination_report.critical == []
    assert out.status == "delivered"
    assert "iPhone 13" in out.narrative_text
    assert "SKU_01-A" in out.narrative_text


def test_candidates_below_acceptance_are_not_compatible(cfg, registry, sales_rows, sales_schema):
    raw = {
        "id": "pb_regioes_v1", "domain": "teste",
        "required_columns": {"valor": "numeric", "regiao": "numeric"},
        "sections": {"overview": ["SUM(valor) AS total"]},
    }
    rows = [{"valor": i + 0.5, "regiao": f"R{i % 3}"} for i in range(30)]
    schema = [{"name": "valor", "type": "numeric"}, {"name": "regiao", "type": "text"}]
    out = run_analysis(rows, schema, "", registry=PlaybookRegistry.from_playbooks([raw]), cfg=cfg)
    # both columns found, one with the wrong type
    assert out.status == "fallback"
    assert out.candidates == [{"playbook_id": "pb_regioes_v1", "score": 75, "compatible": False}]

    ranked = run_analysis(sales_rows, sales_schema, "", registry=registry, cfg=cfg).candidates
    assert not any(c["compatible"] for c in ranked if c["score"] < 80)
