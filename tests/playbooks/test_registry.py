import json

import pytest

from playbook_engine.errors import CircularDependencyError, PlaybookValidationError
from playbook_engine.playbooks.registry import (
    PlaybookRegistry,
    load_snapshot,
    parse_playbook,
    validate_playbook_structure,
)
from playbook_engine.validation.compat import CompatibilityResult


def _pb(pid, domain="demo", **over):
    raw = {
        "id": pid,
        "domain": domain,
        "description": f"Playbook {pid}",
        "required_columns": {"valor": "numeric"},
        "sections": {"overview": ["SUM(valor) AS total"]},
    }
    raw.update(over)
    return raw


def test_bundled_registry_loads(registry):
    ids = [pb.id for pb in registry.all()]
    assert "pb_vendas_basico_v1" in ids
    assert "pb_estoque_divergencias_v1" in ids
    meta = registry.metadata()
    assert meta["total_playbooks"] == len(ids)
    assert meta["registry_version"]
    assert "vendas" in meta["domains"]


def test_lookups(registry):
    assert registry.get_by_id("pb_vendas_basico_v1").domain == "vendas"
    assert registry.get_by_id("nope") is None
    assert [pb.id for pb in registry.find_by_domain("VENDAS")] == ["pb_vendas_basico_v1"]
    assert any(pb.id == "pb_logistica_otif_v1" for pb in registry.search("otif"))
    assert registry.search("") == registry.all()
    assert registry.recommended_for_scenario("sales").id == "pb_vendas_basico_v1"
    assert registry.recommended_for_scenario("unknown") is None


def test_stats(registry):
    st = registry.stats()
    assert st["total"] == len(registry.all())
    assert st["by_domain"]["vendas"] == 1
    assert st["avg_required_columns"] > 0


def test_find_compatible_needs_floor_and_no_missing():
    reg = PlaybookRegistry.from_playbooks([_pb("a"), _pb("b"), _pb("c"), _pb("d"), _pb("e")])
    scores = {
        "a": CompatibilityResult(False, 70, "a"),
        "b": CompatibilityResult(True, 95, "b"),
        "c": CompatibilityResult(False, 90, "c", missing_required=["x"]),
        "d": CompatibilityResult(True, 50, "d"),
        # below acceptance, still a candidate
        "e": CompatibilityResult(False, 75, "e"),
    }
    found = [pb.id for pb in reg.find_compatible([], scores)]
    # best score first; d is below the 60 floor, c misses a column
    assert found == ["b", "e", "a"]
    assert [pb.id for pb in reg.find_compatible([], scores, min_score=80)] == ["b"]


def test_find_compatible_ties_keep_registry_order():
    reg = PlaybookRegistry.from_playbooks([_pb("a"), _pb("b")])
    scores = {"b": CompatibilityResult(True, 90, "b"), "a": CompatibilityResult(True, 90, "a")}
    assert [pb.id for pb in reg.find_compatible([], scores)] == ["a", "b"]


def test_malformed_playbook_raises_validation_error():
    with pytest.raises(PlaybookValidationError) as ei:
        parse_playbook(_pb("bad", required_columns={"valor": "money"}))
    assert ei.value.playbook_id == "bad"
    assert ei.value.errors


def test_bad_query_string_raises_validation_error():
    with pytest.raises(PlaybookValidationError):
        parse_playbook(_pb("bad", sections={"overview": ["total de vendas"]}))


def test_cycle_in_file_is_fatal(tmp_path):
    raw = _pb("cyc", metrics_map={
        "a": {"deps": ["b"], "formula": "b"},
        "b": {"deps": ["a"], "formula": "a"},
    })
    p = tmp_path / "pb.json"
    p.write_text(json.dumps({"playbooks": [raw]}), encoding="utf-8")
    with pytest.raises(CircularDependencyError):
        load_snapshot(p)


def test_duplicate_ids_rejected(tmp_path):
    p = tmp_path / "pb.json"
    p.write_text(json.dumps({"playbooks": [_pb("a"), _pb("a")]}), encoding="utf-8")
    with pytest.raises(PlaybookValidationError):
        load_snapshot(p)


def test_validate_playbook_structure_never_raises():
    ok, errors = validate_playbook_structure(_pb("fine"))
    assert ok and errors == []
    ok, errors = validate_playbook_structure({"id": "x", "required_columns": {"a": "blob"}})
    assert not ok
    assert "missing field: domain" in errors
    assert "invalid type for column a: blob" in errors
    ok, errors = validate_playbook_structure(_pb("cyc", metrics_map={
        "a": {"deps": ["a"], "formula": "a + 1"},
    }))
    assert not ok and "Circular" in errors[0]


def test_structure_check_rejects_overlong_formula():
    ok, errors = validate_playbook_structure(_pb("longa", metrics_map={
        "soma": {"deps": ["valor"], "formula": " + ".join(["valor"] * 1000)},
    }))
    assert not ok
    assert any("depth" in e for e in errors)


def test_registry_cache_ttl_and_invalidate(tmp_path):
    p = tmp_path / "pb.json"
    p.write_text(json.dumps({"registry_version": "1", "playbooks": [_pb("a")]}), encoding="utf-8")
    reg = PlaybookRegistry(p, ttl_seconds=600)
    assert [pb.id for pb in reg.all()] == ["a"]
    p.write_text(json.dumps({"registry_version": "2", "playbooks": [_pb("a"), _pb("b")]}), encoding="utf-8")
    # cached snapshot until invalidated
    assert len(reg.all()) == 1
    reg.invalidate()
    assert reg.is_stale()
    assert len(reg.all()) == 2
    assert reg.metadata()["registry_version"] == "2"


def test_from_config(cfg):
    reg = PlaybookRegistry.from_config(cfg)
    assert reg.candidate_min_score == 60
    assert reg.get_by_id("pb_vendas_basico_v1") is not None
