from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

from .config_model.model import RootCfg, load_config
from .derive.engine import apply_derivations
from .execution.executor import PlaybookExecutionResult, execute_playbook
from .guardrails.engine import GuardrailsResult, evaluate_guardrails
from .nlg.fallback import FallbackAnalysisResult, format_fallback_analysis, generate_safe_exploratory_analysis
from .nlg.hallucination import HallucinationReport, generate_blocked_message, scan_for_hallucinations
from .nlg.narrative import NarrativeContext, NarrativeOutput, format_narrative_output, generate_narrative
from .nlp.normalize import dictionary_cache
from .planning.planner import SemanticPlan, plan_analysis
from .playbooks.registry import PlaybookRegistry
from .utils.fp import unique_stable
from .utils.log import configure_from, get_child
from .validation.compat import CompatibilityResult, enrich_schema, validate_compatibility

log = get_child("pipeline")

Status = Literal["delivered", "blocked", "fallback"]


@dataclass
class AnalysisOutcome:
    status: Status
    playbook_id: str
    compatibility: Optional[CompatibilityResult] = None
    plan: Optional[SemanticPlan] = None
    guardrails: Optional[GuardrailsResult] = None
    execution: Optional[PlaybookExecutionResult] = None
    narrative: Optional[NarrativeOutput] = None
    narrative_text: str = ""
    hallucination_report: Optional[HallucinationReport] = None
    blocked_message: str = ""
    fallback: Optional[FallbackAnalysisResult] = None
    candidates: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        def _d(x: Any) -> Any:
            return x.to_dict() if x is not None and hasattr(x, "to_dict") else x
        return {
            "status": self.status,
            "playbook_id": self.playbook_id,
            "compatibility": _d(self.compatibility),
            "plan": _d(self.plan),
            "guardrails": _d(self.guardrails),
            "execution": _d(self.execution),
            "narrative": _d(self.narrative),
            "narrative_text": self.narrative_text,
            "hallucination_report": _d(self.hallucination_report),
            "blocked_message": self.blocked_message,
            "fallback": _d(self.fallback),
            "candidates": list(self.candidates),
        }


def select_playbook(
    registry: PlaybookRegistry,
    schema: Sequence[Any],
    row_count: int,
    acceptance_min_score: int,
) -> tuple[Optional[CompatibilityResult], Dict[str, CompatibilityResult]]:
    """
    Two-stage filter: every playbook is scored against `acceptance_min_score`,
    so `compatible` always means accepted. The registry keeps the candidates
    (nothing missing and >= its discovery floor) and the best one that is
    also compatible wins.
    """
    scores = {
        pb.id: validate_compatibility(schema, pb, row_count, min_score=acceptance_min_score)
        for pb in registry.all()
    }
    for pb in registry.find_compatible(schema, scores):
        if scores[pb.id].compatible:
            return scores[pb.id], scores
    return None, scores


def _fallback_reason(scores: Mapping[str, CompatibilityResult]) -> str:
    if not scores:
        return "Nenhum playbook cadastrado."
    best = max(scores.values(), key=lambda r: r.score)
    reason = (
        f"Nenhum playbook atingiu a compatibilidade mínima. Melhor candidato: "
        f"{best.playbook_id} ({best.score}%)"
    )
    if best.missing_required:
        reason += f"; colunas ausentes: {', '.join(best.missing_required)}"
    return reason + "."


def _known_names(plan: SemanticPlan, execution: PlaybookExecutionResult) -> List[str]:
    names = list(plan.derived_names) + list(plan.required_columns)
    for section in execution.sections.values():
        names.extend(section.metrics)
        names.extend(g.dimension_value for g in section.aggregations)
    return unique_stable(names)


def run_analysis(
    rows: Sequence[Mapping[str, Any]],
    schema: Sequence[Any],
    user_question: str,
    *,
    registry: Optional[PlaybookRegistry] = None,
    cfg: Optional[RootCfg] = None,
) -> AnalysisOutcome:
    """
    Full request: enrich, select, plan, derive, gate, execute, narrate, scan.

    Rejected playbooks and hallucination blocks are outcomes; a metric cycle
    in a playbook is a configuration error and propagates.
    """
    cfg = cfg or load_config()
    configure_from(cfg)
    registry = registry or PlaybookRegistry.from_config(cfg)
    dictionary = dictionary_cache(cfg).get()
    rows = list(rows)

    enriched = enrich_schema(schema, rows, dictionary=dictionary, validator_cfg=cfg.validator)
    chosen, scores = select_playbook(registry, enriched, len(rows), cfg.validator.acceptance_min_score)
    ranked = sorted(scores.values(), key=lambda r: -r.score)
    candidates = [{"playbook_id": r.playbook_id, "score": r.score, "compatible": r.compatible} for r in ranked]

    if chosen is None:
        reason = _fallback_reason(scores)
        fb = generate_safe_exploratory_analysis(enriched, rows, reason)
        log.info("no playbook accepted", extra={"reason": reason})
        return AnalysisOutcome(
            status="fallback", playbook_id=fb.playbook_id, fallback=fb,
            narrative_text=format_fallback_analysis(fb), candidates=candidates,
        )

    playbook = registry.get_by_id(chosen.playbook_id)
    plan = plan_analysis(user_question, enriched, playbook, len(rows), dictionary, cfg.guardrails)
    derived = apply_derivations(rows, plan.derivations)
    guards = evaluate_guardrails(playbook, enriched, len(rows), cfg.guardrails)

    # a section runs only when both the planner and the guardrails allow it
    allowed = set(guards.active_sections)
    active = [s for s in plan.active_sections if s in allowed]
    disabled = list(plan.disabled_sections)
    seen = {d.section for d in disabled}
    disabled.extend(d for d in guards.disabled_sections if d.section not in seen)

    execution = execute_playbook(playbook, enriched, derived.enriched_rows, active, plan.column_mapping)

    ctx = NarrativeContext(
        schema=enriched,
        forbidden_terms=guards.forbidden_terms,
        metrics_map=playbook.metrics_map,
        derived_columns=plan.derived_names,
        column_mapping=plan.column_mapping,
        disabled_sections=disabled,
        top_bottom_min_group_n=playbook.guardrails.top_bottom_min_group_n,
    )
    narrative = generate_narrative(execution, ctx, playbook.id)

    # limitations are not scanned: they quote disabled sections in forbidden vocabulary
    scanned = format_narrative_output(narrative, include_limitations=False, include_validation_errors=False)
    report = scan_for_hallucinations(
        scanned, enriched, guards.forbidden_terms, playbook.metrics_map, cfg.hallucination,
        known_names=_known_names(plan, execution),
    )

    outcome = AnalysisOutcome(
        status="delivered", playbook_id=playbook.id, compatibility=chosen, plan=plan,
        guardrails=guards, execution=execution, narrative=narrative,
        hallucination_report=report, candidates=candidates,
    )
    if report.should_block:
        outcome.status = "blocked"
        outcome.blocked_message = generate_blocked_message(report)
    else:
        outcome.narrative_text = format_narrative_output(narrative)

    log.info("analysis finished", extra={
        "status": outcome.status, "playbook_id": playbook.id, "score": chosen.score,
        "active_sections": active, "violations": len(report.violations),
    })
    return outcome
