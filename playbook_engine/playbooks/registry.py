from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import json

from pydantic import ValidationError

from ..config_model.model import CANDIDATE_MIN_SCORE
from ..errors import CircularDependencyError, PlaybookValidationError
from ..utils.cache import SnapshotCache
from ..utils.fp import group_by, unique_stable
from ..utils.log import get_child
from .model import VALID_COLUMN_TYPES, Playbook

log = get_child("registry")

DEFAULT_PLAYBOOKS_PATH = Path(__file__).resolve().parent / "data" / "playbooks.json"

# scenario keyword -> recommended playbook id
SCENARIO_PLAYBOOKS: Dict[str, str] = {
    "inventory_divergence": "pb_estoque_divergencias_v1",
    "stock_divergence": "pb_estoque_divergencias_v1",
    "sales": "pb_vendas_basico_v1",
    "otif": "pb_logistica_otif_v1",
    "logistics": "pb_logistica_otif_v1",
    "hr_performance": "pb_rh_performance_v1",
    "cashflow": "pb_financeiro_cashflow_v1",
    "pareto": "pb_pareto_abc_generico_v1",
    "abc": "pb_pareto_abc_generico_v1",
}


@dataclass(frozen=True)
class RegistrySnapshot:
    playbooks: Tuple[Playbook, ...] = ()
    schema_version: str = ""
    registry_version: str = ""
    by_id: Dict[str, Playbook] = field(default_factory=dict, repr=False)

    @classmethod
    def build(cls, playbooks: Sequence[Playbook], schema_version: str = "", registry_version: str = "") -> "RegistrySnapshot":
        by_id: Dict[str, Playbook] = {}
        for pb in playbooks:
            if pb.id in by_id:
                raise PlaybookValidationError(pb.id, ["duplicate playbook id"])
            by_id[pb.id] = pb
        return cls(tuple(playbooks), schema_version, registry_version, by_id)


def _errors_of(exc: ValidationError) -> List[str]:
    return [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]


def parse_playbook(raw: Mapping[str, Any]) -> Playbook:
    """Validate one raw playbook dict; malformed input raises at load time."""
    pid = str(raw.get("id", "<missing id>"))
    try:
        return Playbook.model_validate(raw)
    except ValidationError as e:
        raise PlaybookValidationError(pid, _errors_of(e)) from e


def validate_playbook_structure(raw: Mapping[str, Any]) -> Tuple[bool, List[str]]:
    """Non-raising structure check, e.g. for an admin UI."""
    errors: List[str] = []
    for key in ("id", "domain", "required_columns", "sections"):
        if key not in raw:
            errors.append(f"missing field: {key}")
    for col, typ in (raw.get("required_columns") or {}).items():
        if typ not in VALID_COLUMN_TYPES:
            errors.append(f"invalid type for column {col}: {typ}")
    if errors:
        return False, errors
    try:
        parse_playbook(raw)
    except PlaybookValidationError as e:
        return False, e.errors
    except CircularDependencyError as e:
        return False, [str(e)]
    return True, []


def load_snapshot(path: str | Path) -> RegistrySnapshot:
    p = Path(path)
    raw = json.loads(p.read_text(encoding="utf-8"))
    items = raw.get("playbooks", []) if isinstance(raw, dict) else raw
    playbooks = [parse_playbook(it) for it in items]
    snap = RegistrySnapshot.build(
        playbooks,
        schema_version=str(raw.get("schema_version", "")) if isinstance(raw, dict) else "",
        registry_version=str(raw.get("registry_version", "")) if isinstance(raw, dict) else "",
    )
    log.info("playbooks loaded", extra={"path": str(p), "count": len(playbooks),
                                        "registry_version": snap.registry_version})
    return snap


class PlaybookRegistry:
    """Read-only view over the cached playbook snapshot."""

    def __init__(
        self,
        path: str | Path = DEFAULT_PLAYBOOKS_PATH,
        ttl_seconds: float = 600.0,
        candidate_min_score: int = CANDIDATE_MIN_SCORE,
        cache: Optional[SnapshotCache[RegistrySnapshot]] = None,
    ) -> None:
        self.path = Path(path)
        self.candidate_min_score = int(candidate_min_score)
        self._cache = cache or SnapshotCache("playbook_registry", lambda: load_snapshot(self.path), ttl_seconds)

    @classmethod
    def from_config(cls, cfg: Any | None = None) -> "PlaybookRegistry":
        rc = getattr(cfg, "registry", None)
        if rc is None:
            return cls()
        return cls(rc.playbooks_path, rc.cache_ttl_seconds, rc.candidate_min_score)

    @classmethod
    def from_playbooks(cls, playbooks: Sequence[Playbook | Mapping[str, Any]], ttl_seconds: float = 600.0) -> "PlaybookRegistry":
        parsed = [pb if isinstance(pb, Playbook) else parse_playbook(pb) for pb in playbooks]
        cache = SnapshotCache("playbook_registry", lambda: RegistrySnapshot.build(parsed), ttl_seconds)
        return cls(path="<memory>", ttl_seconds=ttl_seconds, cache=cache)

    # ---- cache control ----
    def load(self) -> RegistrySnapshot:
        return self._cache.load()

    def is_stale(self) -> bool:
        return self._cache.is_stale()

    def invalidate(self) -> None:
        self._cache.invalidate()

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._cache.get()

    # ---- lookups ----
    def all(self) -> List[Playbook]:
        return list(self.snapshot.playbooks)

    def get_by_id(self, playbook_id: str) -> Optional[Playbook]:
        return self.snapshot.by_id.get(playbook_id)

    def find_by_domain(self, domain: str) -> List[Playbook]:
        d = (domain or "").strip().lower()
        return [pb for pb in self.snapshot.playbooks if pb.domain.lower() == d]

    def search(self, keyword: str) -> List[Playbook]:
        k = (keyword or "").strip().lower()
        if not k:
            return self.all()
        return [
            pb for pb in self.snapshot.playbooks
            if k in pb.id.lower() or k in pb.domain.lower() or k in pb.description.lower()
        ]

    def find_compatible(
        self,
        schema: Sequence[Any],
        score_map: Mapping[str, Any],
        min_score: Optional[int] = None,
    ) -> List[Playbook]:
        """
        Candidate discovery: playbooks whose CompatibilityResult in `score_map`
        misses no required column and scores at least `min_score` (default
        CANDIDATE_MIN_SCORE). The `compatible` flag keeps its acceptance
        meaning and is not consulted here; results are best score first.
        """
        floor = self.candidate_min_score if min_score is None else int(min_score)
        hits: List[Tuple[int, int, Playbook]] = []
        for pos, pb in enumerate(self.snapshot.playbooks):
            res = score_map.get(pb.id)
            if res is None:
                continue
            if not res.missing_required and res.score >= floor:
                hits.append((-int(res.score), pos, pb))
        hits.sort(key=lambda t: (t[0], t[1]))
        log.info("candidate playbooks", extra={
            "schema_columns": len(schema), "min_score": floor, "candidates": [h[2].id for h in hits],
        })
        return [h[2] for h in hits]

    def recommended_for_scenario(self, scenario: str) -> Optional[Playbook]:
        pid = SCENARIO_PLAYBOOKS.get((scenario or "").strip().lower())
        return self.get_by_id(pid) if pid else None

    def metadata(self) -> Dict[str, Any]:
        snap = self.snapshot
        return {
            "total_playbooks": len(snap.playbooks),
            "domains": unique_stable(pb.domain for pb in snap.playbooks),
            "schema_version": snap.schema_version,
            "registry_version": snap.registry_version,
        }

    def stats(self) -> Dict[str, Any]:
        pbs = self.snapshot.playbooks
        by_domain = {d: len(v) for d, v in group_by(lambda pb: pb.domain, pbs).items()}
        n = len(pbs) or 1
        return {
            "total": len(pbs),
            "by_domain": by_domain,
            "avg_required_columns": round(sum(len(pb.required_columns) for pb in pbs) / n, 2),
            "avg_optional_columns": round(sum(len(pb.optional_columns) for pb in pbs) / n, 2),
            "avg_metrics": round(sum(len(pb.metrics_map) for pb in pbs) / n, 2),
        }
