from __future__ import annotations
from typing import Optional
from pathlib import Path
import os
from pydantic import (
    BaseModel,
    ConfigDict,
    PrivateAttr,
    model_validator,
)

# Two-stage compatibility filter: broad discovery, then strict gating.
CANDIDATE_MIN_SCORE = 60
ACCEPTANCE_MIN_SCORE = 80

_PACKAGE_DATA = Path(__file__).resolve().parents[1] / "playbooks" / "data"


# ---------- Leaf models ----------

class EnvCfg(BaseModel):
    project_name: str = "playbook-engine"


class LoggingCfg(BaseModel):
    level: str = "INFO"
    structured_json: bool = True


class RegistryCfg(BaseModel):
    playbooks_path: str = str(_PACKAGE_DATA / "playbooks.json")
    cache_ttl_seconds: float = 600.0
    candidate_min_score: int = CANDIDATE_MIN_SCORE


class SemanticCfg(BaseModel):
    dictionary_path: str = str(_PACKAGE_DATA / "semantic_dictionary.json")
    cache_ttl_seconds: float = 300.0
    fuzzy_threshold: float = 0.85


class ValidatorCfg(BaseModel):
    acceptance_min_score: int = ACCEPTANCE_MIN_SCORE
    sample_min: int = 10
    sample_fraction: float = 0.01
    enrich_sample_rows: int = 100
    excel_min_ratio: float = 90.0
    date_min_ratio: float = 85.0
    numeric_max_error_pct: float = 30.0
    bool_min_ratio: float = 90.0


class GuardrailsCfg(BaseModel):
    min_rows_default: int = 20
    temporal_min_rows: int = 24
    correlation_min_rows: int = 30
    correlation_min_numeric_cols: int = 2
    top_bottom_min_group_n: int = 10


class HallucinationCfg(BaseModel):
    max_violations: int = 5
    penalty_cap: int = 30
    weight_critical: int = 20
    weight_high: int = 10
    weight_medium: int = 5
    weight_low: int = 2


class FormulaCfg(BaseModel):
    max_depth: int = 64
    max_tokens: int = 2048


# ---------- Root ----------

class RootCfg(BaseModel):
    model_config = ConfigDict(extra="ignore")

    env: EnvCfg = EnvCfg()
    logging: LoggingCfg = LoggingCfg()
    registry: RegistryCfg = RegistryCfg()
    semantic: SemanticCfg = SemanticCfg()
    validator: ValidatorCfg = ValidatorCfg()
    guardrails: GuardrailsCfg = GuardrailsCfg()
    hallucination: HallucinationCfg = HallucinationCfg()
    formula: FormulaCfg = FormulaCfg()

    # Private attribute (not a field); used only to resolve relative paths
    _config_dir: Optional[Path] = PrivateAttr(default=None)

    @model_validator(mode="after")
    def _thresholds_ok(self):
        # discovery must never be stricter than acceptance
        if self.registry.candidate_min_score > self.validator.acceptance_min_score:
            raise ValueError(
                "registry.candidate_min_score must be <= validator.acceptance_min_score"
            )
        return self

    @model_validator(mode="after")
    def _normalize_paths(self):
        if self._config_dir:
            # config/ folder -> resolve against the project root, else the file's dir
            base_dir = self._config_dir.parent if self._config_dir.name.lower() == "config" else self._config_dir

            def _abs(p: str) -> str:
                pp = Path(p)
                return str(pp if pp.is_absolute() else (base_dir / pp).resolve())

            self.registry.playbooks_path = _abs(self.registry.playbooks_path)
            self.semantic.dictionary_path = _abs(self.semantic.dictionary_path)
        return self

    @classmethod
    def from_toml(cls, path: str | os.PathLike[str]) -> "RootCfg":
        try:
            import tomllib  # py>=3.11
        except ImportError:
            import tomli as tomllib

        p = Path(path)

        def _parse_raw_dict() -> dict:
            try:
                with p.open("rb") as f:
                    return tomllib.load(f)
            except tomllib.TOMLDecodeError:
                pass

            # Retry with BOM / zero-width prefixes stripped
            text = p.read_text(encoding="utf-8-sig", errors="replace")
            cleaned = text.strip().lstrip("\ufeff\u200b\u200c\u200d\u2060")
            try:
                return tomllib.loads(cleaned)
            except tomllib.TOMLDecodeError as e:
                snippet = cleaned[:80].replace("\n", "\\n")
                raise RuntimeError(
                    f"Failed to parse TOML at {p} after BOM/cleanup. "
                    f"First chars: {snippet!r}"
                ) from e

        raw = _parse_raw_dict()

        # --- ensure nested dicts exist ---
        for key in ("env", "logging", "registry", "semantic", "validator",
                    "guardrails", "hallucination", "formula"):
            raw.setdefault(key, {})

        cfg = cls(
            env=EnvCfg(**raw["env"]),
            logging=LoggingCfg(**raw["logging"]),
            registry=RegistryCfg(**raw["registry"]),
            semantic=SemanticCfg(**raw["semantic"]),
            validator=ValidatorCfg(**raw["validator"]),
            guardrails=GuardrailsCfg(**raw["guardrails"]),
            hallucination=HallucinationCfg(**raw["hallucination"]),
            formula=FormulaCfg(**raw["formula"]),
        )
        cfg._config_dir = p.parent.resolve()
        return cfg._normalize_paths()

    @classmethod
    def load(cls, path: str | None = None) -> "RootCfg":
        final = Path(path or os.environ.get("PLAYBOOK_CFG", "config/config.toml")).resolve()
        if not final.exists():
            # package defaults point at the bundled registry and dictionary
            return cls()
        return cls.from_toml(final)


def load_config(path: str | None = None) -> RootCfg:
    return RootCfg.load(path)
