from __future__ import annotations

# Public API re-exports (keep small & stable)
from .config_model.model import (
    ACCEPTANCE_MIN_SCORE,
    CANDIDATE_MIN_SCORE,
    RootCfg,
    load_config,
)
from .errors import (
    CircularDependencyError,
    FormulaError,
    PlaybookEngineError,
    PlaybookValidationError,
)
from .nlp.schema import Column
from .pipeline import AnalysisOutcome, run_analysis
from .playbooks.registry import PlaybookRegistry

__version__ = "0.1.0"

__all__ = [
    "ACCEPTANCE_MIN_SCORE", "CANDIDATE_MIN_SCORE", "RootCfg", "load_config",
    "PlaybookEngineError", "PlaybookValidationError", "CircularDependencyError", "FormulaError",
    "Column", "AnalysisOutcome", "run_analysis", "PlaybookRegistry",
]
