from __future__ import annotations

from .narrative import (
    InsightWithTracking,
    NarrativeContext,
    NarrativeOutput,
    generate_narrative,
    validate_insight,
    format_narrative_output,
)
from .hallucination import (
    HallucinationReport,
    HallucinationViolation,
    scan_for_hallucinations,
    sanitize_text,
)
from .fallback import FallbackAnalysisResult, generate_safe_exploratory_analysis, format_fallback_analysis
