# accessaudit/audit/grader.py
"""
Accessibility health scoring.

The score is a weighted penalty ratio: every counted item contributes its
severity weight, and the result is compared against the worst case where
every item was critical.

    penalty     = critical*10 + serious*5 + moderate*2 + minor*1
    max_penalty = total * 10
    score       = round(100 - penalty / max_penalty * 100)

No items means a perfect 100.
"""
import math
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from ..schemas import SEVERITIES, Severity

SEVERITY_WEIGHTS = {
    Severity.CRITICAL.value: 10,
    Severity.SERIOUS.value: 5,
    Severity.MODERATE.value: 2,
    Severity.MINOR.value: 1,
}


# ------------------------------
# Data Models
# ------------------------------
class HealthReport(BaseModel):
    score: int = Field(..., ge=0, le=100)
    label: str
    grade: str
    model_config = ConfigDict(from_attributes=True)


def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def _count(counts: Any, key: str) -> int:
    if isinstance(counts, Mapping):
        value = counts.get(key, 0)
    else:
        value = getattr(counts, key, 0)
    return int(value or 0)


def weighted_penalty(counts: Any) -> int:
    return sum(_count(counts, s.value) * SEVERITY_WEIGHTS[s.value] for s in SEVERITIES)


def calculate_health_score(counts: Any) -> int:
    """Score 0..100 from per-severity counts (mapping or object with attributes)."""
    total = sum(_count(counts, s.value) for s in SEVERITIES)
    if total <= 0:
        return 100
    max_penalty = total * SEVERITY_WEIGHTS[Severity.CRITICAL.value]
    score = 100 - (weighted_penalty(counts) / max_penalty) * 100
    # half-up, so 42.5 scores 43
    return int(math.floor(_clamp(score, 0.0, 100.0) + 0.5))


def score_counts_for(summary: Any) -> Mapping[str, int]:
    """
    Counts used for scoring: unique patterns per severity when the summary
    carries them, raw occurrences otherwise.
    """
    patterns = summary.get("patterns") if isinstance(summary, Mapping) else getattr(summary, "patterns", None)
    if patterns is not None and sum(_count(patterns, s.value) for s in SEVERITIES) > 0:
        source = patterns
    else:
        source = summary
    return {s.value: _count(source, s.value) for s in SEVERITIES}


def health_label(score: int) -> str:
    if score >= 90:
        return "Excellent"
    if score >= 70:
        return "Good"
    if score >= 50:
        return "Fair"
    return "Critical"


def compute_grade(score: float) -> str:
    if score >= 90: return "A+"
    if score >= 80: return "A"
    if score >= 70: return "B"
    if score >= 60: return "C"
    if score >= 50: return "D"
    return "E"


def grade_summary(summary: Any) -> HealthReport:
    score = calculate_health_score(score_counts_for(summary))
    return HealthReport(score=score, label=health_label(score), grade=compute_grade(score))
