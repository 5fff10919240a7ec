"""Confidence scoring shared by fast and full extraction.

A level is always derived from its numeric confidence; callers never set one
independently. Aggregates are the arithmetic mean over *present* values only, so
a field or section the model did not return never drags the overall score down.
"""
from __future__ import annotations

from typing import Any, Iterable

HIGH = "high"
MEDIUM = "medium"
LOW = "low"

HIGH_THRESHOLD = 0.8
MEDIUM_THRESHOLD = 0.5


def level_for(confidence: float) -> str:
    if confidence >= HIGH_THRESHOLD:
        return HIGH
    if confidence >= MEDIUM_THRESHOLD:
        return MEDIUM
    return LOW


def aggregate(confidences: Iterable[float]) -> float:
    """Mean of the given confidences, 0.0 when there are none. Result is clamped to [0, 1]."""
    values = [float(c) for c in confidences]
    if not values:
        return 0.0
    return max(0.0, min(1.0, sum(values) / len(values)))


def extracted_field(value: Any, confidence: float) -> dict:
    """{value, confidence, level}. A missing value always carries confidence 0 / level low."""
    if value is None:
        return {"value": None, "confidence": 0.0, "level": LOW}
    return {"value": value, "confidence": confidence, "level": level_for(confidence)}


def is_present(field: dict | None) -> bool:
    return bool(field) and field.get("value") is not None


def section_present(section: dict | None) -> bool:
    """A section counts only if at least one of its fields (other than confidence) has a value."""
    if not section:
        return False
    for key, value in section.items():
        if key == "confidence":
            continue
        if value not in (None, "", [], {}):
            return True
    return False


def is_low_confidence(overall: float | None, threshold: float = 0.6) -> bool:
    """Advisory flag shown to the reviewer. Never blocks review or apply."""
    if overall is None:
        return False
    return overall < threshold


def low_confidence_sections(extracted: dict | None, threshold: float = 0.7) -> list[str]:
    """Names of full-extraction sections present with confidence below threshold."""
    if not extracted:
        return []
    out = []
    for name in ("patient", "gp", "referrer", "referral_context"):
        section = extracted.get(name)
        if not section_present(section):
            continue
        if float(section.get("confidence") or 0.0) < threshold:
            out.append(name)
    return out
