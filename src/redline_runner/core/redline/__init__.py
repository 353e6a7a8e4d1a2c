"""Context-capacity detection."""

from .detector import (
    ContextSample,
    Recommendation,
    RedlineCheckResult,
    RedlineDetector,
    RedlineLevel,
    level_for,
    quality_score,
)
from .markers import extract_context_percent

__all__ = [
    "ContextSample",
    "Recommendation",
    "RedlineCheckResult",
    "RedlineDetector",
    "RedlineLevel",
    "extract_context_percent",
    "level_for",
    "quality_score",
]
