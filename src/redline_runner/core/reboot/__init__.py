"""Automatic session reboots."""

from .manager import (
    HISTORY_LIMIT,
    AutoRebootManager,
    RebootEscalationError,
    RebootRateLimitedError,
    RebootHistoryEntry,
    RebootListener,
    RebootReason,
    RebootResult,
    RebootStats,
)

__all__ = [
    "HISTORY_LIMIT",
    "AutoRebootManager",
    "RebootEscalationError",
    "RebootRateLimitedError",
    "RebootHistoryEntry",
    "RebootListener",
    "RebootReason",
    "RebootResult",
    "RebootStats",
]
