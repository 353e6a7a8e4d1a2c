"""External agent session lifecycle."""

from .handle import (
    SessionError,
    SessionHandle,
    SessionInfo,
    SessionNotReadyError,
    SessionOutput,
    SessionStartError,
    SessionState,
    SessionTimeoutError,
    SessionWriteError,
)
from .manager import SessionCapacityError, SessionFactory, SessionManager

__all__ = [
    "SessionCapacityError",
    "SessionError",
    "SessionFactory",
    "SessionHandle",
    "SessionInfo",
    "SessionManager",
    "SessionNotReadyError",
    "SessionOutput",
    "SessionStartError",
    "SessionState",
    "SessionTimeoutError",
    "SessionWriteError",
]
