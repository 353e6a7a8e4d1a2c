from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable, Dict, Optional

from ..config import AgentConfig
from ..logging_utils import log_event
from .handle import SessionHandle, SessionInfo

SessionFactory = Callable[[str], SessionHandle]


class SessionCapacityError(Exception):
    """Raised when the tracked-session cap is reached and nothing can be pruned."""


def _new_session_id() -> str:
    return f"session-{uuid.uuid4().hex[:12]}"


class SessionManager:
    """Owns zero-or-one current session plus recently closed ones."""

    def __init__(
        self,
        config: AgentConfig,
        *,
        logger: Optional[logging.Logger] = None,
        session_factory: Optional[SessionFactory] = None,
        max_sessions: Optional[int] = None,
    ) -> None:
        self._config = config
        self._logger = logger or logging.getLogger(__name__)
        self._factory = session_factory or self._default_factory
        self._max_sessions = max_sessions or config.max_sessions
        self._sessions: Dict[str, SessionHandle] = {}
        self._current_id: Optional[str] = None
        self._lock = asyncio.Lock()

    def _default_factory(self, session_id: str) -> SessionHandle:
        return SessionHandle(
            session_id,
            self._config,
            logger=self._logger,
            env={"REDLINE_RUNNER_SESSION_ID": session_id},
        )

    @property
    def max_sessions(self) -> int:
        return self._max_sessions

    @property
    def current(self) -> Optional[SessionHandle]:
        if self._current_id is None:
            return None
        return self._sessions.get(self._current_id)

    def sessions(self) -> list[SessionHandle]:
        return list(self._sessions.values())

    def session_infos(self) -> list[SessionInfo]:
        return [session.info() for session in self._sessions.values()]

    async def get_or_create(self) -> SessionHandle:
        current = self.current
        if current is not None and current.is_live:
            return current
        if current is not None and not current.state.is_terminal():
            log_event(
                self._logger,
                logging.INFO,
                "session.abandoned",
                session_id=current.id,
                state=current.state.value,
            )
            await current.terminate()
        return await self.create_fresh()

    async def create_fresh(self) -> SessionHandle:
        async with self._lock:
            if len(self._sessions) >= self._max_sessions:
                self._prune_locked()
            if len(self._sessions) >= self._max_sessions:
                raise SessionCapacityError(
                    f"Too many tracked sessions ({len(self._sessions)}/"
                    f"{self._max_sessions}); end or terminate one first"
                )
            session_id = _new_session_id()
            session = self._factory(session_id)
            self._sessions[session_id] = session
            self._current_id = session_id
        try:
            await session.start()
        except Exception:
            async with self._lock:
                self._sessions.pop(session_id, None)
                if self._current_id == session_id:
                    self._current_id = None
            raise
        log_event(
            self._logger,
            logging.INFO,
            "session_manager.created",
            session_id=session_id,
            tracked=len(self._sessions),
        )
        return session

    async def end_current(self, *, force: bool = False) -> Optional[str]:
        """End (or with `force`, terminate) the current session; returns its id."""
        async with self._lock:
            session = self.current
            self._current_id = None
        if session is None:
            return None
        if force:
            await session.terminate()
        else:
            await session.end()
        return session.id

    async def terminate_all(self) -> int:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._current_id = None
        terminated = 0
        for session in sessions:
            if session.state.is_terminal():
                continue
            try:
                await session.terminate()
                terminated += 1
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "session_manager.terminate_failed",
                    session_id=session.id,
                    exc=exc,
                )
        return terminated

    async def prune(self) -> int:
        async with self._lock:
            return self._prune_locked()

    def _prune_locked(self) -> int:
        stale = [
            session_id
            for session_id, session in self._sessions.items()
            if session.state.is_terminal() and session_id != self._current_id
        ]
        for session_id in stale:
            self._sessions.pop(session_id, None)
        if stale:
            log_event(
                self._logger,
                logging.DEBUG,
                "session_manager.pruned",
                count=len(stale),
            )
        return len(stale)
