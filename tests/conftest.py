"""Test harness configuration.

This repo uses a `src/` layout. In some developer environments an older
installed `redline_runner` package can shadow the local sources.

Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture()
def make_config(tmp_path: Path) -> Callable[..., Any]:
    """Build a validated RunnerConfig rooted at tmp_path."""
    from redline_runner.core.config import _merge_defaults, build_config

    def _make(overrides: Optional[dict] = None):
        base = {
            "version": 1,
            "agent": {"command": [sys.executable, "-c", "pass"]},
            "prompt": {"text": "Do the next task.", "file": None},
            "loop": {"iteration_delay_seconds": 0, "pause_poll_seconds": 0.01},
            "reboot": {"enabled": False, "graceful_delay_seconds": 0},
        }
        return build_config(tmp_path, _merge_defaults(base, overrides or {}))

    return _make


@pytest.fixture()
def repo(tmp_path: Path) -> Path:
    """A directory initialized with `.redline-runner/` defaults."""
    from redline_runner.bootstrap import seed_repo_files

    seed_repo_files(tmp_path)
    return tmp_path


class FakeSession:
    """In-memory stand-in for SessionHandle driven by a FakeAgent script."""

    def __init__(self, session_id: str, agent: "FakeAgent") -> None:
        from redline_runner.core.sessions import SessionState

        self.id = session_id
        self.state = SessionState.CREATING
        self.prompts: list[str] = []
        self._agent = agent

    @property
    def is_live(self) -> bool:
        return self.state.is_live()

    def context_usage(self) -> float:
        return 0.0

    def info(self):
        from redline_runner.core.sessions import SessionInfo

        return SessionInfo(
            id=self.id,
            state=self.state,
            created_at="2026-01-01T00:00:00Z",
            last_activity_at="2026-01-01T00:00:00Z",
            prompt_count=len(self.prompts),
            execution_seconds=0.0,
            context_usage=0.0,
        )

    async def start(self) -> None:
        from redline_runner.core.sessions import SessionStartError, SessionState

        if self._agent.fail_starts > 0:
            self._agent.fail_starts -= 1
            self.state = SessionState.ERROR
            raise SessionStartError("agent refused to start", session_id=self.id)
        self.state = SessionState.READY

    async def execute(self, prompt: str):
        import asyncio

        from redline_runner.core.sessions import SessionOutput, SessionState

        self.prompts.append(prompt)
        self._agent.prompts.append(prompt)
        if self._agent.delay:
            await asyncio.sleep(self._agent.delay)
        response = self._agent.next_response()
        if isinstance(response, BaseException):
            self.state = SessionState.ERROR
            raise response
        if isinstance(response, SessionOutput):
            return response
        return SessionOutput(
            text=response, duration_seconds=0.01, completed=True, exit_code=0
        )

    async def end(self, grace_seconds: Optional[float] = None) -> None:
        from redline_runner.core.sessions import SessionState

        self.state = SessionState.ENDED

    async def terminate(self) -> None:
        from redline_runner.core.sessions import SessionState

        self.state = SessionState.TERMINATED


class FakeAgent:
    """Scripted responses shared by every FakeSession it creates."""

    def __init__(self) -> None:
        self.sessions: list[FakeSession] = []
        self.prompts: list[str] = []
        self.responses: list[Any] = []
        self.default_response = "working on it"
        self.fail_starts = 0
        self.delay = 0.0

    def factory(self, session_id: str) -> FakeSession:
        session = FakeSession(session_id, self)
        self.sessions.append(session)
        return session

    def next_response(self) -> Any:
        response = self.responses.pop(0) if self.responses else self.default_response
        return response() if callable(response) else response


@pytest.fixture()
def fake_agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture()
def fake_sessions(fake_agent: FakeAgent):
    """A SessionManager whose sessions are FakeSessions."""
    from redline_runner.core.config import AgentConfig
    from redline_runner.core.sessions import SessionManager

    return SessionManager(
        AgentConfig(command=["fake-agent"]), session_factory=fake_agent.factory
    )
