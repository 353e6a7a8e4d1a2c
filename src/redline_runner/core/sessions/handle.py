from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel

from ..config import AgentConfig
from ..logging_utils import log_event
from ..redline.markers import extract_context_percent
from ..utils import now_iso, resolve_command, resolve_executable, subprocess_env

_READ_CHUNK_SIZE = 64 * 1024
_KILL_WAIT_SECONDS = 1.0


class SessionState(str, Enum):
    CREATING = "creating"
    READY = "ready"
    EXECUTING = "executing"
    PAUSED = "paused"
    ENDED = "ended"
    ERROR = "error"
    TERMINATED = "terminated"

    def is_terminal(self) -> bool:
        return self in {SessionState.ENDED, SessionState.TERMINATED}

    def is_live(self) -> bool:
        return self in {SessionState.READY, SessionState.EXECUTING, SessionState.PAUSED}


class SessionError(Exception):
    def __init__(self, message: str, *, session_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class SessionStartError(SessionError):
    pass


class SessionWriteError(SessionError):
    pass


class SessionTimeoutError(SessionError):
    pass


class SessionNotReadyError(SessionError):
    pass


@dataclass(frozen=True)
class SessionOutput:
    text: str
    duration_seconds: float
    completed: bool
    exit_code: Optional[int] = None
    context_usage: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.completed and (self.exit_code is None or self.exit_code == 0)


class SessionInfo(BaseModel):
    id: str
    state: SessionState
    created_at: str
    last_activity_at: str
    prompt_count: int
    execution_seconds: float
    context_usage: float
    pid: Optional[int] = None


@dataclass
class _TurnState:
    lines: list[str] = field(default_factory=list)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    marker_seen: bool = False


class SessionHandle:
    """One engagement with the external agent process.

    In `persistent` mode a single process lives for the whole session and each
    prompt is written to its stdin; a unit of work ends when the completion
    marker is printed or stdout closes. In `per_prompt` mode each unit of work
    spawns the command, feeds the prompt on stdin and reads until EOF.
    """

    def __init__(
        self,
        session_id: str,
        config: AgentConfig,
        *,
        logger: Optional[logging.Logger] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        self.id = session_id
        self._config = config
        self._logger = logger or logging.getLogger(__name__)
        self._extra_env = dict(env or {})
        self._state = SessionState.CREATING
        self._created_at = now_iso()
        self._last_activity_at = self._created_at
        self._prompt_count = 0
        self._execution_seconds = 0.0
        self._context_usage = 0.0
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._stderr_task: Optional[asyncio.Task[None]] = None
        self._turn: Optional[_TurnState] = None
        self._stream_closed = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_live(self) -> bool:
        if not self._state.is_live():
            return False
        if self._config.mode == "persistent":
            return self._process is not None and self._process.returncode is None
        return True

    @property
    def prompt_count(self) -> int:
        return self._prompt_count

    def context_usage(self) -> float:
        return self._context_usage

    def info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id,
            state=self._state,
            created_at=self._created_at,
            last_activity_at=self._last_activity_at,
            prompt_count=self._prompt_count,
            execution_seconds=round(self._execution_seconds, 3),
            context_usage=self._context_usage,
            pid=self._process.pid if self._process is not None else None,
        )

    async def start(self) -> None:
        if self._state is not SessionState.CREATING:
            raise SessionNotReadyError(
                f"Session {self.id} already started (state={self._state.value})",
                session_id=self.id,
            )
        if self._config.mode == "persistent":
            await self._spawn()
        elif resolve_executable(str(self._config.command[0])) is None:
            self._state = SessionState.ERROR
            raise SessionStartError(
                f"Agent command not found: {self._config.command[0]}",
                session_id=self.id,
            )
        self._state = SessionState.READY
        log_event(
            self._logger,
            logging.INFO,
            "session.started",
            session_id=self.id,
            mode=self._config.mode,
            pid=self._process.pid if self._process is not None else None,
        )

    async def execute(self, prompt: str) -> SessionOutput:
        async with self._lock:
            if self._state is not SessionState.READY or not self.is_live:
                raise SessionNotReadyError(
                    f"Session {self.id} is not ready (state={self._state.value})",
                    session_id=self.id,
                )
            self._state = SessionState.EXECUTING
            self._prompt_count += 1
            turn = _TurnState()
            self._turn = turn
            started = time.monotonic()
            try:
                if self._config.mode == "per_prompt":
                    await self._spawn()
                    await self._write(prompt, close=True)
                else:
                    await self._write(prompt, close=False)
                await asyncio.wait_for(
                    turn.done.wait(), timeout=self._config.response_timeout_seconds
                )
            except asyncio.TimeoutError:
                self._state = SessionState.ERROR
                log_event(
                    self._logger,
                    logging.WARNING,
                    "session.timeout",
                    session_id=self.id,
                    timeout_seconds=self._config.response_timeout_seconds,
                )
                raise SessionTimeoutError(
                    f"Session {self.id} produced no completion within "
                    f"{self._config.response_timeout_seconds:g}s",
                    session_id=self.id,
                ) from None
            except SessionError:
                self._state = SessionState.ERROR
                raise
            finally:
                self._turn = None
                duration = time.monotonic() - started
                self._execution_seconds += duration
                self._touch()

            if self._state.is_terminal():
                raise SessionError(
                    f"Session {self.id} was closed during execution",
                    session_id=self.id,
                )
            exit_code = await self._collect_exit_code()
            if self._config.mode == "persistent" and self._stream_closed:
                self._state = SessionState.ENDED
            else:
                self._state = SessionState.READY
            text = "\n".join(turn.lines)
            log_event(
                self._logger,
                logging.INFO,
                "session.executed",
                session_id=self.id,
                prompt_count=self._prompt_count,
                duration_seconds=round(duration, 3),
                output_chars=len(text),
                marker_seen=turn.marker_seen,
                exit_code=exit_code,
                context_usage=self._context_usage,
            )
            return SessionOutput(
                text=text,
                duration_seconds=duration,
                completed=turn.marker_seen or self._stream_closed,
                exit_code=exit_code,
                context_usage=self._context_usage,
            )

    async def end(self, grace_seconds: Optional[float] = None) -> None:
        """Ask the agent to exit, wait out the grace period, then force it."""
        if self._state.is_terminal():
            return
        grace = self._config.exit_grace_seconds if grace_seconds is None else grace_seconds
        process = self._process
        if process is not None and process.returncode is None:
            if self._config.mode == "persistent" and self._config.exit_instruction:
                try:
                    await self._write(self._config.exit_instruction, close=True)
                except SessionWriteError:
                    pass
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                await self._kill_process(process)
        await self._cancel_tasks()
        self._release_turn()
        self._state = SessionState.ENDED
        self._touch()
        log_event(self._logger, logging.INFO, "session.ended", session_id=self.id)

    async def terminate(self) -> None:
        if self._state is SessionState.TERMINATED:
            return
        process = self._process
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=_KILL_WAIT_SECONDS)
            except asyncio.TimeoutError:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "session.kill_timeout",
                    session_id=self.id,
                    pid=process.pid,
                )
        await self._cancel_tasks()
        self._release_turn()
        self._state = SessionState.TERMINATED
        self._touch()
        log_event(self._logger, logging.INFO, "session.terminated", session_id=self.id)

    async def _spawn(self) -> None:
        # A cancelled reader of the previous process must not release the new turn.
        self._process = None
        await self._cancel_tasks()
        command = resolve_command(self._config.command)
        env = subprocess_env({**self._config.env, **self._extra_env})
        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self._config.cwd) if self._config.cwd else None,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self._state = SessionState.ERROR
            raise SessionStartError(
                f"Failed to start agent command {command[0]!r}: {exc}",
                session_id=self.id,
            ) from exc
        self._stream_closed = False
        self._reader_task = asyncio.create_task(self._read_loop(self._process))
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))
        log_event(
            self._logger,
            logging.DEBUG,
            "session.spawned",
            session_id=self.id,
            command=command,
            pid=self._process.pid,
        )

    async def _write(self, text: str, *, close: bool) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise SessionWriteError(
                f"Session {self.id} has no process to write to", session_id=self.id
            )
        payload = text if text.endswith("\n") else text + "\n"
        try:
            process.stdin.write(payload.encode("utf-8"))
            await process.stdin.drain()
            if close:
                process.stdin.close()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
            raise SessionWriteError(
                f"Failed to write to session {self.id}: {exc}", session_id=self.id
            ) from exc
        self._touch()

    async def _read_loop(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        buffer = bytearray()
        try:
            while True:
                chunk = await process.stdout.read(_READ_CHUNK_SIZE)
                if not chunk:
                    break
                buffer.extend(chunk)
                while True:
                    newline_index = buffer.find(b"\n")
                    if newline_index == -1:
                        break
                    line = bytes(buffer[:newline_index])
                    del buffer[: newline_index + 1]
                    self._handle_line(line.decode("utf-8", errors="replace"))
            if buffer:
                self._handle_line(bytes(buffer).decode("utf-8", errors="replace"))
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "session.read.failed",
                session_id=self.id,
                exc=exc,
            )
        finally:
            if self._process is process:
                self._stream_closed = True
                self._release_turn()

    def _handle_line(self, line: str) -> None:
        line = line.rstrip("\r")
        self._touch()
        usage = extract_context_percent(line)
        if usage is not None:
            self._context_usage = usage
        turn = self._turn
        if turn is None or turn.done.is_set():
            return
        marker = self._config.completion_marker
        if marker and marker in line:
            before = line.split(marker, 1)[0]
            if before.strip():
                turn.lines.append(before)
            turn.marker_seen = True
            turn.done.set()
            return
        turn.lines.append(line)

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        if process.stderr is None:
            return
        try:
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="ignore").strip()
                if text:
                    log_event(
                        self._logger,
                        logging.DEBUG,
                        "session.stderr",
                        session_id=self.id,
                        line=text[:500],
                    )
        except (asyncio.LimitOverrunError, ValueError, OSError):
            return

    async def _collect_exit_code(self) -> Optional[int]:
        process = self._process
        if process is None:
            return None
        if self._config.mode == "per_prompt" and process.returncode is None:
            try:
                await asyncio.wait_for(
                    process.wait(), timeout=self._config.exit_grace_seconds
                )
            except asyncio.TimeoutError:
                await self._kill_process(process)
        return process.returncode

    async def _kill_process(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=_KILL_WAIT_SECONDS)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()

    async def _cancel_tasks(self) -> None:
        for attr in ("_reader_task", "_stderr_task"):
            task = getattr(self, attr)
            setattr(self, attr, None)
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _release_turn(self) -> None:
        turn = self._turn
        if turn is not None:
            turn.done.set()

    def _touch(self) -> None:
        self._last_activity_at = now_iso()
