from __future__ import annotations

import asyncio
import collections
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar, Union

from ..config import LoopConfig, RunnerConfig
from ..hooks import HookPoint, HookRunner, vetoed
from ..logging_utils import log_event
from ..notifications import NotificationManager
from ..progress import ProgressSummary, ProgressTracker
from ..reboot import (
    AutoRebootManager,
    RebootEscalationError,
    RebootRateLimitedError,
    RebootResult,
)
from ..redline import RedlineCheckResult, RedlineDetector
from ..sessions import SessionCapacityError, SessionError, SessionFactory, SessionManager
from ..stop import EvaluationResult, StopConditionEvaluator, StopContext
from ..utils import now_iso
from .events import EventBroadcaster, EventSubscription
from .models import LoopCommand, LoopEventType, LoopSnapshot, LoopState, LoopStats
from .prompt import PromptBuildError, PromptBuilder, prompt_builder
from .transitions import (
    InvalidTransitionError,
    LoopTrigger,
    is_allowed,
    next_state,
    validate_command,
)

T = TypeVar("T")

SNAPSHOT_OUTPUT_CHARS = 4000


class _ShutdownRequested(Exception):
    pass


def _new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


class LoopRunner:
    """Drives the agent through iterations until a stop condition ends the run.

    One control task per run. Counters and the current state live behind a
    single lock so `stats_snapshot` and `current_state` are coherent from any
    thread. Commands are validated when sent and applied at the next
    iteration boundary.
    """

    def __init__(
        self,
        *,
        sessions: SessionManager,
        redline: RedlineDetector,
        reboot: AutoRebootManager,
        evaluator: StopConditionEvaluator,
        prompt_builder: PromptBuilder,
        loop_config: Optional[LoopConfig] = None,
        hooks: Optional[HookRunner] = None,
        notifications: Optional[NotificationManager] = None,
        progress: Optional[ProgressTracker] = None,
        working_dir: Optional[Path] = None,
        stop_file: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sessions = sessions
        self._redline = redline
        self._reboot = reboot
        self._evaluator = evaluator
        self._build_prompt = prompt_builder
        self._loop_config = loop_config or LoopConfig()
        self._hooks = hooks or HookRunner(logger=logger)
        self._notifications = notifications
        self._progress = progress or ProgressTracker()
        self._working_dir = working_dir or Path.cwd()
        self._stop_file = stop_file
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock

        self._lock = threading.Lock()
        self._state = LoopState.IDLE
        self._stats = LoopStats()
        self._run_id: Optional[str] = None
        self._stop_reason: Optional[str] = None
        self._restored = False

        self._events = EventBroadcaster(queue_size=self._loop_config.event_queue_size)
        self._commands: Deque[LoopCommand] = collections.deque()
        self._wakeup = asyncio.Event()
        self._shutdown = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._started_at = clock()
        self._last_output: Optional[str] = None
        self._last_error: Optional[str] = None
        self._last_summary: Optional[ProgressSummary] = None
        self._last_redline: Optional[RedlineCheckResult] = None
        self._last_evaluation: Optional[EvaluationResult] = None
        self._session_id: Optional[str] = None
        self._skip_next = False

        self._reboot.add_listener(self._on_reboot_event)

    @classmethod
    def from_config(
        cls,
        config: RunnerConfig,
        *,
        logger: Optional[logging.Logger] = None,
        session_factory: Optional[SessionFactory] = None,
        notifications: Optional[NotificationManager] = None,
    ) -> "LoopRunner":
        logger = logger or logging.getLogger(__name__)
        hooks = HookRunner.from_config(config.hooks, root=config.root, logger=logger)
        sessions = SessionManager(
            config.agent, logger=logger, session_factory=session_factory
        )
        redline = RedlineDetector(config.redline, logger=logger)
        reboot = AutoRebootManager(
            config.reboot, sessions, redline, hooks=hooks, logger=logger
        )
        evaluator = StopConditionEvaluator.from_config(config.stop_conditions, logger=logger)
        return cls(
            sessions=sessions,
            redline=redline,
            reboot=reboot,
            evaluator=evaluator,
            prompt_builder=prompt_builder(config.prompt, config.agent),
            loop_config=config.loop,
            hooks=hooks,
            notifications=notifications
            or NotificationManager(
                config.notifications, logger=logger, label=config.root.name
            ),
            working_dir=config.root,
            stop_file=config.stop_file,
            logger=logger,
        )

    # Public API

    @property
    def run_id(self) -> Optional[str]:
        return self._run_id

    @property
    def stop_reason(self) -> Optional[str]:
        with self._lock:
            return self._stop_reason

    @property
    def last_evaluation(self) -> Optional[EvaluationResult]:
        return self._last_evaluation

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def reboot_manager(self) -> AutoRebootManager:
        return self._reboot

    def current_state(self) -> LoopState:
        with self._lock:
            return self._state

    def stats_snapshot(self) -> LoopStats:
        with self._lock:
            return self._stats.model_copy()

    def subscribe_events(self) -> EventSubscription:
        return self._events.subscribe()

    def snapshot(self) -> LoopSnapshot:
        current = self._sessions.current
        with self._lock:
            return LoopSnapshot(
                state=self._state,
                run_id=self._run_id,
                iteration=self._stats.iterations,
                session_id=current.id if current is not None else self._session_id,
                stats=self._stats.model_copy(),
                condition_progress=self._evaluator.overall_progress(),
                stop_reason=self._stop_reason,
                last_output=(self._last_output or "")[-SNAPSHOT_OUTPUT_CHARS:] or None,
                updated_at=now_iso(),
            )

    def restore(self, snapshot: LoopSnapshot) -> None:
        """Load a persisted snapshot; the next `start` continues its counters."""
        with self._lock:
            if self._task is not None and not self._task.done():
                raise InvalidTransitionError(
                    self._state, "restore", "Cannot restore while a run is active"
                )
            # An interrupted run comes back as stopped so it can be started.
            self._state = (
                LoopState.STOPPED if snapshot.state.is_active() else snapshot.state
            )
            self._run_id = snapshot.run_id
            self._stats = snapshot.stats.model_copy()
            self._stop_reason = snapshot.stop_reason
            self._restored = True
        self._last_output = snapshot.last_output
        self._session_id = snapshot.session_id
        log_event(
            self._logger,
            logging.INFO,
            "loop.restored",
            run_id=snapshot.run_id,
            state=snapshot.state.value,
            iteration=snapshot.iteration,
        )

    async def start(self) -> str:
        with self._lock:
            if self._task is not None and not self._task.done():
                raise InvalidTransitionError(self._state, "start", "Run already active")
            if not self._state.can_start():
                raise InvalidTransitionError(self._state, LoopTrigger.START.value)
            if self._restored and self._run_id:
                run_id = self._run_id
            else:
                run_id = _new_run_id()
                self._stats = LoopStats()
                self._last_output = None
            self._restored = False
            self._run_id = run_id
            self._stop_reason = None
            self._stats.started_at = now_iso()
        self._commands.clear()
        self._shutdown.clear()
        self._wakeup.clear()
        self._events.reopen()
        self._last_error = None
        self._last_summary = None
        self._last_evaluation = None
        self._skip_next = False
        self._progress.reset()
        await self._evaluator.clear_cache()
        self._clear_stop_file()
        self._started_at = self._clock()
        self._transition(LoopTrigger.START)
        self._publish(LoopEventType.RUN_STARTED, {"run_id": run_id})
        log_event(self._logger, logging.INFO, "loop.started", run_id=run_id)
        self._notify("started", {"run_id": run_id})
        self._task = asyncio.create_task(self._control_loop())
        return run_id

    async def wait(self) -> LoopState:
        if self._task is not None:
            await self._task
        return self.current_state()

    async def run(self) -> LoopState:
        await self.start()
        return await self.wait()

    def send_command(self, command: Union[LoopCommand, str]) -> None:
        command = LoopCommand(command)
        state = self.current_state()
        try:
            validate_command(state, command)
        except InvalidTransitionError as exc:
            self._publish(
                LoopEventType.COMMAND_REJECTED,
                {"command": command.value, "state": state.value, "error": str(exc)},
            )
            log_event(
                self._logger,
                logging.INFO,
                "loop.command_rejected",
                command=command.value,
                state=state.value,
            )
            raise
        if command is LoopCommand.STOP and state in (LoopState.IDLE, LoopState.PAUSED):
            self._transition(LoopTrigger.STOP, reason="stopped by command")
            self._publish(
                LoopEventType.COMMAND_ACCEPTED,
                {"command": command.value, "applied": True},
            )
            self._wakeup.set()
            return
        self._commands.append(command)
        self._publish(
            LoopEventType.COMMAND_ACCEPTED, {"command": command.value, "applied": False}
        )
        self._wakeup.set()

    async def shutdown(self) -> None:
        """Stop now: skip stop evaluation and force-terminate every session."""
        self._shutdown.set()
        self._wakeup.set()
        if not self.current_state().is_terminal():
            self._transition(LoopTrigger.STOP, reason="shutdown requested")
        task = self._task
        if task is not None and not task.done():
            await task
        else:
            await self._terminate_sessions()
        self._events.close()

    # Control loop

    async def _control_loop(self) -> None:
        run_id = self._run_id
        try:
            results = await self._hooks.run_hooks(
                HookPoint.LOOP_START, self._hook_context()
            )
            veto = vetoed(results)
            if veto is not None:
                self._veto(veto.hook, HookPoint.LOOP_START)
            while True:
                if self._shutdown.is_set():
                    break
                await self._service_commands()
                state = self.current_state()
                if state.is_terminal():
                    break
                if state is LoopState.PAUSED:
                    await self._interruptible_wait(self._loop_config.pause_poll_seconds)
                    continue
                if self._iteration_cap_reached():
                    break
                if await self._stop_requested():
                    break
                if self._skip_next:
                    self._skip_next = False
                    with self._lock:
                        self._stats.skipped += 1
                    self._publish(
                        LoopEventType.ITERATION_SKIPPED,
                        {"iteration": self._stats.iterations + 1},
                    )
                    await self._interruptible_wait(
                        self._loop_config.iteration_delay_seconds
                    )
                    continue
                results = await self._hooks.run_hooks(
                    HookPoint.PRE_ITERATION, self._hook_context()
                )
                veto = vetoed(results)
                if veto is not None:
                    self._veto(veto.hook, HookPoint.PRE_ITERATION)
                    break
                await self._run_iteration()
                if self.current_state().is_terminal():
                    break
                results = await self._hooks.run_hooks(
                    HookPoint.POST_ITERATION, self._hook_context()
                )
                veto = vetoed(results)
                if veto is not None:
                    self._veto(veto.hook, HookPoint.POST_ITERATION)
                    break
                await self._interruptible_wait(self._loop_config.iteration_delay_seconds)
        except _ShutdownRequested:
            pass
        except RebootEscalationError as exc:
            self._finish(LoopTrigger.FAIL, f"reboot escalation: {exc}")
            self._notify("safety_limit_reached", {"run_id": run_id, "reason": str(exc)})
        except PromptBuildError as exc:
            self._finish(LoopTrigger.FAIL, f"prompt error: {exc}")
        except Exception as exc:
            log_event(
                self._logger, logging.ERROR, "loop.crashed", run_id=run_id, exc=exc
            )
            self._finish(LoopTrigger.FAIL, f"internal error: {exc!r}")
        finally:
            await self._finalize(run_id)

    async def _finalize(self, run_id: Optional[str]) -> None:
        if self._shutdown.is_set():
            await self._terminate_sessions()
        else:
            try:
                await self._sessions.end_current()
            except Exception as exc:
                log_event(
                    self._logger, logging.WARNING, "loop.session_end_failed", exc=exc
                )
                await self._terminate_sessions()
            try:
                await self._hooks.run_hooks(HookPoint.LOOP_END, self._hook_context())
            except Exception as exc:
                log_event(self._logger, logging.WARNING, "loop.end_hooks_failed", exc=exc)
        state = self.current_state()
        if not state.is_terminal():
            # Exited without a classification; treat as stopped.
            self._finish(LoopTrigger.STOP, "control loop exited")
            state = self.current_state()
        stats = self.stats_snapshot()
        reason = self.stop_reason
        self._publish(
            LoopEventType.RUN_FINISHED,
            {
                "state": state.value,
                "stop_reason": reason,
                "stats": stats.model_dump(mode="json"),
            },
        )
        log_event(
            self._logger,
            logging.INFO,
            "loop.finished",
            run_id=run_id,
            state=state.value,
            stop_reason=reason,
            iterations=stats.iterations,
        )
        trigger = {
            LoopState.COMPLETED: "completed",
            LoopState.ERROR: "failed",
            LoopState.STOPPED: "stopped",
        }.get(state)
        if trigger:
            self._notify(
                trigger,
                {"run_id": run_id, "stop_reason": reason, "iterations": stats.iterations},
            )

    async def _service_commands(self) -> None:
        while self._commands:
            command = self._commands.popleft()
            state = self.current_state()
            try:
                validate_command(state, command)
            except InvalidTransitionError as exc:
                self._publish(
                    LoopEventType.COMMAND_REJECTED,
                    {"command": command.value, "state": state.value, "error": str(exc)},
                )
                continue
            if command is LoopCommand.PAUSE:
                self._transition(LoopTrigger.PAUSE)
            elif command is LoopCommand.RESUME:
                self._transition(LoopTrigger.RESUME)
            elif command is LoopCommand.STOP:
                self._transition(LoopTrigger.STOP, reason="stopped by command")
                self._commands.clear()
                return
            elif command is LoopCommand.SKIP_ITERATION:
                self._skip_next = True
            elif command is LoopCommand.FORCE_REBOOT:
                try:
                    result = await self._guard(self._reboot.manual_reboot())
                except RebootRateLimitedError as exc:
                    self._publish(
                        LoopEventType.COMMAND_REJECTED,
                        {
                            "command": command.value,
                            "state": state.value,
                            "error": str(exc),
                        },
                    )
                    log_event(
                        self._logger,
                        logging.INFO,
                        "loop.command_rejected",
                        command=command.value,
                        state=state.value,
                        blocked_by=exc.blocked_by,
                    )
                    continue
                self._apply_reboot_veto(result)

    def _iteration_cap_reached(self) -> bool:
        cap = self._loop_config.max_iterations
        if cap is None:
            return False
        with self._lock:
            iterations = self._stats.iterations
        if iterations < cap:
            return False
        self._finish(LoopTrigger.COMPLETE, f"iteration cap reached ({cap})")
        self._notify(
            "safety_limit_reached",
            {"run_id": self._run_id, "reason": f"iteration cap reached ({cap})"},
        )
        return True

    async def _stop_requested(self) -> bool:
        context = self._stop_context()
        evaluation = await self._guard(self._evaluator.evaluate(context))
        self._last_evaluation = evaluation
        self._publish(
            LoopEventType.STOP_EVALUATED,
            {
                "should_stop": evaluation.should_stop,
                "triggered_by": (
                    evaluation.triggered_by.describe() if evaluation.triggered_by else None
                ),
                "is_success": evaluation.is_success,
                "progress": self._evaluator.overall_progress(),
            },
        )
        if evaluation.should_stop and evaluation.triggered_by is not None:
            label = evaluation.triggered_by.describe()
            if evaluation.is_success is False:
                self._finish(
                    LoopTrigger.FAIL,
                    f"failure condition met: {label} ({evaluation.reason})",
                )
            else:
                self._finish(
                    LoopTrigger.COMPLETE,
                    f"stop condition met: {label} ({evaluation.reason})",
                )
            return True
        if context.user_signal:
            self._clear_stop_file()
            self._finish(LoopTrigger.STOP, "stop requested via stop file")
            return True
        return False

    async def _run_iteration(self) -> None:
        with self._lock:
            iteration = self._stats.iterations + 1
        self._publish(LoopEventType.ITERATION_STARTED, {"iteration": iteration})
        try:
            prompt = self._build_prompt(iteration, self._last_output)
        except PromptBuildError:
            raise
        except Exception as exc:
            raise PromptBuildError(str(exc)) from exc

        started = self._clock()
        session_id: Optional[str] = None
        try:
            session = await self._guard(self._sessions.get_or_create())
            session_id = session.id
            if session.id != self._session_id:
                if self._session_id is not None:
                    self._reboot.record_session_start()
                    self._redline.reset()
                self._session_id = session.id
            output = await self._guard(session.execute(prompt))
        except (SessionError, SessionCapacityError) as exc:
            duration = self._clock() - started
            self._record_outcome(
                iteration, duration, succeeded=False, error=str(exc), session_id=session_id
            )
            await self._discard_session()
            return

        duration = self._clock() - started
        text = output.text
        self._last_output = text
        summary = self._progress.analyze(text)
        self._last_summary = summary
        error = None
        if not output.succeeded:
            error = (
                f"agent exited with code {output.exit_code}"
                if output.exit_code not in (None, 0)
                else "agent output ended without a completion signal"
            )
        self._record_outcome(
            iteration,
            duration,
            succeeded=error is None,
            error=error,
            session_id=session_id,
            summary=summary,
        )

        result = self._redline.check(text, latency=duration)
        self._last_redline = result
        self._publish(
            LoopEventType.REDLINE_CHECKED,
            {"iteration": iteration, **result.to_dict()},
        )
        reboot = await self._guard(self._reboot.check_and_reboot(result, text))
        self._apply_reboot_veto(reboot)

    def _apply_reboot_veto(self, result: Optional[RebootResult]) -> None:
        if result is not None and result.veto is not None:
            self._veto(result.veto.hook, result.veto_point or HookPoint.POST_REBOOT)

    def _record_outcome(
        self,
        iteration: int,
        duration: float,
        *,
        succeeded: bool,
        error: Optional[str],
        session_id: Optional[str],
        summary: Optional[ProgressSummary] = None,
    ) -> None:
        failing = summary.failing_tests if summary is not None else None
        with self._lock:
            stats = self._stats
            stats.iterations = iteration
            stats.busy_seconds += duration
            stats.last_iteration_at = now_iso()
            if succeeded:
                stats.successes += 1
            else:
                stats.failures += 1
            if not succeeded or (failing is not None and failing > 0):
                stats.consecutive_failures += 1
            else:
                stats.consecutive_failures = 0
            if summary is not None and summary.made_progress:
                stats.no_progress_streak = 0
            else:
                stats.no_progress_streak += 1
        self._last_error = error
        data: Dict[str, Any] = {
            "iteration": iteration,
            "duration_seconds": round(duration, 3),
            "session_id": session_id,
        }
        if summary is not None:
            data["made_progress"] = summary.made_progress
            data["failing_tests"] = summary.failing_tests
        if error:
            data["error"] = error
        self._publish(
            LoopEventType.ITERATION_SUCCEEDED if succeeded else LoopEventType.ITERATION_FAILED,
            data,
        )
        log_event(
            self._logger,
            logging.INFO if succeeded else logging.WARNING,
            "loop.iteration",
            run_id=self._run_id,
            iteration=iteration,
            succeeded=succeeded,
            duration_seconds=round(duration, 3),
            session_id=session_id,
            error=error,
        )

    async def _discard_session(self) -> None:
        try:
            await self._sessions.end_current(force=True)
        except Exception as exc:
            log_event(self._logger, logging.WARNING, "loop.session_discard_failed", exc=exc)

    def _stop_context(self) -> StopContext:
        summary = self._last_summary
        with self._lock:
            stats = self._stats.model_copy()
        return StopContext(
            iteration=stats.iterations,
            elapsed_seconds=self._clock() - self._started_at,
            consecutive_failures=stats.consecutive_failures,
            no_progress_streak=stats.no_progress_streak,
            failing_tests=summary.failing_tests if summary else None,
            total_tests=summary.total_tests if summary else None,
            passed_tests=frozenset(summary.passed_names) if summary else frozenset(),
            recent_output=self._last_output or "",
            last_error=self._last_error,
            user_signal=self._stop_file is not None and self._stop_file.exists(),
            working_dir=self._working_dir,
        )

    # Helpers

    async def _guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless shutdown fires first."""
        task = asyncio.ensure_future(awaitable)
        shutdown = asyncio.ensure_future(self._shutdown.wait())
        try:
            done, _ = await asyncio.wait(
                {task, shutdown}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            shutdown.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        raise _ShutdownRequested()

    async def _interruptible_wait(self, seconds: float) -> None:
        if self._shutdown.is_set():
            raise _ShutdownRequested()
        if seconds > 0 and not self._commands:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        self._wakeup.clear()
        if self._shutdown.is_set():
            raise _ShutdownRequested()

    def _transition(self, trigger: LoopTrigger, *, reason: Optional[str] = None) -> LoopState:
        with self._lock:
            previous = self._state
            target = next_state(previous, trigger)
            self._state = target
            if reason is not None:
                self._stop_reason = reason
        self._publish(
            LoopEventType.STATE_CHANGED,
            {
                "from": previous.value,
                "to": target.value,
                "trigger": trigger.value,
                "reason": reason,
            },
        )
        log_event(
            self._logger,
            logging.INFO,
            "loop.state_changed",
            run_id=self._run_id,
            from_state=previous.value,
            to_state=target.value,
            reason=reason,
        )
        return target

    def _finish(self, trigger: LoopTrigger, reason: Optional[str] = None) -> None:
        if is_allowed(self.current_state(), trigger):
            self._transition(trigger, reason=reason)

    def _veto(self, hook: str, point: HookPoint) -> None:
        self._publish(LoopEventType.HOOK_VETO, {"hook": hook, "point": point.value})
        self._finish(LoopTrigger.STOP, f"{point.value} hook {hook} vetoed continuation")

    def _on_reboot_event(self, event: str, payload: Dict[str, Any]) -> None:
        if event == "reboot_started":
            self._finish(LoopTrigger.REBOOT)
            self._publish(LoopEventType.REBOOT_STARTED, dict(payload))
            return
        if event != "reboot_finished":
            return
        if payload.get("success"):
            with self._lock:
                self._stats.reboots += 1
            current = self._sessions.current
            self._session_id = current.id if current is not None else None
        self._finish(LoopTrigger.REBOOT_DONE)
        self._publish(LoopEventType.REBOOT_FINISHED, dict(payload))
        if payload.get("success"):
            self._notify("rebooted", {"run_id": self._run_id, **payload})

    def _publish(self, event_type: LoopEventType, data: Dict[str, Any]) -> None:
        self._events.publish(event_type, run_id=self._run_id, data=data)

    def _notify(self, trigger: str, data: Dict[str, Any]) -> None:
        if self._notifications is None:
            return
        try:
            self._notifications.notify(trigger, data)
        except Exception as exc:
            log_event(self._logger, logging.WARNING, "loop.notify_failed", exc=exc)

    def _hook_context(self) -> Dict[str, Any]:
        stats = self.stats_snapshot()
        return {
            "run_id": self._run_id,
            "state": self.current_state().value,
            "iteration": stats.iterations,
            "consecutive_failures": stats.consecutive_failures,
            "session_id": self._session_id,
            "working_dir": str(self._working_dir),
        }

    async def _terminate_sessions(self) -> None:
        try:
            await self._sessions.terminate_all()
        except Exception as exc:
            log_event(self._logger, logging.WARNING, "loop.terminate_failed", exc=exc)

    def _clear_stop_file(self) -> None:
        if self._stop_file is not None:
            self._stop_file.unlink(missing_ok=True)
