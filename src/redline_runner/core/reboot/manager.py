from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from ..config import RebootConfig
from ..hooks import HookPoint, HookResult, HookRunner, vetoed
from ..logging_utils import log_event
from ..redline import RedlineCheckResult, RedlineDetector, RedlineLevel
from ..sessions import SessionManager
from ..utils import now_iso

HISTORY_LIMIT = 100
HOUR_SECONDS = 3600.0

RebootListener = Callable[[str, Dict[str, Any]], None]


class RebootReason(str, Enum):
    REDLINE = "redline"
    DEGRADATION = "degradation"
    ITERATION_THRESHOLD = "iteration_threshold"
    DURATION_THRESHOLD = "duration_threshold"
    OUTPUT_PATTERN = "output_pattern"
    MANUAL = "manual"


class RebootEscalationError(Exception):
    """Too many consecutive reboot failures; the run cannot continue."""

    def __init__(self, consecutive_failures: int, last_error: Optional[str] = None):
        message = f"Reboot failed {consecutive_failures} times in a row"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.consecutive_failures = consecutive_failures
        self.last_error = last_error


class RebootRateLimitedError(Exception):
    """A requested reboot was refused by the interval, cooldown or hourly limits."""

    def __init__(self, blocked_by: str):
        super().__init__(f"Reboot blocked by rate limit: {blocked_by}")
        self.blocked_by = blocked_by


@dataclass(frozen=True)
class RebootResult:
    """Outcome of one reboot attempt.

    `veto` is the first hook that asked the loop to stop; `veto_point` says
    whether it ran before or after the session swap.
    """

    success: bool
    reason: RebootReason
    old_session_id: Optional[str]
    new_session_id: Optional[str]
    duration_seconds: float
    error: Optional[str] = None
    pre_hook_results: Tuple[HookResult, ...] = ()
    post_hook_results: Tuple[HookResult, ...] = ()
    veto: Optional[HookResult] = None
    veto_point: Optional[HookPoint] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reason"] = self.reason.value
        data["pre_hook_results"] = [asdict(r) for r in self.pre_hook_results]
        data["post_hook_results"] = [asdict(r) for r in self.post_hook_results]
        data["veto_point"] = self.veto_point.value if self.veto_point else None
        return data


@dataclass(frozen=True)
class RebootHistoryEntry:
    at: float
    timestamp: str
    reason: RebootReason
    success: bool
    duration_seconds: float
    old_session_id: Optional[str] = None
    new_session_id: Optional[str] = None
    error: Optional[str] = None
    pre_hook_results: Tuple[HookResult, ...] = ()
    post_hook_results: Tuple[HookResult, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reason"] = self.reason.value
        data["pre_hook_results"] = [asdict(r) for r in self.pre_hook_results]
        data["post_hook_results"] = [asdict(r) for r in self.post_hook_results]
        return data


@dataclass(frozen=True)
class RebootStats:
    total: int
    successful: int
    failed: int
    consecutive_failures: int
    reboots_last_hour: int
    iterations_since_reboot: int
    last_reboot_at: Optional[str]


class AutoRebootManager:
    """Decides when to swap the agent session and performs the swap.

    Rate limits apply to every reboot. `manual_reboot` ignores the `enabled`
    flag and raises `RebootRateLimitedError` when a limit blocks it.
    """

    def __init__(
        self,
        config: RebootConfig,
        sessions: SessionManager,
        redline: RedlineDetector,
        *,
        hooks: Optional[HookRunner] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._redline = redline
        self._hooks = hooks
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._sleep = sleep
        self._patterns = [re.compile(p) for p in config.output_patterns]
        self._history: Deque[RebootHistoryEntry] = deque(maxlen=HISTORY_LIMIT)
        self._lock = asyncio.Lock()
        self._listeners: Set[RebootListener] = set()
        self._iterations_since_reboot = 0
        self._session_started_at = clock()
        self._last_attempt_at: Optional[float] = None
        self._consecutive_failures = 0
        self._total = 0
        self._successful = 0

    @property
    def config(self) -> RebootConfig:
        return self._config

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def iterations_since_reboot(self) -> int:
        return self._iterations_since_reboot

    def add_listener(self, listener: RebootListener) -> None:
        self._listeners.add(listener)

    def remove_listener(self, listener: RebootListener) -> None:
        self._listeners.discard(listener)

    def record_session_start(self) -> None:
        """Restart the per-session counters after an out-of-band session swap."""
        self._iterations_since_reboot = 0
        self._session_started_at = self._clock()

    def get_history(self) -> list[RebootHistoryEntry]:
        return list(self._history)

    def stats(self) -> RebootStats:
        last_success = next(
            (entry for entry in reversed(self._history) if entry.success), None
        )
        return RebootStats(
            total=self._total,
            successful=self._successful,
            failed=self._total - self._successful,
            consecutive_failures=self._consecutive_failures,
            reboots_last_hour=self._successes_within_hour(),
            iterations_since_reboot=self._iterations_since_reboot,
            last_reboot_at=last_success.timestamp if last_success else None,
        )

    async def check_and_reboot(
        self, redline_result: Optional[RedlineCheckResult], output: str = ""
    ) -> Optional[RebootResult]:
        """Called once per iteration; returns a result only when a reboot ran."""
        self._raise_if_escalated(None)
        self._iterations_since_reboot += 1
        if not self._config.enabled:
            return None
        reason = self._determine_reason(redline_result, output)
        if reason is None:
            return None
        blocked = self._rate_limit_reason()
        if blocked is not None:
            log_event(
                self._logger,
                logging.INFO,
                "reboot.rate_limited",
                reason=reason.value,
                blocked_by=blocked,
            )
            return None
        return await self._perform(reason)

    async def manual_reboot(self) -> RebootResult:
        self._raise_if_escalated(None)
        blocked = self._rate_limit_reason()
        if blocked is not None:
            log_event(
                self._logger,
                logging.INFO,
                "reboot.rate_limited",
                reason=RebootReason.MANUAL.value,
                blocked_by=blocked,
            )
            raise RebootRateLimitedError(blocked)
        return await self._perform(RebootReason.MANUAL)

    def _determine_reason(
        self, result: Optional[RedlineCheckResult], output: str
    ) -> Optional[RebootReason]:
        if result is not None and result.recommendation.wants_reboot:
            if result.is_redline or result.level.at_least(RedlineLevel.WARNING):
                return RebootReason.REDLINE
            if result.degradation_detected:
                return RebootReason.DEGRADATION
        threshold = self._config.iteration_threshold
        if threshold is not None and self._iterations_since_reboot >= threshold:
            return RebootReason.ITERATION_THRESHOLD
        duration = self._config.duration_threshold_seconds
        if duration is not None and self._clock() - self._session_started_at >= duration:
            return RebootReason.DURATION_THRESHOLD
        if output and any(pattern.search(output) for pattern in self._patterns):
            return RebootReason.OUTPUT_PATTERN
        return None

    def _successes_within_hour(self) -> int:
        cutoff = self._clock() - HOUR_SECONDS
        return sum(1 for entry in self._history if entry.success and entry.at > cutoff)

    def _rate_limit_reason(self) -> Optional[str]:
        now = self._clock()
        if self._last_attempt_at is not None:
            since = now - self._last_attempt_at
            if since < self._config.min_reboot_interval_seconds:
                return "min_interval"
            cooldown = self._config.failure_cooldown_seconds * self._consecutive_failures
            if since < cooldown:
                return "failure_cooldown"
        if self._successes_within_hour() >= self._config.max_reboots_per_hour:
            return "hourly_cap"
        return None

    def _raise_if_escalated(self, last_error: Optional[str]) -> None:
        limit = self._config.max_consecutive_failures
        if limit > 0 and self._consecutive_failures >= limit:
            raise RebootEscalationError(self._consecutive_failures, last_error)

    def _notify(self, event: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "reboot.listener_failed",
                    listener_event=event,
                    exc=exc,
                )

    async def _run_hooks(
        self, point: HookPoint, context: Dict[str, Any]
    ) -> List[HookResult]:
        if self._hooks is None:
            return []
        return await self._hooks.run_hooks(point, context)

    async def _perform(self, reason: RebootReason) -> RebootResult:
        async with self._lock:
            started = self._clock()
            self._last_attempt_at = started
            current = self._sessions.current
            old_session_id = current.id if current is not None else None
            hook_context = {
                "reason": reason.value,
                "session_id": old_session_id,
                "iterations_since_reboot": self._iterations_since_reboot,
            }
            log_event(
                self._logger,
                logging.INFO,
                "reboot.started",
                reason=reason.value,
                session_id=old_session_id,
            )
            self._notify("reboot_started", {"reason": reason.value})

            new_session_id: Optional[str] = None
            post_results: List[HookResult] = []
            veto_point: Optional[HookPoint] = None
            pre_results = await self._run_hooks(HookPoint.PRE_REBOOT, hook_context)
            veto = vetoed(pre_results)
            error = _hook_failures(pre_results)
            if error is not None:
                error = f"pre-reboot hook failed: {error}"
            elif veto is not None:
                error = f"pre-reboot hook {veto.hook} stopped the loop"
            if veto is not None:
                veto_point = HookPoint.PRE_REBOOT
            if error is None:
                if self._config.mode == "graceful" and self._config.graceful_delay_seconds > 0:
                    await self._sleep(self._config.graceful_delay_seconds)
                try:
                    await self._sessions.end_current()
                    session = await self._sessions.create_fresh()
                    new_session_id = session.id
                except Exception as exc:
                    error = f"session swap failed: {exc}"

            success = error is None
            if success:
                post_results = await self._run_hooks(
                    HookPoint.POST_REBOOT,
                    {**hook_context, "new_session_id": new_session_id},
                )
                post_error = _hook_failures(post_results)
                if post_error is not None:
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "reboot.post_hook_failed",
                        error=post_error,
                    )
                veto = vetoed(post_results)
                if veto is not None:
                    veto_point = HookPoint.POST_REBOOT
                self._iterations_since_reboot = 0
                self._session_started_at = self._clock()
                self._consecutive_failures = 0
                self._successful += 1
                self._redline.reset()
            elif veto is None:
                # A vetoed attempt ends the run; it is not a reboot failure.
                self._consecutive_failures += 1
            self._total += 1

            result = RebootResult(
                success=success,
                reason=reason,
                old_session_id=old_session_id,
                new_session_id=new_session_id,
                duration_seconds=self._clock() - started,
                error=error,
                pre_hook_results=tuple(pre_results),
                post_hook_results=tuple(post_results),
                veto=veto,
                veto_point=veto_point,
            )
            self._history.append(
                RebootHistoryEntry(
                    at=started,
                    timestamp=now_iso(),
                    reason=reason,
                    success=success,
                    duration_seconds=result.duration_seconds,
                    old_session_id=old_session_id,
                    new_session_id=new_session_id,
                    error=error,
                    pre_hook_results=result.pre_hook_results,
                    post_hook_results=result.post_hook_results,
                )
            )
            log_event(
                self._logger,
                logging.INFO if success else logging.WARNING,
                "reboot.finished",
                reason=reason.value,
                success=success,
                old_session_id=old_session_id,
                new_session_id=new_session_id,
                error=error,
                consecutive_failures=self._consecutive_failures,
            )
            self._notify(
                "reboot_finished",
                {"reason": reason.value, "success": success, "error": error},
            )
        if not success and veto is None:
            self._raise_if_escalated(error)
        return result


def _hook_failures(results: List[HookResult]) -> Optional[str]:
    failed = [result for result in results if not result.success]
    if not failed:
        return None
    return "; ".join(f"{r.hook}: {r.error or 'failed'}" for r in failed)

