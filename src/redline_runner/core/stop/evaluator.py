from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from ..config import StopConditionsConfig
from ..logging_utils import log_event
from ..utils import subprocess_env
from .conditions import (
    CACHEABLE_KINDS,
    AllOf,
    AllTestsPass,
    AnyOf,
    CustomScript,
    FailureStreak,
    FileContains,
    FileCreated,
    MaxDuration,
    MaxIterations,
    Never,
    NoProgress,
    Not,
    OnError,
    OutputPattern,
    SpecificTestsPass,
    StopCondition,
    StopContext,
    UserSignal,
    leaves,
    parse_conditions,
    priority,
)


class ConditionPool(str, Enum):
    NORMAL = "normal"
    SUCCESS = "success"
    FAILURE = "failure"

    @property
    def is_success(self) -> Optional[bool]:
        if self is ConditionPool.SUCCESS:
            return True
        if self is ConditionPool.FAILURE:
            return False
        return None


_POOL_ORDER = {ConditionPool.NORMAL: 0, ConditionPool.SUCCESS: 1, ConditionPool.FAILURE: 2}


@dataclass(frozen=True)
class StopConditionResult:
    condition: StopCondition
    met: bool
    reason: str
    progress: float = 0.0
    pool: Optional[ConditionPool] = None
    # Leaf that decided a met composite; None for leaves.
    leaf: Optional[StopCondition] = None

    @property
    def triggered_leaf(self) -> StopCondition:
        return self.leaf if self.leaf is not None else self.condition

    def to_dict(self) -> dict:
        return {
            "condition": self.condition.describe(),
            "met": self.met,
            "reason": self.reason,
            "progress": round(self.progress, 4),
            "pool": self.pool.value if self.pool is not None else None,
            "leaf": self.leaf.describe() if self.leaf is not None else None,
        }


@dataclass(frozen=True)
class EvaluationResult:
    """`triggered_by` is always a leaf; `trigger` is the pool entry that held it."""

    should_stop: bool
    triggered_by: Optional[StopCondition]
    is_success: Optional[bool]
    condition_results: list[StopConditionResult] = field(default_factory=list)
    duration_seconds: float = 0.0
    trigger: Optional[StopCondition] = None
    reason: Optional[str] = None


def _ratio(value: float, limit: float) -> float:
    if limit <= 0:
        return 1.0
    return max(0.0, min(1.0, value / limit))


@dataclass
class _CacheEntry:
    result: StopConditionResult
    expires_at: float


class StopConditionEvaluator:
    """Evaluates the configured condition pools once per iteration."""

    def __init__(
        self,
        *,
        normal: Iterable[StopCondition] = (),
        success: Iterable[StopCondition] = (),
        failure: Iterable[StopCondition] = (),
        parallel: bool = False,
        condition_timeout_seconds: float = 30.0,
        cache_ttl_seconds: float = 5.0,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        entries = [(ConditionPool.NORMAL, c) for c in normal]
        entries += [(ConditionPool.SUCCESS, c) for c in success]
        entries += [(ConditionPool.FAILURE, c) for c in failure]
        self._entries = sorted(
            entries, key=lambda item: (priority(item[1]), _POOL_ORDER[item[0]])
        )
        self._parallel = parallel
        self._timeout = condition_timeout_seconds
        self._cache_ttl = cache_ttl_seconds
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._cache: Dict[StopCondition, _CacheEntry] = {}
        self._cache_lock = asyncio.Lock()
        self._last_progress = 0.0

    @classmethod
    def from_config(
        cls,
        config: StopConditionsConfig,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> "StopConditionEvaluator":
        return cls(
            normal=parse_conditions(config.normal, pool="normal"),
            success=parse_conditions(config.success, pool="success"),
            failure=parse_conditions(config.failure, pool="failure"),
            parallel=config.parallel,
            condition_timeout_seconds=config.condition_timeout_seconds,
            cache_ttl_seconds=config.cache_ttl_seconds,
            logger=logger,
        )

    @property
    def conditions(self) -> list[tuple[ConditionPool, StopCondition]]:
        return list(self._entries)

    def overall_progress(self) -> float:
        """Highest progress any leaf reported during the last evaluation."""
        return self._last_progress

    async def clear_cache(self) -> None:
        async with self._cache_lock:
            self._cache.clear()

    async def evaluate(self, context: StopContext) -> EvaluationResult:
        started = time.monotonic()
        leaf_progress: list[float] = []
        if self._parallel:
            results = await self._evaluate_parallel(context, leaf_progress)
        else:
            results = await self._evaluate_sequential(context, leaf_progress)

        triggered: Optional[StopConditionResult] = None
        for result in results:
            if result.met:
                triggered = result
                break
        self._last_progress = max(leaf_progress, default=0.0)
        duration = time.monotonic() - started
        if triggered is not None:
            log_event(
                self._logger,
                logging.INFO,
                "stop.triggered",
                condition=triggered.triggered_leaf.describe(),
                entry=triggered.condition.describe(),
                pool=triggered.pool.value if triggered.pool else None,
                reason=triggered.reason,
                iteration=context.iteration,
            )
        return EvaluationResult(
            should_stop=triggered is not None,
            triggered_by=triggered.triggered_leaf if triggered else None,
            is_success=(
                triggered.pool.is_success
                if triggered is not None and triggered.pool is not None
                else None
            ),
            condition_results=results,
            duration_seconds=duration,
            trigger=triggered.condition if triggered else None,
            reason=triggered.reason if triggered else None,
        )

    async def _evaluate_sequential(
        self, context: StopContext, leaf_progress: list[float]
    ) -> list[StopConditionResult]:
        results: list[StopConditionResult] = []
        for pool, condition in self._entries:
            result = await self._evaluate_safely(condition, context, leaf_progress)
            results.append(_with_pool(result, pool))
            if result.met:
                break
        return results

    async def _evaluate_parallel(
        self, context: StopContext, leaf_progress: list[float]
    ) -> list[StopConditionResult]:
        async def _bounded(condition: StopCondition) -> StopConditionResult:
            try:
                return await asyncio.wait_for(
                    self._evaluate_safely(condition, context, leaf_progress),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "stop.condition_timeout",
                    condition=condition.describe(),
                    timeout_seconds=self._timeout,
                )
                return StopConditionResult(
                    condition, False, f"timed out after {self._timeout:g}s"
                )

        gathered = await asyncio.gather(
            *(_bounded(condition) for _, condition in self._entries)
        )
        return [
            _with_pool(result, pool)
            for (pool, _), result in zip(self._entries, gathered)
        ]

    async def _evaluate_safely(
        self,
        condition: StopCondition,
        context: StopContext,
        leaf_progress: list[float],
    ) -> StopConditionResult:
        try:
            return await self._evaluate(condition, context, leaf_progress)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "stop.condition_error",
                condition=condition.describe(),
                exc=exc,
            )
            return StopConditionResult(condition, False, f"evaluation failed: {exc}")

    async def _evaluate(
        self,
        condition: StopCondition,
        context: StopContext,
        leaf_progress: list[float],
    ) -> StopConditionResult:
        if isinstance(condition, AllOf):
            children = [
                await self._evaluate_safely(child, context, leaf_progress)
                for child in condition.children
            ]
            met = all(child.met for child in children)
            progress = sum(child.progress for child in children) / len(children)
            reason = (
                "all of: " + "; ".join(child.reason for child in children)
                if met
                else f"{sum(c.met for c in children)}/{len(children)} met"
            )
            return StopConditionResult(
                condition,
                met,
                reason,
                progress,
                leaf=children[0].triggered_leaf if met else None,
            )
        if isinstance(condition, AnyOf):
            best = 0.0
            for child in condition.children:
                result = await self._evaluate_safely(child, context, leaf_progress)
                best = max(best, result.progress)
                if result.met:
                    return StopConditionResult(
                        condition,
                        True,
                        f"any of: {result.reason}",
                        best,
                        leaf=result.triggered_leaf,
                    )
            return StopConditionResult(condition, False, "none met", best)
        if isinstance(condition, Not):
            inner = await self._evaluate_safely(condition.child, context, leaf_progress)
            met = not inner.met
            # A met Not reports the first leaf of the subtree it negates.
            return StopConditionResult(
                condition,
                met,
                f"not ({inner.reason})",
                1.0 if met else 0.0,
                leaf=leaves(condition.child)[0] if met else None,
            )

        if condition.kind in CACHEABLE_KINDS and self._cache_ttl > 0:
            cached = await self._cache_get(condition)
            if cached is not None:
                leaf_progress.append(cached.progress)
                return cached
            result = await self._evaluate_leaf(condition, context)
            await self._cache_put(condition, result)
        else:
            result = await self._evaluate_leaf(condition, context)
        leaf_progress.append(result.progress)
        return result

    async def _cache_get(self, condition: StopCondition) -> Optional[StopConditionResult]:
        async with self._cache_lock:
            entry = self._cache.get(condition)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                self._cache.pop(condition, None)
                return None
            return entry.result

    async def _cache_put(
        self, condition: StopCondition, result: StopConditionResult
    ) -> None:
        async with self._cache_lock:
            self._cache[condition] = _CacheEntry(
                result=result, expires_at=self._clock() + self._cache_ttl
            )

    async def _evaluate_leaf(
        self, condition: StopCondition, context: StopContext
    ) -> StopConditionResult:
        if isinstance(condition, MaxIterations):
            met = context.iteration >= condition.count
            return StopConditionResult(
                condition,
                met,
                f"iteration {context.iteration}/{condition.count}",
                _ratio(context.iteration, condition.count),
            )
        if isinstance(condition, MaxDuration):
            met = context.elapsed_seconds >= condition.seconds
            return StopConditionResult(
                condition,
                met,
                f"elapsed {context.elapsed_seconds:.0f}s/{condition.seconds:g}s",
                _ratio(context.elapsed_seconds, condition.seconds),
            )
        if isinstance(condition, FailureStreak):
            met = context.consecutive_failures >= condition.count
            return StopConditionResult(
                condition,
                met,
                f"{context.consecutive_failures} consecutive failures",
                _ratio(context.consecutive_failures, condition.count),
            )
        if isinstance(condition, NoProgress):
            met = context.no_progress_streak >= condition.iterations
            return StopConditionResult(
                condition,
                met,
                f"no progress for {context.no_progress_streak} iterations",
                _ratio(context.no_progress_streak, condition.iterations),
            )
        if isinstance(condition, AllTestsPass):
            total = context.total_tests or 0
            failing = context.failing_tests
            if failing is None or total <= 0:
                return StopConditionResult(condition, False, "no test results yet")
            met = failing == 0
            return StopConditionResult(
                condition,
                met,
                f"{total - failing}/{total} tests passing",
                _ratio(total - failing, total),
            )
        if isinstance(condition, SpecificTestsPass):
            passed = [name for name in condition.tests if name in context.passed_tests]
            met = len(passed) == len(condition.tests)
            return StopConditionResult(
                condition,
                met,
                f"{len(passed)}/{len(condition.tests)} named tests passing",
                _ratio(len(passed), len(condition.tests)),
            )
        if isinstance(condition, OutputPattern):
            met = re.search(condition.pattern, context.recent_output or "") is not None
            reason = (
                f"output matched {condition.pattern!r}"
                if met
                else f"output did not match {condition.pattern!r}"
            )
            return StopConditionResult(condition, met, reason, 1.0 if met else 0.0)
        if isinstance(condition, FileCreated):
            path = _resolve(context.working_dir, condition.path)
            met = path.exists()
            reason = f"{condition.path} exists" if met else f"{condition.path} missing"
            return StopConditionResult(condition, met, reason, 1.0 if met else 0.0)
        if isinstance(condition, FileContains):
            return await asyncio.to_thread(_file_contains, condition, context.working_dir)
        if isinstance(condition, OnError):
            met = context.last_error is not None
            reason = f"error: {context.last_error}" if met else "no error"
            return StopConditionResult(condition, met, reason, 1.0 if met else 0.0)
        if isinstance(condition, UserSignal):
            met = context.user_signal
            reason = "stop signal received" if met else "no stop signal"
            return StopConditionResult(condition, met, reason, 1.0 if met else 0.0)
        if isinstance(condition, CustomScript):
            return await self._run_script(condition, context)
        if isinstance(condition, Never):
            return StopConditionResult(condition, False, "never stops")
        raise TypeError(f"Unsupported stop condition: {condition!r}")

    async def _run_script(
        self, condition: CustomScript, context: StopContext
    ) -> StopConditionResult:
        env = subprocess_env(
            {
                "REDLINE_ITERATION": str(context.iteration),
                "REDLINE_ELAPSED_SECONDS": f"{context.elapsed_seconds:.0f}",
            }
        )
        process = await asyncio.create_subprocess_shell(
            condition.command,
            cwd=str(context.working_dir),
            env=env,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            code = await asyncio.wait_for(
                process.wait(), timeout=condition.timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            log_event(
                self._logger,
                logging.WARNING,
                "stop.script_timeout",
                command=condition.command,
                timeout_seconds=condition.timeout_seconds,
            )
            return StopConditionResult(
                condition, False, f"script timed out after {condition.timeout_seconds:g}s"
            )
        except asyncio.CancelledError:
            process.kill()
            raise
        met = code == 0
        return StopConditionResult(
            condition, met, f"script exited {code}", 1.0 if met else 0.0
        )


def _resolve(working_dir: Path, raw: str) -> Path:
    path = Path(raw).expanduser()
    return path if path.is_absolute() else working_dir / path


def _file_contains(condition: FileContains, working_dir: Path) -> StopConditionResult:
    path = _resolve(working_dir, condition.path)
    if not path.exists():
        return StopConditionResult(condition, False, f"{condition.path} missing")
    text = path.read_text(encoding="utf-8", errors="replace")
    met = re.search(condition.pattern, text) is not None
    reason = (
        f"{condition.path} matched {condition.pattern!r}"
        if met
        else f"{condition.path} did not match {condition.pattern!r}"
    )
    return StopConditionResult(condition, met, reason, 1.0 if met else 0.0)


def _with_pool(result: StopConditionResult, pool: ConditionPool) -> StopConditionResult:
    return replace(result, pool=pool)
