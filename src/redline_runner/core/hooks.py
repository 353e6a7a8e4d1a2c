from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Union

from .config import HOOK_POINTS, ConfigError
from .logging_utils import log_event
from .utils import subprocess_env

DEFAULT_HOOK_TIMEOUT_SECONDS = 60.0
_OUTPUT_LIMIT = 4000


class HookPoint(str, Enum):
    LOOP_START = "loop_start"
    LOOP_END = "loop_end"
    PRE_ITERATION = "pre_iteration"
    POST_ITERATION = "post_iteration"
    PRE_REBOOT = "pre_reboot"
    POST_REBOOT = "post_reboot"


@dataclasses.dataclass(frozen=True)
class HookResult:
    hook: str
    success: bool
    duration_seconds: float
    output: Optional[str] = None
    error: Optional[str] = None
    continue_loop: bool = True


class Hook(Protocol):
    name: str
    priority: int

    async def execute(self, context: Mapping[str, Any]) -> HookResult: ...


def _env_for_context(point: HookPoint, context: Mapping[str, Any]) -> Dict[str, str]:
    env = {"REDLINE_HOOK_POINT": point.value}
    for key, value in context.items():
        if value is None or isinstance(value, (dict, list, tuple, set)):
            continue
        env[f"REDLINE_{str(key).upper()}"] = str(value)
    return env


class CommandHook:
    """Runs a shell command; the hook context arrives as REDLINE_* env vars.

    A non-zero exit is a failure. `abort_on_failure` turns a failure into a
    veto of further iterations.
    """

    def __init__(
        self,
        command: str,
        *,
        name: Optional[str] = None,
        priority: int = 0,
        timeout_seconds: float = DEFAULT_HOOK_TIMEOUT_SECONDS,
        abort_on_failure: bool = False,
        cwd: Optional[Path] = None,
    ) -> None:
        self.command = command
        self.name = name or command
        self.priority = priority
        self.timeout_seconds = timeout_seconds
        self.abort_on_failure = abort_on_failure
        self.cwd = cwd

    async def execute(self, context: Mapping[str, Any]) -> HookResult:
        started = time.monotonic()
        point = HookPoint(context.get("hook_point", HookPoint.PRE_ITERATION.value))
        process = await asyncio.create_subprocess_shell(
            self.command,
            cwd=str(self.cwd) if self.cwd else None,
            env=subprocess_env(_env_for_context(point, context)),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return HookResult(
                hook=self.name,
                success=False,
                duration_seconds=time.monotonic() - started,
                error=f"timed out after {self.timeout_seconds:g}s",
                continue_loop=not self.abort_on_failure,
            )
        output = stdout.decode("utf-8", errors="replace")[-_OUTPUT_LIMIT:]
        success = process.returncode == 0
        return HookResult(
            hook=self.name,
            success=success,
            duration_seconds=time.monotonic() - started,
            output=output or None,
            error=None if success else f"exit code {process.returncode}",
            continue_loop=success or not self.abort_on_failure,
        )


HookCallable = Callable[
    [Mapping[str, Any]], Union[Optional[HookResult], Awaitable[Optional[HookResult]]]
]


class CallableHook:
    """Wraps a plain or async function.

    Returning None counts as success; raising counts as failure.
    """

    def __init__(
        self,
        func: HookCallable,
        *,
        name: Optional[str] = None,
        priority: int = 0,
        abort_on_failure: bool = False,
    ) -> None:
        self.func = func
        self.name = name or getattr(func, "__name__", "callable")
        self.priority = priority
        self.abort_on_failure = abort_on_failure

    async def execute(self, context: Mapping[str, Any]) -> HookResult:
        started = time.monotonic()
        try:
            result = self.func(context)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            return HookResult(
                hook=self.name,
                success=False,
                duration_seconds=time.monotonic() - started,
                error=str(exc) or type(exc).__name__,
                continue_loop=not self.abort_on_failure,
            )
        if isinstance(result, HookResult):
            return result
        return HookResult(
            hook=self.name,
            success=True,
            duration_seconds=time.monotonic() - started,
        )


class HookRunner:
    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._hooks: Dict[HookPoint, List[Hook]] = {point: [] for point in HookPoint}

    @classmethod
    def from_config(
        cls,
        hooks_cfg: Mapping[str, List[Any]],
        *,
        root: Path,
        logger: Optional[logging.Logger] = None,
    ) -> "HookRunner":
        runner = cls(logger=logger)
        for point_name in HOOK_POINTS:
            for raw in hooks_cfg.get(point_name) or []:
                runner.register(HookPoint(point_name), _parse_hook(raw, root, point_name))
        return runner

    def register(self, point: Union[HookPoint, str], hook: Hook) -> None:
        point = HookPoint(point)
        hooks = self._hooks[point]
        hooks.append(hook)
        # Stable: equal priorities keep registration order.
        hooks.sort(key=lambda h: h.priority)

    def hooks(self, point: Union[HookPoint, str]) -> List[Hook]:
        return list(self._hooks[HookPoint(point)])

    async def run_hooks(
        self, point: Union[HookPoint, str], context: Mapping[str, Any]
    ) -> List[HookResult]:
        point = HookPoint(point)
        payload = dict(context)
        payload["hook_point"] = point.value
        results: List[HookResult] = []
        for hook in self._hooks[point]:
            try:
                result = await hook.execute(payload)
            except Exception as exc:
                result = HookResult(
                    hook=getattr(hook, "name", type(hook).__name__),
                    success=False,
                    duration_seconds=0.0,
                    error=str(exc) or type(exc).__name__,
                )
            results.append(result)
            log_event(
                self._logger,
                logging.INFO if result.success else logging.WARNING,
                "hook.executed",
                point=point.value,
                hook=result.hook,
                success=result.success,
                duration_seconds=round(result.duration_seconds, 3),
                error=result.error,
                continue_loop=result.continue_loop,
            )
        return results


def all_succeeded(results: List[HookResult]) -> bool:
    return all(result.success for result in results)


def vetoed(results: List[HookResult]) -> Optional[HookResult]:
    for result in results:
        if not result.continue_loop:
            return result
    return None


def _parse_hook(raw: Any, root: Path, point: str) -> CommandHook:
    if isinstance(raw, str):
        if not raw.strip():
            raise ConfigError(f"hooks.{point} entries must be non-empty commands")
        return CommandHook(raw, cwd=root)
    if not isinstance(raw, dict) or not str(raw.get("command") or "").strip():
        raise ConfigError(f"hooks.{point} entries need a command")
    timeout = raw.get("timeout", DEFAULT_HOOK_TIMEOUT_SECONDS)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigError(f"hooks.{point} timeout must be a positive number")
    cwd_raw = raw.get("cwd")
    return CommandHook(
        str(raw["command"]),
        name=raw.get("name"),
        priority=int(raw.get("priority", 0)),
        timeout_seconds=float(timeout),
        abort_on_failure=bool(raw.get("abort_on_failure", False)),
        cwd=(root / cwd_raw) if cwd_raw else root,
    )
