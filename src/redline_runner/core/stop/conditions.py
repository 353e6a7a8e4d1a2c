"""Declarative stop conditions.

Conditions are frozen, hashable values so a condition doubles as its own cache
key. Composites own their children as tuples.

YAML forms accepted by `parse_condition`::

    - max_iterations: 50
    - max_duration: 3600          # seconds
    - failure_streak: 3
    - tests_all_pass              # bare string for argument-less kinds
    - specific_tests_pass: [tests/test_api.py::test_create]
    - no_progress: 5
    - file_created: build/DONE
    - file_contains: {path: NOTES.md, pattern: "status: shipped"}
    - output_pattern: "ALL TASKS COMPLETE"
    - on_error
    - custom_script: {command: "make check", timeout: 60}
    - user_signal
    - never
    - all: [...]
    - any: [...]
    - not: {...}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Optional, Union

from ..config import ConfigError


@dataclass(frozen=True)
class StopContext:
    """Snapshot of run history handed to every condition."""

    iteration: int = 0
    elapsed_seconds: float = 0.0
    consecutive_failures: int = 0
    no_progress_streak: int = 0
    failing_tests: Optional[int] = None
    total_tests: Optional[int] = None
    passed_tests: frozenset = field(default_factory=frozenset)
    recent_output: str = ""
    last_error: Optional[str] = None
    user_signal: bool = False
    working_dir: Path = field(default_factory=Path.cwd)


@dataclass(frozen=True)
class MaxIterations:
    kind: ClassVar[str] = "max_iterations"
    count: int

    def describe(self) -> str:
        return f"MaxIterations({self.count})"


@dataclass(frozen=True)
class MaxDuration:
    kind: ClassVar[str] = "max_duration"
    seconds: float

    def describe(self) -> str:
        return f"MaxDuration({self.seconds:g}s)"


@dataclass(frozen=True)
class FailureStreak:
    kind: ClassVar[str] = "failure_streak"
    count: int

    def describe(self) -> str:
        return f"FailureStreak({self.count})"


@dataclass(frozen=True)
class AllTestsPass:
    kind: ClassVar[str] = "tests_all_pass"

    def describe(self) -> str:
        return "TestsAllPass"


@dataclass(frozen=True)
class SpecificTestsPass:
    kind: ClassVar[str] = "specific_tests_pass"
    tests: tuple[str, ...]

    def describe(self) -> str:
        return f"SpecificTestsPass({', '.join(self.tests)})"


@dataclass(frozen=True)
class NoProgress:
    kind: ClassVar[str] = "no_progress"
    iterations: int

    def describe(self) -> str:
        return f"NoProgress({self.iterations})"


@dataclass(frozen=True)
class FileCreated:
    kind: ClassVar[str] = "file_created"
    path: str

    def describe(self) -> str:
        return f"FileCreated({self.path})"


@dataclass(frozen=True)
class FileContains:
    kind: ClassVar[str] = "file_contains"
    path: str
    pattern: str

    def describe(self) -> str:
        return f"FileContains({self.path}, {self.pattern!r})"


@dataclass(frozen=True)
class OutputPattern:
    kind: ClassVar[str] = "output_pattern"
    pattern: str

    def describe(self) -> str:
        return f"OutputPattern({self.pattern!r})"


@dataclass(frozen=True)
class OnError:
    kind: ClassVar[str] = "on_error"

    def describe(self) -> str:
        return "OnError"


@dataclass(frozen=True)
class CustomScript:
    kind: ClassVar[str] = "custom_script"
    command: str
    timeout_seconds: float = 60.0

    def describe(self) -> str:
        return f"CustomScript({self.command!r})"


@dataclass(frozen=True)
class UserSignal:
    kind: ClassVar[str] = "user_signal"

    def describe(self) -> str:
        return "UserSignal"


@dataclass(frozen=True)
class Never:
    kind: ClassVar[str] = "never"

    def describe(self) -> str:
        return "Never"


@dataclass(frozen=True)
class AllOf:
    kind: ClassVar[str] = "all"
    children: tuple["StopCondition", ...]

    def describe(self) -> str:
        return f"All({', '.join(c.describe() for c in self.children)})"


@dataclass(frozen=True)
class AnyOf:
    kind: ClassVar[str] = "any"
    children: tuple["StopCondition", ...]

    def describe(self) -> str:
        return f"Any({', '.join(c.describe() for c in self.children)})"


@dataclass(frozen=True)
class Not:
    kind: ClassVar[str] = "not"
    child: "StopCondition"

    def describe(self) -> str:
        return f"Not({self.child.describe()})"


StopCondition = Union[
    MaxIterations,
    MaxDuration,
    FailureStreak,
    AllTestsPass,
    SpecificTestsPass,
    NoProgress,
    FileCreated,
    FileContains,
    OutputPattern,
    OnError,
    CustomScript,
    UserSignal,
    Never,
    AllOf,
    AnyOf,
    Not,
]

COMPOSITE_KINDS = frozenset({"all", "any", "not"})
# Context-independent kinds whose results may be reused for a short TTL.
CACHEABLE_KINDS = frozenset({"file_created", "file_contains", "custom_script"})

_PRIORITY = {
    "on_error": 0,
    "user_signal": 0,
    "max_iterations": 1,
    "max_duration": 1,
    "failure_streak": 2,
    "no_progress": 2,
    "tests_all_pass": 3,
    "specific_tests_pass": 3,
    "output_pattern": 4,
    "file_created": 4,
    "file_contains": 4,
    "custom_script": 5,
    "all": 6,
    "any": 6,
    "not": 6,
    "never": 7,
}


def priority(condition: StopCondition) -> int:
    return _PRIORITY[condition.kind]


def is_composite(condition: StopCondition) -> bool:
    return condition.kind in COMPOSITE_KINDS


def leaves(condition: StopCondition) -> list[StopCondition]:
    if isinstance(condition, (AllOf, AnyOf)):
        out: list[StopCondition] = []
        for child in condition.children:
            out.extend(leaves(child))
        return out
    if isinstance(condition, Not):
        return leaves(condition.child)
    return [condition]


_BARE_KINDS = {
    "tests_all_pass": AllTestsPass,
    "on_error": OnError,
    "user_signal": UserSignal,
    "never": Never,
}


def _positive_int(value: Any, kind: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{kind} expects a positive integer, got {value!r}")
    return value


def _positive_number(value: Any, kind: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{kind} expects a positive number, got {value!r}")
    return float(value)


def _non_empty_str(value: Any, kind: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{kind} expects a non-empty string, got {value!r}")
    return value


def _children(value: Any, kind: str) -> tuple[StopCondition, ...]:
    if not isinstance(value, list) or not value:
        raise ConfigError(f"{kind} expects a non-empty list of conditions")
    return tuple(parse_condition(item) for item in value)


def parse_condition(raw: Any) -> StopCondition:
    """Build a condition from its YAML form; raises ConfigError when invalid."""
    if isinstance(raw, str):
        factory = _BARE_KINDS.get(raw.strip())
        if factory is None:
            raise ConfigError(f"Unknown stop condition {raw!r}")
        return factory()
    if not isinstance(raw, dict) or len(raw) != 1:
        raise ConfigError(
            f"Stop condition must be a name or a single-key mapping, got {raw!r}"
        )
    kind, value = next(iter(raw.items()))
    kind = str(kind).strip()
    if kind in _BARE_KINDS:
        return _BARE_KINDS[kind]()
    if kind == "max_iterations":
        return MaxIterations(_positive_int(value, kind))
    if kind == "max_duration":
        return MaxDuration(_positive_number(value, kind))
    if kind == "failure_streak":
        return FailureStreak(_positive_int(value, kind))
    if kind == "no_progress":
        return NoProgress(_positive_int(value, kind))
    if kind == "specific_tests_pass":
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list) or not value:
            raise ConfigError("specific_tests_pass expects a non-empty list of names")
        return SpecificTestsPass(tuple(_non_empty_str(v, kind) for v in value))
    if kind == "file_created":
        return FileCreated(_non_empty_str(value, kind))
    if kind == "file_contains":
        if not isinstance(value, dict):
            raise ConfigError("file_contains expects {path, pattern}")
        return FileContains(
            _non_empty_str(value.get("path"), kind),
            _non_empty_str(value.get("pattern"), kind),
        )
    if kind == "output_pattern":
        return OutputPattern(_non_empty_str(value, kind))
    if kind == "custom_script":
        if isinstance(value, str):
            return CustomScript(_non_empty_str(value, kind))
        if not isinstance(value, dict):
            raise ConfigError("custom_script expects a command or {command, timeout}")
        timeout = value.get("timeout", 60)
        return CustomScript(
            _non_empty_str(value.get("command"), kind),
            _positive_number(timeout, kind),
        )
    if kind == "all":
        return AllOf(_children(value, kind))
    if kind == "any":
        return AnyOf(_children(value, kind))
    if kind == "not":
        return Not(parse_condition(value))
    raise ConfigError(f"Unknown stop condition kind {kind!r}")


def parse_conditions(raw: Any, *, pool: str = "conditions") -> list[StopCondition]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"stop_conditions.{pool} must be a list")
    return [parse_condition(item) for item in raw]
