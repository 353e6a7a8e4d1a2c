import dataclasses
import json
import logging
import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional, cast

import yaml
from dotenv import load_dotenv

CONFIG_DIRNAME = ".redline-runner"
CONFIG_FILENAME = ".redline-runner/config.yml"
ROOT_CONFIG_FILENAME = "redline-runner.yml"
ROOT_OVERRIDE_FILENAME = "redline-runner.override.yml"
CONFIG_VERSION = 1

HOOK_POINTS = (
    "loop_start",
    "loop_end",
    "pre_iteration",
    "post_iteration",
    "pre_reboot",
    "post_reboot",
)
AGENT_MODES = ("per_prompt", "persistent")
REBOOT_MODES = ("graceful", "immediate")

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": CONFIG_VERSION,
    "agent": {
        "command": ["claude", "--print"],
        # per_prompt: one process per iteration, prompt on stdin, read to EOF.
        # persistent: one process per session, output read until the marker.
        "mode": "per_prompt",
        "completion_marker": "<<<REDLINE_RUNNER_DONE>>>",
        "exit_instruction": "/exit",
        "response_timeout_seconds": 1800,
        "exit_grace_seconds": 5,
        "max_sessions": 4,
        "env": {},
        "cwd": None,
    },
    "prompt": {
        "text": None,
        "file": ".redline-runner/prompt.md",
        "carry_output_chars": 4000,
    },
    "loop": {
        "max_iterations": 100,
        "iteration_delay_seconds": 1.0,
        "pause_poll_seconds": 0.5,
        "event_queue_size": 256,
    },
    "redline": {
        "context_window_tokens": 200000,
        "chars_per_token": 4,
        "sample_size": 5,
        "explicit_confidence_threshold": 0.8,
        "min_iterations_before_reboot": 1,
        "quality_drop_ratio": 0.2,
        "latency_increase_ratio": 0.5,
    },
    "reboot": {
        "enabled": True,
        "mode": "graceful",
        "graceful_delay_seconds": 2,
        "min_reboot_interval_seconds": 30,
        "max_reboots_per_hour": 10,
        "failure_cooldown_seconds": 30,
        "max_consecutive_failures": 3,
        "iteration_threshold": None,
        "duration_threshold_seconds": None,
        "output_patterns": [],
    },
    "stop_conditions": {
        "normal": [],
        "success": [],
        "failure": [],
        "parallel": False,
        "condition_timeout_seconds": 30,
        "cache_ttl_seconds": 5,
    },
    "hooks": {point: [] for point in HOOK_POINTS},
    "notifications": {
        "enabled": False,
        "events": ["completed", "failed", "safety_limit_reached"],
        "webhook_url_env": "REDLINE_RUNNER_WEBHOOK_URL",
        "timeout_seconds": 5,
    },
    "state": {
        "path": ".redline-runner/state.json",
        "stop_file": ".redline-runner/stop",
    },
    "log": {
        "path": ".redline-runner/redline-runner.log",
        "max_bytes": 10_000_000,
        "backup_count": 3,
        "level": "INFO",
    },
}


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int
    level: int = logging.INFO


@dataclasses.dataclass
class AgentConfig:
    command: List[str]
    mode: str = "per_prompt"
    completion_marker: str = "<<<REDLINE_RUNNER_DONE>>>"
    exit_instruction: str = "/exit"
    response_timeout_seconds: float = 1800.0
    exit_grace_seconds: float = 5.0
    max_sessions: int = 4
    env: Dict[str, str] = dataclasses.field(default_factory=dict)
    cwd: Optional[Path] = None


@dataclasses.dataclass
class PromptConfig:
    text: Optional[str] = None
    file: Optional[Path] = None
    carry_output_chars: int = 4000


@dataclasses.dataclass
class LoopConfig:
    max_iterations: Optional[int] = 100
    iteration_delay_seconds: float = 1.0
    pause_poll_seconds: float = 0.5
    event_queue_size: int = 256


@dataclasses.dataclass
class RedlineConfig:
    context_window_tokens: int = 200000
    chars_per_token: int = 4
    sample_size: int = 5
    explicit_confidence_threshold: float = 0.8
    min_iterations_before_reboot: int = 1
    quality_drop_ratio: float = 0.2
    latency_increase_ratio: float = 0.5


@dataclasses.dataclass
class RebootConfig:
    enabled: bool = True
    mode: str = "graceful"
    graceful_delay_seconds: float = 2.0
    min_reboot_interval_seconds: float = 30.0
    max_reboots_per_hour: int = 10
    failure_cooldown_seconds: float = 30.0
    max_consecutive_failures: int = 3
    iteration_threshold: Optional[int] = None
    duration_threshold_seconds: Optional[float] = None
    output_patterns: List[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class StopConditionsConfig:
    normal: List[Any] = dataclasses.field(default_factory=list)
    success: List[Any] = dataclasses.field(default_factory=list)
    failure: List[Any] = dataclasses.field(default_factory=list)
    parallel: bool = False
    condition_timeout_seconds: float = 30.0
    cache_ttl_seconds: float = 5.0


@dataclasses.dataclass
class RunnerConfig:
    raw: Dict[str, Any]
    root: Path
    version: int
    agent: AgentConfig
    prompt: PromptConfig
    loop: LoopConfig
    redline: RedlineConfig
    reboot: RebootConfig
    stop_conditions: StopConditionsConfig
    hooks: Dict[str, List[Any]]
    notifications: Dict[str, Any]
    state_path: Path
    stop_file: Path
    log: LogConfig

    @property
    def config_dir(self) -> Path:
        return self.root / CONFIG_DIRNAME


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = cast(Dict[str, Any], json.loads(json.dumps(base)))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml_dict(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping: {path}")
    return data


def _load_root_config(root: Path) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    base = _load_yaml_dict(root / ROOT_CONFIG_FILENAME)
    if base:
        merged = _merge_defaults(merged, base)
    override_path = root / ROOT_OVERRIDE_FILENAME
    try:
        override = _load_yaml_dict(override_path)
    except ConfigError as exc:
        raise ConfigError(
            f"Invalid override config {override_path}; fix or delete it: {exc}"
        ) from exc
    if override:
        merged = _merge_defaults(merged, override)
    return merged


def resolve_config_data(
    root: Path, overrides: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    merged = _merge_defaults(DEFAULT_CONFIG, _load_root_config(root))
    if overrides:
        merged = _merge_defaults(merged, overrides)
    return merged


def _parse_command(raw: Any) -> List[str]:
    if isinstance(raw, list):
        return [str(item) for item in raw if item]
    if isinstance(raw, str):
        return [part for part in shlex.split(raw) if part]
    return []


def _optional_number(value: Any, key: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{key} must be a number or null")
    return float(value)


def _parse_log_level(raw: Any) -> int:
    if isinstance(raw, int):
        return raw
    level = logging.getLevelName(str(raw or "INFO").upper())
    if not isinstance(level, int):
        raise ConfigError(f"log.level must be a logging level name, got {raw!r}")
    return level


def find_nearest_config_path(start: Path) -> Optional[Path]:
    """Return the closest .redline-runner/config.yml walking upward from start."""
    start = start.resolve()
    search_dir = start if start.is_dir() else start.parent
    for current in [search_dir] + list(search_dir.parents):
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def load_dotenv_for_root(root: Path) -> None:
    """Load `.env` files from deterministic locations next to the config."""
    root = root.resolve()
    for candidate in (root / ".env", root / CONFIG_DIRNAME / ".env"):
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=True)


def load_config_data(config_path: Path) -> Dict[str, Any]:
    """Load, merge, and return a raw config dict for the given config path."""
    root = config_path.parent.parent.resolve()
    load_dotenv_for_root(root)
    data = _load_yaml_dict(config_path)
    return resolve_config_data(root, data)


def load_config(start: Path) -> RunnerConfig:
    """Load the nearest config walking upward from the provided path."""
    config_path = find_nearest_config_path(start)
    if not config_path:
        raise ConfigError(
            f"Missing config file; expected to find {CONFIG_FILENAME} in {start} or parents"
        )
    merged = load_config_data(config_path)
    root = config_path.parent.parent.resolve()
    return build_config(root, merged)


def build_config(root: Path, cfg: Dict[str, Any]) -> RunnerConfig:
    """Validate a merged config mapping and build the typed config for `root`."""
    cfg = _merge_defaults(DEFAULT_CONFIG, cfg)
    _validate_config(cfg)
    agent_cfg = cfg["agent"]
    cwd_raw = agent_cfg.get("cwd")
    prompt_cfg = cfg["prompt"]
    prompt_file = prompt_cfg.get("file")
    loop_cfg = cfg["loop"]
    redline_cfg = cfg["redline"]
    reboot_cfg = cfg["reboot"]
    stop_cfg = cfg["stop_conditions"]
    log_cfg = cfg["log"]
    hooks_cfg = cfg.get("hooks") or {}
    max_iterations = loop_cfg.get("max_iterations")
    iteration_threshold = reboot_cfg.get("iteration_threshold")
    return RunnerConfig(
        raw=cfg,
        root=root,
        version=int(cfg["version"]),
        agent=AgentConfig(
            command=_parse_command(agent_cfg.get("command")),
            mode=str(agent_cfg["mode"]),
            completion_marker=str(agent_cfg["completion_marker"]),
            exit_instruction=str(agent_cfg.get("exit_instruction") or ""),
            response_timeout_seconds=float(agent_cfg["response_timeout_seconds"]),
            exit_grace_seconds=float(agent_cfg["exit_grace_seconds"]),
            max_sessions=int(agent_cfg["max_sessions"]),
            env={str(k): str(v) for k, v in (agent_cfg.get("env") or {}).items()},
            cwd=(root / cwd_raw) if cwd_raw else root,
        ),
        prompt=PromptConfig(
            text=prompt_cfg.get("text"),
            file=(root / prompt_file) if prompt_file else None,
            carry_output_chars=int(prompt_cfg.get("carry_output_chars") or 0),
        ),
        loop=LoopConfig(
            max_iterations=int(max_iterations) if max_iterations is not None else None,
            iteration_delay_seconds=float(loop_cfg["iteration_delay_seconds"]),
            pause_poll_seconds=float(loop_cfg["pause_poll_seconds"]),
            event_queue_size=int(loop_cfg["event_queue_size"]),
        ),
        redline=RedlineConfig(
            context_window_tokens=int(redline_cfg["context_window_tokens"]),
            chars_per_token=int(redline_cfg["chars_per_token"]),
            sample_size=int(redline_cfg["sample_size"]),
            explicit_confidence_threshold=float(
                redline_cfg["explicit_confidence_threshold"]
            ),
            min_iterations_before_reboot=int(
                redline_cfg["min_iterations_before_reboot"]
            ),
            quality_drop_ratio=float(redline_cfg["quality_drop_ratio"]),
            latency_increase_ratio=float(redline_cfg["latency_increase_ratio"]),
        ),
        reboot=RebootConfig(
            enabled=bool(reboot_cfg["enabled"]),
            mode=str(reboot_cfg["mode"]),
            graceful_delay_seconds=float(reboot_cfg["graceful_delay_seconds"]),
            min_reboot_interval_seconds=float(
                reboot_cfg["min_reboot_interval_seconds"]
            ),
            max_reboots_per_hour=int(reboot_cfg["max_reboots_per_hour"]),
            failure_cooldown_seconds=float(reboot_cfg["failure_cooldown_seconds"]),
            max_consecutive_failures=int(reboot_cfg["max_consecutive_failures"]),
            iteration_threshold=(
                int(iteration_threshold) if iteration_threshold is not None else None
            ),
            duration_threshold_seconds=_optional_number(
                reboot_cfg.get("duration_threshold_seconds"),
                "reboot.duration_threshold_seconds",
            ),
            output_patterns=[str(p) for p in reboot_cfg.get("output_patterns") or []],
        ),
        stop_conditions=StopConditionsConfig(
            normal=list(stop_cfg.get("normal") or []),
            success=list(stop_cfg.get("success") or []),
            failure=list(stop_cfg.get("failure") or []),
            parallel=bool(stop_cfg.get("parallel", False)),
            condition_timeout_seconds=float(stop_cfg["condition_timeout_seconds"]),
            cache_ttl_seconds=float(stop_cfg["cache_ttl_seconds"]),
        ),
        hooks={point: list(hooks_cfg.get(point) or []) for point in HOOK_POINTS},
        notifications=dict(cfg.get("notifications") or {}),
        state_path=root / cfg["state"]["path"],
        stop_file=root / cfg["state"]["stop_file"],
        log=LogConfig(
            path=root / log_cfg["path"],
            max_bytes=int(log_cfg["max_bytes"]),
            backup_count=int(log_cfg["backup_count"]),
            level=_parse_log_level(log_cfg.get("level")),
        ),
    )


def _require_mapping(cfg: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = cfg.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"{key} section must be a mapping")
    return value


def _require_positive(section: Dict[str, Any], key: str, prefix: str) -> None:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{prefix}.{key} must be a positive number")


def _require_non_negative(section: Dict[str, Any], key: str, prefix: str) -> None:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigError(f"{prefix}.{key} must be >= 0")


def _validate_config(cfg: Dict[str, Any]) -> None:
    if cfg.get("version") != CONFIG_VERSION:
        raise ConfigError(f"Unsupported config version; expected {CONFIG_VERSION}")

    agent = _require_mapping(cfg, "agent")
    if not _parse_command(agent.get("command")):
        raise ConfigError("agent.command must be a non-empty list or string")
    if agent.get("mode") not in AGENT_MODES:
        raise ConfigError(f"agent.mode must be one of {', '.join(AGENT_MODES)}")
    if not str(agent.get("completion_marker") or "").strip():
        raise ConfigError("agent.completion_marker must be a non-empty string")
    _require_positive(agent, "response_timeout_seconds", "agent")
    _require_non_negative(agent, "exit_grace_seconds", "agent")
    _require_positive(agent, "max_sessions", "agent")
    if agent.get("env") is not None and not isinstance(agent.get("env"), dict):
        raise ConfigError("agent.env must be a mapping")

    prompt = _require_mapping(cfg, "prompt")
    if not prompt.get("text") and not prompt.get("file"):
        raise ConfigError("prompt.text or prompt.file must be set")
    _require_non_negative(prompt, "carry_output_chars", "prompt")

    loop = _require_mapping(cfg, "loop")
    if loop.get("max_iterations") is not None:
        _require_positive(loop, "max_iterations", "loop")
    _require_non_negative(loop, "iteration_delay_seconds", "loop")
    _require_positive(loop, "pause_poll_seconds", "loop")
    _require_positive(loop, "event_queue_size", "loop")

    redline = _require_mapping(cfg, "redline")
    for key in ("context_window_tokens", "chars_per_token", "sample_size"):
        _require_positive(redline, key, "redline")
    _require_non_negative(redline, "min_iterations_before_reboot", "redline")
    threshold = redline.get("explicit_confidence_threshold")
    if not isinstance(threshold, (int, float)) or not 0 <= threshold <= 1:
        raise ConfigError("redline.explicit_confidence_threshold must be in [0, 1]")
    _require_non_negative(redline, "quality_drop_ratio", "redline")
    _require_non_negative(redline, "latency_increase_ratio", "redline")

    reboot = _require_mapping(cfg, "reboot")
    if reboot.get("mode") not in REBOOT_MODES:
        raise ConfigError(f"reboot.mode must be one of {', '.join(REBOOT_MODES)}")
    for key in (
        "graceful_delay_seconds",
        "min_reboot_interval_seconds",
        "failure_cooldown_seconds",
    ):
        _require_non_negative(reboot, key, "reboot")
    _require_positive(reboot, "max_reboots_per_hour", "reboot")
    _require_positive(reboot, "max_consecutive_failures", "reboot")
    if reboot.get("iteration_threshold") is not None:
        _require_positive(reboot, "iteration_threshold", "reboot")
    if reboot.get("duration_threshold_seconds") is not None:
        _require_positive(reboot, "duration_threshold_seconds", "reboot")
    if not isinstance(reboot.get("output_patterns") or [], list):
        raise ConfigError("reboot.output_patterns must be a list")

    stop = _require_mapping(cfg, "stop_conditions")
    for pool in ("normal", "success", "failure"):
        if not isinstance(stop.get(pool) or [], list):
            raise ConfigError(f"stop_conditions.{pool} must be a list")
    _require_positive(stop, "condition_timeout_seconds", "stop_conditions")
    _require_non_negative(stop, "cache_ttl_seconds", "stop_conditions")

    hooks = cfg.get("hooks") or {}
    if not isinstance(hooks, dict):
        raise ConfigError("hooks section must be a mapping")
    for point, entries in hooks.items():
        if point not in HOOK_POINTS:
            raise ConfigError(
                f"Unknown hook point '{point}'; expected one of {', '.join(HOOK_POINTS)}"
            )
        if not isinstance(entries or [], list):
            raise ConfigError(f"hooks.{point} must be a list")

    notifications = _require_mapping(cfg, "notifications")
    if not isinstance(notifications.get("events") or [], list):
        raise ConfigError("notifications.events must be a list")

    state = _require_mapping(cfg, "state")
    for key in ("path", "stop_file"):
        if not isinstance(state.get(key), str) or not state.get(key):
            raise ConfigError(f"state.{key} must be a non-empty string")
    log = _require_mapping(cfg, "log")
    if not isinstance(log.get("path"), str) or not log.get("path"):
        raise ConfigError("log.path must be a non-empty string")
    _require_positive(log, "max_bytes", "log")
    _require_non_negative(log, "backup_count", "log")
