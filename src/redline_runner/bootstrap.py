from pathlib import Path
from typing import Any, Dict

import yaml

from .core.config import CONFIG_DIRNAME, CONFIG_FILENAME, CONFIG_VERSION

GITIGNORE_CONTENT = "*\n!/.gitignore\n!/config.yml\n!/prompt.md\n"

DEFAULT_REPO_CONFIG: Dict[str, Any] = {
    "version": CONFIG_VERSION,
    "agent": {
        "command": ["claude", "--print"],
        "mode": "per_prompt",
        "response_timeout_seconds": 1800,
    },
    "prompt": {
        "file": f"{CONFIG_DIRNAME}/prompt.md",
        "carry_output_chars": 4000,
    },
    "loop": {
        "max_iterations": 100,
        "iteration_delay_seconds": 1.0,
    },
    "reboot": {
        "enabled": True,
        "mode": "graceful",
    },
    "stop_conditions": {
        "normal": [{"max_duration": 8 * 3600}, "user_signal"],
        "success": [{"output_pattern": "ALL TASKS COMPLETE"}],
        "failure": [{"failure_streak": 5}],
    },
    "notifications": {
        "enabled": False,
        "webhook_url_env": "REDLINE_RUNNER_WEBHOOK_URL",
    },
}


def sample_prompt() -> str:
    return (
        "# Task\n\n"
        "Describe the work the agent should keep doing here.\n\n"
        "This is iteration {{ITERATION}}. Pick the next unfinished item, do it, "
        "run the tests and report what changed.\n"
        "When every item is finished, print ALL TASKS COMPLETE.\n\n"
        "{{PREV_RUN_OUTPUT}}\n"
    )


def write_repo_config(repo_root: Path, force: bool = False) -> Path:
    config_path = repo_root / CONFIG_FILENAME
    if config_path.exists() and not force:
        return config_path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(DEFAULT_REPO_CONFIG, f, sort_keys=False)
    return config_path


def seed_repo_files(repo_root: Path, force: bool = False) -> Path:
    """Create `.redline-runner/` with a starter config and prompt."""
    config_dir = repo_root / CONFIG_DIRNAME
    config_dir.mkdir(parents=True, exist_ok=True)

    gitignore_path = config_dir / ".gitignore"
    if not gitignore_path.exists() or force:
        gitignore_path.write_text(GITIGNORE_CONTENT, encoding="utf-8")

    write_repo_config(repo_root, force=force)

    prompt_path = config_dir / "prompt.md"
    if not prompt_path.exists() or force:
        prompt_path.write_text(sample_prompt(), encoding="utf-8")
    return config_dir
