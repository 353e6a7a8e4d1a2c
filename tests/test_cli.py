import asyncio
import sys
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from redline_runner.cli import _request_shutdown, app
from redline_runner.core.config import CONFIG_FILENAME

runner = CliRunner()

ECHO_AGENT = [
    sys.executable,
    "-c",
    "import sys; sys.stdin.read(); print('did a thing')",
]


def _write_config(root: Path, **sections) -> None:
    payload = {
        "version": 1,
        "agent": {"command": ECHO_AGENT, "response_timeout_seconds": 30},
        "prompt": {"text": "Iteration {{ITERATION}}", "file": None},
        "loop": {"iteration_delay_seconds": 0, "pause_poll_seconds": 0.01},
        "reboot": {"enabled": False},
        "stop_conditions": {"normal": [], "success": [], "failure": []},
    }
    payload.update(sections)
    path = root / CONFIG_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


def test_init_seeds_repo(tmp_path: Path):
    result = runner.invoke(app, ["init", str(tmp_path)])

    assert result.exit_code == 0
    config_dir = tmp_path / ".redline-runner"
    assert (config_dir / "config.yml").exists()
    assert (config_dir / "prompt.md").exists()
    assert (config_dir / ".gitignore").exists()


def test_init_keeps_existing_config_unless_forced(tmp_path: Path):
    config_path = tmp_path / CONFIG_FILENAME
    config_path.parent.mkdir(parents=True)
    config_path.write_text("version: 1\n", encoding="utf-8")

    runner.invoke(app, ["init", str(tmp_path)])
    assert config_path.read_text(encoding="utf-8") == "version: 1\n"

    runner.invoke(app, ["init", str(tmp_path), "--force"])
    assert "stop_conditions" in config_path.read_text(encoding="utf-8")


def test_status_without_runs(repo: Path):
    result = runner.invoke(app, ["status", "--repo", str(repo)])

    assert result.exit_code == 0
    assert "State: idle (no runs recorded)" in result.stdout


def test_stop_writes_stop_file(repo: Path):
    result = runner.invoke(app, ["stop", "--repo", str(repo)])

    assert result.exit_code == 0
    assert (repo / ".redline-runner" / "stop").exists()

    status = runner.invoke(app, ["status", "--repo", str(repo)])
    assert status.exit_code == 0


def test_missing_config_exits_nonzero(tmp_path: Path):
    result = runner.invoke(app, ["status", "--repo", str(tmp_path)])

    assert result.exit_code == 1


def test_run_until_iteration_cap_and_report_status(tmp_path: Path):
    _write_config(tmp_path)

    result = runner.invoke(
        app, ["run", "--repo", str(tmp_path), "--max-iterations", "1"]
    )

    assert result.exit_code == 0, result.output
    assert "completed after 1 iterations" in result.stdout
    assert "iteration cap reached (1)" in result.stdout

    status = runner.invoke(app, ["status", "--repo", str(tmp_path)])
    assert "State: completed" in status.stdout
    assert "Iterations: 1" in status.stdout
    assert "Successes: 1" in status.stdout
    assert (tmp_path / ".redline-runner" / "redline-runner.log").exists()


def test_run_stops_on_success_pattern(tmp_path: Path):
    _write_config(
        tmp_path,
        stop_conditions={"success": [{"output_pattern": "did a thing"}]},
    )

    result = runner.invoke(app, ["run", "--repo", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert "completed after 1 iterations" in result.stdout


def test_run_with_failing_agent_exits_nonzero(tmp_path: Path):
    _write_config(
        tmp_path,
        agent={"command": [sys.executable, "-c", "import sys; sys.exit(2)"]},
        stop_conditions={"failure": [{"failure_streak": 2}]},
    )

    result = runner.invoke(app, ["run", "--repo", str(tmp_path)])

    assert result.exit_code == 1
    assert "error after 2 iterations" in result.stdout


@pytest.mark.asyncio
async def test_signal_shutdown_task_is_retained_until_done():
    calls = []

    class _Runner:
        async def shutdown(self):
            await asyncio.sleep(0)
            calls.append("shutdown")

    pending = set()
    task = _request_shutdown(_Runner(), pending)

    assert pending == {task}
    await task
    await asyncio.sleep(0)
    assert calls == ["shutdown"]
    assert pending == set()
