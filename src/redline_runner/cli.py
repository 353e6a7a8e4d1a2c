import asyncio
import signal
from pathlib import Path
from typing import Optional, Set

import typer

from .bootstrap import seed_repo_files
from .core.config import ConfigError, RunnerConfig, load_config
from .core.logging_utils import setup_rotating_logger
from .core.loop import LoopEventType, LoopRunner, LoopState
from .core.loop.events import EventSubscription
from .core.state import StateStore
from .core.utils import atomic_write, now_iso

app = typer.Typer(add_completion=False)

_ECHO_EVENTS = {
    LoopEventType.STATE_CHANGED,
    LoopEventType.ITERATION_SUCCEEDED,
    LoopEventType.ITERATION_FAILED,
    LoopEventType.REBOOT_FINISHED,
}


def _exit_with(message: str, code: int = 1) -> typer.Exit:
    typer.echo(message, err=True)
    return typer.Exit(code=code)


def _require_config(repo: Optional[Path]) -> RunnerConfig:
    try:
        return load_config(repo or Path.cwd())
    except ConfigError as exc:
        raise _exit_with(str(exc))


@app.command()
def init(
    path: Optional[Path] = typer.Argument(None, help="Repo path; defaults to CWD"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing files"),
):
    """Create .redline-runner/ with a starter config and prompt."""
    target = (path or Path.cwd()).resolve()
    if not target.is_dir():
        raise _exit_with(f"Not a directory: {target}")
    config_dir = seed_repo_files(target, force=force)
    typer.echo(f"Initialized {config_dir}")


@app.command()
def run(
    repo: Optional[Path] = typer.Option(None, "--repo", help="Repo path"),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", min=1, help="Override loop.max_iterations"
    ),
    fresh: bool = typer.Option(
        False, "--fresh", help="Ignore the saved snapshot and start a new run"
    ),
):
    """Run the loop until a stop condition, a stop request or an error."""
    config = _require_config(repo)
    if max_iterations is not None:
        config.loop.max_iterations = max_iterations
    logger = setup_rotating_logger(f"redline-runner[{config.root}]", config.log)
    try:
        runner = asyncio.run(_run_async(config, logger, fresh=fresh))
    except ConfigError as exc:
        raise _exit_with(str(exc))
    state = runner.current_state()
    stats = runner.stats_snapshot()
    typer.echo(
        f"Run {runner.run_id} {state.value} after {stats.iterations} iterations"
        f" ({runner.stop_reason or 'no reason recorded'})"
    )
    if state is LoopState.ERROR:
        raise typer.Exit(code=1)


async def _persist_events(
    runner: LoopRunner, subscription: EventSubscription, store: StateStore
) -> None:
    async for event in subscription:
        store.save(runner.snapshot())
        if event.event_type not in _ECHO_EVENTS:
            continue
        if event.event_type is LoopEventType.STATE_CHANGED:
            typer.echo(f"[{event.timestamp}] state {event.data['from']} -> {event.data['to']}")
        elif event.event_type is LoopEventType.REBOOT_FINISHED:
            outcome = "ok" if event.data.get("success") else "failed"
            typer.echo(f"[{event.timestamp}] reboot ({event.data.get('reason')}) {outcome}")
        else:
            typer.echo(
                f"[{event.timestamp}] iteration {event.data.get('iteration')} "
                f"{event.event_type.value.split('_', 1)[1]}"
            )


def _request_shutdown(runner: LoopRunner, pending: Set[asyncio.Task]) -> asyncio.Task:
    # The loop only keeps weak references to tasks.
    task = asyncio.ensure_future(runner.shutdown())
    pending.add(task)
    task.add_done_callback(pending.discard)
    return task


async def _run_async(config: RunnerConfig, logger, *, fresh: bool) -> LoopRunner:
    store = StateStore(config.state_path, logger=logger)
    runner = LoopRunner.from_config(config, logger=logger)
    snapshot = None if fresh else store.load()
    if snapshot is not None and snapshot.state is not LoopState.COMPLETED:
        runner.restore(snapshot)

    subscription = runner.subscribe_events()
    persist_task = asyncio.create_task(_persist_events(runner, subscription, store))
    loop = asyncio.get_running_loop()
    shutdown_tasks: Set[asyncio.Task] = set()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, runner, shutdown_tasks)
        except (NotImplementedError, RuntimeError):
            pass
    try:
        await runner.run()
    finally:
        store.save(runner.snapshot())
        subscription.close()
        await persist_task
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass
        if shutdown_tasks:
            await asyncio.gather(*shutdown_tasks)
    return runner


@app.command()
def status(repo: Optional[Path] = typer.Option(None, "--repo", help="Repo path")):
    """Show the last saved run snapshot."""
    config = _require_config(repo)
    snapshot = StateStore(config.state_path).load()
    typer.echo(f"Repo: {config.root}")
    if snapshot is None:
        typer.echo("State: idle (no runs recorded)")
        return
    stats = snapshot.stats
    typer.echo(f"State: {snapshot.state.value}")
    typer.echo(f"Run id: {snapshot.run_id}")
    typer.echo(f"Iterations: {stats.iterations}")
    typer.echo(f"Successes: {stats.successes}")
    typer.echo(f"Failures: {stats.failures}")
    typer.echo(f"Reboots: {stats.reboots}")
    typer.echo(f"Session: {snapshot.session_id}")
    typer.echo(f"Condition progress: {snapshot.condition_progress:.0%}")
    typer.echo(f"Stop reason: {snapshot.stop_reason}")
    typer.echo(f"Updated: {snapshot.updated_at}")
    if config.stop_file.exists():
        typer.echo("Stop requested: yes")


@app.command()
def stop(repo: Optional[Path] = typer.Option(None, "--repo", help="Repo path")):
    """Ask a running loop to stop at its next iteration boundary."""
    config = _require_config(repo)
    atomic_write(config.stop_file, f"{now_iso()}\n")
    typer.echo(f"Stop requested ({config.stop_file})")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
