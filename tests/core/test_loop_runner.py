import asyncio
import json

import httpx
import pytest

from redline_runner.core.loop import (
    InvalidTransitionError,
    LoopCommand,
    LoopEventType,
    LoopRunner,
    LoopState,
)
from redline_runner.core.notifications import NotificationManager
from redline_runner.core.sessions import SessionOutput, SessionState, SessionTimeoutError
from redline_runner.core.stop import AllTestsPass, MaxIterations


def _runner(make_config, fake_agent, overrides=None, **kwargs) -> LoopRunner:
    config = make_config(overrides)
    return LoopRunner.from_config(config, session_factory=fake_agent.factory, **kwargs)


async def _wait_for(subscription, predicate, timeout: float = 5.0):
    async def _scan():
        async for event in subscription:
            if predicate(event):
                return event
        raise AssertionError("event stream closed before the expected event")

    return await asyncio.wait_for(_scan(), timeout=timeout)


def _is(event_type, **data):
    def _match(event):
        if event.event_type is not event_type:
            return False
        return all(event.data.get(key) == value for key, value in data.items())

    return _match


async def _drain(subscription) -> list:
    events = []
    while True:
        event = await subscription.get(timeout=1.0)
        events.append(event)
        if event.event_type is LoopEventType.RUN_FINISHED:
            return events


@pytest.mark.asyncio
async def test_max_iterations_condition_completes_run(make_config, fake_agent):
    runner = _runner(
        make_config,
        fake_agent,
        {"stop_conditions": {"normal": [{"max_iterations": 3}]}},
    )
    subscription = runner.subscribe_events()

    state = await runner.run()

    assert state is LoopState.COMPLETED
    assert runner.last_evaluation.triggered_by == MaxIterations(3)
    assert runner.stop_reason.startswith("stop condition met: MaxIterations(3)")
    stats = runner.stats_snapshot()
    assert (stats.iterations, stats.successes, stats.failures) == (3, 3, 0)
    assert len(fake_agent.prompts) == 3
    assert fake_agent.sessions[0].state is SessionState.ENDED

    events = await _drain(subscription)
    seqs = [event.seq for event in events]
    assert seqs == sorted(seqs) and len(set(seqs)) == len(seqs)
    assert events[0].event_type is LoopEventType.STATE_CHANGED
    assert events[1].event_type is LoopEventType.RUN_STARTED
    started = [e for e in events if e.event_type is LoopEventType.ITERATION_STARTED]
    assert [e.data["iteration"] for e in started] == [1, 2, 3]
    assert events[-1].data["state"] == "completed"
    assert all(event.run_id == runner.run_id for event in events)


@pytest.mark.asyncio
async def test_iteration_cap_is_a_safety_limit(make_config, fake_agent):
    runner = _runner(make_config, fake_agent, {"loop": {"max_iterations": 2}})

    state = await runner.run()

    assert state is LoopState.COMPLETED
    assert runner.stop_reason == "iteration cap reached (2)"
    assert runner.stats_snapshot().iterations == 2


@pytest.mark.asyncio
async def test_prompt_iteration_and_previous_output(make_config, fake_agent):
    fake_agent.responses = ["first answer"]
    runner = _runner(
        make_config,
        fake_agent,
        {
            "prompt": {"text": "Iteration {{ITERATION}}\n{{PREV_RUN_OUTPUT}}"},
            "stop_conditions": {"normal": [{"max_iterations": 2}]},
        },
    )

    await runner.run()

    assert fake_agent.prompts[0].startswith("Iteration 1\n")
    assert "PREV_RUN_OUTPUT" not in fake_agent.prompts[0]
    assert fake_agent.prompts[1].startswith("Iteration 2\n")
    assert "<PREV_RUN_OUTPUT>\nfirst answer\n</PREV_RUN_OUTPUT>" in fake_agent.prompts[1]


@pytest.mark.asyncio
async def test_failure_pool_ends_in_error(make_config, fake_agent):
    failing = SessionOutput(text="boom", duration_seconds=0.01, completed=True, exit_code=1)
    fake_agent.responses = [failing, failing, failing]
    runner = _runner(
        make_config,
        fake_agent,
        {"stop_conditions": {"failure": [{"failure_streak": 2}]}},
    )

    state = await runner.run()

    assert state is LoopState.ERROR
    assert runner.last_evaluation.is_success is False
    assert runner.stop_reason.startswith("failure condition met: FailureStreak(2)")
    stats = runner.stats_snapshot()
    assert (stats.iterations, stats.failures, stats.consecutive_failures) == (2, 2, 2)


@pytest.mark.asyncio
async def test_success_pool_uses_test_results(make_config, fake_agent):
    fake_agent.responses = [
        "=== 2 failed, 3 passed in 0.5s ===",
        "=== 5 passed in 0.4s ===",
    ]
    runner = _runner(
        make_config,
        fake_agent,
        {"stop_conditions": {"success": ["tests_all_pass"]}},
    )

    state = await runner.run()

    assert state is LoopState.COMPLETED
    assert runner.last_evaluation.triggered_by == AllTestsPass()
    assert runner.last_evaluation.is_success is True
    stats = runner.stats_snapshot()
    assert stats.iterations == 2
    assert stats.consecutive_failures == 0


@pytest.mark.asyncio
async def test_session_error_counts_as_failed_iteration(make_config, fake_agent):
    fake_agent.responses = [SessionTimeoutError("agent went quiet")]
    runner = _runner(
        make_config,
        fake_agent,
        {"stop_conditions": {"normal": [{"max_iterations": 2}]}},
    )
    subscription = runner.subscribe_events()

    state = await runner.run()

    assert state is LoopState.COMPLETED
    stats = runner.stats_snapshot()
    assert (stats.successes, stats.failures) == (1, 1)
    assert len(fake_agent.sessions) == 2
    assert fake_agent.sessions[0].state is SessionState.TERMINATED
    events = await _drain(subscription)
    failed = [e for e in events if e.event_type is LoopEventType.ITERATION_FAILED]
    assert failed[0].data["error"] == "agent went quiet"


@pytest.mark.asyncio
async def test_missing_prompt_file_fails_run(make_config, fake_agent):
    runner = _runner(
        make_config, fake_agent, {"prompt": {"text": None, "file": "missing.md"}}
    )

    state = await runner.run()

    assert state is LoopState.ERROR
    assert runner.stop_reason.startswith("prompt error: Unable to read prompt file")
    assert fake_agent.prompts == []
    assert runner.stats_snapshot().iterations == 0


@pytest.mark.asyncio
async def test_context_redline_reboots_session(make_config, fake_agent):
    fake_agent.responses = ["step one\nContext: 97%"]
    runner = _runner(
        make_config,
        fake_agent,
        {
            "reboot": {
                "enabled": True,
                "mode": "immediate",
                "min_reboot_interval_seconds": 0,
            },
            "stop_conditions": {"normal": [{"max_iterations": 3}]},
        },
    )
    subscription = runner.subscribe_events()

    state = await runner.run()

    assert state is LoopState.COMPLETED
    assert runner.stats_snapshot().reboots == 1
    assert len(fake_agent.sessions) == 2
    assert fake_agent.sessions[0].state is SessionState.ENDED
    assert [len(s.prompts) for s in fake_agent.sessions] == [1, 2]
    history = runner.reboot_manager.get_history()
    assert [entry.reason.value for entry in history] == ["redline"]

    events = await _drain(subscription)
    transitions = [
        (e.data["from"], e.data["to"])
        for e in events
        if e.event_type is LoopEventType.STATE_CHANGED
    ]
    assert ("running", "rebooting") in transitions
    assert ("rebooting", "running") in transitions
    checked = [e for e in events if e.event_type is LoopEventType.REDLINE_CHECKED]
    assert checked[0].data["level"] == "redline"


@pytest.mark.asyncio
async def test_reboot_escalation_fails_run(make_config, fake_agent):
    def exhaust_agent():
        fake_agent.fail_starts = 10
        return "Context: 99%"

    fake_agent.responses = [exhaust_agent]
    runner = _runner(
        make_config,
        fake_agent,
        {
            "reboot": {
                "enabled": True,
                "mode": "immediate",
                "min_reboot_interval_seconds": 0,
                "max_consecutive_failures": 1,
            }
        },
    )

    state = await runner.run()

    assert state is LoopState.ERROR
    assert runner.stop_reason.startswith("reboot escalation:")
    assert runner.stats_snapshot().iterations == 1


@pytest.mark.asyncio
async def test_pause_and_resume(make_config, fake_agent):
    fake_agent.delay = 0.01
    runner = _runner(make_config, fake_agent)
    subscription = runner.subscribe_events()
    await runner.start()

    await _wait_for(subscription, _is(LoopEventType.ITERATION_SUCCEEDED))
    runner.send_command("pause")
    await _wait_for(subscription, _is(LoopEventType.STATE_CHANGED, to="paused"))
    assert runner.current_state() is LoopState.PAUSED
    paused_at = runner.stats_snapshot().iterations
    await asyncio.sleep(0.1)
    assert runner.stats_snapshot().iterations == paused_at

    runner.send_command(LoopCommand.RESUME)
    await _wait_for(subscription, _is(LoopEventType.STATE_CHANGED, to="running"))
    await _wait_for(subscription, _is(LoopEventType.ITERATION_SUCCEEDED))
    assert runner.stats_snapshot().iterations > paused_at

    runner.send_command(LoopCommand.STOP)
    state = await asyncio.wait_for(runner.wait(), timeout=5)
    assert state is LoopState.STOPPED
    assert runner.stop_reason == "stopped by command"


@pytest.mark.asyncio
async def test_stop_while_paused_applies_immediately(make_config, fake_agent):
    fake_agent.delay = 0.01
    runner = _runner(make_config, fake_agent)
    subscription = runner.subscribe_events()
    await runner.start()
    await _wait_for(subscription, _is(LoopEventType.ITERATION_SUCCEEDED))
    runner.send_command(LoopCommand.PAUSE)
    await _wait_for(subscription, _is(LoopEventType.STATE_CHANGED, to="paused"))

    runner.send_command(LoopCommand.STOP)

    assert runner.current_state() is LoopState.STOPPED
    assert await asyncio.wait_for(runner.wait(), timeout=5) is LoopState.STOPPED


@pytest.mark.asyncio
async def test_stop_while_idle_then_start(make_config, fake_agent):
    runner = _runner(
        make_config,
        fake_agent,
        {"stop_conditions": {"normal": [{"max_iterations": 1}]}},
    )

    runner.send_command(LoopCommand.STOP)
    assert runner.current_state() is LoopState.STOPPED

    assert await runner.run() is LoopState.COMPLETED


@pytest.mark.asyncio
async def test_illegal_commands_are_rejected(make_config, fake_agent):
    runner = _runner(make_config, fake_agent)
    subscription = runner.subscribe_events()

    with pytest.raises(InvalidTransitionError):
        runner.send_command(LoopCommand.PAUSE)
    with pytest.raises(InvalidTransitionError):
        runner.send_command(LoopCommand.RESUME)
    with pytest.raises(ValueError):
        runner.send_command("explode")

    rejected = await subscription.get(timeout=1.0)
    assert rejected.event_type is LoopEventType.COMMAND_REJECTED
    assert rejected.data["command"] == "pause"
    assert rejected.data["state"] == "idle"
    assert runner.current_state() is LoopState.IDLE


@pytest.mark.asyncio
async def test_start_twice_is_rejected(make_config, fake_agent):
    fake_agent.delay = 0.05
    runner = _runner(make_config, fake_agent)
    await runner.start()

    with pytest.raises(InvalidTransitionError):
        await runner.start()

    await runner.shutdown()


@pytest.mark.asyncio
async def test_skip_iteration(make_config, fake_agent):
    fake_agent.delay = 0.01
    runner = _runner(make_config, fake_agent)
    subscription = runner.subscribe_events()
    await runner.start()
    await _wait_for(subscription, _is(LoopEventType.ITERATION_SUCCEEDED))
    runner.send_command(LoopCommand.PAUSE)
    await _wait_for(subscription, _is(LoopEventType.STATE_CHANGED, to="paused"))

    runner.send_command(LoopCommand.SKIP_ITERATION)
    runner.send_command(LoopCommand.RESUME)
    await _wait_for(subscription, _is(LoopEventType.ITERATION_SKIPPED))

    assert runner.stats_snapshot().skipped == 1
    await runner.shutdown()


@pytest.mark.asyncio
async def test_force_reboot_command(make_config, fake_agent):
    fake_agent.delay = 0.01
    runner = _runner(make_config, fake_agent)
    subscription = runner.subscribe_events()
    await runner.start()
    await _wait_for(subscription, _is(LoopEventType.ITERATION_SUCCEEDED))

    runner.send_command(LoopCommand.FORCE_REBOOT)
    finished = await _wait_for(subscription, _is(LoopEventType.REBOOT_FINISHED))

    assert finished.data == {"reason": "manual", "success": True, "error": None}
    assert runner.stats_snapshot().reboots == 1
    assert len(fake_agent.sessions) == 2
    await runner.shutdown()


@pytest.mark.asyncio
async def test_shutdown_interrupts_running_iteration(make_config, fake_agent):
    fake_agent.delay = 30
    runner = _runner(make_config, fake_agent)
    subscription = runner.subscribe_events()
    await runner.start()
    await _wait_for(subscription, _is(LoopEventType.ITERATION_STARTED))
    await asyncio.sleep(0.05)

    await asyncio.wait_for(runner.shutdown(), timeout=5)

    assert runner.current_state() is LoopState.STOPPED
    assert runner.stop_reason == "shutdown requested"
    assert fake_agent.sessions[0].state is SessionState.TERMINATED
    remaining = [event async for event in subscription]
    assert remaining[-1].event_type is LoopEventType.RUN_FINISHED


@pytest.mark.asyncio
async def test_pre_iteration_hook_veto_stops_run(make_config, fake_agent):
    runner = _runner(
        make_config,
        fake_agent,
        {
            "hooks": {
                "pre_iteration": [
                    {"command": "exit 3", "name": "gate", "abort_on_failure": True}
                ]
            }
        },
    )
    subscription = runner.subscribe_events()

    state = await runner.run()

    assert state is LoopState.STOPPED
    assert runner.stop_reason == "pre_iteration hook gate vetoed continuation"
    assert fake_agent.prompts == []
    events = await _drain(subscription)
    veto = [e for e in events if e.event_type is LoopEventType.HOOK_VETO]
    assert veto[0].data == {"hook": "gate", "point": "pre_iteration"}


@pytest.mark.asyncio
async def test_post_reboot_hook_veto_stops_run(make_config, fake_agent):
    fake_agent.responses = ["step one\nContext: 97%"]
    runner = _runner(
        make_config,
        fake_agent,
        {
            "reboot": {
                "enabled": True,
                "mode": "immediate",
                "min_reboot_interval_seconds": 0,
            },
            "hooks": {
                "post_reboot": [
                    {"command": "exit 3", "name": "gate", "abort_on_failure": True}
                ]
            },
            "stop_conditions": {"normal": [{"max_iterations": 3}]},
        },
    )
    subscription = runner.subscribe_events()

    state = await runner.run()

    assert state is LoopState.STOPPED
    assert runner.stop_reason == "post_reboot hook gate vetoed continuation"
    assert runner.stats_snapshot().iterations == 1
    assert runner.stats_snapshot().reboots == 1
    events = await _drain(subscription)
    veto = [e for e in events if e.event_type is LoopEventType.HOOK_VETO]
    assert veto[0].data == {"hook": "gate", "point": "post_reboot"}


@pytest.mark.asyncio
async def test_rate_limited_force_reboot_is_rejected(make_config, fake_agent):
    fake_agent.delay = 0.01
    runner = _runner(
        make_config,
        fake_agent,
        {"reboot": {"min_reboot_interval_seconds": 3600}},
    )
    subscription = runner.subscribe_events()
    await runner.start()
    await _wait_for(subscription, _is(LoopEventType.ITERATION_SUCCEEDED))

    runner.send_command(LoopCommand.FORCE_REBOOT)
    await _wait_for(subscription, _is(LoopEventType.REBOOT_FINISHED, success=True))
    runner.send_command(LoopCommand.FORCE_REBOOT)
    rejected = await _wait_for(
        subscription, _is(LoopEventType.COMMAND_REJECTED, command="force_reboot")
    )

    assert "min_interval" in rejected.data["error"]
    assert runner.stats_snapshot().reboots == 1
    assert len(fake_agent.sessions) == 2
    assert runner.current_state() is LoopState.RUNNING
    await runner.shutdown()


@pytest.mark.asyncio
async def test_stop_file_without_condition_stops_run(make_config, fake_agent):
    config = make_config()

    def request_stop():
        config.stop_file.parent.mkdir(parents=True, exist_ok=True)
        config.stop_file.write_text("now\n", encoding="utf-8")
        return "done for now"

    fake_agent.responses = [request_stop]
    runner = LoopRunner.from_config(config, session_factory=fake_agent.factory)

    state = await runner.run()

    assert state is LoopState.STOPPED
    assert runner.stop_reason == "stop requested via stop file"
    assert not config.stop_file.exists()
    assert runner.stats_snapshot().iterations == 1


@pytest.mark.asyncio
async def test_snapshot_restore_continues_counters(make_config, fake_agent):
    first = _runner(
        make_config,
        fake_agent,
        {"stop_conditions": {"normal": [{"max_iterations": 2}]}},
    )
    await first.run()
    snapshot = first.snapshot().model_copy(update={"state": LoopState.RUNNING})

    second = _runner(
        make_config,
        fake_agent,
        {"stop_conditions": {"normal": [{"max_iterations": 3}]}},
    )
    second.restore(snapshot)
    assert second.current_state() is LoopState.STOPPED
    assert second.stats_snapshot().iterations == 2

    run_id = await second.start()
    state = await second.wait()

    assert run_id == first.run_id
    assert state is LoopState.COMPLETED
    assert second.stats_snapshot().iterations == 3


@pytest.mark.asyncio
async def test_lifecycle_notifications(make_config, fake_agent, monkeypatch):
    monkeypatch.setenv("REDLINE_TEST_WEBHOOK", "https://hooks.example.test/run")
    posted = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(json.loads(request.content))
        return httpx.Response(200)

    notifications = NotificationManager(
        {"enabled": True, "events": ["all"], "webhook_url_env": "REDLINE_TEST_WEBHOOK"},
        transport=httpx.MockTransport(handler),
    )
    runner = _runner(
        make_config,
        fake_agent,
        {"stop_conditions": {"normal": [{"max_iterations": 1}]}},
        notifications=notifications,
    )

    await runner.run()
    await notifications.drain()

    assert sorted(item["event"] for item in posted) == ["completed", "started"]
    completed = next(item for item in posted if item["event"] == "completed")
    assert completed["data"]["iterations"] == 1
