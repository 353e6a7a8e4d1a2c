import json
import logging

import httpx
import pytest

from redline_runner.core.notifications import NotificationManager

WEBHOOK_ENV = "REDLINE_TEST_WEBHOOK_URL"


def _manager(config, handler, logger=None) -> NotificationManager:
    return NotificationManager(
        {"webhook_url_env": WEBHOOK_ENV, **config},
        logger=logger,
        label="demo-repo",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_posts_json_payload(monkeypatch):
    monkeypatch.setenv(WEBHOOK_ENV, "https://hooks.example.test/abc")
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(204)

    manager = _manager({"enabled": True}, handler)

    manager.notify("completed", {"run_id": "run-1", "iterations": 4})
    await manager.drain()

    assert len(requests) == 1
    assert str(requests[0].url) == "https://hooks.example.test/abc"
    body = json.loads(requests[0].content)
    assert body["event"] == "completed"
    assert body["source"] == "demo-repo"
    assert body["data"] == {"run_id": "run-1", "iterations": 4}
    assert body["timestamp"].endswith("Z")


@pytest.mark.asyncio
async def test_default_events_filter(monkeypatch):
    monkeypatch.setenv(WEBHOOK_ENV, "https://hooks.example.test/abc")
    events = []

    def handler(request: httpx.Request) -> httpx.Response:
        events.append(json.loads(request.content)["event"])
        return httpx.Response(200)

    manager = _manager({"enabled": True}, handler)

    for trigger in ("started", "rebooted", "failed", "safety_limit_reached"):
        manager.notify(trigger, {})
    await manager.drain()

    assert sorted(events) == ["failed", "safety_limit_reached"]


@pytest.mark.asyncio
async def test_disabled_unless_enabled_is_true(monkeypatch):
    monkeypatch.setenv(WEBHOOK_ENV, "https://hooks.example.test/abc")
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    for enabled in (False, "yes", None):
        manager = _manager({"enabled": enabled, "events": ["all"]}, handler)
        manager.notify("completed", {})
        await manager.drain()

    assert calls == []


@pytest.mark.asyncio
async def test_missing_webhook_env_warns_once(monkeypatch, caplog):
    monkeypatch.delenv(WEBHOOK_ENV, raising=False)
    logger = logging.getLogger("test.notifications.missing")
    manager = _manager({"enabled": True}, lambda request: httpx.Response(200), logger)

    with caplog.at_level(logging.WARNING, logger=logger.name):
        manager.notify("completed", {})
        manager.notify("failed", {})
        await manager.drain()

    warnings = [r for r in caplog.records if WEBHOOK_ENV in r.getMessage()]
    assert len(warnings) == 1


@pytest.mark.asyncio
async def test_delivery_failure_is_logged_not_raised(monkeypatch, caplog):
    monkeypatch.setenv(WEBHOOK_ENV, "https://hooks.example.test/abc")
    logger = logging.getLogger("test.notifications.failure")
    manager = _manager(
        {"enabled": True}, lambda request: httpx.Response(500), logger
    )

    with caplog.at_level(logging.WARNING, logger=logger.name):
        manager.notify("failed", {"reason": "boom"})
        await manager.drain()

    assert any(
        "notifications.delivery_failed" in r.getMessage() for r in caplog.records
    )


def test_notify_without_running_loop_is_skipped(monkeypatch):
    monkeypatch.setenv(WEBHOOK_ENV, "https://hooks.example.test/abc")
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    manager = _manager({"enabled": True}, handler)

    manager.notify("completed", {})

    assert calls == []
