from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Mapping, Optional

import httpx

from .logging_utils import log_event
from .utils import now_iso

DEFAULT_EVENTS = {"completed", "failed", "safety_limit_reached"}
KNOWN_EVENTS = {
    "started",
    "completed",
    "failed",
    "stopped",
    "rebooted",
    "safety_limit_reached",
    "all",
}
DEFAULT_TIMEOUT_SECONDS = 5.0


class NotificationManager:
    """Fire-and-forget webhook notifications for run lifecycle events."""

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        *,
        logger: Optional[logging.Logger] = None,
        label: str = "redline-runner",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._cfg = dict(config or {})
        self.logger = logger or logging.getLogger(__name__)
        self.label = label
        self._transport = transport
        self._warned: set[str] = set()
        self._enabled = self._cfg.get("enabled") is True
        self._events = self._normalize_events(self._cfg.get("events"))
        self._warn_unknown_events(self._events)
        timeout = self._cfg.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)
        self._timeout = (
            float(timeout)
            if isinstance(timeout, (int, float)) and not isinstance(timeout, bool)
            else DEFAULT_TIMEOUT_SECONDS
        )
        self._pending: set[asyncio.Task] = set()

    def set_logger(self, logger: logging.Logger) -> None:
        self.logger = logger

    def notify(self, trigger: str, data: Optional[Mapping[str, Any]] = None) -> None:
        """Schedule delivery in the background; never raises."""
        if not self._should_notify(trigger):
            return
        url = self._resolve_webhook()
        if not url:
            return
        payload = {
            "event": trigger,
            "source": self.label,
            "timestamp": now_iso(),
            "data": dict(data or {}),
        }
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._warn_once(
                "notifications.no_loop",
                "Notification skipped; no running event loop",
            )
            return
        task = loop.create_task(self._send(url, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _send(self, url: str, payload: dict) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except Exception as exc:
            self._log_warning("Notification delivery failed", exc)

    def _normalize_events(self, raw_events) -> set[str]:
        if not isinstance(raw_events, list):
            return set(DEFAULT_EVENTS)
        return {
            item.strip()
            for item in raw_events
            if isinstance(item, str) and item.strip()
        }

    def _warn_unknown_events(self, events: set[str]) -> None:
        unknown = {event for event in events if event not in KNOWN_EVENTS}
        if not unknown:
            return
        details = ", ".join(sorted(unknown))
        self._warn_once(
            "notifications.unknown_events",
            f"Unknown notification events configured: {details}",
        )

    def _should_notify(self, event: str) -> bool:
        if not self._enabled or not self._events:
            return False
        if "all" in self._events:
            return True
        return event in self._events

    def _resolve_webhook(self) -> Optional[str]:
        env_key = self._cfg.get("webhook_url_env")
        if not env_key or not isinstance(env_key, str):
            self._warn_once(
                "notifications.none_configured",
                "Notifications enabled but webhook_url_env is not set",
            )
            return None
        url = os.environ.get(env_key)
        if not url:
            self._warn_once(
                f"notifications.missing_env.{env_key}",
                f"Notifications enabled but {env_key} is not set",
            )
            return None
        return url

    def _warn_once(self, key: str, message: str) -> None:
        if key in self._warned:
            return
        self._warned.add(key)
        log_event(self.logger, logging.WARNING, key, message=message)

    def _log_warning(self, message: str, exc: Exception) -> None:
        log_event(
            self.logger,
            logging.WARNING,
            "notifications.delivery_failed",
            message=message,
            exc=exc,
        )
