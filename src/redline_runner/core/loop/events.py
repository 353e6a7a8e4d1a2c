from __future__ import annotations

import asyncio
import itertools
import threading
from typing import Any, Dict, Optional

from ..utils import now_iso
from .models import LoopEvent, LoopEventType

_CLOSED = None


class EventSubscription:
    """Async iterator over one subscriber's bounded queue.

    Events published while the queue is full are dropped for this subscriber
    only; `dropped` counts them.
    """

    def __init__(self, broadcaster: "EventBroadcaster", maxsize: int) -> None:
        self._broadcaster = broadcaster
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self._closed = False

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> LoopEvent:
        if self._closed and self.queue.empty():
            raise StopAsyncIteration
        item = await self.queue.get()
        if item is _CLOSED:
            self._closed = True
            raise StopAsyncIteration
        return item

    async def get(self, timeout: Optional[float] = None) -> Optional[LoopEvent]:
        """Next event, or None once the stream has closed."""
        try:
            return await asyncio.wait_for(self.__anext__(), timeout=timeout)
        except StopAsyncIteration:
            return None

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)
        self._push_sentinel()

    def _push_sentinel(self) -> None:
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(_CLOSED)


class EventBroadcaster:
    def __init__(self, *, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: set[EventSubscription] = set()
        self._seq = itertools.count(1)
        self._seq_lock = threading.Lock()
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> EventSubscription:
        subscription = EventSubscription(self, self._queue_size)
        if self._closed:
            subscription._push_sentinel()
        else:
            self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        self._subscribers.discard(subscription)

    def publish(
        self,
        event_type: LoopEventType,
        *,
        run_id: Optional[str],
        data: Optional[Dict[str, Any]] = None,
    ) -> LoopEvent:
        with self._seq_lock:
            seq = next(self._seq)
        event = LoopEvent(
            seq=seq,
            run_id=run_id,
            event_type=event_type,
            timestamp=now_iso(),
            data=data or {},
        )
        for subscription in list(self._subscribers):
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                subscription.dropped += 1
        return event

    def close(self) -> None:
        self._closed = True
        for subscription in list(self._subscribers):
            subscription._push_sentinel()
        self._subscribers.clear()

    def reopen(self) -> None:
        self._closed = False
