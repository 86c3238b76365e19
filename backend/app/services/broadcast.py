"""Fan-out of live-call events to connected dashboard viewers."""
from __future__ import annotations

import asyncio
import logging
import threading
from uuid import uuid4

from app.schemas.events import LiveCallEvent

logger = logging.getLogger(__name__)


class Subscription:
    """One viewer's ordered event queue.

    Bound to the event loop it was created on; events published from other
    threads are handed over with ``call_soon_threadsafe``.
    """

    def __init__(self, queue_size: int) -> None:
        self.id = uuid4().hex
        self.closed = False
        self._queue: asyncio.Queue[LiveCallEvent | None] = asyncio.Queue(maxsize=queue_size)
        self._loop = asyncio.get_running_loop()

    async def get(self) -> LiveCallEvent | None:
        """Next event, or ``None`` once the subscription has been closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def offer(self, event: LiveCallEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def deliver(self, event: LiveCallEvent, on_overflow) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            if not self.offer(event):
                on_overflow(self)
            return
        if self._loop.is_closed():
            on_overflow(self)
            return

        def _offer() -> None:
            if not self.offer(event):
                on_overflow(self)

        self._loop.call_soon_threadsafe(_offer)


class LiveCallBroadcaster:
    def __init__(self, queue_size: int = 500) -> None:
        self._queue_size = queue_size
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, initial: LiveCallEvent | None = None) -> Subscription:
        """Register a viewer. ``initial`` is queued ahead of every later event."""
        subscription = Subscription(self._queue_size)
        if initial is not None:
            subscription.offer(initial)
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        logger.info("Viewer %s subscribed, total: %d", subscription.id, self.subscriber_count)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            removed = self._subscriptions.pop(subscription.id, None)
        subscription.close()
        if removed is not None:
            logger.info("Viewer %s unsubscribed, remaining: %d", subscription.id, self.subscriber_count)

    def publish(self, event: LiveCallEvent) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            subscription.deliver(event, self._drop_slow)

    def _drop_slow(self, subscription: Subscription) -> None:
        logger.warning("Viewer %s fell behind; dropping so it can reconnect for a fresh snapshot", subscription.id)
        self.unsubscribe(subscription)

    def close_all(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close()


def format_sse(event: LiveCallEvent) -> str:
    return f"data: {event.model_dump_json()}\n\n"


KEEPALIVE_FRAME = ": keep-alive\n\n"
