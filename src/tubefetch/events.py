"""
In-process progress event bus.

Worker threads publish; async HTTP handlers subscribe. Delivery is
best-effort fan-out to whoever is subscribed at publish time, with no replay.
Late subscribers recover the current state from the queue instead.

Lifecycle is explicit: the process entry point calls ``start(loop)`` once the
event loop is running and ``shutdown()`` before it stops.
"""

import asyncio
import logging
from typing import Optional, Set

from .exceptions import EventBusClosed
from .queue.models import ProgressEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """One listener's bounded inbox. Use as a context manager or async iterator."""

    def __init__(self, bus: "EventBus", maxsize: int):
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *args):
        self.close()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressEvent:
        try:
            return await self.get()
        except EventBusClosed:
            raise StopAsyncIteration

    async def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None if ``timeout`` elapses first.

        Raises:
            EventBusClosed: If the bus shut down
        """
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

        if item is _CLOSED:
            raise EventBusClosed("Event bus is shut down")
        return item

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus.unsubscribe(self)

    def _deliver(self, item) -> None:
        if self._queue.full():
            dropped = self._queue.get_nowait()
            if dropped is not _CLOSED:
                logger.warning(
                    "Subscriber inbox full; dropped %s event for job %s",
                    dropped.type,
                    dropped.jobId,
                )
        self._queue.put_nowait(item)


class EventBus:
    """Thread-safe publish, loop-bound subscribe."""

    def __init__(self, max_queue_size: int = 256):
        self.max_queue_size = max_queue_size
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscribers: Set[Subscription] = set()

    @property
    def started(self) -> bool:
        return self._loop is not None and not self._loop.is_closed()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        logger.debug("Event bus started")

    def shutdown(self) -> None:
        """Wake every subscriber with a close marker and detach from the loop."""
        for subscription in list(self._subscribers):
            subscription._deliver(_CLOSED)
        self._subscribers.clear()
        self._loop = None
        logger.debug("Event bus shut down")

    def subscribe(self) -> Subscription:
        """Register a listener. Must be called on the bus's event loop."""
        if not self.started:
            raise EventBusClosed("Event bus is not started")
        subscription = Subscription(self, self.max_queue_size)
        self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    def publish(self, event: ProgressEvent) -> bool:
        """Queue ``event`` for every current subscriber. Safe from any thread.

        Returns False when the bus is not running.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            return False
        try:
            loop.call_soon_threadsafe(self._fan_out, event)
        except RuntimeError as e:
            logger.warning("Dropped %s event for job %s: %s", event.type, event.jobId, e)
            return False
        return True

    def _fan_out(self, event: ProgressEvent) -> None:
        for subscription in list(self._subscribers):
            subscription._deliver(event)
