"""Single-producer, multi-consumer fan-out of readings.

The poll loop is the only task that touches the transport; everything
else (display, logger) subscribes here.  ``publish`` never blocks: a
consumer that falls behind loses its oldest unread readings.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Generic, List, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    """One consumer's view of the stream.  Async-iterable until closed."""

    def __init__(self, name: str, maxsize: int) -> None:
        self.name = name
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def _offer(self, item: object) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1

    async def get(self) -> Optional[T]:
        """Next item, or ``None`` once the broadcaster is closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any other waiter on this subscription.
            self._queue.put_nowait(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            item = await self.get()
            if item is None:
                return
            yield item


class Broadcaster(Generic[T]):
    def __init__(self, maxsize: int = 8) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._maxsize = maxsize
        self._subscribers: List[Subscription[T]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, name: str) -> Subscription[T]:
        if self._closed:
            raise RuntimeError("Broadcaster is closed")
        sub: Subscription[T] = Subscription(name, self._maxsize)
        self._subscribers.append(sub)
        return sub

    def publish(self, item: T) -> None:
        if self._closed:
            return
        for sub in self._subscribers:
            before = sub.dropped
            sub._offer(item)
            if sub.dropped != before:
                logger.debug("consumer_lagging", consumer=sub.name, dropped=sub.dropped)

    def close(self) -> None:
        """End every subscription after its queued items are consumed."""
        if self._closed:
            return
        self._closed = True
        for sub in self._subscribers:
            sub._offer(_CLOSED)
