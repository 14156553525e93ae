"""Single-consumer event channel between the crawl and ingestion loops."""

import asyncio
import logging
from typing import Any, AsyncIterator, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class ChannelClosed(Exception):
    """Raised when sending on a closed channel."""


class EventChannel(Generic[T]):
    """Message-passing queue between one producer and one consumer.

    With ``capacity=0`` (the default) the channel is a rendezvous: ``send``
    returns only after the consumer has taken the event, so at most one event
    is ever in flight. A positive capacity gives a bounded buffer.
    """

    def __init__(self, capacity: int = 0):
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self.capacity = capacity
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=capacity or 1)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: T) -> None:
        """Hand ``event`` to the consumer, blocking per the channel capacity."""
        if self._closed:
            raise ChannelClosed("send on closed channel")
        await self._queue.put(event)
        if self.capacity == 0:
            await self._queue.join()

    async def close(self) -> None:
        """Signal that no more events will be sent.

        Events already sent are still delivered before iteration stops.
        """
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)

    async def receive(self) -> Optional[T]:
        """Next event, or None once the channel is closed and drained."""
        item = await self._queue.get()
        self._queue.task_done()
        if item is _CLOSED:
            # Leave the marker for any later receive call
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            item = await self.receive()
            if item is None:
                return
            yield item
