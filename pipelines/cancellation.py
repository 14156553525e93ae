"""Cooperative cancellation shared by every pipeline stage."""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from .errors import RunCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """External stop signal passed explicitly to the crawler, enrichment,
    ingestion and coordinator.

    Stages check ``cancelled`` between units of work, and wrap network awaits
    in ``guard`` so an in-flight request is abandoned as soon as the token
    fires.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.info(f"Cancellation requested: {reason}")
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises:
            RunCancelled: if cancellation happened before or during the await.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Abandoned request failed after cancellation: {e}")
        raise RunCancelled(self.reason or "cancelled")

