"""
Cooperative cancellation for job runs.

A CancellationToken is created per job run and handed to every I/O call.
Loops check ``token.cancelled`` between units of work; awaitables that may
block for long (rate limiter waits, HTTP requests) are wrapped with
``token.guard()`` so they are aborted as soon as cancellation is requested.
"""
import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from errors import CancellationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Flag plus event that can be awaited alongside other work."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self.reason or "cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the token fires first.

        When the token fires the pending work is cancelled and
        CancellationError is raised.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise

        if work in done:
            waiter.cancel()
            return work.result()

        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            # The aborted request's own failure is irrelevant once cancelled
            pass
        raise CancellationError(self.reason or "cancelled")


async def guarded(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    """Await through ``token.guard`` when a token is given."""
    if token is None:
        return await awaitable
    return await token.guard(awaitable)
