from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Cancelled(Exception):
    """Raised at a suspension point once the owning CancelToken has fired."""


class CancelToken:
    """Cooperative cancellation shared by one send() and everything it awaits.

    Checked at each suspension point (stream open, next chunk, token refresh,
    tool dispatch). Firing the token never interrupts a tool that is already
    running.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, abandoning it as soon as the token fires."""
        if self._event.is_set():
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            raise Cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("Abandoned awaitable failed after cancellation: %s", e)
        raise Cancelled()
