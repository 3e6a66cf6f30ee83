"""
The per-job cancellation handle threaded through every pipeline stage.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from qobuz_jobs.exceptions import JobCancelledError

log = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """
    A one-shot cancellation signal.

    Work at a suspension point is wrapped in :meth:`guard`, which races it
    against the signal: once the token fires, the wrapped task is cancelled and
    :class:`JobCancelledError` is raised in its place.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            log.debug(f"Cancel token fired: {reason}")
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError(self.reason or "Cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Awaits ``awaitable`` unless the token fires first."""
        self.raise_if_cancelled()
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
            log.debug(f"Cancelled work raised while unwinding: {e}")
        raise JobCancelledError(self.reason or "Cancelled")
