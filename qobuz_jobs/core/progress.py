"""
The progress channel a job writes to and its callers subscribe to.
"""

import asyncio
import logging
from typing import AsyncIterator, Callable, List, Optional, Protocol

from qobuz_jobs.models.job import EventKind, ProgressEvent

log = logging.getLogger(__name__)

Subscriber = Callable[[ProgressEvent], None]


class ProgressSink(Protocol):
    """What pipeline stages need from a progress reporter."""

    def stage(self, message: str, percent: float = 0.0) -> None: ...

    def update(self, percent: float, message: Optional[str] = None) -> None: ...


class ProgressChannel:
    """
    Ordered, per-job stream of progress events.

    Within a stage the reported percentage never goes down and never exceeds
    100; :meth:`stage` is the only way to reset it, and it always announces
    the new stage with a message. The channel closes after the first terminal
    event (complete or error).
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._queues: List[asyncio.Queue] = []
        self._history: List[ProgressEvent] = []
        self.percent: float = 0.0
        self.message: str = ""
        self.closed = False

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Registers a callback; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yields every event of the job, from the first, until it is resolved."""
        queue: asyncio.Queue = asyncio.Queue()
        for event in self._history:
            queue.put_nowait(event)
        if self.closed:
            queue.put_nowait(None)
        else:
            self._queues.append(queue)
        try:
            while (event := await queue.get()) is not None:
                yield event
        finally:
            if queue in self._queues:
                self._queues.remove(queue)

    def _publish(self, event: ProgressEvent) -> None:
        if self.closed:
            log.debug(f"Dropping event on closed channel: {event}")
            return
        self._history.append(event)
        for queue in self._queues:
            queue.put_nowait(event)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                log.warning(f"Progress subscriber failed: {e}")

    def _close(self) -> None:
        self.closed = True
        for queue in self._queues:
            queue.put_nowait(None)
        self._queues.clear()

    def stage(self, message: str, percent: float = 0.0) -> None:
        self.percent = round(min(max(percent, 0.0), 100.0), 1)
        self.message = message
        self._publish(ProgressEvent(EventKind.PROGRESS, message, self.percent))

    def update(self, percent: float, message: Optional[str] = None) -> None:
        percent = round(min(max(percent, 0.0), 100.0), 1)
        if percent < self.percent:
            percent = self.percent
        if percent == self.percent and (message is None or message == self.message):
            return
        self.percent = percent
        if message is not None:
            self.message = message
        self._publish(ProgressEvent(EventKind.PROGRESS, self.message, self.percent))

    def warn(self, message: str) -> None:
        self._publish(ProgressEvent(EventKind.WARNING, message, self.percent))

    def complete(self, message: str) -> None:
        self.percent = 100.0
        self.message = message
        self._publish(ProgressEvent(EventKind.COMPLETE, message, 100.0))
        self._close()

    def error(self, message: str) -> None:
        self.message = message
        self._publish(ProgressEvent(EventKind.ERROR, message, self.percent))
        self._close()

    def close(self) -> None:
        """Ends the stream without a terminal event (used for cancellation)."""
        self._close()

    def scoped(self, start: float, span: float) -> "ScopedProgress":
        return ScopedProgress(self, start, span)


class ScopedProgress:
    """
    Maps 0-100 progress of a sub-task onto ``[start, start + span]`` of its
    parent. Stage changes inside the sub-task only change the message, so the
    parent's percentage keeps moving forward.
    """

    def __init__(self, parent: ProgressSink, start: float, span: float):
        self.parent = parent
        self.start = start
        self.span = span

    def _map(self, percent: float) -> float:
        return self.start + self.span * min(max(percent, 0.0), 100.0) / 100

    def stage(self, message: str, percent: float = 0.0) -> None:
        self.parent.update(self._map(percent), message)

    def update(self, percent: float, message: Optional[str] = None) -> None:
        self.parent.update(self._map(percent), message)


class NullProgress:
    def stage(self, message: str, percent: float = 0.0) -> None:
        pass

    def update(self, percent: float, message: Optional[str] = None) -> None:
        pass
