"""Throttled logging of blob transfer progress."""

import asyncio
import logging
import time
from typing import Optional

from .models import ProgressEvent

logger = logging.getLogger(__name__)

_STOP = object()


class ProgressRelay:
    """Bounded event sink with a single consumer that logs at a fixed cadence.

    Producers call :meth:`emit`, which never blocks: when the queue is full
    the oldest pending event is dropped. The consumer emits at most one log
    record per ``interval`` seconds, reporting how many events it coalesced.
    """

    def __init__(self, interval: float = 1.0, maxsize: int = 256) -> None:
        """Initialize the relay.

        Args:
            interval: Minimum seconds between two log records
            maxsize: Maximum number of pending events
        """
        self.interval = interval
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self._last_emit: Optional[float] = None
        self._coalesced = 0
        self.dropped = 0
        self.records = 0

    async def __aenter__(self) -> "ProgressRelay":
        """Start the consumer task."""
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Drain pending events and stop the consumer."""
        await self.aclose()

    def start(self) -> None:
        """Start the consumer task if it is not running."""
        if self._task is None:
            self._task = asyncio.ensure_future(self._consume())

    def emit(self, event: ProgressEvent) -> None:
        """Enqueue an event without blocking the producer."""
        self._put(event)

    def _put(self, item: object) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait(item)

    async def aclose(self) -> None:
        """Stop the consumer after it has processed everything queued so far."""
        if self._task is None:
            return
        task, self._task = self._task, None
        if task.done():
            return
        self._put(_STOP)
        await task

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            self._handle(item)  # type: ignore[arg-type]

    def _handle(self, event: ProgressEvent) -> None:
        self._coalesced += 1
        now = time.monotonic()
        if self._last_emit is not None and now - self._last_emit < self.interval:
            return

        logger.info(
            "Blob %s: %s (%d/%d bytes, %d events)",
            event.artifact[:19],
            event.kind.value,
            event.offset,
            event.size,
            self._coalesced,
            extra={
                "event": event.kind.value,
                "artifact": event.artifact,
                "offset": event.offset,
                "size": event.size,
            },
        )
        self._last_emit = now
        self._coalesced = 0
        self.records += 1
