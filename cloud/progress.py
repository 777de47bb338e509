"""
Transfer progress and cancellation primitives.

``ProgressReporter`` turns byte counts into integer percentages that never
go backwards; ``ProgressStream`` exposes them as a finite async iterator so
consumers can be tested without an event bus.
"""

import asyncio
import logging
import threading
from typing import Callable, Optional

from errors import TransferCancelled

logger = logging.getLogger(__name__)

_END = object()


class CancelToken:
    """Coarse cancellation flag checked between transfer chunks."""

    def __init__(self):
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TransferCancelled()


class ProgressReporter:
    """
    Emits non-decreasing percentages to a callback.

    100 is only emitted by ``complete()``, which the transfer calls after the
    server has confirmed success.
    """

    def __init__(self, callback: Optional[Callable[[int], None]] = None):
        self._callback = callback
        self.last = -1

    def _emit(self, percent: int) -> None:
        if percent <= self.last:
            return
        self.last = percent
        if self._callback is not None:
            self._callback(percent)

    def update(self, done: int, total: int) -> None:
        if total <= 0:
            return
        self._emit(min(99, max(0, done * 100 // total)))

    def set(self, percent: int) -> None:
        self._emit(min(99, max(0, int(percent))))

    def complete(self) -> None:
        self._emit(100)

    __call__ = update


class ProgressStream:
    """
    Finite, non-restartable async iterator of percentages.

    Producers call ``push()``; ``close()`` ends the stream. Iterating a
    second time yields nothing.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._finished = False

    def push(self, percent: int) -> None:
        if not self._closed:
            self._queue.put_nowait(percent)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_END)

    @property
    def closed(self) -> bool:
        return self._closed

    def reporter(self) -> ProgressReporter:
        return ProgressReporter(self.push)

    def __aiter__(self):
        return self

    async def __anext__(self) -> int:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        return item
