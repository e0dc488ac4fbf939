"""
Process-wide FIFO request queue for scarce dependencies.

Some dependencies (long-running deep-research endpoints) allow only a
trickle of requests per account, no matter how many jobs want one. Every
caller submits to one queue; a single background drain task dispatches
the callables one at a time, in submission order, with at least
``min_interval`` seconds between dispatches.

Architecture:
    ::

        job A ─┐
        job B ─┼─► asyncio.Queue ─► drain task ─► fn() ─► caller's future
        job C ─┘      (FIFO)          (serial, spaced)

Examples:
    >>> queue = GlobalRequestQueue("openai", min_interval=15.0)
    >>> report = await queue.enqueue(lambda: client.research(prompt))
    >>> await queue.close()

Tags:
    queue, fifo, asyncio, throttle, stagespine

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import time
from collections.abc import Awaitable, Callable
from typing import Any

from stagespine.core.errors import QueueClosedError
from stagespine.core.logging import get_logger

logger = get_logger(__name__)

_Item = tuple[Callable[[], Any], "asyncio.Future[Any]"]


class GlobalRequestQueue:
    """Serial FIFO dispatcher with minimum spacing.

    The drain task is started lazily on the loop of the first ``enqueue``.
    """

    def __init__(
        self,
        name: str,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.name = name
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._queue: asyncio.Queue[_Item] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._in_flight: asyncio.Future[Any] | None = None
        self._last_dispatch: float | None = None
        self._closed = False
        self._dispatched = 0

    @property
    def pending(self) -> int:
        """Number of callables waiting to be dispatched."""
        return self._queue.qsize()

    @property
    def dispatched(self) -> int:
        return self._dispatched

    @property
    def closed(self) -> bool:
        return self._closed

    async def enqueue(self, fn: Callable[[], Any]) -> Any:
        """Submit ``fn`` and wait for its outcome.

        Returns the callable's result or raises its exception.

        Raises:
            QueueClosedError: The queue was closed before ``fn`` completed.
        """
        if self._closed:
            raise QueueClosedError(f"Request queue '{self.name}' is closed")

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((fn, future))
        logger.debug("request_queue.enqueued", queue=self.name, pending=self.pending)
        self._ensure_worker()
        return await future

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(
                self._drain(), name=f"request-queue:{self.name}"
            )

    async def _drain(self) -> None:
        while True:
            fn, future = await self._queue.get()
            try:
                if future.done():
                    # caller gave up while queued
                    continue

                if self._last_dispatch is not None:
                    wait = self.min_interval - (self._clock() - self._last_dispatch)
                    if wait > 0:
                        await self._sleep(wait)

                self._last_dispatch = self._clock()
                self._dispatched += 1
                self._in_flight = future
                try:
                    result = fn()
                    if inspect.isawaitable(result):
                        result = await result
                except asyncio.CancelledError:
                    worker = asyncio.current_task()
                    if worker is not None and worker.cancelling():
                        # close() owns the in-flight future
                        raise
                    if not future.done():
                        future.cancel()
                except Exception as exc:
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
                self._in_flight = None
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        """Stop the drain task and fail everything still queued."""
        self._closed = True

        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None

        failed = 0
        if self._in_flight is not None and not self._in_flight.done():
            self._in_flight.set_exception(
                QueueClosedError(f"Request queue '{self.name}' closed during dispatch")
            )
            failed += 1
        self._in_flight = None

        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            self._queue.task_done()
            if not future.done():
                future.set_exception(
                    QueueClosedError(f"Request queue '{self.name}' closed before dispatch")
                )
                failed += 1

        logger.info("request_queue.closed", queue=self.name, failed=failed)


__all__ = ["GlobalRequestQueue"]
