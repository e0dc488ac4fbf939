"""Timeout enforcement for dependency calls.

Every guarded call is raced against a fixed timeout. On expiry the caller
gets :class:`TimeoutExpired`, a built-in ``TimeoutError`` that classifies as
``ErrorType.TIMEOUT`` and is retried per the dependency's policy.

Manifesto:
    Calls without timeouts are a reliability anti-pattern. A hung research
    request holds a job, its queue slot and every job queued behind it.

    - Async calls are cancelled on expiry (``asyncio.timeout``)
    - Sync callables run in a worker thread; the thread cannot be killed,
      its late result is discarded

Examples:
    >>> from stagespine.execution.timeout import call_with_timeout, TimeoutExpired
    >>>
    >>> try:
    ...     page = await call_with_timeout(lambda: scrape(url), 60.0, "firecrawl.scrape")
    ... except TimeoutExpired as e:
    ...     print(f"{e.operation} took longer than {e.timeout}s")
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any


class TimeoutExpired(TimeoutError):
    """A dependency call got no answer within its timeout.

    Carries ``code = "TIMEOUT"`` like the timeout errors of HTTP clients, so
    the classifier treats both the same way.
    """

    code = "TIMEOUT"

    def __init__(self, timeout: float, elapsed: float | None = None, operation: str = "operation"):
        self.timeout = timeout
        self.elapsed = elapsed
        self.operation = operation
        detail = f" after {elapsed:.2f}s" if elapsed is not None else ""
        super().__init__(f"{operation}: no response within {timeout:g}s{detail}")


@asynccontextmanager
async def with_deadline_async(
    seconds: float, operation: str = "operation"
) -> AsyncIterator[None]:
    """Async context manager enforcing a time limit.

    Only the expiry of this deadline is converted to TimeoutExpired; a
    ``TimeoutError`` raised by the body itself propagates unchanged.

    Raises:
        TimeoutExpired: If the deadline is exceeded
        ValueError: If seconds <= 0
    """
    if seconds <= 0:
        raise ValueError(f"timeout for {operation} must be > 0, got {seconds}")

    start = time.monotonic()
    cm = asyncio.timeout(seconds)
    try:
        async with cm:
            yield
    except TimeoutError:
        if not cm.expired():
            raise
        raise TimeoutExpired(
            timeout=seconds,
            elapsed=time.monotonic() - start,
            operation=operation,
        ) from None


async def call_with_timeout(
    op: Callable[[], Any],
    seconds: float,
    operation: str = "operation",
    *,
    blocking: bool = False,
) -> Any:
    """Call ``op`` and race it against ``seconds``.

    Args:
        op: Zero-argument callable, sync or async. Awaitable results are
            awaited inside the deadline.
        seconds: Maximum execution time
        operation: Name for error messages
        blocking: Run ``op`` in a worker thread via ``asyncio.to_thread``
            (for sync callables that block)

    Raises:
        TimeoutExpired: If execution exceeds the timeout
        Exception: Any exception raised by ``op``
    """
    async with with_deadline_async(seconds, operation):
        if blocking:
            result = await asyncio.to_thread(op)
        else:
            result = op()
        if inspect.isawaitable(result):
            result = await result
        return result


__all__ = ["TimeoutExpired", "with_deadline_async", "call_with_timeout"]
