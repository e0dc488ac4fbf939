"""Rate Limiting: minimum spacing between calls to one dependency.

Manifesto:
External APIs (scrapers, LLM endpoints) enforce rate limits.
Exceeding them causes 429 errors and, with long-running research calls,
minutes of lost work. An in-process limiter spaces outgoing calls
*before* hitting the limit.

ARCHITECTURE
────────────
::

    IntervalRateLimiter   ─ at least ``min_interval`` seconds between dispatches

    Callers are serialized on an asyncio.Lock, so two consecutive
    returns from ``wait_for_next()`` are always ``min_interval`` apart,
    no matter how many jobs are waiting.

BEST PRACTICES
──────────────
- One limiter per dependency, shared by every job that calls it.
- Combine with ``CircuitBreaker`` and retry (see ``guard.py``).

Related modules:
    circuit_breaker.py: fail-fast on sustained failures
    retry.py          : backoff on transient failures
    request_queue.py  : process-wide FIFO for scarce dependencies

Example::

    limiter = IntervalRateLimiter("claude", min_interval=1.5)
    await limiter.wait_for_next()
    await call_claude()

Tags:
    stagespine, execution, rate-limit, throttle, asyncio

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from stagespine.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class IntervalRateLimiter:
    """Enforce a minimum interval between calls.

    Attributes:
        name: Dependency name (for logs)
        min_interval: Seconds between consecutive dispatches (0 disables)
        clock: Monotonic clock, injectable for tests
        sleep: Awaitable sleep, injectable for tests
    """

    name: str
    min_interval: float
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    _last_dispatch: float | None = field(default=None, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _waiting: int = field(default=0, init=False)

    def __post_init__(self):
        if self.min_interval < 0:
            raise ValueError("min_interval must be >= 0")

    def get_wait_time(self) -> float:
        """Seconds until the next call would be dispatched."""
        if self._last_dispatch is None:
            return 0.0
        return max(0.0, self.min_interval - (self.clock() - self._last_dispatch))

    @property
    def is_active(self) -> bool:
        """True when a call made now would have to wait."""
        return self._waiting > 0 or self.get_wait_time() > 0

    @property
    def last_dispatch(self) -> float | None:
        return self._last_dispatch

    async def wait_for_next(self) -> None:
        """Suspend until ``min_interval`` has passed since the last dispatch."""
        self._waiting += 1
        try:
            async with self._lock:
                wait = self.get_wait_time()
                if wait > 0:
                    logger.debug("rate_limit.waiting", limiter=self.name, wait=round(wait, 3))
                    await self.sleep(wait)
                self._last_dispatch = self.clock()
        finally:
            self._waiting -= 1


__all__ = ["IntervalRateLimiter"]
