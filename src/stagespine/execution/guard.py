"""
Dependency guard: the full resilience stack around one dependency.

A guarded call is composed as::

    breaker.execute(
        retry_with_backoff(
            limiter.wait_for_next()
            → queue.enqueue(call_with_timeout(op))    # queued dependencies
            → call_with_timeout(op)                   # everything else
        )
    )

The breaker sits outside the retry loop, so one exhausted retry sequence
counts as one breaker failure. Rate limiting and the timeout apply to
every attempt.

Examples:
    >>> registry = GuardRegistry.from_configs(DEFAULT_DEPENDENCY_CONFIGS)
    >>> guard = registry.get("firecrawl")
    >>> page = await guard.call(lambda: scrape(url), context="scrape homepage")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from stagespine.core.logging import get_logger
from stagespine.execution.circuit_breaker import CircuitBreaker
from stagespine.execution.config import DependencyConfig, RetryConfig
from stagespine.execution.rate_limit import IntervalRateLimiter
from stagespine.execution.request_queue import GlobalRequestQueue
from stagespine.execution.retry import OnRetry, retry_with_backoff
from stagespine.execution.timeout import call_with_timeout

logger = get_logger(__name__)


class DependencyGuard:
    """Breaker, retry, rate limit, queue and timeout for one dependency."""

    def __init__(
        self,
        name: str,
        *,
        retry: RetryConfig,
        breaker: CircuitBreaker,
        limiter: IntervalRateLimiter,
        timeout: float,
        queue: GlobalRequestQueue | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        on_retry: OnRetry | None = None,
    ):
        self.name = name
        self.retry = retry
        self.breaker = breaker
        self.limiter = limiter
        self.timeout = timeout
        self.queue = queue
        self._sleep = sleep
        self._on_retry = on_retry
        self._calls = 0

    @classmethod
    def from_config(
        cls,
        config: DependencyConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_retry: OnRetry | None = None,
    ) -> "DependencyGuard":
        queue = None
        if config.queue_interval is not None:
            queue = GlobalRequestQueue(
                config.name, config.queue_interval, clock=clock, sleep=sleep
            )
        return cls(
            config.name,
            retry=config.retry,
            breaker=CircuitBreaker.from_config(config.name, config.circuit_breaker, clock=clock),
            limiter=IntervalRateLimiter(config.name, config.min_interval, clock=clock, sleep=sleep),
            timeout=config.timeout,
            queue=queue,
            sleep=sleep,
            on_retry=on_retry,
        )

    async def call(
        self,
        op: Callable[[], Any],
        context: str | None = None,
        *,
        blocking: bool = False,
    ) -> Any:
        """Run ``op`` under the dependency's full policy.

        Args:
            op: Zero-argument callable, sync or async
            context: What is being attempted (error messages, logs)
            blocking: ``op`` is a blocking sync callable, run it in a thread

        Raises:
            ServiceError: Retries exhausted or non-retryable failure
            CircuitOpenError: The breaker rejected the call
        """
        self._calls += 1
        operation = f"{self.name}.{context}" if context else self.name

        async def attempt() -> Any:
            await self.limiter.wait_for_next()

            async def timed() -> Any:
                return await call_with_timeout(op, self.timeout, operation, blocking=blocking)

            if self.queue is not None:
                return await self.queue.enqueue(timed)
            return await timed()

        async def with_retries() -> Any:
            return await retry_with_backoff(
                attempt,
                self.retry,
                self.name,
                context=context,
                sleep=self._sleep,
                on_retry=self._on_retry,
            )

        return await self.breaker.execute(with_retries)

    def status(self) -> dict[str, Any]:
        state = self.breaker.get_state()
        return {
            "name": self.name,
            "circuit_state": state.state.value,
            "failures": state.failures,
            "last_failure_time": state.last_failure_time,
            "rate_limit_active": self.limiter.is_active,
            "queue_pending": self.queue.pending if self.queue is not None else 0,
            "calls": self._calls,
        }

    async def close(self) -> None:
        if self.queue is not None:
            await self.queue.close()


class GuardRegistry:
    """One DependencyGuard per dependency name."""

    def __init__(self, guards: Mapping[str, DependencyGuard] | None = None):
        self._guards: dict[str, DependencyGuard] = dict(guards or {})

    @classmethod
    def from_configs(
        cls,
        configs: Mapping[str, DependencyConfig],
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "GuardRegistry":
        return cls({
            name: DependencyGuard.from_config(config, clock=clock, sleep=sleep)
            for name, config in configs.items()
        })

    def register(self, guard: DependencyGuard) -> None:
        self._guards[guard.name] = guard

    def get(self, name: str) -> DependencyGuard | None:
        return self._guards.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._guards

    def names(self) -> list[str]:
        return list(self._guards)

    def status(self) -> dict[str, dict[str, Any]]:
        return {name: guard.status() for name, guard in self._guards.items()}

    async def close(self) -> None:
        for guard in self._guards.values():
            await guard.close()
        logger.info("guard_registry.closed", guards=len(self._guards))


__all__ = ["DependencyGuard", "GuardRegistry"]
