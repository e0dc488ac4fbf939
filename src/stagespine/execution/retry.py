"""Retry with exponential backoff, jitter and server-requested waits.

Every failure is classified first; only retryable ServiceErrors are tried
again. A rate-limited response that carries an explicit retry-after waits
exactly that long instead of the computed backoff.

Example:
    >>> from stagespine.execution.config import RetryConfig
    >>> from stagespine.execution.retry import compute_backoff
    >>>
    >>> config = RetryConfig(max_retries=5, base_delay=1.0, max_delay=60.0)
    >>> for attempt in range(5):
    ...     delay = compute_backoff(config, attempt)
    ...     print(f"Attempt {attempt}: wait {delay:.2f}s")
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from stagespine.core.errors import ErrorType, ServiceError, classify_error
from stagespine.core.logging import get_logger
from stagespine.execution.config import RetryConfig

T = TypeVar("T")

logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]
OnRetry = Callable[[int, ServiceError, float], None]


def compute_backoff(
    config: RetryConfig,
    attempt: int,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """Delay in seconds before retry ``attempt`` (zero based).

    ``min(base_delay * multiplier**attempt + uniform(0, jitter), max_delay)``
    """
    delay = config.base_delay * (config.multiplier ** attempt)
    if config.jitter:
        delay += rng(0.0, config.jitter)
    return min(delay, config.max_delay)


def retry_delay(config: RetryConfig, error: ServiceError, attempt: int) -> float:
    """Delay for a classified error: retry-after when given, backoff otherwise."""
    if error.type is ErrorType.RATE_LIMIT and error.retry_after is not None:
        return error.retry_after
    return compute_backoff(config, attempt)


async def _invoke(op: Callable[[], Any]) -> Any:
    result = op()
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass
class RetryContext:
    """Retry state for one logical call.

    Tracks every failed attempt with its classified error and the delay
    chosen before the next attempt.

    Example:
        >>> ctx = RetryContext(config=RetryConfig(max_retries=3), service="firecrawl")
        >>> result = await ctx.run(lambda: scrape(url))
    """

    config: RetryConfig
    service: str
    context: str | None = None
    sleep: SleepFn | None = None
    on_retry: OnRetry | None = None
    attempt: int = field(default=0, init=False)
    last_error: ServiceError | None = field(default=None, init=False)
    started_at: float = field(default_factory=time.monotonic, init=False)
    errors: list[tuple[int, ServiceError, float]] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    @property
    def elapsed_seconds(self) -> float:
        """Total elapsed time since the context was created."""
        return time.monotonic() - self.started_at

    @property
    def total_delay(self) -> float:
        """Sum of all waits scheduled between attempts."""
        return sum(delay for _, _, delay in self.errors)

    def should_retry(self, error: ServiceError) -> bool:
        return error.retryable and self.attempt <= self.config.max_retries

    async def run(self, op: Callable[[], Any]) -> Any:
        """Execute ``op`` until it succeeds or the budget is spent.

        ``op`` may be sync or async. At most ``max_retries + 1`` attempts are
        made.

        Raises:
            ServiceError: The classified error of the last attempt, or of the
                first non-retryable failure.
        """
        sleep = self.sleep or asyncio.sleep

        while True:
            self.attempt += 1
            try:
                return await _invoke(op)
            except Exception as exc:
                error = classify_error(exc, self.service, self.context)
                self.last_error = error

                if not self.should_retry(error):
                    self.errors.append((self.attempt, error, 0.0))
                    logger.warning(
                        "retry.giving_up",
                        service=self.service,
                        attempts=self.attempt,
                        error_type=error.type.value,
                        retryable=error.retryable,
                        error=error.message,
                    )
                    if error is exc:
                        raise
                    raise error from exc

                delay = retry_delay(self.config, error, self.attempt - 1)
                self.errors.append((self.attempt, error, delay))

                logger.info(
                    "retry.scheduled",
                    service=self.service,
                    attempt=self.attempt,
                    max_retries=self.config.max_retries,
                    delay=round(delay, 3),
                    error_type=error.type.value,
                )
                if self.on_retry:
                    self.on_retry(self.attempt, error, delay)

                await sleep(delay)


async def retry_with_backoff(
    op: Callable[[], Any],
    config: RetryConfig,
    service: str,
    *,
    context: str | None = None,
    sleep: SleepFn | None = None,
    on_retry: OnRetry | None = None,
) -> Any:
    """Run ``op`` under ``config``'s retry policy.

    Args:
        op: Zero-argument callable, sync or async
        config: Retry policy of the dependency
        service: Dependency name used for classification and logs
        context: Description of the call, appended to error messages
        sleep: Awaitable sleep (tests inject a fake)
        on_retry: Callback ``(attempt, error, delay)`` before each wait

    Returns:
        The result of the first successful attempt.

    Raises:
        ServiceError: Non-retryable failure or exhausted budget.
    """
    ctx = RetryContext(
        config=config, service=service, context=context, sleep=sleep, on_retry=on_retry
    )
    return await ctx.run(op)


def with_retry(
    config: RetryConfig,
    service: str,
    *,
    on_retry: OnRetry | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator factory adding retry logic to an async function.

    Example:
        >>> @with_retry(RetryConfig(max_retries=3), service="mcp")
        ... async def fetch_tools():
        ...     return await client.list_tools()
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"with_retry requires an async function, got {func!r}")

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_with_backoff(
                lambda: func(*args, **kwargs),
                config,
                service,
                context=func.__qualname__,
                on_retry=on_retry,
            )

        return wrapper

    return decorator


__all__ = [
    "compute_backoff",
    "retry_delay",
    "RetryContext",
    "retry_with_backoff",
    "with_retry",
]
