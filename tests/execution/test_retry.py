"""Tests for the retry engine."""

import asyncio
import time

import pytest

from stagespine.core.errors import ErrorType, ServiceError, UpstreamHTTPError
from stagespine.execution.config import RetryConfig
from stagespine.execution.retry import (
    RetryContext,
    compute_backoff,
    retry_delay,
    retry_with_backoff,
    with_retry,
)


class Flaky:
    """Callable failing ``failures`` times before returning ``result``."""

    def __init__(self, failures, exc_factory=lambda: ConnectionError("reset"), result="ok"):
        self.failures = failures
        self.exc_factory = exc_factory
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_factory()
        return self.result


class TestComputeBackoff:
    """Tests for compute_backoff."""

    def test_exponential_without_jitter(self):
        config = RetryConfig(base_delay=1.0, multiplier=2.0, max_delay=60.0, jitter=0)
        assert [compute_backoff(config, n) for n in range(5)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped_at_max_delay(self):
        config = RetryConfig(base_delay=10.0, multiplier=2.0, max_delay=30.0, jitter=0)
        assert compute_backoff(config, 1) == 20.0
        assert compute_backoff(config, 2) == 30.0
        assert compute_backoff(config, 10) == 30.0

    def test_jitter_is_added_within_range(self):
        config = RetryConfig(base_delay=1.0, multiplier=2.0, max_delay=60.0, jitter=0.5)
        for attempt in range(4):
            delay = compute_backoff(config, attempt)
            base = 2.0 ** attempt
            assert base <= delay <= base + 0.5

    def test_jitter_upper_bound_still_capped(self):
        config = RetryConfig(base_delay=10.0, multiplier=2.0, max_delay=10.0, jitter=2.0)
        assert compute_backoff(config, 0, rng=lambda low, high: high) == 10.0

    def test_retry_after_wins_for_rate_limits(self):
        config = RetryConfig(base_delay=10.0, max_delay=120.0, jitter=0)
        err = ServiceError("slow down", type=ErrorType.RATE_LIMIT, retryable=True,
                           service="openai", retry_after=3.0)
        assert retry_delay(config, err, 4) == 3.0

    def test_rate_limit_without_header_uses_backoff(self):
        config = RetryConfig(base_delay=10.0, max_delay=120.0, jitter=0)
        err = ServiceError("slow down", type=ErrorType.RATE_LIMIT, retryable=True, service="openai")
        assert retry_delay(config, err, 1) == 20.0


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, clock):
        op = Flaky(0)
        assert await retry_with_backoff(op, RetryConfig(), "firecrawl", sleep=clock.sleep) == "ok"
        assert op.calls == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, clock):
        op = Flaky(2)
        result = await retry_with_backoff(op, RetryConfig(max_retries=3), "firecrawl", sleep=clock.sleep)
        assert result == "ok"
        assert op.calls == 3
        assert len(clock.sleeps) == 2

    @pytest.mark.asyncio
    async def test_exhausted_budget_makes_max_retries_plus_one_attempts(self, clock):
        config = RetryConfig(max_retries=3, base_delay=1.0, multiplier=2.0, max_delay=60.0, jitter=0.5)
        op = Flaky(100)

        with pytest.raises(ServiceError) as exc_info:
            await retry_with_backoff(op, config, "firecrawl", sleep=clock.sleep)

        assert op.calls == 4
        assert exc_info.value.type is ErrorType.NETWORK
        assert len(clock.sleeps) == 3
        # cumulative wait at least the jitter-free backoff schedule
        assert clock.total_slept >= 1.0 + 2.0 + 4.0
        assert clock.total_slept <= 1.0 + 2.0 + 4.0 + 3 * 0.5

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self, clock):
        op = Flaky(100, exc_factory=lambda: UpstreamHTTPError(401, "bad key"))

        with pytest.raises(ServiceError) as exc_info:
            await retry_with_backoff(op, RetryConfig(max_retries=5), "claude", sleep=clock.sleep)

        assert op.calls == 1
        assert exc_info.value.type is ErrorType.AUTH
        assert exc_info.value.retryable is False
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_zero_retries(self, clock):
        op = Flaky(1)
        with pytest.raises(ServiceError):
            await retry_with_backoff(op, RetryConfig(max_retries=0), "mcp", sleep=clock.sleep)
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_retry_after_honored_exactly(self, clock):
        op = Flaky(1, exc_factory=lambda: UpstreamHTTPError(429, headers={"retry-after": "3"}))
        config = RetryConfig(max_retries=5, base_delay=10.0, max_delay=120.0, jitter=2.0)

        assert await retry_with_backoff(op, config, "openai", sleep=clock.sleep) == "ok"
        assert op.calls == 2
        assert clock.sleeps == [3.0]

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_retry_after_real_wait(self):
        """A 429 with retry-after: 3 succeeds on the second attempt about 3s later."""
        op = Flaky(1, exc_factory=lambda: UpstreamHTTPError(429, headers={"Retry-After": "3"}))
        config = RetryConfig(max_retries=5, base_delay=10.0, max_delay=120.0, jitter=2.0)

        started = time.monotonic()
        assert await retry_with_backoff(op, config, "openai") == "ok"
        elapsed = time.monotonic() - started

        assert op.calls == 2
        assert 2.9 <= elapsed < 6.0

    @pytest.mark.asyncio
    async def test_on_retry_callback(self, clock):
        seen = []
        op = Flaky(2)
        config = RetryConfig(max_retries=3, base_delay=1.0, jitter=0)

        await retry_with_backoff(
            op, config, "firecrawl", sleep=clock.sleep,
            on_retry=lambda attempt, err, delay: seen.append((attempt, err.type, delay)),
        )
        assert seen == [(1, ErrorType.NETWORK, 1.0), (2, ErrorType.NETWORK, 2.0)]

    @pytest.mark.asyncio
    async def test_sync_operation(self, clock):
        calls = []

        def op():
            calls.append(1)
            if len(calls) < 2:
                raise TimeoutError("slow")
            return 42

        assert await retry_with_backoff(op, RetryConfig(), "mcp", sleep=clock.sleep) == 42
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_service_error_raised_by_op_is_kept(self, clock):
        original = ServiceError("bad", type=ErrorType.VALIDATION, retryable=False, service="claude")

        async def op():
            raise original

        with pytest.raises(ServiceError) as exc_info:
            await retry_with_backoff(op, RetryConfig(), "claude", sleep=clock.sleep)
        assert exc_info.value is original

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        async def op():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await retry_with_backoff(op, RetryConfig(), "mcp")


class TestRetryContext:
    @pytest.mark.asyncio
    async def test_records_history(self, clock):
        config = RetryConfig(max_retries=2, base_delay=1.0, jitter=0)
        ctx = RetryContext(config=config, service="mcp", sleep=clock.sleep)

        with pytest.raises(ServiceError):
            await ctx.run(Flaky(100))

        assert ctx.attempts == 3
        assert [attempt for attempt, _, _ in ctx.errors] == [1, 2, 3]
        assert ctx.total_delay == 1.0 + 2.0
        assert ctx.last_error.type is ErrorType.NETWORK
        assert ctx.elapsed_seconds >= 0


class TestWithRetryDecorator:
    @pytest.mark.asyncio
    async def test_decorated_function_retries(self):
        calls = []

        @with_retry(RetryConfig(max_retries=2, base_delay=0.01, max_delay=0.01, jitter=0), service="mcp")
        async def fetch(x):
            calls.append(x)
            if len(calls) < 2:
                raise ConnectionError("reset")
            return x * 2

        assert await fetch(21) == 42
        assert calls == [21, 21]
        assert fetch.__name__ == "fetch"

    def test_rejects_sync_functions(self):
        with pytest.raises(TypeError):
            @with_retry(RetryConfig(), service="mcp")
            def not_async():
                return 1
