"""Tests for IntervalRateLimiter."""

import asyncio
import time

import pytest

from stagespine.execution.rate_limit import IntervalRateLimiter


class TestIntervalRateLimiter:
    @pytest.mark.asyncio
    async def test_first_call_does_not_wait(self, clock):
        limiter = IntervalRateLimiter("claude", 1.5, clock=clock, sleep=clock.sleep)
        await limiter.wait_for_next()
        assert clock.sleeps == []
        assert limiter.last_dispatch == clock()

    @pytest.mark.asyncio
    async def test_second_call_waits_remaining_interval(self, clock):
        limiter = IntervalRateLimiter("claude", 1.5, clock=clock, sleep=clock.sleep)
        await limiter.wait_for_next()
        clock.advance(0.5)
        await limiter.wait_for_next()
        assert clock.sleeps == [pytest.approx(1.0)]

    @pytest.mark.asyncio
    async def test_no_wait_after_interval_elapsed(self, clock):
        limiter = IntervalRateLimiter("firecrawl", 1.0, clock=clock, sleep=clock.sleep)
        await limiter.wait_for_next()
        clock.advance(5.0)
        await limiter.wait_for_next()
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_concurrent_callers_are_spaced(self, clock):
        limiter = IntervalRateLimiter("openai", 15.0, clock=clock, sleep=clock.sleep)
        stamps = []

        async def caller():
            await limiter.wait_for_next()
            stamps.append(clock())

        await asyncio.gather(*(caller() for _ in range(4)))

        gaps = [b - a for a, b in zip(stamps, stamps[1:])]
        assert len(stamps) == 4
        assert all(gap >= 15.0 for gap in gaps)

    @pytest.mark.asyncio
    async def test_real_spacing(self):
        limiter = IntervalRateLimiter("mcp", 0.05)
        stamps = []
        for _ in range(3):
            await limiter.wait_for_next()
            stamps.append(time.monotonic())
        assert all(b - a >= 0.045 for a, b in zip(stamps, stamps[1:]))

    @pytest.mark.asyncio
    async def test_is_active(self, clock):
        limiter = IntervalRateLimiter("claude", 2.0, clock=clock, sleep=clock.sleep)
        assert limiter.is_active is False
        await limiter.wait_for_next()
        assert limiter.is_active is True
        clock.advance(2.0)
        assert limiter.is_active is False

    @pytest.mark.asyncio
    async def test_zero_interval_never_waits(self, clock):
        limiter = IntervalRateLimiter("local", 0.0, clock=clock, sleep=clock.sleep)
        for _ in range(3):
            await limiter.wait_for_next()
        assert clock.sleeps == []

    def test_negative_interval_rejected(self):
        with pytest.raises(ValueError):
            IntervalRateLimiter("bad", -1.0)
