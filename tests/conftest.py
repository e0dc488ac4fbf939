"""
Shared pytest fixtures for stagespine tests.

This module provides:
- FakeClock: a controllable monotonic clock with an awaitable ``sleep``
  that advances it, so breaker/limiter/retry timing is tested without
  real waits
- In-memory job store and orchestrator builders
- Logging configured once for the whole session
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Ensure stagespine package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stagespine.core.cache import InMemoryCache
from stagespine.core.logging import configure_logging
from stagespine.orchestration.job_store import JobStore


class FakeClock:
    """Deterministic clock; ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)

    @property
    def total_slept(self) -> float:
        return sum(self.sleeps)


def pytest_configure(config: pytest.Config) -> None:
    configure_logging(level="DEBUG", json_format=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_cache() -> InMemoryCache:
    return InMemoryCache(default_ttl_seconds=None)


@pytest.fixture
def job_store(memory_cache: InMemoryCache) -> JobStore:
    return JobStore(memory_cache, default_ttl=7200)


class SlowCache(InMemoryCache):
    """In-memory cache whose chosen reads and writes take real time.

    ``slow_gets`` and ``slow_sets`` name the 1-based calls that wait
    ``delay`` seconds before touching the data. Every written value is kept
    in ``writes`` in the order the writes landed.
    """

    def __init__(self, slow_gets=(), slow_sets=(), delay: float = 0.05):
        super().__init__(default_ttl_seconds=None)
        self.slow_gets = set(slow_gets)
        self.slow_sets = set(slow_sets)
        self.delay = delay
        self.gets = 0
        self.sets = 0
        self.writes: list[dict] = []

    async def get(self, key):
        self.gets += 1
        if self.gets in self.slow_gets:
            await asyncio.sleep(self.delay)
        return await super().get(key)

    async def set(self, key, value, *, ttl_seconds=None):
        self.sets += 1
        if self.sets in self.slow_sets:
            await asyncio.sleep(self.delay)
        self.writes.append(value)
        await super().set(key, value, ttl_seconds=ttl_seconds)


@pytest.fixture
def slow_cache():
    def make(**kwargs) -> SlowCache:
        return SlowCache(**kwargs)

    return make
