"""Circuit breaker pattern for fault tolerance.

Prevents cascading failures by failing fast when a downstream dependency
is experiencing issues. One breaker per dependency, shared by every job.

States:
    CLOSED: Normal operation, calls pass through
    OPEN: Failing fast, calls rejected without being executed
    HALF_OPEN: One trial call tests whether the dependency recovered

Example:
    >>> from stagespine.execution.circuit_breaker import CircuitBreaker
    >>>
    >>> breaker = CircuitBreaker("firecrawl", failure_threshold=5, reset_timeout=60.0)
    >>> result = await breaker.execute(lambda: scrape(url))
"""

from __future__ import annotations

import inspect
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from stagespine.core.errors import CircuitOpenError
from stagespine.core.logging import get_logger
from stagespine.execution.config import CircuitBreakerConfig

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Rejecting calls
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass(frozen=True)
class CircuitBreakerState:
    """Point-in-time view of a breaker."""

    state: CircuitState
    failures: int
    last_failure_time: float | None


@dataclass
class CircuitStats:
    """Counters for breaker monitoring."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0

    @property
    def failure_rate(self) -> float:
        """Failure rate as percentage."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100


@dataclass
class CircuitBreaker:
    """Circuit breaker for one dependency.

    Attributes:
        name: Dependency name
        failure_threshold: Consecutive failures before opening
        reset_timeout: Seconds OPEN before a trial call is admitted
        monitor_window: When set, CLOSED failures older than this many
            seconds no longer count towards the threshold
        clock: Monotonic clock, injectable for tests
    """

    name: str
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    monitor_window: float | None = None
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_times: deque[float] = field(default_factory=deque, init=False)
    _last_failure_time: float | None = field(default=None, init=False)
    _trial_in_flight: bool = field(default=False, init=False)
    _stats: CircuitStats = field(default_factory=CircuitStats, init=False)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout <= 0:
            raise ValueError("reset_timeout must be > 0")

    @classmethod
    def from_config(
        cls,
        name: str,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> "CircuitBreaker":
        return cls(
            name=name,
            failure_threshold=config.failure_threshold,
            reset_timeout=config.reset_timeout,
            monitor_window=config.monitor_window,
            clock=clock,
        )

    # ── State ────────────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        """Current state, applying the OPEN → HALF_OPEN timeout."""
        self._check_state_transition()
        return self._state

    @property
    def failures(self) -> int:
        self._evict_stale_failures()
        return len(self._failure_times)

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    def get_state(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            state=self.state,
            failures=self.failures,
            last_failure_time=self._last_failure_time,
        )

    def _retry_in(self) -> float:
        if self._last_failure_time is None:
            return 0.0
        return max(0.0, self.reset_timeout - (self.clock() - self._last_failure_time))

    def _check_state_transition(self) -> None:
        if self._state == CircuitState.OPEN and self._retry_in() <= 0:
            self._transition_to(CircuitState.HALF_OPEN)

    def _evict_stale_failures(self) -> None:
        if self.monitor_window is None or self._state != CircuitState.CLOSED:
            return
        cutoff = self.clock() - self.monitor_window
        while self._failure_times and self._failure_times[0] < cutoff:
            self._failure_times.popleft()

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._stats.state_changes += 1

        if new_state == CircuitState.CLOSED:
            self._failure_times.clear()
        if new_state != CircuitState.HALF_OPEN:
            self._trial_in_flight = False

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "circuit_breaker.state_changed",
            breaker=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
            failures=len(self._failure_times),
        )

    # ── Admission & outcomes ─────────────────────────────────────

    def allow_request(self) -> bool:
        """Check whether a call may proceed.

        In HALF_OPEN exactly one trial is admitted; every other caller is
        rejected until the trial settles.
        """
        self._check_state_transition()
        self._stats.total_requests += 1

        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True

        self._stats.rejected_requests += 1
        return False

    def record_success(self) -> None:
        self._stats.successful_requests += 1
        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.CLOSED)
        else:
            self._failure_times.clear()

    def record_failure(self, error: BaseException | None = None) -> None:
        now = self.clock()
        self._stats.failed_requests += 1
        self._last_failure_time = now

        if self._state == CircuitState.HALF_OPEN:
            # The trial failed: back to OPEN for another full reset_timeout
            self._transition_to(CircuitState.OPEN)
            return

        self._failure_times.append(now)
        self._evict_stale_failures()
        if self._state == CircuitState.CLOSED and len(self._failure_times) >= self.failure_threshold:
            self._transition_to(CircuitState.OPEN)

    def reset(self) -> None:
        """Reset to CLOSED with no recorded failures."""
        self._transition_to(CircuitState.CLOSED)
        self._failure_times.clear()
        self._last_failure_time = None

    def force_open(self) -> None:
        """Force OPEN (maintenance or tests)."""
        self._last_failure_time = self.clock()
        self._transition_to(CircuitState.OPEN)

    async def execute(self, op: Callable[[], Any]) -> Any:
        """Run ``op`` through the breaker.

        Raises:
            CircuitOpenError: The breaker rejected the call; ``op`` was not run.
        """
        if not self.allow_request():
            raise CircuitOpenError(self.name, retry_in=self._retry_in())

        trial = self._state == CircuitState.HALF_OPEN
        try:
            result = op()
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            self.record_failure(exc)
            raise
        finally:
            if trial and self._state == CircuitState.HALF_OPEN:
                # Trial ended without an outcome (cancelled): admit another
                self._trial_in_flight = False

        self.record_success()
        return result


class CircuitBreakerRegistry:
    """Registry of named circuit breakers, one per dependency."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._clock = clock

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def get_or_create(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker.from_config(
                name, config or CircuitBreakerConfig(), clock=self._clock
            )
        return self._breakers[name]

    def list_all(self) -> list[str]:
        return list(self._breakers)

    def states(self) -> dict[str, CircuitBreakerState]:
        return {name: breaker.get_state() for name, breaker in self._breakers.items()}

    def remove(self, name: str) -> None:
        self._breakers.pop(name, None)

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()


__all__ = [
    "CircuitState",
    "CircuitBreakerState",
    "CircuitStats",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
]
