"""stagespine execution: resilience around each external dependency.

ARCHITECTURE
────────────
::

    DependencyGuard (one per dependency)
      ├── CircuitBreaker      ─ fail fast while the dependency is down
      ├── retry_with_backoff  ─ exponential backoff + jitter, retry-after honored
      ├── IntervalRateLimiter ─ minimum spacing between calls
      ├── GlobalRequestQueue  ─ process-wide FIFO for scarce dependencies
      └── call_with_timeout   ─ every attempt raced against a fixed timeout

    CostTracker             ─ per-job token cost accounting

MODULE MAP
──────────
  1. config.py          ─ RetryConfig, CircuitBreakerConfig, DependencyConfig, defaults
  2. retry.py           ─ compute_backoff, retry_with_backoff, RetryContext
  3. circuit_breaker.py ─ CircuitBreaker + registry
  4. rate_limit.py      ─ IntervalRateLimiter
  5. request_queue.py   ─ GlobalRequestQueue
  6. timeout.py         ─ call_with_timeout, TimeoutExpired
  7. guard.py           ─ DependencyGuard, GuardRegistry
  8. cost.py            ─ CostTracker
"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitBreakerState,
    CircuitState,
)
from .config import (
    DEFAULT_DEPENDENCY_CONFIGS,
    CircuitBreakerConfig,
    DependencyConfig,
    RetryConfig,
    load_dependency_configs,
)
from .cost import CostSummary, CostTracker, ModelPricing
from .guard import DependencyGuard, GuardRegistry
from .rate_limit import IntervalRateLimiter
from .request_queue import GlobalRequestQueue
from .retry import RetryContext, compute_backoff, retry_with_backoff, with_retry
from .timeout import TimeoutExpired, call_with_timeout, with_deadline_async

__all__ = [
    # Config
    "RetryConfig",
    "CircuitBreakerConfig",
    "DependencyConfig",
    "DEFAULT_DEPENDENCY_CONFIGS",
    "load_dependency_configs",
    # Retry
    "compute_backoff",
    "retry_with_backoff",
    "RetryContext",
    "with_retry",
    # Circuit breaker
    "CircuitState",
    "CircuitBreakerState",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    # Rate limiting & queueing
    "IntervalRateLimiter",
    "GlobalRequestQueue",
    # Timeout
    "TimeoutExpired",
    "call_with_timeout",
    "with_deadline_async",
    # Guard
    "DependencyGuard",
    "GuardRegistry",
    # Cost
    "ModelPricing",
    "CostSummary",
    "CostTracker",
]
