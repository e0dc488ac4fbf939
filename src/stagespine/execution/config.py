"""
Per-dependency resilience configuration.

Every external dependency gets its own retry policy, breaker thresholds,
rate-limit interval and call timeout. The tables are pydantic models so a
bad value fails at construction, not halfway through a pipeline.

Manifesto:
    - **Validated:** delays positive, ``max_delay >= base_delay``, multiplier >= 1
    - **Per dependency:** a slow research API and a fast scraper never share a policy
    - **Loadable:** defaults in code, overrides from a TOML file

Examples:
    >>> from stagespine.execution.config import DEFAULT_DEPENDENCY_CONFIGS
    >>> DEFAULT_DEPENDENCY_CONFIGS["openai"].retry.max_retries
    5

TOML layout::

    [dependencies.openai]
    min_interval = 15.0
    queue_interval = 15.0
    timeout = 600.0

    [dependencies.openai.retry]
    max_retries = 5
    base_delay = 10.0

    [dependencies.openai.circuit_breaker]
    failure_threshold = 3

Tags:
    configuration, retry, circuit-breaker, rate-limit, pydantic, toml

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from stagespine.core.errors import ConfigError


class RetryConfig(BaseModel):
    """Retry policy for one dependency.

    Delay before retry ``n`` (zero based) is
    ``min(base_delay * multiplier**n + uniform(0, jitter), max_delay)``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=10.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.5, ge=0)

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> "RetryConfig":
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= base_delay ({self.base_delay})"
            )
        return self


class CircuitBreakerConfig(BaseModel):
    """Breaker thresholds for one dependency."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout: float = Field(default=60.0, gt=0)
    monitor_window: float | None = Field(default=None, gt=0)


class DependencyConfig(BaseModel):
    """Everything the guard needs to call one dependency.

    Attributes:
        name: Dependency name (``service`` on a Stage)
        retry: Retry policy
        circuit_breaker: Breaker thresholds
        min_interval: Minimum seconds between calls (0 disables the limiter)
        queue_interval: When set, calls go through a global FIFO queue
            spaced by this many seconds
        timeout: Per-attempt call timeout in seconds
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    min_interval: float = Field(default=0.0, ge=0)
    queue_interval: float | None = Field(default=None, ge=0)
    timeout: float = Field(default=60.0, gt=0)


# ── Tuned defaults ───────────────────────────────────────────────

DEFAULT_RETRY_CONFIGS: dict[str, RetryConfig] = {
    "firecrawl": RetryConfig(
        max_retries=3, base_delay=1.0, max_delay=10.0, multiplier=2.0, jitter=0.5
    ),
    # Deep research is heavily rate limited: few long waits beat many short ones
    "openai": RetryConfig(
        max_retries=5, base_delay=10.0, max_delay=120.0, multiplier=2.5, jitter=2.0
    ),
    "claude": RetryConfig(
        max_retries=2, base_delay=2.0, max_delay=20.0, multiplier=2.0, jitter=1.0
    ),
    "mcp": RetryConfig(
        max_retries=3, base_delay=1.0, max_delay=15.0, multiplier=2.0, jitter=0.5
    ),
}

DEFAULT_CIRCUIT_BREAKER_CONFIGS: dict[str, CircuitBreakerConfig] = {
    "firecrawl": CircuitBreakerConfig(
        failure_threshold=5, reset_timeout=60.0, monitor_window=300.0
    ),
    "openai": CircuitBreakerConfig(
        failure_threshold=3, reset_timeout=120.0, monitor_window=600.0
    ),
    "claude": CircuitBreakerConfig(
        failure_threshold=4, reset_timeout=90.0, monitor_window=450.0
    ),
    "mcp": CircuitBreakerConfig(
        failure_threshold=3, reset_timeout=60.0, monitor_window=300.0
    ),
}

DEFAULT_RATE_LIMITS: dict[str, float] = {
    "firecrawl": 1.0,
    "openai": 15.0,
    "claude": 1.5,
    "mcp": 1.0,
}

DEFAULT_TIMEOUTS: dict[str, float] = {
    "firecrawl": 60.0,
    "openai": 600.0,
    "claude": 120.0,
    "mcp": 60.0,
}

# Dependencies whose calls are serialized process-wide through a FIFO queue
DEFAULT_QUEUE_INTERVALS: dict[str, float] = {
    "openai": 15.0,
}


def _build_defaults() -> dict[str, DependencyConfig]:
    return {
        name: DependencyConfig(
            name=name,
            retry=DEFAULT_RETRY_CONFIGS[name],
            circuit_breaker=DEFAULT_CIRCUIT_BREAKER_CONFIGS[name],
            min_interval=DEFAULT_RATE_LIMITS[name],
            queue_interval=DEFAULT_QUEUE_INTERVALS.get(name),
            timeout=DEFAULT_TIMEOUTS[name],
        )
        for name in DEFAULT_RETRY_CONFIGS
    }


DEFAULT_DEPENDENCY_CONFIGS: dict[str, DependencyConfig] = _build_defaults()


def parse_dependency_configs(
    data: Mapping[str, Any],
    *,
    base: Mapping[str, DependencyConfig] | None = None,
) -> dict[str, DependencyConfig]:
    """Validate a ``{name: table}`` mapping into DependencyConfigs.

    Tables for names present in ``base`` are merged over the base entry, so
    an override file only needs the fields it changes.

    Raises:
        ConfigError: If any table fails validation.
    """
    configs = dict(base or {})
    for name, table in data.items():
        if not isinstance(table, Mapping):
            raise ConfigError(f"Dependency '{name}' must be a table, got {type(table).__name__}")

        merged: dict[str, Any] = {}
        if name in configs:
            merged = configs[name].model_dump()
        for key, value in table.items():
            if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        merged["name"] = name

        try:
            configs[name] = DependencyConfig.model_validate(merged)
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration for dependency '{name}': {exc}") from exc
    return configs


def load_dependency_configs(
    path: str | Path | None = None,
    *,
    include_defaults: bool = True,
) -> dict[str, DependencyConfig]:
    """Load dependency configs from a TOML file.

    Args:
        path: TOML file with a ``[dependencies.<name>]`` table per dependency.
            ``None`` returns the defaults.
        include_defaults: Merge file entries over the built-in tables.

    Raises:
        ConfigError: Missing file, malformed TOML or invalid values.
    """
    base = DEFAULT_DEPENDENCY_CONFIGS if include_defaults else {}
    if path is None:
        return dict(base)

    path = Path(path)
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Dependency config file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Malformed dependency config {path}: {exc}") from exc

    return parse_dependency_configs(data.get("dependencies", {}), base=base)


__all__ = [
    "RetryConfig",
    "CircuitBreakerConfig",
    "DependencyConfig",
    "DEFAULT_RETRY_CONFIGS",
    "DEFAULT_CIRCUIT_BREAKER_CONFIGS",
    "DEFAULT_RATE_LIMITS",
    "DEFAULT_TIMEOUTS",
    "DEFAULT_QUEUE_INTERVALS",
    "DEFAULT_DEPENDENCY_CONFIGS",
    "parse_dependency_configs",
    "load_dependency_configs",
]
