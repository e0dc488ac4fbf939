"""Engine settings for stagespine.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    The job store backend is a configuration decision made once at
    startup, never an ad-hoc environment lookup inside the storage code.

    - **Pydantic validation:** Type-checked at startup, not runtime
    - **Environment-driven:** Reads ``STAGESPINE_*`` env vars and ``.env``
    - **Sensible defaults:** In-memory store, 2h record TTL, 20min workflow TTL

Examples:
    >>> from stagespine.core.settings import StageSpineSettings
    >>> settings = StageSpineSettings(job_store_backend="redis",
    ...                               redis_url="redis://cache:6379/0")

Tags:
    settings, configuration, pydantic, environment, stagespine

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StageSpineSettings(BaseSettings):
    """Settings shared by the orchestrator, job store and logging.

    Fields
    ──────
    log_level                : structlog log level
    log_json                 : JSON output (None → auto-detect from tty)
    job_store_backend        : ``memory`` (single process) or ``redis``
    redis_url                : Redis connection URL for the ``redis`` backend
    job_ttl_seconds          : TTL of persisted job records
    workflow_timeout_seconds : Age after which in-flight jobs are swept
    max_resume_attempts      : Resume budget per job
    sweep_interval_seconds   : Period of the background expiry sweep
    job_key_prefix           : Key prefix for job records in the store
    dependency_config_path   : Optional TOML file with dependency tables
    """

    model_config = SettingsConfigDict(
        env_prefix="STAGESPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Job store ────────────────────────────────────────────────
    job_store_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    job_ttl_seconds: int = Field(default=2 * 60 * 60, gt=0)
    job_key_prefix: str = "job:"

    # ── Orchestrator ─────────────────────────────────────────────
    workflow_timeout_seconds: float = Field(default=20 * 60, gt=0)
    max_resume_attempts: int = Field(default=2, ge=0)
    sweep_interval_seconds: float = Field(default=5 * 60, gt=0)

    # ── Dependencies ─────────────────────────────────────────────
    dependency_config_path: Path | None = None


@lru_cache(maxsize=1)
def get_settings() -> StageSpineSettings:
    """Return the process-wide settings, loaded once."""
    return StageSpineSettings()


__all__ = ["StageSpineSettings", "get_settings"]
