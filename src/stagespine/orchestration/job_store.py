"""
Job store: TTL-bounded persistence of job records.

Status pollers may land on a different process than the one running the
job, so job records live in a shared ``CacheBackend`` rather than in the
orchestrator's memory. The store is not a database: every record expires
after its TTL.

Architecture:
    ::

        PipelineOrchestrator ──put/update──►  JobStore  ──►  CacheBackend
        status endpoint      ──get────────►             ├── InMemoryCache
                                                        └── RedisCache

Guardrails:
    ❌ DON'T: Recreate a record from a partial update
    ✅ DO: Let ``update`` on a missing record return None (cancelled jobs stay gone)

Tags:
    job-store, persistence, ttl, redis, stagespine

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from stagespine.core.cache import CacheBackend, InMemoryCache, RedisCache
from stagespine.core.errors import ConfigError
from stagespine.core.logging import get_logger
from stagespine.core.settings import StageSpineSettings
from stagespine.orchestration.models import JobRecord

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 2 * 60 * 60


class JobStore:
    """Persist, merge-update and read ``JobRecord`` documents."""

    def __init__(
        self,
        backend: CacheBackend,
        *,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        key_prefix: str = "job:",
        clock: Callable[[], float] = time.time,
    ):
        if default_ttl <= 0:
            raise ValueError("default_ttl must be > 0")
        self.backend = backend
        self.default_ttl = default_ttl
        self.key_prefix = key_prefix
        self._clock = clock

    def _key(self, job_id: str) -> str:
        return f"{self.key_prefix}{job_id}"

    async def put(self, job_id: str, record: JobRecord, ttl: int | None = None) -> JobRecord:
        """Write the full record, stamping ``updated_at``."""
        stored = record.model_copy(update={"job_id": job_id, "updated_at": self._clock()})
        await self.backend.set(self._key(job_id), stored.to_storage(), ttl_seconds=ttl or self.default_ttl)
        return stored

    async def get(self, job_id: str) -> JobRecord | None:
        data = await self.backend.get(self._key(job_id))
        if data is None:
            return None
        try:
            return JobRecord.model_validate(data)
        except ValidationError as exc:
            logger.error("job_store.corrupt_record", job_id=job_id, error=str(exc))
            return None

    async def update(
        self,
        job_id: str,
        partial: Mapping[str, Any],
        ttl: int | None = None,
    ) -> JobRecord | None:
        """Merge ``partial`` into the stored record.

        Fields not named in ``partial`` keep their stored values and
        ``updated_at`` is always refreshed. Returns None without writing when
        no record exists.
        """
        existing = await self.get(job_id)
        if existing is None:
            logger.debug("job_store.update_missing", job_id=job_id)
            return None

        merged = JobRecord.model_validate({
            **existing.model_dump(),
            **dict(partial),
            "job_id": job_id,
        })
        return await self.put(job_id, merged, ttl=ttl)

    async def delete(self, job_id: str) -> bool:
        """Remove a record. Deleting an absent record returns False."""
        return await self.backend.delete(self._key(job_id))

    def diagnostics(self) -> dict[str, Any]:
        return {
            "backend": getattr(self.backend, "name", type(self.backend).__name__),
            "default_ttl": self.default_ttl,
            "key_prefix": self.key_prefix,
        }


def build_job_store(settings: StageSpineSettings) -> JobStore:
    """Create the job store selected by configuration."""
    backend: CacheBackend
    if settings.job_store_backend == "redis":
        backend = RedisCache(settings.redis_url, default_ttl_seconds=settings.job_ttl_seconds)
    elif settings.job_store_backend == "memory":
        backend = InMemoryCache(default_ttl_seconds=settings.job_ttl_seconds)
    else:
        raise ConfigError(f"Unknown job store backend: {settings.job_store_backend!r}")

    store = JobStore(
        backend,
        default_ttl=settings.job_ttl_seconds,
        key_prefix=settings.job_key_prefix,
    )
    logger.info("job_store.configured", **store.diagnostics())
    return store


__all__ = ["JobStore", "build_job_store", "DEFAULT_TTL_SECONDS"]
