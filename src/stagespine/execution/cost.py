"""Per-job API cost accounting.

Stage bodies report token usage; the tracker prices it per model and the
orchestrator attaches the summary to the finished job.

Example:
    >>> tracker = CostTracker()
    >>> tracker.start("job-1")
    >>> round(tracker.add_call("job-1", "openai", 120_000, 8_000, model="o4-mini-deep-research"), 3)
    0.304
    >>> round(tracker.finish("job-1").total_cost, 3)
    0.304
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

from stagespine.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MODEL = "default"


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""

    input_per_million: float
    output_per_million: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1_000_000 * self.input_per_million
            + output_tokens / 1_000_000 * self.output_per_million
        )


DEFAULT_PRICING: dict[str, ModelPricing] = {
    "o4-mini-deep-research": ModelPricing(2.00, 8.00),
    DEFAULT_MODEL: ModelPricing(0.10, 0.40),
}


@dataclass(frozen=True)
class ApiCall:
    service: str
    input_tokens: int
    output_tokens: int
    cost: float
    model: str | None
    timestamp: float


@dataclass
class CostSummary:
    job_id: str
    total_cost: float = 0.0
    calls: list[ApiCall] = field(default_factory=list)
    started_at: float = 0.0
    duration: float = 0.0

    @property
    def total_tokens(self) -> int:
        return sum(c.input_tokens + c.output_tokens for c in self.calls)

    @property
    def cost_per_minute(self) -> float:
        if self.duration <= 0:
            return 0.0
        return self.total_cost / (self.duration / 60)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "total_cost": round(self.total_cost, 6),
            "total_tokens": self.total_tokens,
            "duration": round(self.duration, 3),
            "calls": [asdict(c) for c in self.calls],
        }


class CostTracker:
    """Accumulates priced API calls per job."""

    def __init__(
        self,
        pricing: Mapping[str, ModelPricing] | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._pricing = dict(DEFAULT_PRICING if pricing is None else pricing)
        if DEFAULT_MODEL not in self._pricing:
            raise ValueError(f"pricing needs a '{DEFAULT_MODEL}' entry")
        self._clock = clock
        self._jobs: dict[str, CostSummary] = {}

    def price_for(self, model: str | None) -> ModelPricing:
        return self._pricing.get(model or DEFAULT_MODEL, self._pricing[DEFAULT_MODEL])

    def start(self, job_id: str) -> None:
        """Begin tracking a job. A job already tracked keeps its calls."""
        if job_id not in self._jobs:
            self._jobs[job_id] = CostSummary(job_id=job_id, started_at=self._clock())

    def add_call(
        self,
        job_id: str,
        service: str,
        input_tokens: int,
        output_tokens: int,
        model: str | None = None,
    ) -> float:
        """Record one call and return its cost in USD.

        Calls for untracked jobs are priced and logged but not accumulated.
        """
        cost = self.price_for(model).cost(input_tokens, output_tokens)
        summary = self._jobs.get(job_id)
        if summary is None:
            logger.warning("cost.untracked_job", job_id=job_id, service=service)
            return cost

        summary.calls.append(ApiCall(
            service=service,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            model=model,
            timestamp=self._clock(),
        ))
        summary.total_cost += cost
        logger.debug(
            "cost.call_recorded",
            job_id=job_id,
            service=service,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=round(cost, 6),
            total_cost=round(summary.total_cost, 6),
        )
        return cost

    def summary(self, job_id: str) -> CostSummary | None:
        summary = self._jobs.get(job_id)
        if summary is not None:
            summary.duration = self._clock() - summary.started_at
        return summary

    def finish(self, job_id: str) -> CostSummary | None:
        """Stop tracking a job and return its final summary."""
        summary = self.summary(job_id)
        if summary is None:
            return None
        del self._jobs[job_id]
        logger.info(
            "cost.job_finished",
            job_id=job_id,
            total_cost=round(summary.total_cost, 6),
            total_tokens=summary.total_tokens,
            calls=len(summary.calls),
            duration=round(summary.duration, 3),
        )
        return summary

    def discard(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    @property
    def active_jobs(self) -> list[str]:
        return list(self._jobs)


__all__ = [
    "ModelPricing",
    "DEFAULT_PRICING",
    "ApiCall",
    "CostSummary",
    "CostTracker",
]
