"""
Pipeline data model.

``Job`` is the in-flight, in-process state of one pipeline execution.
``JobRecord`` is its persisted projection in the job store, readable from
another process. The record carries only what a status poller needs.

Manifesto:
    - **Checkpointed:** ``Job.completed_stages`` only grows; an output once
      recorded is never recomputed or overwritten
    - **Ordered:** stage outputs keep execution order (dict insertion order)
    - **Monotonic progress:** polled progress never goes backwards

Tags:
    orchestration, job, stage, checkpoint, pydantic, stagespine

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import asyncio
import copy
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_serializer
from pydantic_core import to_jsonable_python

from stagespine.core.errors import WorkflowError
from stagespine.execution.cost import CostSummary


class JobStatus(str, Enum):
    """Lifecycle status of a job."""

    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class Stage:
    """One named unit of pipeline work.

    Attributes:
        name: Unique stage name
        execute: ``execute(ctx: StageContext) -> output``, sync or async
        service: Dependency the stage calls; its guard wraps the call
        message: Progress message reported when the stage completes
        blocking: A sync ``execute`` that blocks; run in a worker thread
    """

    name: str
    execute: Callable[[StageContext], Any]
    service: str | None = None
    message: str | None = None
    blocking: bool = False


@dataclass
class Job:
    """In-flight state of one pipeline execution."""

    job_id: str
    input: Any
    stages: list[str]
    max_retries: int
    current_stage: str | None = None
    completed_stages: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    last_error: WorkflowError | None = None
    status: JobStatus = JobStatus.RUNNING
    start_time: float = field(default_factory=time.monotonic)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    progress: float = 0.0
    # serialises every job store write for this job
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.current_stage is None and self.stages:
            self.current_stage = self.stages[0]

    @property
    def total_stages(self) -> int:
        return len(self.stages)

    @property
    def completed_count(self) -> int:
        return len(self.completed_stages)

    @property
    def age(self) -> float:
        return time.monotonic() - self.start_time

    def is_completed(self, stage: str) -> bool:
        return stage in self.completed_stages

    def next_stage_after(self, stage: str) -> str | None:
        index = self.stages.index(stage)
        return self.stages[index + 1] if index + 1 < len(self.stages) else None

    def record_output(self, stage: str, output: Any) -> None:
        """Checkpoint a stage output. Existing outputs are never replaced."""
        if stage in self.completed_stages:
            raise ValueError(f"Stage '{stage}' of job {self.job_id} is already completed")
        self.completed_stages[stage] = output
        self.current_stage = self.next_stage_after(stage) or stage

    def advance_progress(self, percent: float) -> float:
        """Raise progress to ``percent`` (clamped to 0..100), never lower it."""
        self.progress = max(self.progress, min(100.0, max(0.0, percent)))
        return self.progress

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the resumable state."""
        return {
            "job_id": self.job_id,
            "input": copy.deepcopy(self.input),
            "stages": list(self.stages),
            "current_stage": self.current_stage,
            "completed_stages": copy.deepcopy(self.completed_stages),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "status": self.status.value,
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
        }


class StageContext:
    """What a stage body sees of its job.

    Exposes the original input and every prior stage output, plus hooks for
    sub-stage progress and token usage.
    """

    def __init__(
        self,
        job_id: str,
        input: Any,
        outputs: Mapping[str, Any],
        stage: str,
        *,
        on_progress: Callable[[float, str | None], None] | None = None,
        on_usage: Callable[[str, int, int, str | None], None] | None = None,
        service: str | None = None,
    ):
        self.job_id = job_id
        self.input = input
        self.outputs = dict(outputs)
        self.stage = stage
        self.service = service
        self._on_progress = on_progress
        self._on_usage = on_usage

    def output(self, stage: str) -> Any:
        """Output of an earlier stage (KeyError if it has not run)."""
        return self.outputs[stage]

    def report_progress(self, fraction: float, message: str | None = None) -> None:
        """Report progress within this stage, ``fraction`` in [0, 1]."""
        if self._on_progress is not None:
            self._on_progress(min(1.0, max(0.0, fraction)), message)

    def record_usage(
        self,
        input_tokens: int,
        output_tokens: int,
        model: str | None = None,
        service: str | None = None,
    ) -> None:
        """Record token usage of a dependency call for cost tracking."""
        if self._on_usage is not None:
            self._on_usage(service or self.service or self.stage, input_tokens, output_tokens, model)


class JobRecord(BaseModel):
    """Persisted projection of a job, served to status pollers."""

    job_id: str
    status: JobStatus
    progress: float = Field(default=0.0, ge=0, le=100)
    stage: str | None = None
    message: str | None = None
    result: Any = None
    error: str | None = None
    error_type: str | None = None
    retryable: bool | None = None
    retry_count: int = 0
    cost: dict[str, Any] | None = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @field_serializer("result", when_used="json")
    def serialize_result(self, value: Any) -> Any:
        # stage outputs that are not JSON types are stored as their repr
        return to_jsonable_python(value, fallback=repr)

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass
class PipelineResult:
    """Outcome of a completed pipeline run."""

    job_id: str
    outputs: dict[str, Any]
    duration: float
    cost: CostSummary | None = None

    @property
    def result(self) -> Any:
        """Output of the last stage."""
        if not self.outputs:
            return None
        return next(reversed(self.outputs.values()))


__all__ = [
    "JobStatus",
    "Stage",
    "Job",
    "StageContext",
    "JobRecord",
    "PipelineResult",
]
