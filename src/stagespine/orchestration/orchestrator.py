"""
Resumable pipeline orchestrator.

Runs a fixed, ordered list of stages per job. Each completed stage output
is checkpointed on the in-process ``Job`` and projected into the job store;
a failed job can be resumed and re-enters at its first incomplete stage,
never recomputing finished work.

Manifesto:
    Stages call slow, rate-limited, unreliable dependencies. A failure in
    stage four must not cost the three expensive stages before it.

    - **Checkpoint per stage:** output recorded and persisted before the next stage starts
    - **Typed failures:** every failure surfaces as a WorkflowError with a resume snapshot
    - **Bounded resumes:** ``max_retries`` resumes per job, fatal errors never resumed
    - **Cooperative cancellation:** late results of cancelled jobs are discarded

Architecture:
    ::

        run(input) ──► for stage in stages:
                         ├── completed? ─► skip
                         ├── guard.call(stage.execute(ctx))   # breaker/retry/limit/queue/timeout
                         ├── still registered? ─► no: JobCancelledError
                         ├── record output, progress = done/total*100
                         ├── job_store.update(...)
                         └── on_progress(stage, message, percent)
                       ──► completed: final record, job dropped from registry

        resume(job_id) or run(input, job_id)   # job_id of a failed job
                   ──► checks ──► retry_count += 1 ──► re-enter at current stage

Examples:
    >>> orchestrator = PipelineOrchestrator(
    ...     [Stage("research", research, service="openai"),
    ...      Stage("report", write_report, service="claude")],
    ...     job_store=JobStore(InMemoryCache()),
    ...     guards=GuardRegistry.from_configs(DEFAULT_DEPENDENCY_CONFIGS),
    ... )
    >>> handle = orchestrator.start({"keyword": "python"})
    >>> record = await orchestrator.get_job(handle.job_id)

Tags:
    orchestration, pipeline, resume, checkpoint, asyncio, stagespine

Doc-Types:
    - API Reference
    - Architecture
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import time
import uuid
from collections import Counter
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from stagespine.core.errors import (
    ConfigError,
    JobAlreadyRunningError,
    JobCancelledError,
    JobNotFoundError,
    ResumeNotAllowedError,
    WorkflowError,
    classify_error,
)
from stagespine.core.logging import LogContext, get_logger
from stagespine.core.settings import StageSpineSettings, get_settings
from stagespine.execution.config import load_dependency_configs
from stagespine.execution.cost import CostSummary, CostTracker
from stagespine.execution.guard import DependencyGuard, GuardRegistry
from stagespine.orchestration.job_store import JobStore, build_job_store
from stagespine.orchestration.models import (
    Job,
    JobRecord,
    JobStatus,
    PipelineResult,
    Stage,
    StageContext,
)

logger = get_logger(__name__)

ProgressCallback = Callable[[str, str, float], None]

DEFAULT_MAX_RETRIES = 2
DEFAULT_WORKFLOW_TIMEOUT = 20 * 60
DEFAULT_SWEEP_INTERVAL = 5 * 60


class JobHandle:
    """Handle to a job scheduled with ``start`` or ``start_resume``."""

    def __init__(self, job_id: str, task: asyncio.Task[PipelineResult]):
        self.job_id = job_id
        self._task = task

    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> PipelineResult:
        """Wait for the run; raises whatever the run raised."""
        return await self._task

    def __repr__(self) -> str:
        state = "done" if self.done() else "running"
        return f"JobHandle(job_id={self.job_id!r}, {state})"


class PipelineOrchestrator:
    """Runs, resumes and tracks jobs of one pipeline definition."""

    def __init__(
        self,
        stages: Sequence[Stage],
        *,
        job_store: JobStore,
        guards: GuardRegistry | Mapping[str, DependencyGuard] | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        job_ttl: int | None = None,
        workflow_timeout: float = DEFAULT_WORKFLOW_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        on_progress: ProgressCallback | None = None,
        cost_tracker: CostTracker | None = None,
        name: str = "pipeline",
    ):
        self._stages = list(stages)
        _validate_stages(self._stages)
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        self.name = name
        self.job_store = job_store
        if guards is None or isinstance(guards, GuardRegistry):
            self.guards = guards or GuardRegistry()
        else:
            self.guards = GuardRegistry(guards)
        unguarded = sorted(
            {s.service for s in self._stages if s.service and s.service not in self.guards}
        )
        if unguarded:
            raise ConfigError(f"No dependency guard registered for: {', '.join(unguarded)}")
        self.max_retries = max_retries
        self.job_ttl = job_ttl
        self.workflow_timeout = workflow_timeout
        self.sweep_interval = sweep_interval
        self.on_progress = on_progress
        self.cost_tracker = cost_tracker

        self._jobs: dict[str, Job] = {}
        self._running: set[str] = set()
        self._tasks: dict[str, asyncio.Task[PipelineResult]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._sweeper: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        stages: Sequence[Stage],
        settings: StageSpineSettings | None = None,
        **kwargs: Any,
    ) -> "PipelineOrchestrator":
        """Build an orchestrator with store, guards and limits from settings."""
        settings = settings or get_settings()
        kwargs.setdefault("job_store", build_job_store(settings))
        kwargs.setdefault(
            "guards",
            GuardRegistry.from_configs(load_dependency_configs(settings.dependency_config_path)),
        )
        kwargs.setdefault("max_retries", settings.max_resume_attempts)
        kwargs.setdefault("job_ttl", settings.job_ttl_seconds)
        kwargs.setdefault("workflow_timeout", settings.workflow_timeout_seconds)
        kwargs.setdefault("sweep_interval", settings.sweep_interval_seconds)
        return cls(stages, **kwargs)

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self._stages]

    # ── Running ──────────────────────────────────────────────────

    async def run(
        self,
        input: Any,
        job_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> PipelineResult:
        """Run a job to completion.

        A ``job_id`` naming a failed job re-enters it under the same rules
        as ``resume``; the stored input is used and ``input`` is ignored.

        Raises:
            WorkflowError: A stage failed after its dependency's retries
            JobAlreadyRunningError: The job is executing already
            ResumeNotAllowedError: Re-entry of a job that may not be resumed
            JobCancelledError: The job was cancelled mid-run
        """
        job_id = job_id or uuid.uuid4().hex
        if job_id in self._running:
            raise JobAlreadyRunningError(job_id)
        if job_id in self._jobs:
            job = self._prepare_resume(job_id)
            if input is not None and input is not job.input:
                logger.warning("pipeline.reentry_input_ignored", job_id=job_id)
            input = job.input
        return await self._run(input, job_id, on_progress)

    async def _run(
        self,
        input: Any,
        job_id: str,
        on_progress: ProgressCallback | None,
    ) -> PipelineResult:
        if job_id in self._running:
            raise JobAlreadyRunningError(job_id)

        self._running.add(job_id)
        try:
            async with LogContext(job_id=job_id, pipeline=self.name):
                job = self._jobs.get(job_id)
                if job is None:
                    job = self._create_job(job_id, input)
                    await self._persist(job, message="Starting pipeline")
                else:
                    job.status = JobStatus.RUNNING
                    logger.info(
                        "pipeline.reentered",
                        stage=job.current_stage,
                        completed=list(job.completed_stages),
                        retry_count=job.retry_count,
                    )
                    await self._persist(
                        job,
                        message=f"Resuming at {job.current_stage}",
                        error=None,
                        error_type=None,
                        retryable=None,
                    )
                return await self._execute(job, on_progress or self.on_progress)
        finally:
            self._running.discard(job_id)

    def _create_job(self, job_id: str, input: Any) -> Job:
        job = Job(
            job_id=job_id,
            input=input,
            stages=self.stage_names,
            max_retries=self.max_retries,
        )
        self._jobs[job_id] = job
        if self.cost_tracker is not None:
            self.cost_tracker.start(job_id)
        logger.info("pipeline.started", stages=job.stages)
        return job

    async def _execute(self, job: Job, on_progress: ProgressCallback | None) -> PipelineResult:
        for stage in self._stages:
            if job.is_completed(stage.name):
                continue

            job.current_stage = stage.name
            logger.info("pipeline.stage_started", stage=stage.name, service=stage.service)
            started = time.monotonic()

            try:
                output = await self._run_stage(job, stage, on_progress)
            except Exception as exc:
                await self._fail(job, stage, exc)
                raise  # _fail always raises

            self._ensure_active(job, stage.name)
            job.record_output(stage.name, output)
            percent = job.advance_progress(job.completed_count / job.total_stages * 100)
            message = stage.message or f"Completed {stage.name}"

            await self._persist(job, stage=stage.name, message=message)
            logger.info(
                "pipeline.stage_completed",
                stage=stage.name,
                progress=round(percent, 1),
                duration=round(time.monotonic() - started, 3),
            )
            self._notify(on_progress, stage.name, message, percent)

        return await self._complete(job)

    async def _complete(self, job: Job) -> PipelineResult:
        job.status = JobStatus.COMPLETED
        job.advance_progress(100.0)

        cost: CostSummary | None = None
        if self.cost_tracker is not None:
            cost = self.cost_tracker.finish(job.job_id)

        last_stage = self._stages[-1].name
        await self._persist(
            job,
            stage=last_stage,
            message="Pipeline completed",
            result=job.completed_stages[last_stage],
            cost=cost.to_dict() if cost is not None else None,
        )
        self._jobs.pop(job.job_id, None)

        result = PipelineResult(
            job_id=job.job_id,
            outputs=dict(job.completed_stages),
            duration=job.age,
            cost=cost,
        )
        logger.info(
            "pipeline.completed",
            duration=round(result.duration, 3),
            retry_count=job.retry_count,
        )
        return result

    async def _run_stage(
        self,
        job: Job,
        stage: Stage,
        on_progress: ProgressCallback | None,
    ) -> Any:
        loop = asyncio.get_running_loop()

        def report(fraction: float, message: str | None) -> None:
            # may be called from a worker thread for blocking stages
            loop.call_soon_threadsafe(
                self._apply_sub_progress, job, stage, fraction, message, on_progress
            )

        def usage(service: str, input_tokens: int, output_tokens: int, model: str | None) -> None:
            if self.cost_tracker is not None:
                self.cost_tracker.add_call(job.job_id, service, input_tokens, output_tokens, model)

        ctx = StageContext(
            job.job_id,
            job.input,
            job.completed_stages,
            stage.name,
            on_progress=report,
            on_usage=usage,
            service=stage.service,
        )

        def op() -> Any:
            return stage.execute(ctx)

        guard = self.guards.get(stage.service) if stage.service else None
        if guard is not None:
            return await guard.call(op, context=stage.name, blocking=stage.blocking)

        if stage.blocking:
            return await asyncio.to_thread(op)
        result = op()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _fail(self, job: Job, stage: Stage, exc: Exception) -> None:
        if self._jobs.get(job.job_id) is not job:
            raise JobCancelledError(job.job_id, stage.name) from exc

        service = stage.service or stage.name
        error = classify_error(exc, service, context=f"stage {stage.name}")
        job.status = JobStatus.ERROR
        workflow_error = WorkflowError(stage.name, service, error)
        job.last_error = workflow_error
        workflow_error.resume_data = job.snapshot()

        logger.error(
            "pipeline.stage_failed",
            stage=stage.name,
            service=service,
            error_type=error.type.value,
            retryable=error.retryable,
            retry_count=job.retry_count,
            error=error.message,
        )
        await self._persist(
            job,
            stage=stage.name,
            message=f"Failed at {stage.name}",
            error=error.message,
            error_type=error.type.value,
            retryable=error.retryable,
        )
        raise workflow_error from exc

    def _apply_sub_progress(
        self,
        job: Job,
        stage: Stage,
        fraction: float,
        message: str | None,
        on_progress: ProgressCallback | None,
    ) -> None:
        if job.is_completed(stage.name) or self._jobs.get(job.job_id) is not job:
            return
        percent = job.advance_progress(
            (job.completed_count + fraction) / job.total_stages * 100
        )
        text = message or stage.message or stage.name
        self._spawn(self._persist_progress(job, stage.name, text))
        self._notify(on_progress, stage.name, text, percent)

    def _notify(
        self,
        on_progress: ProgressCallback | None,
        stage: str,
        message: str,
        percent: float,
    ) -> None:
        if on_progress is None:
            return
        try:
            on_progress(stage, message, percent)
        except Exception:
            logger.warning("pipeline.progress_callback_failed", stage=stage, exc_info=True)

    # ── Persistence ──────────────────────────────────────────────

    def _ensure_active(self, job: Job, stage: str | None) -> None:
        if self._jobs.get(job.job_id) is not job:
            logger.warning("pipeline.cancelled_result_discarded", stage=stage)
            raise JobCancelledError(job.job_id, stage)

    async def _persist(self, job: Job, **fields: Any) -> JobRecord:
        """Write the job's record. Writes of one job never interleave."""
        async with job.write_lock:
            self._ensure_active(job, fields.get("stage"))

            partial = {
                "status": job.status,
                "progress": job.progress,
                "stage": job.current_stage,
                "retry_count": job.retry_count,
                **fields,
            }
            record = await self.job_store.update(job.job_id, partial, ttl=self.job_ttl)
            if record is None:
                record = await self.job_store.put(
                    job.job_id, JobRecord(job_id=job.job_id, **partial), ttl=self.job_ttl
                )

            if not await self._still_registered(job):
                raise JobCancelledError(job.job_id, fields.get("stage"))
            return record

    async def _persist_progress(self, job: Job, stage: str, message: str) -> None:
        async with job.write_lock:
            # the stage may have completed, or the job gone, while this waited
            if job.is_completed(stage) or self._jobs.get(job.job_id) is not job:
                return
            await self.job_store.update(
                job.job_id,
                {"progress": job.progress, "stage": stage, "message": message},
                ttl=self.job_ttl,
            )
            await self._still_registered(job)

    async def _still_registered(self, job: Job) -> bool:
        """After a write: drop what was written if the job was cancelled meanwhile."""
        if self._jobs.get(job.job_id) is job:
            return True
        await self.job_store.delete(job.job_id)
        return False

    # ── Resume ───────────────────────────────────────────────────

    def _prepare_resume(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job_id in self._running or job.status is JobStatus.RUNNING:
            raise JobAlreadyRunningError(job_id)
        if job.status is not JobStatus.ERROR:
            raise ResumeNotAllowedError(job_id, f"job status is {job.status.value}")
        if job.retry_count >= job.max_retries:
            raise ResumeNotAllowedError(
                job_id, f"maximum retries ({job.max_retries}) exceeded"
            )
        if job.last_error is not None and not job.last_error.retryable:
            raise ResumeNotAllowedError(
                job_id, f"last error is not retryable ({job.last_error.error.type.value})"
            )

        job.retry_count += 1
        logger.info(
            "pipeline.resume_requested",
            job_id=job_id,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            stage=job.current_stage,
        )
        return job

    async def resume(
        self,
        job_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> PipelineResult:
        """Resume a failed job at its first incomplete stage.

        Raises:
            JobNotFoundError: Unknown, cancelled or expired job
            ResumeNotAllowedError: Not in error, retries used up, or fatal error
            WorkflowError: The resumed run failed again
        """
        job = self._prepare_resume(job_id)
        return await self._run(job.input, job_id, on_progress)

    # ── Background runs ──────────────────────────────────────────

    def start(
        self,
        input: Any,
        job_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> JobHandle:
        """Schedule ``run`` as a task and return immediately."""
        job_id = job_id or uuid.uuid4().hex
        if job_id in self._running or self._task_active(job_id):
            raise JobAlreadyRunningError(job_id)
        return self._schedule(job_id, self.run(input, job_id=job_id, on_progress=on_progress))

    def start_resume(
        self,
        job_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> JobHandle:
        """Validate a resume now, run it as a task."""
        if self._task_active(job_id):
            raise JobAlreadyRunningError(job_id)
        job = self._prepare_resume(job_id)
        return self._schedule(job_id, self._run(job.input, job_id, on_progress))

    def _task_active(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def _schedule(self, job_id: str, coro: Any) -> JobHandle:
        task = asyncio.create_task(coro, name=f"{self.name}:{job_id}")
        self._tasks[job_id] = task

        def _done(t: asyncio.Task[PipelineResult]) -> None:
            if self._tasks.get(job_id) is t:
                del self._tasks[job_id]
            if not t.cancelled() and t.exception() is not None:
                logger.debug("pipeline.background_run_failed", job_id=job_id, error=str(t.exception()))

        task.add_done_callback(_done)
        return JobHandle(job_id, task)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ── Queries & cancellation ───────────────────────────────────

    async def get_job(self, job_id: str) -> JobRecord | None:
        """Persisted record of a job (from the job store only)."""
        return await self.job_store.get(job_id)

    def get_job_state(self, job_id: str) -> Job | None:
        """In-process state of a job that has not completed."""
        return self._jobs.get(job_id)

    async def cancel(self, job_id: str) -> bool:
        """Forget a job and delete its record.

        In-flight dependency calls are not interrupted; their results are
        discarded when they come back.
        """
        job = self._jobs.pop(job_id, None)
        if self.cost_tracker is not None:
            self.cost_tracker.discard(job_id)
        if job is not None:
            # wait for a write of this job that is already in flight
            async with job.write_lock:
                deleted = await self.job_store.delete(job_id)
        else:
            deleted = await self.job_store.delete(job_id)
        existed = job is not None or deleted
        if existed:
            logger.info("pipeline.cancelled", job_id=job_id, in_flight=job_id in self._running)
        return existed

    def cleanup_expired_jobs(self) -> int:
        """Drop in-process jobs older than ``workflow_timeout``."""
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.age > self.workflow_timeout
        ]
        for job_id in expired:
            del self._jobs[job_id]
            if self.cost_tracker is not None:
                self.cost_tracker.discard(job_id)
        if expired:
            logger.info("pipeline.expired_jobs_removed", count=len(expired), job_ids=expired)
        return len(expired)

    def start_sweeper(self, interval: float | None = None) -> None:
        """Run ``cleanup_expired_jobs`` every ``interval`` seconds (default ``sweep_interval``)."""
        interval = self.sweep_interval if interval is None else interval
        if interval <= 0:
            raise ValueError("interval must be > 0")
        if self._sweeper is not None and not self._sweeper.done():
            return

        async def sweep() -> None:
            while True:
                await asyncio.sleep(interval)
                self.cleanup_expired_jobs()

        self._sweeper = asyncio.create_task(sweep(), name=f"{self.name}:sweeper")

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    async def close(self) -> None:
        """Stop the sweeper and shut down dependency queues."""
        await self.stop_sweeper()
        await self.guards.close()

    # ── Monitoring ───────────────────────────────────────────────

    def statistics(self) -> dict[str, Any]:
        by_stage = Counter(job.current_stage for job in self._jobs.values())
        return {
            "active_jobs": len(self._jobs),
            "running_jobs": len(self._running),
            "jobs_by_stage": dict(by_stage),
            "errored_jobs": sum(
                1 for job in self._jobs.values() if job.status is JobStatus.ERROR
            ),
        }

    def status(self) -> dict[str, Any]:
        return {
            "pipeline": self.name,
            "stages": self.stage_names,
            "dependencies": self.guards.status(),
            "job_store": self.job_store.diagnostics(),
            "statistics": self.statistics(),
        }


def _validate_stages(stages: Iterable[Stage]) -> None:
    seen: set[str] = set()
    count = 0
    for stage in stages:
        count += 1
        if not stage.name:
            raise ValueError("Stage names must be non-empty")
        if stage.name in seen:
            raise ValueError(f"Duplicate stage name: {stage.name!r}")
        seen.add(stage.name)
    if count == 0:
        raise ValueError("A pipeline needs at least one stage")


__all__ = ["PipelineOrchestrator", "JobHandle", "ProgressCallback"]
