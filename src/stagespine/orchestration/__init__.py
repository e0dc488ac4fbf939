"""Jobs, the job store and the resumable pipeline orchestrator."""

from .job_store import JobStore, build_job_store
from .models import Job, JobRecord, JobStatus, PipelineResult, Stage, StageContext
from .orchestrator import JobHandle, PipelineOrchestrator

__all__ = [
    "Job",
    "JobHandle",
    "JobRecord",
    "JobStatus",
    "JobStore",
    "PipelineOrchestrator",
    "PipelineResult",
    "Stage",
    "StageContext",
    "build_job_store",
]
