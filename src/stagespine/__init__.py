"""
stagespine - resilient, resumable pipeline execution.

Layers:
- stagespine.core: errors, logging, settings, cache backends
- stagespine.execution: per-dependency resilience (retry, breaker, limits, queue, timeout)
- stagespine.orchestration: jobs, job store and the pipeline orchestrator
"""

__version__ = "0.1.0"

from stagespine.core.errors import (  # noqa: F401
    ErrorType,
    ServiceError,
    StageSpineError,
    WorkflowError,
    classify_error,
)
from stagespine.execution.config import DEFAULT_DEPENDENCY_CONFIGS, DependencyConfig  # noqa: F401
from stagespine.execution.guard import DependencyGuard, GuardRegistry  # noqa: F401
from stagespine.orchestration import (  # noqa: F401
    JobRecord,
    JobStatus,
    JobStore,
    PipelineOrchestrator,
    PipelineResult,
    Stage,
    StageContext,
)

__all__ = [
    "__version__",
    "ErrorType",
    "ServiceError",
    "StageSpineError",
    "WorkflowError",
    "classify_error",
    "DEFAULT_DEPENDENCY_CONFIGS",
    "DependencyConfig",
    "DependencyGuard",
    "GuardRegistry",
    "JobRecord",
    "JobStatus",
    "JobStore",
    "PipelineOrchestrator",
    "PipelineResult",
    "Stage",
    "StageContext",
]
