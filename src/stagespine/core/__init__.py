"""Core primitives: error taxonomy, structured logging, settings and cache backends."""

from .cache import CacheBackend, InMemoryCache, RedisCache
from .errors import (
    CircuitOpenError,
    ConfigError,
    ErrorType,
    JobAlreadyRunningError,
    JobCancelledError,
    JobNotFoundError,
    QueueClosedError,
    ResumeNotAllowedError,
    ServiceError,
    StageSpineError,
    UpstreamHTTPError,
    WorkflowError,
    classify_error,
    get_retry_after,
    is_retryable,
)
from .logging import (
    LogContext,
    bind_context,
    configure_logging,
    configure_logging_from_settings,
    get_logger,
)
from .settings import StageSpineSettings, get_settings

__all__ = [
    # Cache
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
    # Errors
    "ErrorType",
    "StageSpineError",
    "ServiceError",
    "WorkflowError",
    "CircuitOpenError",
    "QueueClosedError",
    "ConfigError",
    "JobNotFoundError",
    "ResumeNotAllowedError",
    "JobAlreadyRunningError",
    "JobCancelledError",
    "UpstreamHTTPError",
    "classify_error",
    "is_retryable",
    "get_retry_after",
    # Logging
    "configure_logging",
    "configure_logging_from_settings",
    "get_logger",
    "bind_context",
    "LogContext",
    # Settings
    "StageSpineSettings",
    "get_settings",
]
