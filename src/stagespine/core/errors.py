"""
Structured error types for the stagespine engine.

Every failure that crosses a component boundary is a typed exception. Raw
failures coming out of stage bodies (connection errors, HTTP status errors,
timeouts, anything else) are funnelled through :func:`classify_error`, which
produces a :class:`ServiceError` carrying the retry semantics consumed by the
retry engine.

Manifesto:
    - **One classification point:** Raw errors are classified exactly once
    - **Explicit retry semantics:** Every ServiceError knows if it's retryable
    - **Error chaining:** The original exception is kept as ``cause``
    - **Resumable failures:** WorkflowError carries a job snapshot

Architecture:
    ::

        StageSpineError
        ├── ServiceError          (type, retryable, status_code, service, cause)
        ├── WorkflowError         (stage, service, error, resume_data)
        ├── CircuitOpenError      (breaker rejected the call)
        ├── QueueClosedError      (request queue shut down)
        ├── ConfigError           (invalid dependency configuration)
        ├── JobNotFoundError
        ├── ResumeNotAllowedError
        ├── JobAlreadyRunningError
        └── JobCancelledError

        UpstreamHTTPError         (raised by stage bodies, classified later)

Classification order:
    NETWORK → RATE_LIMIT → AUTH → VALIDATION → SERVICE_UNAVAILABLE →
    TIMEOUT → UNKNOWN (retryable, fail-open)

Examples:
    >>> err = classify_error(UpstreamHTTPError(429, headers={"Retry-After": "3"}), "openai")
    >>> err.type, err.retryable, err.retry_after
    (<ErrorType.RATE_LIMIT: 'RATE_LIMIT'>, True, 3.0)

Tags:
    error-handling, classification, retry-logic, stagespine

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import socket
from collections.abc import Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    """Failure categories understood by the retry engine."""

    NETWORK = "NETWORK"
    RATE_LIMIT = "RATE_LIMIT"
    AUTH = "AUTH"
    VALIDATION = "VALIDATION"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


# Categories that are never retried and never productively resumed
FATAL_ERROR_TYPES = frozenset({ErrorType.AUTH, ErrorType.VALIDATION})

NETWORK_ERROR_CODES = frozenset({"ENOTFOUND", "ECONNREFUSED", "ECONNRESET", "ETIMEDOUT"})
SERVICE_UNAVAILABLE_STATUSES = frozenset({502, 503, 504})


class StageSpineError(Exception):
    """Base exception for all stagespine errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging and persistence."""
        return {
            "error_class": type(self).__name__,
            "message": self.message,
        }


class ServiceError(StageSpineError):
    """A classified failure of one external dependency.

    Attributes:
        type: ErrorType category
        retryable: Whether the retry engine may try again
        service: Name of the dependency that failed
        status_code: HTTP status when the failure came from an HTTP response
        cause: The raw exception that was classified
        retry_after: Seconds the dependency asked us to wait (RATE_LIMIT only)
        context: Free-form description of what was being attempted
    """

    def __init__(
        self,
        message: str,
        *,
        type: ErrorType,
        retryable: bool,
        service: str,
        status_code: int | None = None,
        cause: BaseException | None = None,
        retry_after: float | None = None,
        context: str | None = None,
    ):
        if context:
            message = f"{message} (context: {context})"
        super().__init__(message)
        self.type = type
        self.retryable = retryable
        self.service = service
        self.status_code = status_code
        self.cause = cause
        self.retry_after = retry_after
        self.context = context
        if cause is not None:
            self.__cause__ = cause

    @property
    def fatal(self) -> bool:
        """True for configuration/programmer errors (AUTH, VALIDATION)."""
        return self.type in FATAL_ERROR_TYPES

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.update({
            "type": self.type.value,
            "retryable": self.retryable,
            "service": self.service,
        })
        if self.status_code is not None:
            result["status_code"] = self.status_code
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return (
            f"ServiceError(type={self.type.value}, service={self.service!r}, "
            f"retryable={self.retryable}, message={self.message!r})"
        )


class WorkflowError(StageSpineError):
    """A pipeline stage failed after local retries were exhausted.

    Carries everything needed to resume: the failing stage, the dependency,
    the classified error and a snapshot of the job at the time of failure.
    """

    def __init__(
        self,
        stage: str,
        service: str,
        error: ServiceError,
        resume_data: dict[str, Any] | None = None,
    ):
        super().__init__(
            f"Workflow failed at stage '{stage}' in service '{service}': {error.message}"
        )
        self.stage = stage
        self.service = service
        self.error = error
        self.resume_data = resume_data
        self.__cause__ = error

    @property
    def retryable(self) -> bool:
        return self.error.retryable

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.update({
            "stage": self.stage,
            "service": self.service,
            "error": self.error.to_dict(),
        })
        return result


class CircuitOpenError(StageSpineError):
    """Raised when a circuit breaker rejects a call without executing it."""

    def __init__(self, name: str, retry_in: float | None = None):
        message = f"Circuit breaker for '{name}' is OPEN - service likely unavailable"
        if retry_in is not None:
            message += f" (retry in {retry_in:.1f}s)"
        super().__init__(message)
        self.name = name
        self.retry_in = retry_in


class QueueClosedError(StageSpineError):
    """Raised for queued requests when the request queue shuts down."""


class ConfigError(StageSpineError):
    """Invalid engine or dependency configuration."""


class JobNotFoundError(StageSpineError):
    """The job is unknown to this orchestrator (never created, cancelled or expired)."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found or has expired")
        self.job_id = job_id


class ResumeNotAllowedError(StageSpineError):
    """The job exists but is not in a resumable state."""

    def __init__(self, job_id: str, reason: str):
        super().__init__(f"Job {job_id} cannot be resumed: {reason}")
        self.job_id = job_id
        self.reason = reason


class JobAlreadyRunningError(StageSpineError):
    """A second execution was requested for a job that is still running."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} is already running")
        self.job_id = job_id


class JobCancelledError(StageSpineError):
    """The job was cancelled while one of its stages was in flight."""

    def __init__(self, job_id: str, stage: str | None = None):
        message = f"Job {job_id} was cancelled"
        if stage:
            message += f" while stage '{stage}' was in flight"
        super().__init__(message)
        self.job_id = job_id
        self.stage = stage


class UpstreamHTTPError(Exception):
    """HTTP failure raised by a stage body.

    Stage bodies that talk HTTP through clients without their own exception
    types raise this so :func:`classify_error` can read the status and headers.
    """

    def __init__(
        self,
        status_code: int,
        message: str | None = None,
        headers: Mapping[str, Any] | None = None,
        code: str | None = None,
    ):
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code
        self.headers = dict(headers or {})
        self.code = code


# --------------------------------------------------------------------------- #
# Classification
# --------------------------------------------------------------------------- #


def _status_of(raw: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(raw, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(raw, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def _headers_of(raw: BaseException) -> Mapping[str, Any] | None:
    headers = getattr(raw, "headers", None)
    if headers is None:
        response = getattr(raw, "response", None)
        headers = getattr(response, "headers", None) if response is not None else None
    if headers is None or not hasattr(headers, "items"):
        return None
    return headers


def _code_of(raw: BaseException) -> str | None:
    code = getattr(raw, "code", None)
    return code if isinstance(code, str) else None


def parse_retry_after(value: Any) -> float | None:
    """Parse a ``Retry-After`` header value into seconds.

    Accepts delta-seconds (``"3"``, ``3``, ``"1.5"``) and HTTP dates.
    Returns None for anything unparseable.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return max(0.0, float(value))
    text = str(value).strip()
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _retry_after_of(raw: BaseException) -> float | None:
    headers = _headers_of(raw)
    if not headers:
        return None
    for key, value in headers.items():
        if str(key).lower() == "retry-after":
            return parse_retry_after(value)
    return None


def _is_network_failure(raw: BaseException) -> bool:
    if isinstance(raw, (ConnectionError, socket.gaierror)):
        return True
    code = _code_of(raw)
    return code is not None and code.upper() in NETWORK_ERROR_CODES


def classify_error(
    raw: BaseException,
    service: str,
    context: str | None = None,
) -> ServiceError:
    """Turn any raised exception into a typed :class:`ServiceError`.

    Args:
        raw: The exception raised by the dependency call
        service: Name of the dependency being called
        context: Optional description appended to the message

    Returns:
        A ServiceError. ServiceErrors are returned unchanged.
    """
    if isinstance(raw, ServiceError):
        return raw

    status = _status_of(raw)
    code = _code_of(raw)
    detail = str(raw) or type(raw).__name__

    if _is_network_failure(raw):
        return ServiceError(
            f"Network error in {service}: {detail}",
            type=ErrorType.NETWORK, retryable=True, service=service,
            cause=raw, context=context,
        )

    if status == 429 or code == "rate_limit_exceeded":
        return ServiceError(
            f"Rate limit exceeded in {service}",
            type=ErrorType.RATE_LIMIT, retryable=True, service=service,
            status_code=429, cause=raw, retry_after=_retry_after_of(raw),
            context=context,
        )

    if status in (401, 403) or code == "invalid_api_key":
        return ServiceError(
            f"Authentication failed in {service}: {detail}",
            type=ErrorType.AUTH, retryable=False, service=service,
            status_code=status, cause=raw, context=context,
        )

    if status == 400 or code == "invalid_request":
        return ServiceError(
            f"Validation error in {service}: {detail}",
            type=ErrorType.VALIDATION, retryable=False, service=service,
            status_code=400, cause=raw, context=context,
        )

    if status in SERVICE_UNAVAILABLE_STATUSES or isinstance(raw, CircuitOpenError):
        return ServiceError(
            f"Service unavailable in {service}: {detail}",
            type=ErrorType.SERVICE_UNAVAILABLE, retryable=True, service=service,
            status_code=status, cause=raw, context=context,
        )

    if isinstance(raw, TimeoutError) or code == "TIMEOUT":
        return ServiceError(
            f"Timeout error in {service}: {detail}",
            type=ErrorType.TIMEOUT, retryable=True, service=service,
            cause=raw, context=context,
        )

    return ServiceError(
        f"Unknown error in {service}: {detail}",
        type=ErrorType.UNKNOWN, retryable=True, service=service,
        status_code=status, cause=raw, context=context,
    )


def is_retryable(error: BaseException) -> bool:
    """Check whether an error may be retried.

    Unclassified exceptions are treated as retryable (fail-open), matching
    the UNKNOWN classification.
    """
    if isinstance(error, WorkflowError):
        return error.error.retryable
    if isinstance(error, ServiceError):
        return error.retryable
    return True


def get_retry_after(error: BaseException) -> float | None:
    """Get the server-requested wait in seconds, if any."""
    if isinstance(error, WorkflowError):
        error = error.error
    if isinstance(error, ServiceError):
        return error.retry_after
    return None


__all__ = [
    "ErrorType",
    "FATAL_ERROR_TYPES",
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
    "parse_retry_after",
    "is_retryable",
    "get_retry_after",
]
