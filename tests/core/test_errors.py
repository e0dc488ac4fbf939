"""Tests for stagespine.core.errors: taxonomy and classification."""

import socket
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from types import SimpleNamespace

import pytest

from stagespine.core.errors import (
    CircuitOpenError,
    ErrorType,
    JobNotFoundError,
    ResumeNotAllowedError,
    ServiceError,
    StageSpineError,
    UpstreamHTTPError,
    WorkflowError,
    classify_error,
    get_retry_after,
    is_retryable,
    parse_retry_after,
)
from stagespine.execution.timeout import TimeoutExpired


class _ClientError(Exception):
    """Looks like an SDK error with a nested HTTP response."""

    def __init__(self, status_code, headers=None):
        super().__init__(f"client error {status_code}")
        self.response = SimpleNamespace(status_code=status_code, headers=headers or {})


class TestClassifyError:
    def test_service_error_passes_through(self):
        original = ServiceError("boom", type=ErrorType.AUTH, retryable=False, service="openai")
        assert classify_error(original, "claude") is original

    def test_connection_error_is_network(self):
        err = classify_error(ConnectionRefusedError("refused"), "firecrawl")
        assert err.type is ErrorType.NETWORK
        assert err.retryable is True
        assert err.service == "firecrawl"

    def test_gaierror_is_network(self):
        err = classify_error(socket.gaierror("Name or service not known"), "mcp")
        assert err.type is ErrorType.NETWORK

    @pytest.mark.parametrize("code", ["ENOTFOUND", "ECONNREFUSED", "ETIMEDOUT", "ECONNRESET"])
    def test_errno_style_code_is_network(self, code):
        raw = RuntimeError("socket failure")
        raw.code = code
        assert classify_error(raw, "mcp").type is ErrorType.NETWORK

    def test_429_is_rate_limit_with_retry_after(self):
        raw = UpstreamHTTPError(429, headers={"Retry-After": "3"})
        err = classify_error(raw, "openai")
        assert err.type is ErrorType.RATE_LIMIT
        assert err.retryable is True
        assert err.retry_after == 3.0
        assert err.status_code == 429

    def test_429_without_header_has_no_retry_after(self):
        err = classify_error(UpstreamHTTPError(429), "openai")
        assert err.type is ErrorType.RATE_LIMIT
        assert err.retry_after is None

    def test_rate_limit_code(self):
        raw = UpstreamHTTPError(400, code="rate_limit_exceeded")
        assert classify_error(raw, "openai").type is ErrorType.RATE_LIMIT

    def test_retry_after_header_is_case_insensitive(self):
        raw = _ClientError(429, headers={"retry-after": "7"})
        assert classify_error(raw, "openai").retry_after == 7.0

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_is_fatal(self, status):
        err = classify_error(UpstreamHTTPError(status), "claude")
        assert err.type is ErrorType.AUTH
        assert err.retryable is False
        assert err.fatal is True

    def test_invalid_api_key_code(self):
        raw = RuntimeError("bad key")
        raw.code = "invalid_api_key"
        assert classify_error(raw, "openai").type is ErrorType.AUTH

    def test_400_is_validation(self):
        err = classify_error(UpstreamHTTPError(400, "missing field"), "claude")
        assert err.type is ErrorType.VALIDATION
        assert err.retryable is False

    @pytest.mark.parametrize("status", [502, 503, 504])
    def test_gateway_errors_are_service_unavailable(self, status):
        err = classify_error(UpstreamHTTPError(status), "firecrawl")
        assert err.type is ErrorType.SERVICE_UNAVAILABLE
        assert err.retryable is True

    def test_status_read_from_response(self):
        err = classify_error(_ClientError(403), "openai")
        assert err.type is ErrorType.AUTH
        assert err.status_code == 403

    def test_open_circuit_is_service_unavailable(self):
        err = classify_error(CircuitOpenError("openai", retry_in=30.0), "openai")
        assert err.type is ErrorType.SERVICE_UNAVAILABLE
        assert err.retryable is True

    def test_timeout_expired_is_timeout(self):
        err = classify_error(TimeoutExpired(60.0, operation="firecrawl.scrape"), "firecrawl")
        assert err.type is ErrorType.TIMEOUT
        assert err.retryable is True

    def test_builtin_timeout_error(self):
        assert classify_error(TimeoutError(), "mcp").type is ErrorType.TIMEOUT

    def test_unknown_is_retryable(self):
        err = classify_error(ValueError("weird"), "claude")
        assert err.type is ErrorType.UNKNOWN
        assert err.retryable is True
        assert err.cause.args == ("weird",)

    def test_context_is_appended_to_message(self):
        err = classify_error(ValueError("x"), "claude", context="stage report")
        assert "stage report" in err.message
        assert err.context == "stage report"

    def test_cause_is_chained(self):
        raw = ValueError("x")
        err = classify_error(raw, "claude")
        assert err.__cause__ is raw


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after("3") == 3.0
        assert parse_retry_after(2) == 2.0
        assert parse_retry_after("1.5") == 1.5

    def test_http_date(self):
        when = datetime.now(timezone.utc) + timedelta(seconds=30)
        seconds = parse_retry_after(format_datetime(when, usegmt=True))
        assert 25 <= seconds <= 31

    def test_past_date_is_zero(self):
        when = datetime.now(timezone.utc) - timedelta(minutes=5)
        assert parse_retry_after(format_datetime(when, usegmt=True)) == 0.0

    def test_garbage(self):
        assert parse_retry_after("soon") is None
        assert parse_retry_after(None) is None


class TestErrorTypes:
    def test_service_error_to_dict(self):
        err = ServiceError(
            "Rate limit exceeded",
            type=ErrorType.RATE_LIMIT,
            retryable=True,
            service="openai",
            status_code=429,
            retry_after=3.0,
        )
        data = err.to_dict()
        assert data["type"] == "RATE_LIMIT"
        assert data["retryable"] is True
        assert data["retry_after"] == 3.0
        assert data["error_class"] == "ServiceError"

    def test_workflow_error_carries_resume_data(self):
        cause = ServiceError("down", type=ErrorType.SERVICE_UNAVAILABLE, retryable=True, service="mcp")
        err = WorkflowError("analysis", "mcp", cause, resume_data={"completed_stages": {"research": 1}})
        assert err.retryable is True
        assert err.resume_data["completed_stages"] == {"research": 1}
        assert "analysis" in str(err)
        assert err.to_dict()["error"]["type"] == "SERVICE_UNAVAILABLE"

    def test_engine_errors_share_base(self):
        assert isinstance(JobNotFoundError("j1"), StageSpineError)
        err = ResumeNotAllowedError("j1", "maximum retries (2) exceeded")
        assert err.reason == "maximum retries (2) exceeded"

    def test_is_retryable_and_get_retry_after(self):
        err = ServiceError("slow down", type=ErrorType.RATE_LIMIT, retryable=True,
                           service="openai", retry_after=4.0)
        wrapped = WorkflowError("research", "openai", err)
        assert is_retryable(wrapped) is True
        assert get_retry_after(wrapped) == 4.0
        assert is_retryable(ValueError()) is True
        assert get_retry_after(ValueError()) is None
