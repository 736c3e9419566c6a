from __future__ import annotations

import allure

from agent_gate.runtime.errors import (
    OperationCancelled,
    ProcessError,
    ProcessErrorKind,
    RateLimitedError,
)
from agent_gate.runtime.failure_classifier import classify_failure, parse_retry_after
from agent_gate.runtime.models import FailureClass

pytestmark = [
    allure.epic("Retry Policy"),
    allure.feature("Failure Classification"),
]


def _exit_error(stderr: str, *, exit_code: int = 1, stdout: str = "") -> ProcessError:
    return ProcessError(
        f"Process exited with code {exit_code}: {stderr}",
        kind=ProcessErrorKind.NON_ZERO_EXIT,
        exit_code=exit_code,
        stderr_tail=stderr,
        stdout_tail=stdout,
    )


class _HttpError(Exception):
    def __init__(self, status: int) -> None:
        super().__init__(f"HTTP {status}")
        self.status = status


def test_rate_limited_error_keeps_server_hint() -> None:
    classified = classify_failure(RateLimitedError("slow down", retry_after_seconds=7))

    assert classified.failure_class == FailureClass.RATE_LIMITED
    assert classified.retry_after_seconds == 7
    assert classified.retryable


def test_rate_limit_text_in_stderr_parses_retry_after() -> None:
    classified = classify_failure(
        _exit_error("Error: 429 Too Many Requests. Rate limit reached, retry after 2 seconds."),
    )

    assert classified.failure_class == FailureClass.RATE_LIMITED
    assert classified.matched_rule == "rate_limit_text"
    assert classified.retry_after_seconds == 2.0


def test_billing_wins_over_transient_exit_code() -> None:
    classified = classify_failure(_exit_error("Quota exceeded for this project", exit_code=137))

    assert classified.failure_class == FailureClass.FATAL
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota"


def test_auth_and_model_errors_are_fatal() -> None:
    assert classify_failure(_exit_error("401 Unauthorized")).reason_code == "access_or_auth"
    assert classify_failure(_exit_error("Unknown model: gpt-9")).reason_code == (
        "model_not_available"
    )


def test_process_timeouts_are_transient_and_spawn_failure_is_fatal() -> None:
    timeout = ProcessError("timed out", kind=ProcessErrorKind.TIMEOUT)
    idle = ProcessError("idle", kind=ProcessErrorKind.IDLE_TIMEOUT)
    spawn = ProcessError("no binary", kind=ProcessErrorKind.SPAWN_FAILED)
    too_large = ProcessError("too big", kind=ProcessErrorKind.OUTPUT_TOO_LARGE)

    assert classify_failure(timeout).failure_class == FailureClass.TRANSIENT
    assert classify_failure(idle).failure_class == FailureClass.TRANSIENT
    assert classify_failure(spawn).failure_class == FailureClass.FATAL
    assert classify_failure(too_large).failure_class == FailureClass.FATAL


def test_transient_exit_codes_and_server_errors_retry() -> None:
    killed = classify_failure(_exit_error("", exit_code=137))
    gateway = classify_failure(_exit_error("upstream said 502 Bad Gateway"))
    status_only = classify_failure(_exit_error("HTTP 503 from upstream"))

    assert killed.failure_class == FailureClass.TRANSIENT
    assert killed.matched_rule == "transient_exit_code"
    assert gateway.matched_pattern == "bad gateway"
    assert status_only.failure_class == FailureClass.TRANSIENT
    assert status_only.matched_pattern == "503"


def test_numbers_in_stdout_do_not_look_like_server_errors() -> None:
    classified = classify_failure(
        _exit_error("agent crashed", stdout='{"type": "turn.completed", "usage": {"total": 503}}'),
    )

    assert classified.failure_class == FailureClass.FATAL


def test_status_attribute_and_connection_errors() -> None:
    assert classify_failure(_HttpError(429)).failure_class == FailureClass.RATE_LIMITED
    assert classify_failure(_HttpError(503)).failure_class == FailureClass.TRANSIENT
    assert classify_failure(ConnectionResetError()).failure_class == FailureClass.TRANSIENT
    assert classify_failure(OperationCancelled("stop")).failure_class == FailureClass.FATAL
    assert classify_failure(ValueError("bad input")).failure_class == FailureClass.FATAL


def test_parse_retry_after_units() -> None:
    assert parse_retry_after("Retry after 30 seconds") == 30.0
    assert parse_retry_after("retry-after: 1500ms") == 1.5
    assert parse_retry_after('{"retry_after": 4}') == 4.0
    assert parse_retry_after("no hint here") is None
