"""Deterministic failure classification for the retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from agent_gate.runtime.errors import (
    CommandTemplateError,
    OperationCancelled,
    ProcessError,
    ProcessErrorKind,
    RateLimitedError,
    RetryBudgetExhausted,
)
from agent_gate.runtime.models import FailureClass

DEFAULT_TRANSIENT_EXIT_CODES: tuple[int, ...] = (137, 143)

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate-limit",
    "ratelimit",
    "429",
)
_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
    "restricted token",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "econnreset",
    "etimedout",
    "econnrefused",
    "connection reset",
    "connection refused",
    "timed out",
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "internal server error",
    "overloaded",
    "network error",
)
_SERVER_ERROR_STATUS = re.compile(r"\b5\d\d\b")
_RETRY_AFTER = re.compile(
    r"retry[-_ ]after[\"':=\s]+(\d+(?:\.\d+)?)\s*(ms|milliseconds?|s|secs?|seconds?)?",
    re.IGNORECASE,
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None
    retry_after_seconds: float | None = None

    @property
    def retryable(self) -> bool:
        return self.failure_class is not FailureClass.FATAL

    def to_event_details(self) -> dict[str, object]:
        return {
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "retry_after_seconds": self.retry_after_seconds,
        }


def classify_failure(
    error: BaseException,
    *,
    transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
) -> FailureClassification:
    """Classify an exception raised by one call attempt."""

    if isinstance(error, RateLimitedError):
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            reason_code="rate_limited",
            matched_rule="rate_limited_error",
            retry_after_seconds=error.retry_after_seconds,
        )
    if isinstance(error, (OperationCancelled, RetryBudgetExhausted, CommandTemplateError)):
        return _fatal(type(error).__name__.lower(), "fatal_error_type")

    status = getattr(error, "status", None)
    if isinstance(status, int) and not isinstance(error, ProcessError):
        if status == 429:
            return FailureClassification(
                failure_class=FailureClass.RATE_LIMITED,
                reason_code="rate_limited",
                matched_rule="status_429",
                retry_after_seconds=parse_retry_after(str(error)),
            )
        if status >= 500:
            return FailureClassification(
                failure_class=FailureClass.TRANSIENT,
                reason_code="server_error",
                matched_rule="status_5xx",
            )

    if isinstance(error, ProcessError):
        return _classify_process_error(error, transient_exit_codes=transient_exit_codes)

    if isinstance(error, (ConnectionResetError, ConnectionRefusedError, TimeoutError)):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="connection_error",
            matched_rule="connection_error_type",
        )
    message = str(error)
    return _classify_text(message, status_text=message, exit_code=None, transient_exit_codes=())


def parse_retry_after(text: str) -> float | None:
    """Extract a retry-after hint in seconds from diagnostic text."""

    match = _RETRY_AFTER.search(text)
    if match is None:
        return None
    value = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    if unit.startswith("m"):
        value = value / 1000.0
    return value


def _classify_process_error(
    error: ProcessError,
    *,
    transient_exit_codes: tuple[int, ...],
) -> FailureClassification:
    kind = error.kind
    if kind in (ProcessErrorKind.TIMEOUT, ProcessErrorKind.IDLE_TIMEOUT):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code=f"process_{kind.value}",
            matched_rule="process_timeout",
        )
    if kind is not ProcessErrorKind.NON_ZERO_EXIT:
        return _fatal(f"process_{kind.value}", "process_fatal_kind")
    haystack = f"{error.stderr_tail}\n{error.stdout_tail}\n{error}"
    return _classify_text(
        haystack,
        status_text=f"{error.stderr_tail}\n{error}",
        exit_code=error.exit_code,
        transient_exit_codes=transient_exit_codes,
    )


def _classify_text(
    text: str,
    *,
    status_text: str,
    exit_code: int | None,
    transient_exit_codes: tuple[int, ...],
) -> FailureClassification:
    haystack = text.lower()

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            reason_code="rate_limited",
            matched_rule="rate_limit_text",
            matched_pattern=pattern,
            retry_after_seconds=parse_retry_after(text),
        )

    for rule, patterns in (
        ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=FailureClass.FATAL,
                reason_code=rule,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is None:
        status_match = _SERVER_ERROR_STATUS.search(status_text)
        pattern = status_match.group(0) if status_match is not None else None
    if pattern is not None or (exit_code is not None and exit_code in transient_exit_codes):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="transient",
            matched_rule=(
                "transient_exit_code"
                if pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return _fatal("non_retryable", "fallback_non_retryable")


def _fatal(reason_code: str, matched_rule: str) -> FailureClassification:
    return FailureClassification(
        failure_class=FailureClass.FATAL,
        reason_code=reason_code,
        matched_rule=matched_rule,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
