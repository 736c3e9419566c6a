"""Exception taxonomy for process supervision, retries, ledger and sessions."""

from __future__ import annotations

from enum import Enum


class AgentGateError(RuntimeError):
    """Base class for all runtime errors raised by agent-gate."""


class ProcessErrorKind(str, Enum):
    """Normalized ways one external-process invocation can fail."""

    SPAWN_FAILED = "spawn_failed"
    NON_ZERO_EXIT = "non_zero_exit"
    TIMEOUT = "timeout"
    IDLE_TIMEOUT = "idle_timeout"
    OUTPUT_TOO_LARGE = "output_too_large"
    CANCELLED = "cancelled"


class ProcessError(AgentGateError):
    """External process failure with enough context to classify it."""

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        kind: ProcessErrorKind,
        elapsed_ms: int | None = None,
        exit_code: int | None = None,
        stderr_tail: str = "",
        stdout_tail: str = "",
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.elapsed_ms = elapsed_ms
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        self.stdout_tail = stdout_tail


class RateLimitedError(AgentGateError):
    """Flow-control signal: the remote side asked us to slow down."""

    status = 429

    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class CommandTemplateError(AgentGateError):
    """Agent command template cannot be rendered into an argv."""


class LedgerConflict(AgentGateError):
    """A non-terminal work item already exists for the (scope, key) pair.

    Callers treat this as "already in progress", not as a user-facing failure.
    """

    def __init__(self, scope: str, logical_key: str) -> None:
        super().__init__(f"Work item already in progress: scope={scope!r} key={logical_key!r}")
        self.scope = scope
        self.logical_key = logical_key


class LedgerTransitionError(AgentGateError):
    """A terminal write was refused because the item is no longer running."""


class WorkItemNotFoundError(AgentGateError):
    """Referenced work item does not exist."""


class SessionNotFoundError(AgentGateError):
    """Referenced session account does not exist."""


class SessionClosedError(AgentGateError):
    """Session account is closed and accepts no further transitions."""


class RetryBudgetExhausted(AgentGateError):
    """Not enough time budget left to start another attempt."""


class OperationCancelled(AgentGateError):
    """Cooperative cancellation was signalled for the running operation."""
