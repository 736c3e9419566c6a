"""Domain models for work items, session accounts and call results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class WorkItemStatus(str, Enum):
    """Durable work item lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (WorkItemStatus.QUEUED, WorkItemStatus.RUNNING)


class SessionStatus(str, Enum):
    """Session account lifecycle states."""

    ACTIVE = "active"
    ROLLED = "rolled"
    CLOSED = "closed"


class FailureClass(str, Enum):
    """Normalized failure classes used by the retry policy."""

    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token usage of one call, reported by the agent or estimated."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    usage_status: str = "estimated"

    def to_dict(self) -> dict[str, object]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "usage_status": self.usage_status,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TokenUsage:
        return cls(
            input_tokens=int(payload.get("input_tokens", 0) or 0),
            output_tokens=int(payload.get("output_tokens", 0) or 0),
            total_tokens=int(payload.get("total_tokens", 0) or 0),
            usage_status=str(payload.get("usage_status", "estimated")),
        )


@dataclass(slots=True)
class WorkItemResult:
    """Terminal payload written by Ledger.complete."""

    text: str
    usage: TokenUsage
    continuation_token: str | None
    duration_ms: int


@dataclass(slots=True)
class WorkItemView:
    """Readable work item view for coordinator, worker and CLI logic."""

    item_id: int
    scope: str
    logical_key: str
    status: WorkItemStatus
    priority: int
    payload: str
    retry_count: int
    max_retries: int
    worker_id: str | None
    result_text: str | None
    usage: TokenUsage | None
    continuation_token: str | None
    duration_ms: int | None
    error_text: str | None
    created_at: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class WorkItemEventView:
    """Append-only ledger event with per-scope sequence number."""

    event_id: int
    item_id: int
    scope: str
    seq: int
    event_type: str
    status_from: WorkItemStatus | None
    status_to: WorkItemStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkItemDetails:
    """Work item with its event stream."""

    item: WorkItemView
    events: list[WorkItemEventView]


@dataclass(slots=True)
class SessionAccountView:
    """Stored session account."""

    session_id: str
    name: str | None
    continuation_token: str | None
    cumulative_usage: int
    usage_baseline: int
    budget_ceiling: int
    rollover_count: int
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None

    @property
    def window_usage(self) -> int:
        """Usage accumulated by the current conversation (since last rollover)."""

        return self.cumulative_usage - self.usage_baseline


@dataclass(slots=True)
class SessionEventView:
    """Audit entry for one call made under a session account."""

    event_id: int
    session_id: str
    command: str
    prompt_preview: str | None
    response_preview: str | None
    total_tokens: int
    duration_ms: int | None
    continuation_token: str | None
    created_at: datetime


@dataclass(slots=True)
class RolloverCheck:
    """Outcome of the pre-call budget check."""

    rolled: bool
    message: str | None = None


@dataclass(slots=True)
class ResumeStats:
    """Read-only per-scope continuation statistics."""

    resume_attempted: int = 0
    resume_succeeded: int = 0
    resume_fallback: int = 0
