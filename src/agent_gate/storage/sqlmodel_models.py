"""SQLModel ORM tables for the work item ledger and session accounts."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel

ACTIVE_STATUS_PREDICATE = "status IN ('queued', 'running')"


class WorkItem(SQLModel, table=True):
    __tablename__ = "work_items"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_work_items_scope_key_active",
            "scope",
            "logical_key",
            unique=True,
            sqlite_where=text(ACTIVE_STATUS_PREDICATE),
        ),
        Index("idx_work_items_queue", "status", "priority", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    scope: str = Field(index=True)
    logical_key: str
    status: str = Field(index=True)
    priority: int = Field(default=100)
    payload: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=1)
    worker_id: str | None = None
    result_text: str | None = Field(default=None, sa_column=Column(Text))
    usage_json: str | None = Field(default=None, sa_column=Column(Text))
    continuation_token: str | None = None
    duration_ms: int | None = None
    error_text: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItemEvent(SQLModel, table=True):
    __tablename__ = "work_item_events"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("scope", "seq", name="uq_work_item_events_scope_seq"),)

    id: int | None = Field(default=None, primary_key=True)
    item_id: int = Field(
        sa_column=Column(
            ForeignKey("work_items.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    scope: str = Field(index=True)
    seq: int
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SessionAccountRow(SQLModel, table=True):
    __tablename__ = "session_accounts"  # type: ignore[bad-override]

    session_id: str = Field(primary_key=True)
    name: str | None = Field(default=None, index=True)
    continuation_token: str | None = None
    cumulative_usage: int = Field(default=0)
    usage_baseline: int = Field(default=0)
    budget_ceiling: int = Field(default=400_000)
    rollover_count: int = Field(default=0)
    status: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class SessionEventRow(SQLModel, table=True):
    __tablename__ = "session_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("session_accounts.session_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    command: str
    prompt_preview: str | None = Field(default=None, sa_column=Column(Text))
    response_preview: str | None = Field(default=None, sa_column=Column(Text))
    total_tokens: int = Field(default=0)
    duration_ms: int | None = None
    continuation_token: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
