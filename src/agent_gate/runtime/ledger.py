"""Durable work item ledger backed by SQLModel + SQLite.

At most one queued/running item may exist per ``(scope, logical_key)``. The
partial unique index enforces that; the ledger only translates the resulting
integrity error into :class:`LedgerConflict`. Terminal writes are guarded
updates that succeed only while the item is still running.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_gate.runtime.errors import LedgerConflict, WorkItemNotFoundError
from agent_gate.runtime.models import (
    ACTIVE_STATUSES,
    TokenUsage,
    WorkItemDetails,
    WorkItemEventView,
    WorkItemResult,
    WorkItemStatus,
    WorkItemView,
)
from agent_gate.storage.alembic_runner import upgrade_head
from agent_gate.storage.common import (
    build_sqlite_engine,
    optional_aware,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_gate.storage.sqlmodel_models import WorkItem, WorkItemEvent

logger = logging.getLogger(__name__)

STALE_RECOVERY_ERROR = "STALE_RECOVERY"
DEFAULT_PRIORITY = 100
_ACTIVE_KEY_CONSTRAINT = "work_items.logical_key"


class Ledger:
    """Work item persistence facade."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def begin(  # noqa: PLR0913
        self,
        scope: str,
        logical_key: str,
        *,
        payload: str = "",
        priority: int = DEFAULT_PRIORITY,
        max_retries: int = 1,
        worker_id: str | None = None,
    ) -> int:
        """Insert a running item; raise LedgerConflict if the key is already active."""

        return self._insert(
            scope=scope,
            logical_key=logical_key,
            payload=payload,
            priority=priority,
            max_retries=max_retries,
            status=WorkItemStatus.RUNNING,
            worker_id=worker_id,
        )

    def enqueue(
        self,
        scope: str,
        logical_key: str,
        *,
        payload: str = "",
        priority: int = DEFAULT_PRIORITY,
        max_retries: int = 1,
    ) -> int:
        """Insert a queued item for a worker to claim later."""

        return self._insert(
            scope=scope,
            logical_key=logical_key,
            payload=payload,
            priority=priority,
            max_retries=max_retries,
            status=WorkItemStatus.QUEUED,
            worker_id=None,
        )

    def claim_next(self, *, worker_id: str, scope: str | None = None) -> WorkItemView | None:
        """Atomically move the next queued item to running."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                statement = select(WorkItem).where(
                    WorkItem.status == WorkItemStatus.QUEUED.value,
                )
                if scope is not None:
                    statement = statement.where(WorkItem.scope == scope)
                candidate = session.exec(
                    statement.order_by(
                        col(WorkItem.priority).asc(),
                        col(WorkItem.created_at).asc(),
                        col(WorkItem.id).asc(),
                    ).limit(1),
                ).one_or_none()
                if candidate is None or candidate.id is None:
                    return None

                result = session.exec(
                    sa_update(WorkItem)
                    .where(
                        col(WorkItem.id) == candidate.id,
                        col(WorkItem.status) == WorkItemStatus.QUEUED.value,
                    )
                    .values(
                        status=WorkItemStatus.RUNNING.value,
                        worker_id=worker_id,
                        started_at=now,
                        heartbeat_at=now,
                        completed_at=None,
                        error_text=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    item_id=candidate.id,
                    scope=candidate.scope,
                    event_type="claimed",
                    status_from=WorkItemStatus.QUEUED,
                    status_to=WorkItemStatus.RUNNING,
                    details={"worker_id": worker_id, "retry_count": candidate.retry_count},
                )
                session.commit()
                claimed = session.exec(select(WorkItem).where(WorkItem.id == candidate.id)).one()
                return _to_item_view(claimed)

    def complete(self, item_id: int, result: WorkItemResult) -> bool:
        """Mark a running item completed; False and no write otherwise."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(WorkItem, item_id)
            if row is None:
                return False
            outcome = session.exec(
                sa_update(WorkItem)
                .where(
                    col(WorkItem.id) == item_id,
                    col(WorkItem.status) == WorkItemStatus.RUNNING.value,
                )
                .values(
                    status=WorkItemStatus.COMPLETED.value,
                    result_text=result.text,
                    usage_json=json.dumps(result.usage.to_dict(), sort_keys=True),
                    continuation_token=result.continuation_token,
                    duration_ms=result.duration_ms,
                    error_text=None,
                    completed_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                item_id=item_id,
                scope=row.scope,
                event_type="completed",
                status_from=WorkItemStatus.RUNNING,
                status_to=WorkItemStatus.COMPLETED,
                details={
                    "duration_ms": result.duration_ms,
                    "total_tokens": result.usage.total_tokens,
                    "usage_status": result.usage.usage_status,
                },
            )
            session.commit()
            return True

    def fail(self, item_id: int, error_text: str) -> bool:
        """Mark a running item failed; False and no write otherwise."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(WorkItem, item_id)
            if row is None:
                return False
            outcome = session.exec(
                sa_update(WorkItem)
                .where(
                    col(WorkItem.id) == item_id,
                    col(WorkItem.status) == WorkItemStatus.RUNNING.value,
                )
                .values(
                    status=WorkItemStatus.FAILED.value,
                    error_text=error_text,
                    completed_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                item_id=item_id,
                scope=row.scope,
                event_type="failed",
                status_from=WorkItemStatus.RUNNING,
                status_to=WorkItemStatus.FAILED,
                details={"error": error_text[:500]},
            )
            session.commit()
            return True

    def touch(self, item_id: int) -> bool:
        """Update heartbeat for a running item."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(WorkItem)
                .where(
                    col(WorkItem.id) == item_id,
                    col(WorkItem.status) == WorkItemStatus.RUNNING.value,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def recover_stale(
        self,
        scope: str | None,
        *,
        stale_after: timedelta,
        now: datetime | None = None,
    ) -> int:
        """Fail running items whose last heartbeat (or start) is older than ``stale_after``."""

        current = now or utc_now()
        cutoff = to_db_datetime(current - stale_after)
        last_seen = func.coalesce(col(WorkItem.heartbeat_at), col(WorkItem.started_at))
        error_text = (
            f"{STALE_RECOVERY_ERROR}: no heartbeat for more than "
            f"{int(stale_after.total_seconds())}s"
        )
        recovered = 0
        with Session(self.engine) as session:
            statement = select(WorkItem).where(
                WorkItem.status == WorkItemStatus.RUNNING.value,
                last_seen < cutoff,
            )
            if scope is not None:
                statement = statement.where(WorkItem.scope == scope)
            candidates = session.exec(statement.order_by(col(WorkItem.id).asc())).all()
            for row in candidates:
                if row.id is None:
                    continue
                outcome = session.exec(
                    sa_update(WorkItem)
                    .where(
                        col(WorkItem.id) == row.id,
                        col(WorkItem.status) == WorkItemStatus.RUNNING.value,
                    )
                    .values(
                        status=WorkItemStatus.FAILED.value,
                        error_text=error_text,
                        completed_at=to_db_datetime(current),
                        updated_at=to_db_datetime(current),
                    ),
                )
                if outcome.rowcount != 1:
                    continue
                recovered += 1
                self._add_event(
                    session=session,
                    item_id=row.id,
                    scope=row.scope,
                    event_type="stale_recovered",
                    status_from=WorkItemStatus.RUNNING,
                    status_to=WorkItemStatus.FAILED,
                    details={
                        "worker_id": row.worker_id,
                        "stale_after_seconds": int(stale_after.total_seconds()),
                    },
                )
            session.commit()
        if recovered:
            logger.warning(
                "Recovered %s stale running work item(s) in scope=%s",
                recovered,
                scope if scope is not None else "*",
            )
        return recovered

    def retry(self, item_id: int) -> bool:
        """Re-queue a failed item while retries remain.

        Returns False when the item is not failed or its retry budget is spent.
        Raises LedgerConflict if another active item now owns the same key.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(WorkItem, item_id)
            if row is None:
                raise WorkItemNotFoundError(f"Work item not found: {item_id}")
            if row.status != WorkItemStatus.FAILED.value or row.retry_count >= row.max_retries:
                return False
            scope, logical_key = row.scope, row.logical_key
            next_retry = row.retry_count + 1
            try:
                outcome = session.exec(
                    sa_update(WorkItem)
                    .where(
                        col(WorkItem.id) == item_id,
                        col(WorkItem.status) == WorkItemStatus.FAILED.value,
                        col(WorkItem.retry_count) == row.retry_count,
                    )
                    .values(
                        status=WorkItemStatus.QUEUED.value,
                        retry_count=next_retry,
                        worker_id=None,
                        started_at=None,
                        heartbeat_at=None,
                        completed_at=None,
                        updated_at=now,
                    ),
                )
            except IntegrityError as error:
                session.rollback()
                if _is_active_key_violation(error):
                    raise LedgerConflict(scope, logical_key) from error
                raise
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                item_id=item_id,
                scope=scope,
                event_type="retry_queued",
                status_from=WorkItemStatus.FAILED,
                status_to=WorkItemStatus.QUEUED,
                details={"retry_count": next_retry},
            )
            session.commit()
            return True

    def get(self, item_id: int) -> WorkItemView | None:
        with Session(self.engine) as session:
            row = session.get(WorkItem, item_id)
            return _to_item_view(row) if row is not None else None

    def find_active(self, scope: str, logical_key: str) -> WorkItemView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkItem).where(
                    WorkItem.scope == scope,
                    WorkItem.logical_key == logical_key,
                    col(WorkItem.status).in_([status.value for status in ACTIVE_STATUSES]),
                ),
            ).one_or_none()
            return _to_item_view(row) if row is not None else None

    def find_latest(self, scope: str, logical_key: str) -> WorkItemView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkItem)
                .where(WorkItem.scope == scope, WorkItem.logical_key == logical_key)
                .order_by(col(WorkItem.created_at).desc(), col(WorkItem.id).desc())
                .limit(1),
            ).one_or_none()
            return _to_item_view(row) if row is not None else None

    def list_items(
        self,
        *,
        scope: str | None = None,
        status: WorkItemStatus | None = None,
        limit: int = 50,
    ) -> list[WorkItemView]:
        """List recent items, newest first."""

        with Session(self.engine) as session:
            statement = select(WorkItem)
            if scope is not None:
                statement = statement.where(WorkItem.scope == scope)
            if status is not None:
                statement = statement.where(WorkItem.status == status.value)
            rows = session.exec(
                statement.order_by(col(WorkItem.created_at).desc(), col(WorkItem.id).desc())
                .limit(limit),
            ).all()
        return [_to_item_view(row) for row in rows]

    def history(self, scope: str, *, limit: int | None = None) -> list[WorkItemView]:
        """Completed items of a scope, oldest first (newest ``limit`` when given)."""

        with Session(self.engine) as session:
            statement = (
                select(WorkItem)
                .where(
                    WorkItem.scope == scope,
                    WorkItem.status == WorkItemStatus.COMPLETED.value,
                )
                .order_by(col(WorkItem.created_at).desc(), col(WorkItem.id).desc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_item_view(row) for row in reversed(rows)]

    def get_details(self, item_id: int) -> WorkItemDetails | None:
        """Return item with its event stream."""

        with Session(self.engine) as session:
            row = session.get(WorkItem, item_id)
            if row is None:
                return None
            event_rows = session.exec(
                select(WorkItemEvent)
                .where(WorkItemEvent.item_id == item_id)
                .order_by(col(WorkItemEvent.seq).asc()),
            ).all()
            item = _to_item_view(row)
        return WorkItemDetails(item=item, events=[_to_event_view(event) for event in event_rows])

    def list_events(
        self,
        scope: str,
        *,
        after_seq: int = 0,
        limit: int | None = None,
    ) -> list[WorkItemEventView]:
        """Scope event stream in sequence order, starting after ``after_seq``."""

        with Session(self.engine) as session:
            statement = (
                select(WorkItemEvent)
                .where(WorkItemEvent.scope == scope, WorkItemEvent.seq > after_seq)
                .order_by(col(WorkItemEvent.seq).asc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_event_view(row) for row in rows]

    def _insert(  # noqa: PLR0913
        self,
        *,
        scope: str,
        logical_key: str,
        payload: str,
        priority: int,
        max_retries: int,
        status: WorkItemStatus,
        worker_id: str | None,
    ) -> int:
        if not scope or not logical_key:
            raise ValueError("scope and logical_key must be non-empty")
        now = to_db_datetime(utc_now())
        running = status is WorkItemStatus.RUNNING
        try:
            with Session(self.engine) as session:
                row = WorkItem(
                    scope=scope,
                    logical_key=logical_key,
                    status=status.value,
                    priority=priority,
                    payload=payload,
                    retry_count=0,
                    max_retries=max(0, max_retries),
                    worker_id=worker_id,
                    created_at=now,
                    started_at=now if running else None,
                    heartbeat_at=now if running else None,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                item_id = row.id
                if item_id is None:
                    raise RuntimeError("Work item insert did not return an id")
                self._add_event(
                    session=session,
                    item_id=item_id,
                    scope=scope,
                    event_type="started" if running else "enqueued",
                    status_from=None,
                    status_to=status,
                    details={
                        "logical_key": logical_key,
                        "priority": priority,
                        "max_retries": max_retries,
                    },
                )
                session.commit()
        except IntegrityError as error:
            if _is_active_key_violation(error):
                raise LedgerConflict(scope, logical_key) from error
            raise
        return item_id

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        item_id: int,
        scope: str,
        event_type: str,
        status_from: WorkItemStatus | None,
        status_to: WorkItemStatus | None,
        details: dict[str, object],
    ) -> None:
        last_seq = session.exec(
            select(func.max(WorkItemEvent.seq)).where(WorkItemEvent.scope == scope),
        ).one()
        session.add(
            WorkItemEvent(
                item_id=item_id,
                scope=scope,
                seq=(last_seq or 0) + 1,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )
        session.flush()


def _is_active_key_violation(error: IntegrityError) -> bool:
    return _ACTIVE_KEY_CONSTRAINT in str(error.orig)


def _to_item_view(row: WorkItem) -> WorkItemView:
    usage: TokenUsage | None = None
    if row.usage_json:
        parsed = json.loads(row.usage_json)
        if isinstance(parsed, dict):
            usage = TokenUsage.from_dict(parsed)
    return WorkItemView(
        item_id=row.id or 0,
        scope=row.scope,
        logical_key=row.logical_key,
        status=WorkItemStatus(row.status),
        priority=row.priority,
        payload=row.payload,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        worker_id=row.worker_id,
        result_text=row.result_text,
        usage=usage,
        continuation_token=row.continuation_token,
        duration_ms=row.duration_ms,
        error_text=row.error_text,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_aware(row.started_at),
        heartbeat_at=optional_aware(row.heartbeat_at),
        completed_at=optional_aware(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: WorkItemEvent) -> WorkItemEventView:
    details: dict[str, object] = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return WorkItemEventView(
        event_id=row.id or 0,
        item_id=row.item_id,
        scope=row.scope,
        seq=row.seq,
        event_type=row.event_type,
        status_from=WorkItemStatus(row.status_from) if row.status_from is not None else None,
        status_to=WorkItemStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )
