"""Session accounts: continuation token and token budget per logical session."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_gate.runtime.errors import SessionClosedError, SessionNotFoundError
from agent_gate.runtime.models import (
    RolloverCheck,
    SessionAccountView,
    SessionEventView,
    SessionStatus,
    TokenUsage,
)
from agent_gate.storage.alembic_runner import upgrade_head
from agent_gate.storage.common import (
    build_sqlite_engine,
    optional_aware,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_gate.storage.sqlmodel_models import SessionAccountRow, SessionEventRow

logger = logging.getLogger(__name__)

DEFAULT_BUDGET_CEILING = 400_000
PREVIEW_CHARS = 500
WARN_UTILIZATION = 0.75
_ROLLABLE_STATUSES = (SessionStatus.ACTIVE.value, SessionStatus.ROLLED.value)


@dataclass(slots=True)
class OverflowStatus:
    """Budget utilization of the current conversation window."""

    window_usage: int
    budget_ceiling: int
    utilization: float
    should_warn: bool
    should_roll: bool


class SessionAccountStore:
    """Session account persistence facade.

    Accounts are always addressed by id, so concurrent workflows can each own
    their own continuation token.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def dispose(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def create(
        self,
        name: str | None = None,
        *,
        budget_ceiling: int = DEFAULT_BUDGET_CEILING,
    ) -> str:
        if budget_ceiling <= 0:
            raise ValueError(f"budget_ceiling must be positive, got {budget_ceiling}")
        session_id = uuid4().hex
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.add(
                SessionAccountRow(
                    session_id=session_id,
                    name=name,
                    budget_ceiling=budget_ceiling,
                    status=SessionStatus.ACTIVE.value,
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
        logger.info("Created session account %s (name=%s)", session_id, name)
        return session_id

    def get(self, session_id: str) -> SessionAccountView | None:
        with Session(self.engine) as session:
            row = session.get(SessionAccountRow, session_id)
            return _to_account_view(row) if row is not None else None

    def require(self, session_id: str) -> SessionAccountView:
        account = self.get(session_id)
        if account is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return account

    def resolve_active(
        self,
        name: str | None = None,
        *,
        budget_ceiling: int = DEFAULT_BUDGET_CEILING,
    ) -> SessionAccountView:
        """Most recently used open account (by name when given), created on demand."""

        with Session(self.engine) as session:
            statement = select(SessionAccountRow).where(
                SessionAccountRow.status != SessionStatus.CLOSED.value,
            )
            if name is not None:
                statement = statement.where(SessionAccountRow.name == name)
            row = session.exec(
                statement.order_by(col(SessionAccountRow.updated_at).desc()).limit(1),
            ).one_or_none()
            if row is not None:
                return _to_account_view(row)
        return self.require(self.create(name, budget_ceiling=budget_ceiling))

    def list(
        self,
        *,
        status: SessionStatus | None = None,
        limit: int = 20,
    ) -> list[SessionAccountView]:
        with Session(self.engine) as session:
            statement = select(SessionAccountRow)
            if status is not None:
                statement = statement.where(SessionAccountRow.status == status.value)
            rows = session.exec(
                statement.order_by(col(SessionAccountRow.updated_at).desc()).limit(
                    max(1, min(limit, 100)),
                ),
            ).all()
        return [_to_account_view(row) for row in rows]

    def pre_call_check(self, session_id: str) -> RolloverCheck:
        """Roll the account over when its window usage reached the ceiling.

        A rolled account that never got a new token keeps accruing usage; it
        rolls again once that new window reaches the ceiling too.

        Rolling clears the continuation token, moves the usage baseline to the
        current cumulative usage and bumps the rollover counter in one guarded
        update, so two concurrent callers cannot both roll.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = _require_open(session, session_id)
            window = row.cumulative_usage - row.usage_baseline
            ceiling = row.budget_ceiling
            if row.status not in _ROLLABLE_STATUSES or window < ceiling:
                return RolloverCheck(rolled=False)
            result = session.exec(
                sa_update(SessionAccountRow)
                .where(
                    col(SessionAccountRow.session_id) == session_id,
                    col(SessionAccountRow.status).in_(_ROLLABLE_STATUSES),
                    col(SessionAccountRow.cumulative_usage) - col(SessionAccountRow.usage_baseline)
                    >= col(SessionAccountRow.budget_ceiling),
                )
                .values(
                    status=SessionStatus.ROLLED.value,
                    continuation_token=None,
                    usage_baseline=col(SessionAccountRow.cumulative_usage),
                    rollover_count=col(SessionAccountRow.rollover_count) + 1,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return RolloverCheck(rolled=False)
            session.commit()
        message = (
            f"Session {session_id} used {window} of {ceiling} tokens; "
            "starting a fresh conversation."
        )
        logger.info("%s", message)
        return RolloverCheck(rolled=True, message=message)

    def overflow_status(self, session_id: str) -> OverflowStatus:
        account = self.require(session_id)
        window = account.window_usage
        utilization = window / account.budget_ceiling if account.budget_ceiling else 0.0
        return OverflowStatus(
            window_usage=window,
            budget_ceiling=account.budget_ceiling,
            utilization=utilization,
            should_warn=utilization >= WARN_UTILIZATION,
            should_roll=utilization >= 1.0,
        )

    def record_usage(self, session_id: str, usage: TokenUsage | int) -> bool:
        """Add tokens to cumulative usage; non-positive amounts are ignored."""

        tokens = usage.total_tokens if isinstance(usage, TokenUsage) else int(usage)
        if tokens <= 0:
            return False
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            _require_open(session, session_id)
            session.exec(
                sa_update(SessionAccountRow)
                .where(col(SessionAccountRow.session_id) == session_id)
                .values(
                    cumulative_usage=col(SessionAccountRow.cumulative_usage) + tokens,
                    updated_at=now,
                ),
            )
            session.commit()
        return True

    def update_token(self, session_id: str, token: str | None) -> None:
        """Store or clear the continuation token.

        Installing a token on a rolled account makes it active again.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = _require_open(session, session_id)
            status = row.status
            if token is not None and status == SessionStatus.ROLLED.value:
                status = SessionStatus.ACTIVE.value
            session.exec(
                sa_update(SessionAccountRow)
                .where(col(SessionAccountRow.session_id) == session_id)
                .values(continuation_token=token, status=status, updated_at=now),
            )
            session.commit()

    def close(self, session_id: str) -> None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            _require_open(session, session_id)
            session.exec(
                sa_update(SessionAccountRow)
                .where(col(SessionAccountRow.session_id) == session_id)
                .values(
                    status=SessionStatus.CLOSED.value,
                    continuation_token=None,
                    closed_at=now,
                    updated_at=now,
                ),
            )
            session.commit()

    def record_event(  # noqa: PLR0913
        self,
        session_id: str,
        *,
        command: str,
        prompt: str | None = None,
        response: str | None = None,
        total_tokens: int = 0,
        duration_ms: int | None = None,
        continuation_token: str | None = None,
    ) -> int:
        """Append an audit entry with bounded prompt/response previews."""

        with Session(self.engine) as session:
            _require_open(session, session_id)
            row = SessionEventRow(
                session_id=session_id,
                command=command,
                prompt_preview=prompt[:PREVIEW_CHARS] if prompt else None,
                response_preview=response[:PREVIEW_CHARS] if response else None,
                total_tokens=max(0, total_tokens),
                duration_ms=duration_ms,
                continuation_token=continuation_token,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.id or 0

    def list_events(self, session_id: str, *, limit: int = 50) -> list[SessionEventView]:
        """Audit entries, newest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(SessionEventRow)
                .where(SessionEventRow.session_id == session_id)
                .order_by(col(SessionEventRow.created_at).desc(), col(SessionEventRow.id).desc())
                .limit(max(1, min(limit, 200))),
            ).all()
        return [_to_event_view(row) for row in rows]


def _require_open(session: Session, session_id: str) -> SessionAccountRow:
    row = session.get(SessionAccountRow, session_id)
    if row is None:
        raise SessionNotFoundError(f"Session not found: {session_id}")
    if row.status == SessionStatus.CLOSED.value:
        raise SessionClosedError(f"Session is closed: {session_id}")
    return row


def _to_account_view(row: SessionAccountRow) -> SessionAccountView:
    return SessionAccountView(
        session_id=row.session_id,
        name=row.name,
        continuation_token=row.continuation_token,
        cumulative_usage=row.cumulative_usage,
        usage_baseline=row.usage_baseline,
        budget_ceiling=row.budget_ceiling,
        rollover_count=row.rollover_count,
        status=SessionStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        closed_at=optional_aware(row.closed_at),
    )


def _to_event_view(row: SessionEventRow) -> SessionEventView:
    return SessionEventView(
        event_id=row.id or 0,
        session_id=row.session_id,
        command=row.command,
        prompt_preview=row.prompt_preview,
        response_preview=row.response_preview,
        total_tokens=row.total_tokens,
        duration_ms=row.duration_ms,
        continuation_token=row.continuation_token,
        created_at=to_utc_aware_datetime(row.created_at),
    )
