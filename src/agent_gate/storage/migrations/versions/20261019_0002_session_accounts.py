"""Add session accounts with usage baseline and call audit trail."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "session_accounts",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("continuation_token", sa.String(), nullable=True),
        sa.Column("cumulative_usage", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("usage_baseline", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "budget_ceiling",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("400000"),
        ),
        sa.Column("rollover_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index("ix_session_accounts_name", "session_accounts", ["name"], unique=False)
    op.create_index("ix_session_accounts_status", "session_accounts", ["status"], unique=False)

    op.create_table(
        "session_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("command", sa.String(), nullable=False),
        sa.Column("prompt_preview", sa.Text(), nullable=True),
        sa.Column("response_preview", sa.Text(), nullable=True),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("continuation_token", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["session_accounts.session_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_session_events_session_id",
        "session_events",
        ["session_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_session_events_session_id", table_name="session_events")
    op.drop_table("session_events")
    op.drop_index("ix_session_accounts_status", table_name="session_accounts")
    op.drop_index("ix_session_accounts_name", table_name="session_accounts")
    op.drop_table("session_accounts")
