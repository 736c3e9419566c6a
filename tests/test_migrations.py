from __future__ import annotations

import sqlite3
from pathlib import Path

import allure

from agent_gate.runtime.ledger import Ledger
from agent_gate.runtime.sessions import SessionAccountStore

pytestmark = [
    allure.epic("Durable Ledger"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    ledger = Ledger(db_path)
    ledger.init_schema()
    ledger.close()

    with sqlite3.connect(db_path) as connection:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchone()
        tables = connection.execute(
            """
            SELECT name
            FROM sqlite_master
            WHERE type = 'table' AND name NOT LIKE 'sqlite_%' AND name != 'alembic_version'
            ORDER BY name
            """,
        ).fetchall()
        indexes = connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = 'work_items'",
        ).fetchall()

    assert version == ("20261019_0002",)
    assert [row[0] for row in tables] == [
        "session_accounts",
        "session_events",
        "work_item_events",
        "work_items",
    ]
    assert "uq_work_items_scope_key_active" in {row[0] for row in indexes}


def test_init_schema_is_idempotent_across_stores(tmp_path: Path) -> None:
    db_path = tmp_path / "shared.db"
    ledger = Ledger(db_path)
    sessions = SessionAccountStore(db_path)

    ledger.init_schema()
    sessions.init_schema()
    ledger.init_schema()

    assert ledger.begin("digest", "k") > 0
    assert sessions.require(sessions.create()).budget_ceiling == 400_000
    ledger.close()
    sessions.dispose()
