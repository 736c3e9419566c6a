from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_gate.main import agent_gate
from agent_gate.runtime.ledger import Ledger

from conftest import ECHO_AGENT, TEST_ENV_ALLOWLIST

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("Calls, Queue, Sessions"),
]

LONG_PROMPT = "Please summarize the open review comments on the parser refactoring branch."


@pytest.fixture()
def cli_env(monkeypatch: pytest.MonkeyPatch, db_path: Path) -> Path:
    monkeypatch.setenv("AGENT_GATE_DB_PATH", str(db_path))
    monkeypatch.setenv("AGENT_GATE_COMMAND", ECHO_AGENT)
    monkeypatch.setenv("AGENT_GATE_RESUME_COMMAND", f"{ECHO_AGENT} --resume {{session_id}}")
    monkeypatch.setenv("AGENT_GATE_ENV_ALLOWLIST", ",".join(TEST_ENV_ALLOWLIST))
    monkeypatch.setenv("AGENT_GATE_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("AGENT_GATE_RETRY_BASE_DELAY_SECONDS", "0")
    monkeypatch.setenv("AGENT_GATE_RETRY_JITTER_SECONDS", "0")
    return db_path


def test_call_prints_reply_and_records_item(cli_env: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(
        agent_gate,
        ["call", "--scope", "review:pr-42", "--key", "round-1", "--prompt", "hello cli"],
    )

    assert result.exit_code == 0, result.output
    assert "Call completed: item_id=1 mode=fresh" in result.output
    assert "(reported)" in result.output
    assert result.output.rstrip().endswith("echo: hello cli")

    listing = runner.invoke(agent_gate, ["items", "list", "--scope", "review:pr-42"])
    assert listing.exit_code == 0, listing.output
    assert "Items: 1" in listing.output
    assert "status=completed" in listing.output


def test_call_reads_prompt_from_stdin_and_rejects_empty_prompt(cli_env: Path) -> None:
    runner = CliRunner()

    piped = runner.invoke(
        agent_gate,
        ["call", "--scope", "s", "--key", "k1"],
        input="piped prompt\n",
    )
    empty = runner.invoke(agent_gate, ["call", "--scope", "s", "--key", "k2"], input="  \n")

    assert piped.exit_code == 0, piped.output
    assert "echo: piped prompt" in piped.output
    assert empty.exit_code == 2
    assert "prompt must not be empty" in empty.output


def test_reuse_completed_returns_cached_result(cli_env: Path) -> None:
    runner = CliRunner()
    args = ["call", "--scope", "s", "--key", "k", "--prompt", "once", "--reuse-completed"]

    first = runner.invoke(agent_gate, args)
    second = runner.invoke(agent_gate, args)

    assert first.exit_code == 0, first.output
    assert second.exit_code == 0, second.output
    assert "mode=cached" in second.output
    assert "item_id=1" in second.output


def test_active_key_is_reported_as_already_in_progress(cli_env: Path) -> None:
    ledger = Ledger(cli_env)
    ledger.init_schema()
    busy = ledger.begin("s", "busy")
    failed = ledger.begin("s", "again", max_retries=1)
    ledger.fail(failed, "boom")
    ledger.begin("s", "again")
    ledger.close()
    runner = CliRunner()

    called = runner.invoke(agent_gate, ["call", "--scope", "s", "--key", "busy", "--prompt", "hi"])
    queued = runner.invoke(
        agent_gate,
        ["items", "enqueue", "--scope", "s", "--key", "busy", "--prompt", "hi"],
    )
    retried = runner.invoke(agent_gate, ["items", "retry", "--item-id", str(failed)])

    expected = f"Already in progress: scope=s key=busy item_id={busy} status=running"
    assert called.exit_code == 0, called.output
    assert expected in called.output
    assert "Error" not in called.output
    assert queued.exit_code == 0, queued.output
    assert expected in queued.output
    assert retried.exit_code == 0, retried.output
    assert "Already in progress: scope=s key=again" in retried.output


def test_session_flow_resumes_and_closes(cli_env: Path) -> None:
    runner = CliRunner()

    created = runner.invoke(agent_gate, ["sessions", "create", "--name", "review"])
    assert created.exit_code == 0, created.output
    match = re.search(r"Session created: (\w+)", created.output)
    assert match is not None
    session_id = match.group(1)

    first = runner.invoke(
        agent_gate,
        [
            "call",
            "--scope",
            "review",
            "--key",
            "r1",
            "--session-id",
            session_id,
            "--prompt",
            LONG_PROMPT,
        ],
    )
    second = runner.invoke(
        agent_gate,
        [
            "call",
            "--scope",
            "review",
            "--key",
            "r2",
            "--session-id",
            session_id,
            "--prompt",
            LONG_PROMPT + " Continue.",
        ],
    )

    assert first.exit_code == 0, first.output
    assert "mode=fresh" in first.output
    token = re.search(r"token=(thread-\w+)", first.output)
    assert token is not None
    assert second.exit_code == 0, second.output
    assert "mode=resumed" in second.output
    assert f"token={token.group(1)}" in second.output

    shown = runner.invoke(agent_gate, ["sessions", "show", "--session-id", session_id])
    assert shown.exit_code == 0, shown.output
    assert f"Continuation token: {token.group(1)}" in shown.output
    assert "Events: 2" in shown.output

    listed = runner.invoke(agent_gate, ["sessions", "list", "--status", "active"])
    assert "Sessions: 1" in listed.output

    closed = runner.invoke(agent_gate, ["sessions", "close", "--session-id", session_id])
    assert closed.exit_code == 0, closed.output
    assert f"Session closed: {session_id}" in closed.output

    rejected = runner.invoke(
        agent_gate,
        [
            "call",
            "--scope",
            "review",
            "--key",
            "r3",
            "--session-id",
            session_id,
            "--prompt",
            "late",
        ],
    )
    assert rejected.exit_code == 1
    assert "Session is closed" in rejected.output


def test_named_session_is_created_on_demand(cli_env: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(
        agent_gate,
        ["call", "--scope", "s", "--key", "k", "--session", "nightly", "--prompt", "hi"],
    )

    assert result.exit_code == 0, result.output
    assert "Session: " in result.output
    listed = runner.invoke(agent_gate, ["sessions", "list"])
    assert "name=nightly" in listed.output


def test_enqueue_worker_and_inspect(cli_env: Path) -> None:
    runner = CliRunner()

    enqueued = runner.invoke(
        agent_gate,
        ["items", "enqueue", "--scope", "nightly", "--key", "job-1", "--prompt", "queued"],
    )
    assert enqueued.exit_code == 0, enqueued.output
    assert "Item enqueued: item_id=1" in enqueued.output

    worked = runner.invoke(agent_gate, ["worker", "run", "--scope", "nightly", "--loop"])
    assert worked.exit_code == 0, worked.output
    assert "processed=1 completed=1 failed=0" in worked.output

    inspected = runner.invoke(agent_gate, ["items", "inspect", "--item-id", "1"])
    assert inspected.exit_code == 0, inspected.output
    assert "Status: completed" in inspected.output
    assert "Events: 3" in inspected.output
    assert "claimed queued -> running" in inspected.output

    events = runner.invoke(
        agent_gate,
        ["items", "events", "--scope", "nightly", "--after-seq", "1"],
    )
    assert "Events: 2" in events.output

    missing = runner.invoke(agent_gate, ["items", "inspect", "--item-id", "99"])
    assert "Item not found: 99" in missing.output


def test_worker_once_on_empty_queue_reports_idle(cli_env: Path) -> None:
    result = CliRunner().invoke(agent_gate, ["worker", "run"])

    assert result.exit_code == 0, result.output
    assert "processed=0" in result.output
    assert "idle_polls=1" in result.output


def test_retry_and_recover_commands(cli_env: Path) -> None:
    ledger = Ledger(cli_env)
    ledger.init_schema()
    failed = ledger.begin("s", "failed", max_retries=1)
    ledger.fail(failed, "boom")
    ledger.begin("s", "stuck")
    ledger.close()
    runner = CliRunner()

    retried = runner.invoke(agent_gate, ["items", "retry", "--item-id", str(failed)])
    again = runner.invoke(agent_gate, ["items", "retry", "--item-id", str(failed)])
    missing = runner.invoke(agent_gate, ["items", "retry", "--item-id", "404"])
    recovered = runner.invoke(
        agent_gate,
        ["items", "recover", "--scope", "s", "--stale-after-seconds", "0"],
    )

    assert f"Item re-queued: {failed}" in retried.output
    assert f"Item not re-queued: {failed} status=queued" in again.output
    assert missing.exit_code == 1
    assert "Work item not found" in missing.output
    assert "Recovered stale items: 1" in recovered.output
