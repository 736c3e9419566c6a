"""CLI entrypoint for agent-gate."""

import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from agent_gate import __version__
from agent_gate.runtime.controllers import (
    AgentGateCliController,
    CallCommand,
    ItemEnqueueCommand,
    ItemEventsCommand,
    ItemInspectCommand,
    ItemsListCommand,
    ItemsRecoverCommand,
    SessionCreateCommand,
    SessionListCommand,
    SessionShowCommand,
    WorkerCommand,
)
from agent_gate.runtime.errors import AgentGateError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentGateCliController()

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="agent-gate")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logger level.",
)
def agent_gate(log_level: str) -> None:
    """Coordinate calls to a slow external agent process."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_gate.command("call")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--scope", required=True, help="Workflow scope, e.g. review:pr-42.")
@click.option("--key", "logical_key", required=True, help="Logical key, unique while active.")
@click.option(
    "--prompt",
    default="-",
    show_default=True,
    help="Prompt text; `-` reads it from stdin.",
)
@click.option("--session-id", default=None, help="Session account id to resume under.")
@click.option(
    "--session",
    "session_name",
    default=None,
    help="Session account name; the latest open account is used or created.",
)
@click.option(
    "--reuse-completed/--no-reuse-completed",
    default=False,
    show_default=True,
    help="Return the stored result when the key already completed.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0.1),
    default=None,
    help="Absolute per-invocation timeout; defaults to AGENT_GATE_TIMEOUT_SECONDS.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Manual retry budget stored on the work item.",
)
def call(  # noqa: PLR0913
    db_path: Path | None,
    scope: str,
    logical_key: str,
    prompt: str,
    session_id: str | None,
    session_name: str | None,
    reuse_completed: bool,
    timeout_seconds: float | None,
    max_retries: int | None,
) -> None:
    """Run one guarded call and print the agent reply."""

    _emit(
        CONTROLLER.call,
        CallCommand(
            db_path=db_path,
            prompt=_read_prompt(prompt),
            scope=scope,
            logical_key=logical_key,
            session_id=session_id,
            session_name=session_name,
            reuse_completed=reuse_completed,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
        ),
    )


@agent_gate.group()
def items() -> None:
    """Work item ledger commands."""


@items.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--scope", default=None, help="Optional scope filter.")
@click.option(
    "--status",
    type=click.Choice(["queued", "running", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max items to print.",
)
def items_list(db_path: Path | None, scope: str | None, status: str | None, limit: int) -> None:
    """List work items, newest first."""

    _emit(
        CONTROLLER.list_items,
        ItemsListCommand(db_path=db_path, scope=scope, status=status, limit=limit),
    )


@items.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--item-id", type=int, required=True, help="Work item id.")
def items_inspect(db_path: Path | None, item_id: int) -> None:
    """Inspect one work item with its event history."""

    _emit(CONTROLLER.inspect_item, ItemInspectCommand(db_path=db_path, item_id=item_id))


@items.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--scope", required=True, help="Workflow scope.")
@click.option("--key", "logical_key", required=True, help="Logical key.")
@click.option(
    "--prompt",
    default="-",
    show_default=True,
    help="Prompt text; `-` reads it from stdin.",
)
@click.option(
    "--priority",
    type=int,
    default=100,
    show_default=True,
    help="Lower values are claimed first.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retry budget for worker re-queues.",
)
def items_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    scope: str,
    logical_key: str,
    prompt: str,
    priority: int,
    max_retries: int | None,
) -> None:
    """Queue a work item for `worker run`."""

    _emit(
        CONTROLLER.enqueue_item,
        ItemEnqueueCommand(
            db_path=db_path,
            scope=scope,
            logical_key=logical_key,
            prompt=_read_prompt(prompt),
            priority=priority,
            max_retries=max_retries,
        ),
    )


@items.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--item-id", type=int, required=True, help="Work item id.")
def items_retry(db_path: Path | None, item_id: int) -> None:
    """Re-queue a failed work item while retries remain."""

    _emit(CONTROLLER.retry_item, ItemInspectCommand(db_path=db_path, item_id=item_id))


@items.command("recover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--scope", default=None, help="Only sweep this scope.")
@click.option(
    "--stale-after-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Heartbeat age that counts as stale; defaults to timeout plus buffer.",
)
def items_recover(
    db_path: Path | None,
    scope: str | None,
    stale_after_seconds: float | None,
) -> None:
    """Fail running items whose owner stopped heart-beating."""

    _emit(
        CONTROLLER.recover_items,
        ItemsRecoverCommand(
            db_path=db_path,
            scope=scope,
            stale_after_seconds=stale_after_seconds,
        ),
    )


@items.command("events")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--scope", required=True, help="Workflow scope.")
@click.option(
    "--after-seq",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Only events with a larger sequence number.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max events to print.",
)
def items_events(db_path: Path | None, scope: str, after_seq: int, limit: int) -> None:
    """Print the ordered event stream of a scope."""

    _emit(
        CONTROLLER.list_events,
        ItemEventsCommand(db_path=db_path, scope=scope, after_seq=after_seq, limit=limit),
    )


@agent_gate.group()
def sessions() -> None:
    """Session account commands."""


@sessions.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", default=None, help="Optional human-readable name.")
@click.option(
    "--budget-ceiling",
    type=click.IntRange(min=1),
    default=None,
    help="Tokens per conversation before rollover.",
)
def sessions_create(db_path: Path | None, name: str | None, budget_ceiling: int | None) -> None:
    """Create a session account."""

    _emit(
        CONTROLLER.create_session,
        SessionCreateCommand(db_path=db_path, name=name, budget_ceiling=budget_ceiling),
    )


@sessions.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["active", "rolled", "closed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=20,
    show_default=True,
    help="Max sessions to print.",
)
def sessions_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List session accounts, most recently used first."""

    _emit(
        CONTROLLER.list_sessions,
        SessionListCommand(db_path=db_path, status=status, limit=limit),
    )


@sessions.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", required=True, help="Session account id.")
@click.option(
    "--events",
    "events_limit",
    type=click.IntRange(min=1, max=200),
    default=10,
    show_default=True,
    help="How many audit entries to print.",
)
def sessions_show(db_path: Path | None, session_id: str, events_limit: int) -> None:
    """Show one session account with recent audit entries."""

    _emit(
        CONTROLLER.show_session,
        SessionShowCommand(db_path=db_path, session_id=session_id, events_limit=events_limit),
    )


@sessions.command("close")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", required=True, help="Session account id.")
def sessions_close(db_path: Path | None, session_id: str) -> None:
    """Close a session account for good."""

    _emit(CONTROLLER.close_session, SessionShowCommand(db_path=db_path, session_id=session_id))


@agent_gate.group()
def worker() -> None:
    """Queue worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--scope", default=None, help="Only claim items of this scope.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-items",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed items in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
@click.option(
    "--chain-sessions/--no-chain-sessions",
    default=False,
    show_default=True,
    help="Resume each item from the scope's last completed continuation token.",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    scope: str | None,
    once: bool,
    max_items: int | None,
    max_idle_polls: int,
    chain_sessions: bool,
) -> None:
    """Run the queue worker."""

    _emit(
        CONTROLLER.run_worker,
        WorkerCommand(
            db_path=db_path,
            scope=scope,
            once=once,
            max_items=max_items,
            max_idle_polls=max_idle_polls,
            chain_sessions=chain_sessions,
        ),
    )


def _read_prompt(value: str) -> str:
    prompt = sys.stdin.read() if value == "-" else value
    if not prompt.strip():
        raise click.BadParameter("prompt must not be empty", param_hint="--prompt")
    return prompt


def _emit(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (AgentGateError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_gate()
