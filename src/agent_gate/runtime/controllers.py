"""Controllers for agent-gate CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from agent_gate.config import Settings
from agent_gate.runtime.backend.commands import AgentCommand
from agent_gate.runtime.backend.process_runner import ProcessRunner
from agent_gate.runtime.continuation import CallSettings, ContinuationResolver
from agent_gate.runtime.coordinator import CallCoordinator, CallRequest
from agent_gate.runtime.errors import LedgerConflict, WorkItemNotFoundError
from agent_gate.runtime.gate import NETWORK_CLASS, PROCESS_CLASS, ConcurrencyGate
from agent_gate.runtime.ledger import Ledger
from agent_gate.runtime.models import SessionStatus, WorkItemStatus
from agent_gate.runtime.reconstruction import ReconstructionPolicy
from agent_gate.runtime.retry import RetryConfig, RetryPolicy
from agent_gate.runtime.sessions import SessionAccountStore
from agent_gate.runtime.worker import QueueWorker


@dataclass(slots=True)
class CallCommand:
    """CLI input for one coordinated call."""

    db_path: Path | None
    prompt: str
    scope: str
    logical_key: str
    session_id: str | None = None
    session_name: str | None = None
    reuse_completed: bool = False
    timeout_seconds: float | None = None
    max_retries: int | None = None


@dataclass(slots=True)
class ItemsListCommand:
    """CLI input for work item listing."""

    db_path: Path | None
    scope: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class ItemInspectCommand:
    """CLI input for work item inspection and retry."""

    db_path: Path | None
    item_id: int


@dataclass(slots=True)
class ItemEnqueueCommand:
    """CLI input for queueing a work item."""

    db_path: Path | None
    scope: str
    logical_key: str
    prompt: str
    priority: int
    max_retries: int | None = None


@dataclass(slots=True)
class ItemsRecoverCommand:
    """CLI input for a manual stale sweep."""

    db_path: Path | None
    scope: str | None
    stale_after_seconds: float | None = None


@dataclass(slots=True)
class ItemEventsCommand:
    """CLI input for the per-scope event stream."""

    db_path: Path | None
    scope: str
    after_seq: int
    limit: int


@dataclass(slots=True)
class SessionCreateCommand:
    """CLI input for session account creation."""

    db_path: Path | None
    name: str | None
    budget_ceiling: int | None = None


@dataclass(slots=True)
class SessionListCommand:
    """CLI input for session account listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class SessionShowCommand:
    """CLI input for showing or closing one session account."""

    db_path: Path | None
    session_id: str
    events_limit: int = 10


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    scope: str | None
    once: bool
    max_items: int | None
    max_idle_polls: int = 1
    chain_sessions: bool = False


class AgentGateCliController:
    """Coordinates call, queue, session and worker CLI operations."""

    def call(self, command: CallCommand) -> list[str]:
        settings = _settings(command.db_path)
        if command.timeout_seconds is not None:
            settings.process.timeout_seconds = command.timeout_seconds
        with _ledger(settings) as ledger, _session_store(settings) as sessions:
            session_id = command.session_id
            if session_id is None and command.session_name is not None:
                session_id = sessions.resolve_active(
                    command.session_name,
                    budget_ceiling=settings.sessions.budget_ceiling,
                ).session_id
            coordinator = CallCoordinator(
                ledger=ledger,
                resolver=build_resolver(settings),
                gate=build_gate(settings),
                sessions=sessions,
                stale_buffer_seconds=settings.ledger.stale_buffer_seconds,
            )
            try:
                outcome = asyncio.run(
                    coordinator.execute(
                        CallRequest(
                            prompt=command.prompt,
                            scope=command.scope,
                            logical_key=command.logical_key,
                            session_id=session_id,
                            max_retries=(
                                command.max_retries
                                if command.max_retries is not None
                                else settings.ledger.default_max_retries
                            ),
                            settings=call_settings(settings),
                            reuse_completed=command.reuse_completed,
                        ),
                    ),
                )
            except LedgerConflict as conflict:
                return _already_in_progress(ledger, conflict)

        mode = "cached" if outcome.cached else "resumed" if outcome.resumed else "fresh"
        lines = [
            "Call completed: "
            f"item_id={outcome.item_id} mode={mode} reconstructed={outcome.reconstructed} "
            f"attempts={outcome.attempts} duration_ms={outcome.duration_ms} "
            f"tokens={outcome.usage.total_tokens} ({outcome.usage.usage_status})",
        ]
        if session_id is not None:
            lines.append(f"Session: {session_id} token={outcome.continuation_token or '-'}")
        lines.append("")
        lines.append(outcome.text)
        return lines

    def list_items(self, command: ItemsListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_item_status(command.status)
        with _ledger(settings) as ledger:
            items = ledger.list_items(
                scope=command.scope,
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Items: {len(items)}"]
        for item in items:
            lines.append(
                f"  {item.item_id} scope={item.scope} key={item.logical_key} "
                f"status={item.status.value} priority={item.priority} "
                f"retry={item.retry_count}/{item.max_retries} "
                f"created_at={item.created_at.isoformat()}",
            )
        return lines

    def inspect_item(self, command: ItemInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _ledger(settings) as ledger:
            details = ledger.get_details(command.item_id)
        if details is None:
            return [f"Item not found: {command.item_id}"]

        item = details.item
        usage = item.usage
        lines = [
            f"Item: {item.item_id}",
            f"Scope: {item.scope}",
            f"Key: {item.logical_key}",
            f"Status: {item.status.value}",
            f"Priority: {item.priority}",
            f"Retry: {item.retry_count}/{item.max_retries}",
            f"Worker: {item.worker_id or '-'}",
            f"Tokens: {usage.total_tokens if usage else '-'}",
            f"Duration ms: {item.duration_ms if item.duration_ms is not None else '-'}",
            f"Continuation token: {item.continuation_token or '-'}",
            f"Error: {item.error_text or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  #{event.seq} {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def enqueue_item(self, command: ItemEnqueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _ledger(settings) as ledger:
            try:
                item_id = ledger.enqueue(
                    command.scope,
                    command.logical_key,
                    payload=command.prompt,
                    priority=command.priority,
                    max_retries=(
                        command.max_retries
                        if command.max_retries is not None
                        else settings.ledger.default_max_retries
                    ),
                )
            except LedgerConflict as conflict:
                return _already_in_progress(ledger, conflict)
        return [
            f"Item enqueued: item_id={item_id} scope={command.scope} key={command.logical_key}",
        ]

    def retry_item(self, command: ItemInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _ledger(settings) as ledger:
            try:
                requeued = ledger.retry(command.item_id)
            except LedgerConflict as conflict:
                return _already_in_progress(ledger, conflict)
            if not requeued:
                item = ledger.get(command.item_id)
                if item is None:
                    raise WorkItemNotFoundError(f"Work item not found: {command.item_id}")
                return [
                    f"Item not re-queued: {command.item_id} "
                    f"status={item.status.value} retry={item.retry_count}/{item.max_retries}",
                ]
        return [f"Item re-queued: {command.item_id}"]

    def recover_items(self, command: ItemsRecoverCommand) -> list[str]:
        settings = _settings(command.db_path)
        stale_after_seconds = command.stale_after_seconds
        if stale_after_seconds is None:
            stale_after_seconds = (
                settings.process.timeout_seconds + settings.ledger.stale_buffer_seconds
            )
        with _ledger(settings) as ledger:
            recovered = ledger.recover_stale(
                command.scope,
                stale_after=timedelta(seconds=stale_after_seconds),
            )
        return [f"Recovered stale items: {recovered}"]

    def list_events(self, command: ItemEventsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _ledger(settings) as ledger:
            events = ledger.list_events(
                command.scope,
                after_seq=command.after_seq,
                limit=command.limit,
            )

        lines = [f"Events: {len(events)}"]
        for event in events:
            lines.append(
                f"  #{event.seq} item={event.item_id} {event.created_at.isoformat()} "
                f"{event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def create_session(self, command: SessionCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _session_store(settings) as sessions:
            session_id = sessions.create(
                command.name,
                budget_ceiling=command.budget_ceiling or settings.sessions.budget_ceiling,
            )
        return [f"Session created: {session_id}"]

    def list_sessions(self, command: SessionListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = SessionStatus(command.status.lower()) if command.status else None
        with _session_store(settings) as sessions:
            accounts = sessions.list(status=status_filter, limit=command.limit)

        lines = [f"Sessions: {len(accounts)}"]
        for account in accounts:
            lines.append(
                f"  {account.session_id} name={account.name or '-'} "
                f"status={account.status.value} "
                f"window={account.window_usage}/{account.budget_ceiling} "
                f"rollovers={account.rollover_count}",
            )
        return lines

    def show_session(self, command: SessionShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _session_store(settings) as sessions:
            account = sessions.require(command.session_id)
            events = sessions.list_events(command.session_id, limit=command.events_limit)

        lines = [
            f"Session: {account.session_id}",
            f"Name: {account.name or '-'}",
            f"Status: {account.status.value}",
            f"Continuation token: {account.continuation_token or '-'}",
            f"Usage: cumulative={account.cumulative_usage} window={account.window_usage} "
            f"ceiling={account.budget_ceiling}",
            f"Rollovers: {account.rollover_count}",
            f"Events: {len(events)}",
        ]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.command} "
                f"tokens={event.total_tokens} prompt={(event.prompt_preview or '-')[:60]!r}",
            )
        return lines

    def close_session(self, command: SessionShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _session_store(settings) as sessions:
            sessions.close(command.session_id)
        return [f"Session closed: {command.session_id}"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _ledger(settings) as ledger:
            worker = QueueWorker(
                ledger=ledger,
                resolver=build_resolver(settings),
                gate=build_gate(settings),
                scope=command.scope,
                settings=call_settings(settings),
                chain_sessions=command.chain_sessions,
                poll_interval_seconds=settings.ledger.poll_interval_seconds,
                stale_buffer_seconds=settings.ledger.stale_buffer_seconds,
            )
            summary = asyncio.run(
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_items=command.max_items,
                    max_idle_polls=command.max_idle_polls,
                ),
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} requeued={summary.requeued} "
            f"stale_recovered={summary.stale_recovered} idle_polls={summary.idle_polls}",
        ]


def build_resolver(settings: Settings) -> ContinuationResolver:
    """Wire runner, command templates, retry and reconstruction policy from settings."""

    retry = settings.retry
    reconstruction = settings.reconstruction
    return ContinuationResolver(
        ProcessRunner(grace_seconds=settings.process.kill_grace_seconds),
        AgentCommand(
            template=settings.process.command_template,
            resume_template=settings.process.resume_template or None,
            model=settings.process.model,
        ),
        retry_policy=RetryPolicy(
            RetryConfig(
                max_retries=retry.max_retries,
                total_attempts=retry.total_attempts,
                time_budget_seconds=retry.time_budget_seconds,
                min_remaining_seconds=retry.min_remaining_seconds,
                base_delay_seconds=retry.base_delay_seconds,
                max_delay_seconds=retry.max_delay_seconds,
                jitter_max_seconds=retry.jitter_max_seconds,
                max_rate_limit_wait_seconds=retry.max_rate_limit_wait_seconds,
                transient_exit_codes=retry.transient_exit_codes,
            ),
        ),
        policy=ReconstructionPolicy(
            min_plausible_chars=reconstruction.min_plausible_chars,
            suspicious_chars=reconstruction.suspicious_chars,
            suspicious_after_seconds=reconstruction.suspicious_after_seconds,
            max_chars=reconstruction.max_chars,
        ),
    )


def build_gate(settings: Settings) -> ConcurrencyGate:
    return ConcurrencyGate(
        {
            PROCESS_CLASS: settings.gate.process_limit,
            NETWORK_CLASS: settings.gate.network_limit,
        },
    )


def call_settings(settings: Settings) -> CallSettings:
    process = settings.process
    return CallSettings(
        timeout_seconds=process.timeout_seconds,
        idle_timeout_seconds=process.idle_timeout_seconds,
        max_output_bytes=process.max_output_bytes,
        fail_on_overflow=process.fail_on_overflow,
        env_allowlist=process.env_allowlist,
        cwd=process.cwd,
        heartbeat_interval_seconds=process.heartbeat_interval_seconds,
    )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_item_status(value: str | None) -> WorkItemStatus | None:
    if value is None:
        return None
    return WorkItemStatus(value.strip().lower())


def _already_in_progress(ledger: Ledger, conflict: LedgerConflict) -> list[str]:
    active = ledger.find_active(conflict.scope, conflict.logical_key)
    if active is None:
        return [f"Already in progress: scope={conflict.scope} key={conflict.logical_key}"]
    return [
        f"Already in progress: scope={active.scope} key={active.logical_key} "
        f"item_id={active.item_id} status={active.status.value}",
    ]


@contextmanager
def _ledger(settings: Settings) -> Iterator[Ledger]:
    ledger = Ledger(settings.db_path, busy_timeout_ms=settings.ledger.busy_timeout_ms)
    ledger.init_schema()
    try:
        yield ledger
    finally:
        ledger.close()


@contextmanager
def _session_store(settings: Settings) -> Iterator[SessionAccountStore]:
    sessions = SessionAccountStore(
        settings.db_path,
        busy_timeout_ms=settings.ledger.busy_timeout_ms,
    )
    sessions.init_schema()
    try:
        yield sessions
    finally:
        sessions.dispose()
