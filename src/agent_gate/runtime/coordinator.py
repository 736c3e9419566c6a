"""One guarded call: gate slot, ledger claim, resume decision, terminal write."""

from __future__ import annotations

import asyncio
import inspect
import logging
import weakref
from dataclasses import dataclass, field, replace
from datetime import timedelta

from agent_gate.runtime.backend.base import ProcessCallbacks
from agent_gate.runtime.cancellation import CancellationToken
from agent_gate.runtime.continuation import (
    CallSettings,
    ContinuationResolver,
    HistoryProvider,
    ResumeCallResult,
    ResumeFailureHook,
)
from agent_gate.runtime.errors import (
    LedgerConflict,
    LedgerTransitionError,
    ProcessError,
    RetryBudgetExhausted,
)
from agent_gate.runtime.gate import PROCESS_CLASS, ConcurrencyGate
from agent_gate.runtime.ledger import DEFAULT_PRIORITY, Ledger
from agent_gate.runtime.models import (
    TokenUsage,
    WorkItemResult,
    WorkItemStatus,
    WorkItemView,
)
from agent_gate.runtime.reconstruction import HistoryRound, rounds_from_items
from agent_gate.runtime.retry import RetryCallback
from agent_gate.runtime.sessions import SessionAccountStore

logger = logging.getLogger(__name__)

DEFAULT_STALE_BUFFER_SECONDS = 60.0


@dataclass(slots=True)
class CallRequest:
    """Caller input for one logical call."""

    prompt: str
    scope: str
    logical_key: str
    session_id: str | None = None
    work_class: str = PROCESS_CLASS
    priority: int = DEFAULT_PRIORITY
    max_retries: int = 1
    settings: CallSettings = field(default_factory=CallSettings)
    callbacks: ProcessCallbacks = field(default_factory=ProcessCallbacks)
    cancellation: CancellationToken | None = None
    on_retry: RetryCallback | None = None
    reuse_completed: bool = False
    command_label: str = "call"


@dataclass(slots=True)
class CallOutcome:
    """What the caller gets back once the ledger item is terminal."""

    item_id: int
    text: str
    usage: TokenUsage
    continuation_token: str | None
    resumed: bool
    reconstructed: bool
    attempts: int
    duration_ms: int
    cached: bool = False


def ledger_history_provider(ledger: Ledger, *, limit: int | None = None) -> HistoryProvider:
    """History provider reading completed items of a scope off the event loop."""

    async def _provider(scope: str) -> list[HistoryRound]:
        items = await asyncio.to_thread(ledger.history, scope, limit=limit)
        return rounds_from_items(items)

    return _provider


class CallCoordinator:
    """Runs calls so that each logical key is executed at most once at a time.

    Calls sharing a scope run strictly one after another: the next one starts
    only after the previous terminal write and session update. A second call
    for a key that is already in flight is refused with :class:`LedgerConflict`
    instead of waiting behind it.

    Every call owns exactly one ledger item and writes its terminal state once.
    Failures, including cancellation, are recorded on the item before they
    propagate to the caller.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        ledger: Ledger,
        resolver: ContinuationResolver,
        gate: ConcurrencyGate | None = None,
        sessions: SessionAccountStore | None = None,
        worker_id: str | None = None,
        stale_buffer_seconds: float = DEFAULT_STALE_BUFFER_SECONDS,
    ) -> None:
        self.ledger = ledger
        self.resolver = resolver
        self.gate = gate or ConcurrencyGate()
        self.sessions = sessions
        self.worker_id = worker_id
        self.stale_buffer_seconds = stale_buffer_seconds
        self._scope_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._in_flight: set[tuple[str, str]] = set()
        if resolver.history_provider is None:
            resolver.history_provider = ledger_history_provider(ledger)

    def in_flight(self, scope: str) -> list[str]:
        """Logical keys of a scope that are running or waiting for their turn."""

        return sorted(key for owner, key in self._in_flight if owner == scope)

    async def execute(self, request: CallRequest) -> CallOutcome:
        if request.session_id is not None and self.sessions is None:
            raise ValueError("session_id given but the coordinator has no session store")

        key = (request.scope, request.logical_key)
        if key in self._in_flight:
            raise LedgerConflict(request.scope, request.logical_key)
        self._in_flight.add(key)
        try:
            async with self._scope_lock(request.scope):
                return await self._execute_in_scope(request)
        finally:
            self._in_flight.discard(key)

    def _scope_lock(self, scope: str) -> asyncio.Lock:
        lock = self._scope_locks.get(scope)
        if lock is None:
            lock = asyncio.Lock()
            self._scope_locks[scope] = lock
        return lock

    async def _execute_in_scope(self, request: CallRequest) -> CallOutcome:
        async with self.gate.slot(request.work_class):
            stale_after = timedelta(
                seconds=request.settings.timeout_seconds + self.stale_buffer_seconds,
            )
            recovered = await asyncio.to_thread(
                self.ledger.recover_stale,
                request.scope,
                stale_after=stale_after,
            )
            if recovered:
                logger.info("Recovered %s stale item(s) in scope=%s", recovered, request.scope)

            if request.reuse_completed:
                latest = await asyncio.to_thread(
                    self.ledger.find_latest,
                    request.scope,
                    request.logical_key,
                )
                if latest is not None and latest.status is WorkItemStatus.COMPLETED:
                    logger.info(
                        "Reusing completed item %s for %s/%s",
                        latest.item_id,
                        request.scope,
                        request.logical_key,
                    )
                    return _cached_outcome(latest)

            item_id = await asyncio.to_thread(
                self.ledger.begin,
                request.scope,
                request.logical_key,
                payload=request.prompt,
                priority=request.priority,
                max_retries=request.max_retries,
                worker_id=self.worker_id,
            )
            try:
                result = await self._run(request, item_id=item_id)
                completed = await asyncio.to_thread(
                    self.ledger.complete,
                    item_id,
                    WorkItemResult(
                        text=result.text,
                        usage=result.usage,
                        continuation_token=result.continuation_token,
                        duration_ms=result.duration_ms,
                    ),
                )
                if not completed:
                    raise LedgerTransitionError(
                        f"Work item {item_id} is no longer running; result was not recorded",
                    )
            except (Exception, asyncio.CancelledError) as error:
                await self._record_failure(item_id, error)
                raise

        if request.session_id is not None:
            await asyncio.to_thread(self._record_session, request, result)

        return CallOutcome(
            item_id=item_id,
            text=result.text,
            usage=result.usage,
            continuation_token=result.continuation_token,
            resumed=result.resumed,
            reconstructed=result.reconstructed,
            attempts=result.attempts,
            duration_ms=result.duration_ms,
        )

    async def _run(self, request: CallRequest, *, item_id: int) -> ResumeCallResult:
        token: str | None = None
        if request.session_id is not None and self.sessions is not None:
            sessions = self.sessions
            check = await asyncio.to_thread(sessions.pre_call_check, request.session_id)
            if check.rolled:
                logger.info("%s", check.message)
            account = await asyncio.to_thread(sessions.require, request.session_id)
            token = account.continuation_token

        return await self.resolver.call_with_resume(
            request.prompt,
            scope=request.scope,
            continuation_token=token,
            settings=request.settings,
            callbacks=self._with_heartbeat(request.callbacks, item_id=item_id),
            cancellation=request.cancellation,
            on_retry=request.on_retry,
            on_resume_failure=self._resume_failure_hook(request.session_id),
        )

    def _with_heartbeat(self, callbacks: ProcessCallbacks, *, item_id: int) -> ProcessCallbacks:
        caller_heartbeat = callbacks.on_heartbeat

        async def _heartbeat(elapsed_seconds: float) -> None:
            await asyncio.to_thread(self.ledger.touch, item_id)
            if caller_heartbeat is not None:
                result = caller_heartbeat(elapsed_seconds)
                if inspect.isawaitable(result):
                    await result

        return replace(callbacks, on_heartbeat=_heartbeat)

    def _resume_failure_hook(self, session_id: str | None) -> ResumeFailureHook | None:
        sessions = self.sessions
        if session_id is None or sessions is None:
            return None

        async def _hook(token: str, reason: str) -> None:
            logger.info(
                "Dropping continuation token %s of session %s (%s)",
                token,
                session_id,
                reason,
            )
            await asyncio.to_thread(sessions.update_token, session_id, None)

        return _hook

    def _record_session(self, request: CallRequest, result: ResumeCallResult) -> None:
        sessions = self.sessions
        session_id = request.session_id
        if sessions is None or session_id is None:
            return
        if result.continuation_token is not None:
            sessions.update_token(session_id, result.continuation_token)
        sessions.record_usage(session_id, result.usage)
        sessions.record_event(
            session_id,
            command=request.command_label,
            prompt=request.prompt,
            response=result.text,
            total_tokens=result.usage.total_tokens,
            duration_ms=result.duration_ms,
            continuation_token=result.continuation_token,
        )

    async def _record_failure(self, item_id: int, error: BaseException) -> None:
        message = failure_message(error)
        try:
            failed = await asyncio.shield(asyncio.to_thread(self.ledger.fail, item_id, message))
        except asyncio.CancelledError:
            logger.warning("Cancelled while recording failure of item %s", item_id)
            return
        if failed:
            logger.warning("Work item %s failed: %s", item_id, message)


def failure_message(error: BaseException) -> str:
    """Human-readable error text stored on a failed ledger item."""

    if isinstance(error, asyncio.CancelledError):
        return "cancelled: call was cancelled"
    if isinstance(error, ProcessError):
        return f"{error.kind.value}: {error}"
    message = f"{type(error).__name__}: {error}"
    if isinstance(error, RetryBudgetExhausted) and error.__cause__ is not None:
        message = f"{message}; last error: {failure_message(error.__cause__)}"
    return message


def _cached_outcome(item: WorkItemView) -> CallOutcome:
    return CallOutcome(
        item_id=item.item_id,
        text=item.result_text or "",
        usage=item.usage or TokenUsage(),
        continuation_token=item.continuation_token,
        resumed=False,
        reconstructed=False,
        attempts=0,
        duration_ms=item.duration_ms or 0,
        cached=True,
    )
