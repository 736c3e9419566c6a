"""Queue worker that executes queued ledger items through the agent backend."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from uuid import uuid4

from agent_gate.runtime.backend.base import ProcessCallbacks
from agent_gate.runtime.cancellation import CancellationToken
from agent_gate.runtime.continuation import CallSettings, ContinuationResolver, ResumeCallResult
from agent_gate.runtime.coordinator import (
    DEFAULT_STALE_BUFFER_SECONDS,
    failure_message,
    ledger_history_provider,
)
from agent_gate.runtime.errors import LedgerConflict
from agent_gate.runtime.gate import PROCESS_CLASS, ConcurrencyGate
from agent_gate.runtime.ledger import Ledger
from agent_gate.runtime.models import WorkItemResult, WorkItemView

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    requeued: int = 0
    stale_recovered: int = 0
    idle_polls: int = 0

    def merge(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.requeued += other.requeued
        self.stale_recovered += other.stale_recovered
        self.idle_polls += other.idle_polls


class QueueWorker:
    """Consumes queued work items and executes them one at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        ledger: Ledger,
        resolver: ContinuationResolver,
        gate: ConcurrencyGate | None = None,
        worker_id: str | None = None,
        scope: str | None = None,
        settings: CallSettings | None = None,
        work_class: str = PROCESS_CLASS,
        chain_sessions: bool = False,
        poll_interval_seconds: float = 1.0,
        stale_buffer_seconds: float = DEFAULT_STALE_BUFFER_SECONDS,
    ) -> None:
        self.ledger = ledger
        self.resolver = resolver
        self.gate = gate or ConcurrencyGate()
        self.worker_id = worker_id or f"worker-{uuid4().hex[:8]}"
        self.scope = scope
        self.settings = settings or CallSettings()
        self.work_class = work_class
        self.chain_sessions = chain_sessions
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_buffer_seconds = stale_buffer_seconds
        self.cancellation = CancellationToken()
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        if resolver.history_provider is None:
            resolver.history_provider = ledger_history_provider(ledger)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "manual", cancel_current: bool = False) -> None:
        """Stop after the current item, or abort it when ``cancel_current`` is set."""

        if not self._stop_requested:
            logger.info("Worker %s stop requested (%s)", self.worker_id, signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name
        if cancel_current:
            self.cancellation.cancel()

    async def run_once(self) -> WorkerRunSummary:
        """Process at most one item from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        summary.stale_recovered = await asyncio.to_thread(
            self.ledger.recover_stale,
            self.scope,
            stale_after=timedelta(
                seconds=self.settings.timeout_seconds + self.stale_buffer_seconds,
            ),
        )

        async with self.gate.slot(self.work_class):
            item = await asyncio.to_thread(
                self.ledger.claim_next,
                worker_id=self.worker_id,
                scope=self.scope,
            )
            if item is None:
                summary.idle_polls = 1
                return summary

            summary.processed = 1
            logger.info(
                "Worker %s claimed item %s (%s/%s, retry %s/%s)",
                self.worker_id,
                item.item_id,
                item.scope,
                item.logical_key,
                item.retry_count,
                item.max_retries,
            )
            try:
                result = await self._execute(item)
            except asyncio.CancelledError as error:
                await self._record_cancellation(item, failure_message(error))
                raise
            except Exception as error:  # noqa: BLE001
                message = failure_message(error)
                if await asyncio.to_thread(self.ledger.fail, item.item_id, message):
                    summary.failed = 1
                    logger.warning("Item %s failed: %s", item.item_id, message)
                if await asyncio.to_thread(self._requeue, item):
                    summary.requeued = 1
                return summary

            completed = await asyncio.to_thread(
                self.ledger.complete,
                item.item_id,
                WorkItemResult(
                    text=result.text,
                    usage=result.usage,
                    continuation_token=result.continuation_token,
                    duration_ms=result.duration_ms,
                ),
            )
            if completed:
                summary.completed = 1
            else:
                logger.warning(
                    "Item %s was no longer running when its result arrived; result dropped",
                    item.item_id,
                )
            return summary

    async def run_until_idle(self, *, max_items: int | None = None) -> WorkerRunSummary:
        """Drain the queue, stopping at the first empty poll or after ``max_items``."""

        return await self.run_loop(max_items=max_items, max_idle_polls=1)

    async def run_loop(
        self,
        *,
        max_items: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run until the queue stays empty for ``max_idle_polls`` polls.

        Args:
            max_items: Stop after processing this many items (None = unlimited).
            max_idle_polls: Consecutive empty polls tolerated before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_items is not None and aggregate.processed >= max_items:
                    return aggregate

                summary = await self.run_once()
                aggregate.merge(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    await self.cancellation.sleep(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    async def _execute(self, item: WorkItemView) -> ResumeCallResult:
        token = None
        if self.chain_sessions:
            previous = await asyncio.to_thread(self.ledger.history, item.scope, limit=1)
            if previous:
                token = previous[-1].continuation_token

        async def _heartbeat(_: float) -> None:
            await asyncio.to_thread(self.ledger.touch, item.item_id)

        return await self.resolver.call_with_resume(
            item.payload,
            scope=item.scope,
            continuation_token=token,
            settings=self.settings,
            callbacks=ProcessCallbacks(on_heartbeat=_heartbeat),
            cancellation=self.cancellation,
            on_retry=lambda attempt, error, delay: logger.info(
                "Item %s attempt %s failed (%s); retrying in %.1fs",
                item.item_id,
                attempt,
                error,
                delay,
            ),
        )

    async def _record_cancellation(self, item: WorkItemView, message: str) -> None:
        try:
            await asyncio.shield(asyncio.to_thread(self.ledger.fail, item.item_id, message))
        except asyncio.CancelledError:
            # The thread keeps running; the terminal write still lands.
            logger.warning("Cancelled again while recording failure of item %s", item.item_id)

    def _requeue(self, item: WorkItemView) -> bool:
        try:
            requeued = self.ledger.retry(item.item_id)
        except LedgerConflict:
            logger.warning(
                "Item %s not re-queued: %s/%s already has an active item",
                item.item_id,
                item.scope,
                item.logical_key,
            )
            return False
        if requeued:
            logger.info(
                "Item %s re-queued (retry %s/%s)",
                item.item_id,
                item.retry_count + 1,
                item.max_retries,
            )
        return requeued

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            yield
            return

        installed: list[signal.Signals] = []

        def _handler(signum: signal.Signals) -> None:
            # A second signal aborts the item in flight.
            self.request_stop(signal_name=signum.name, cancel_current=self._stop_requested)

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, _handler, signum)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows loops and non-main threads cannot install handlers.
                continue
            installed.append(signum)
        try:
            yield
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)
