"""Cooperative cancellation for long-running calls and backoff sleeps."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum

from agent_gate.runtime.errors import OperationCancelled

logger = logging.getLogger(__name__)

CancelCallback = Callable[[], None]


class WaitOutcome(str, Enum):
    """How an interruptible wait ended."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CancellationToken:
    """Idempotent cancellation signal shared by one operation and its helpers.

    Callbacks run synchronously inside ``cancel()`` in registration order. A
    failing callback is logged and the remaining callbacks still run.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[CancelCallback] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks = list(self._callbacks)
        self._callbacks.clear()
        for callback in callbacks:
            _run_callback(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled("Operation was cancelled")

    def on_cancel(self, callback: CancelCallback) -> None:
        """Register callback; fires immediately when already cancelled."""

        if self._cancelled:
            _run_callback(callback)
            return
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def off_cancel(self, callback: CancelCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def sleep(self, seconds: float) -> WaitOutcome:
        """Sleep for ``seconds`` unless cancellation arrives first."""

        if self._cancelled:
            return WaitOutcome.CANCELLED
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[WaitOutcome] = loop.create_future()

        def _wake(outcome: WaitOutcome) -> None:
            if not waiter.done():
                waiter.set_result(outcome)

        def _on_cancel() -> None:
            _wake(WaitOutcome.CANCELLED)

        timer = loop.call_later(max(0.0, seconds), _wake, WaitOutcome.COMPLETED)
        self.on_cancel(_on_cancel)
        try:
            return await waiter
        finally:
            timer.cancel()
            self.off_cancel(_on_cancel)

    async def wait(self) -> None:
        """Block until cancellation is signalled."""

        if self._cancelled:
            return
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()

        def _on_cancel() -> None:
            if not waiter.done():
                waiter.set_result(None)

        self.on_cancel(_on_cancel)
        try:
            await waiter
        finally:
            self.off_cancel(_on_cancel)


def _run_callback(callback: CancelCallback) -> None:
    try:
        callback()
    except Exception:  # noqa: BLE001
        logger.warning("Cancellation callback %r failed", callback, exc_info=True)
