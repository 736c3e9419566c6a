"""Per-class concurrency ceilings with FIFO hand-off to waiters."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

PROCESS_CLASS = "process"
NETWORK_CLASS = "network"
DEFAULT_LIMITS: dict[str, int] = {PROCESS_CLASS: 3, NETWORK_CLASS: 5}


@dataclass(slots=True)
class _ClassState:
    limit: int
    holders: int = 0
    waiters: deque[asyncio.Future[None]] = field(default_factory=deque)


class ConcurrencyGate:
    """Bounds simultaneous work per class.

    A released slot goes straight to the oldest live waiter instead of being
    returned to the pool, so a newcomer can never overtake someone already
    queued.
    """

    def __init__(self, limits: Mapping[str, int] | None = None) -> None:
        resolved = dict(DEFAULT_LIMITS if limits is None else limits)
        for work_class, limit in resolved.items():
            if limit < 1:
                raise ValueError(f"Concurrency limit for {work_class!r} must be >= 1, got {limit}")
        self._classes = {
            work_class: _ClassState(limit=limit) for work_class, limit in resolved.items()
        }

    def limit(self, work_class: str) -> int:
        return self._state(work_class).limit

    def holders(self, work_class: str) -> int:
        return self._state(work_class).holders

    def waiting(self, work_class: str) -> int:
        return sum(1 for waiter in self._state(work_class).waiters if not waiter.done())

    async def acquire(self, work_class: str) -> None:
        state = self._state(work_class)
        if state.holders < state.limit and not state.waiters:
            state.holders += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        state.waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was handed over just before cancellation landed.
                self._hand_off(state)
            else:
                _discard(state.waiters, waiter)
            raise

    def release(self, work_class: str) -> None:
        state = self._state(work_class)
        if state.holders <= 0:
            raise RuntimeError(f"release() without matching acquire() for {work_class!r}")
        self._hand_off(state)

    @asynccontextmanager
    async def slot(self, work_class: str) -> AsyncIterator[None]:
        await self.acquire(work_class)
        try:
            yield
        finally:
            self.release(work_class)

    def _hand_off(self, state: _ClassState) -> None:
        """Pass one held slot to the next live waiter, or free it."""

        while state.waiters:
            waiter = state.waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        state.holders -= 1

    def _state(self, work_class: str) -> _ClassState:
        try:
            return self._classes[work_class]
        except KeyError:
            raise KeyError(f"Unknown work class: {work_class!r}") from None


def _discard(waiters: deque[asyncio.Future[None]], waiter: asyncio.Future[None]) -> None:
    try:
        waiters.remove(waiter)
    except ValueError:
        logger.debug("Gate waiter already removed")
