"""Retry policy for external-process calls.

Rate limiting is flow control, not failure: it waits (honoring a server hint
when one is present) without spending a retry slot. Transient failures spend
one retry each. Everything else fails on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from agent_gate.runtime.cancellation import CancellationToken, WaitOutcome
from agent_gate.runtime.errors import OperationCancelled, RetryBudgetExhausted
from agent_gate.runtime.failure_classifier import (
    DEFAULT_TRANSIENT_EXIT_CODES,
    FailureClassification,
    classify_failure,
)
from agent_gate.runtime.models import FailureClass

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_TOTAL_ATTEMPTS = 5

RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(slots=True)
class RetryConfig:
    """Retry limits and backoff shape."""

    max_retries: int = 3
    total_attempts: int = MAX_TOTAL_ATTEMPTS
    time_budget_seconds: float = 600.0
    min_remaining_seconds: float = 5.0
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter_max_seconds: float = 1.0
    max_rate_limit_wait_seconds: float = 60.0
    transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES

    @property
    def effective_total_attempts(self) -> int:
        return max(1, min(self.total_attempts, MAX_TOTAL_ATTEMPTS))


@dataclass(slots=True)
class AttemptOutcome(Generic[T]):
    """Result of ``RetryPolicy.with_retry``: a value or the final error."""

    result: T | None
    error: BaseException | None
    attempts: int
    retries: int
    elapsed_ms: int
    classification: FailureClassification | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the result or raise the final error."""

        if self.error is not None:
            raise self.error
        return self.result  # type: ignore[return-value]


class RetryPolicy:
    """Wraps an async call with classification-driven retries."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or RetryConfig()
        self._random = rng or random.Random()  # noqa: S311
        self._clock = clock

    def backoff(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (0-based), jitter included."""

        cfg = self.config
        exponent = max(0, retry_number)
        base = min(cfg.base_delay_seconds * (2**exponent), cfg.max_delay_seconds)
        jitter = self._random.uniform(0, cfg.jitter_max_seconds) if cfg.jitter_max_seconds else 0.0
        return base + jitter

    def rate_limit_delay(self, classification: FailureClassification, retry_number: int) -> float:
        hint = classification.retry_after_seconds
        if hint is not None and hint >= 0:
            return min(hint, self.config.max_rate_limit_wait_seconds)
        return self.backoff(retry_number)

    async def with_retry(  # noqa: C901
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        on_retry: RetryCallback | None = None,
        cancellation: CancellationToken | None = None,
    ) -> AttemptOutcome[T]:
        cfg = self.config
        started = self._clock()
        attempts = 0
        retries = 0
        last_error: BaseException | None = None
        last_classification: FailureClassification | None = None

        def _outcome(
            *,
            result: T | None = None,
            error: BaseException | None = None,
        ) -> AttemptOutcome[T]:
            return AttemptOutcome(
                result=result,
                error=error,
                attempts=attempts,
                retries=retries,
                elapsed_ms=int((self._clock() - started) * 1000),
                classification=last_classification,
            )

        while attempts < cfg.effective_total_attempts:
            if cancellation is not None and cancellation.is_cancelled:
                return _outcome(error=OperationCancelled("Operation was cancelled"))
            remaining = cfg.time_budget_seconds - (self._clock() - started)
            if remaining < cfg.min_remaining_seconds:
                return _outcome(error=self._budget_exhausted(remaining, last_error))

            attempts += 1
            try:
                result = await fn()
            except Exception as error:  # noqa: BLE001
                last_error = error
                last_classification = classify_failure(
                    error,
                    transient_exit_codes=cfg.transient_exit_codes,
                )
            else:
                return _outcome(result=result)

            failure_class = last_classification.failure_class
            if failure_class is FailureClass.RATE_LIMITED:
                delay = self.rate_limit_delay(last_classification, retries)
            elif failure_class is FailureClass.TRANSIENT and retries < cfg.max_retries:
                delay = self.backoff(retries)
            else:
                return _outcome(error=last_error)

            if attempts >= cfg.effective_total_attempts:
                break
            # The next attempt must fit in the budget left once the backoff is slept.
            remaining = cfg.time_budget_seconds - (self._clock() - started) - delay
            if remaining < cfg.min_remaining_seconds:
                return _outcome(error=self._budget_exhausted(remaining, last_error))
            if failure_class is FailureClass.TRANSIENT:
                retries += 1

            logger.info(
                "Attempt %s failed (%s: %s); retrying in %.2fs",
                attempts,
                failure_class.value,
                last_classification.reason_code,
                delay,
            )
            _notify(on_retry, attempts, last_error, delay)
            if await _sleep(delay, cancellation) is WaitOutcome.CANCELLED:
                return _outcome(error=OperationCancelled("Operation cancelled during backoff"))

        return _outcome(error=last_error)

    def _budget_exhausted(
        self,
        remaining: float,
        cause: BaseException | None,
    ) -> RetryBudgetExhausted:
        error = RetryBudgetExhausted(
            f"Time budget exhausted: {max(remaining, 0.0):.1f}s remaining, "
            f"need at least {self.config.min_remaining_seconds:.1f}s",
        )
        error.__cause__ = cause
        return error


def _notify(
    callback: RetryCallback | None,
    attempt: int,
    error: BaseException,
    delay: float,
) -> None:
    if callback is None:
        return
    try:
        callback(attempt, error, delay)
    except Exception:  # noqa: BLE001
        logger.warning("Retry callback failed", exc_info=True)


async def _sleep(seconds: float, cancellation: CancellationToken | None) -> WaitOutcome:
    if cancellation is not None:
        return await cancellation.sleep(seconds)
    await asyncio.sleep(seconds)
    return WaitOutcome.COMPLETED
