from __future__ import annotations

import asyncio
import random

import allure
import pytest

from agent_gate.runtime.cancellation import CancellationToken
from agent_gate.runtime.errors import (
    OperationCancelled,
    ProcessError,
    ProcessErrorKind,
    RateLimitedError,
    RetryBudgetExhausted,
)
from agent_gate.runtime.failure_classifier import classify_failure
from agent_gate.runtime.models import FailureClass
from agent_gate.runtime.retry import RetryConfig, RetryPolicy

pytestmark = [
    allure.epic("Retry Policy"),
    allure.feature("Backoff And Attempts"),
]


def _fast_config(**overrides: object) -> RetryConfig:
    fields: dict[str, object] = {
        "base_delay_seconds": 0.0,
        "max_delay_seconds": 0.0,
        "jitter_max_seconds": 0.0,
        "max_rate_limit_wait_seconds": 0.0,
    }
    fields.update(overrides)
    return RetryConfig(**fields)  # type: ignore[arg-type]


def _transient() -> ProcessError:
    return ProcessError("timed out", kind=ProcessErrorKind.TIMEOUT)


class _Script:
    def __init__(self, *steps: object) -> None:
        self.steps = list(steps)
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        step = self.steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_backoff_doubles_and_caps_without_jitter() -> None:
    policy = RetryPolicy(RetryConfig(jitter_max_seconds=0.0))

    assert policy.backoff(0) == 1.0
    assert policy.backoff(3) == 8.0
    assert policy.backoff(10) == 30.0


def test_jitter_is_bounded_and_reproducible_with_seeded_rng() -> None:
    first = RetryPolicy(rng=random.Random(7))
    second = RetryPolicy(rng=random.Random(7))

    delays = [first.backoff(1) for _ in range(5)]

    assert delays == [second.backoff(1) for _ in range(5)]
    assert all(2.0 <= delay <= 3.0 for delay in delays)


@pytest.mark.asyncio
async def test_rate_limit_waits_without_spending_a_retry() -> None:
    script = _Script(RateLimitedError("slow down", retry_after_seconds=2), "ok")

    outcome = await RetryPolicy(_fast_config()).with_retry(script)

    assert outcome.ok
    assert outcome.result == "ok"
    assert outcome.attempts == 2
    assert outcome.retries == 0


def test_rate_limit_hint_is_capped_by_max_wait() -> None:
    policy = RetryPolicy(RetryConfig(max_rate_limit_wait_seconds=5.0, jitter_max_seconds=0.0))
    error = RateLimitedError("slow down", retry_after_seconds=120)
    no_hint = RateLimitedError("slow down")

    assert policy.rate_limit_delay(classify_failure(error), 0) == 5.0
    assert policy.rate_limit_delay(classify_failure(no_hint), 2) == 4.0


@pytest.mark.asyncio
async def test_transient_failures_stop_after_max_retries() -> None:
    script = _Script(_transient(), _transient(), _transient(), "late")

    outcome = await RetryPolicy(_fast_config(max_retries=2)).with_retry(script)

    assert not outcome.ok
    assert isinstance(outcome.error, ProcessError)
    assert outcome.attempts == 3
    assert outcome.retries == 2
    assert outcome.classification is not None
    assert outcome.classification.failure_class is FailureClass.TRANSIENT
    assert script.calls == 3


@pytest.mark.asyncio
async def test_fatal_failure_is_not_retried() -> None:
    script = _Script(ValueError("bad prompt"), "never")

    outcome = await RetryPolicy(_fast_config()).with_retry(script)

    assert isinstance(outcome.error, ValueError)
    assert outcome.attempts == 1
    assert script.calls == 1
    with pytest.raises(ValueError, match="bad prompt"):
        outcome.unwrap()


@pytest.mark.asyncio
async def test_total_attempts_are_clamped_to_five() -> None:
    script = _Script(*[RateLimitedError("slow down") for _ in range(10)])

    outcome = await RetryPolicy(_fast_config(total_attempts=50)).with_retry(script)

    assert isinstance(outcome.error, RateLimitedError)
    assert outcome.attempts == 5
    assert script.calls == 5


@pytest.mark.asyncio
async def test_exhausted_time_budget_prevents_another_attempt() -> None:
    clock = _FakeClock()

    async def _slow_failure() -> str:
        clock.now += 50.0
        raise _transient()

    policy = RetryPolicy(
        _fast_config(time_budget_seconds=60.0, min_remaining_seconds=15.0),
        clock=clock,
    )

    outcome = await policy.with_retry(_slow_failure)

    assert isinstance(outcome.error, RetryBudgetExhausted)
    assert outcome.attempts == 1
    assert outcome.elapsed_ms == 50_000


@pytest.mark.asyncio
async def test_timeout_that_spends_the_budget_keeps_its_cause_and_skips_backoff() -> None:
    clock = _FakeClock()
    timeout = ProcessError(
        "Process timed out after 600000ms (limit 600000ms)",
        kind=ProcessErrorKind.TIMEOUT,
    )
    retried: list[int] = []

    async def _hung_call() -> str:
        clock.now += 600.0
        raise timeout

    policy = RetryPolicy(
        RetryConfig(time_budget_seconds=600.0, base_delay_seconds=30.0, jitter_max_seconds=0.0),
        clock=clock,
    )

    outcome = await asyncio.wait_for(
        policy.with_retry(
            _hung_call,
            on_retry=lambda attempt, error, delay: retried.append(attempt),
        ),
        timeout=5,
    )

    assert isinstance(outcome.error, RetryBudgetExhausted)
    assert outcome.error.__cause__ is timeout
    assert outcome.attempts == 1
    assert outcome.retries == 0
    assert retried == []


@pytest.mark.asyncio
async def test_backoff_longer_than_remaining_budget_is_not_slept() -> None:
    clock = _FakeClock()
    script = _Script(_transient(), "never")

    async def _call() -> object:
        clock.now += 40.0
        return await script()

    policy = RetryPolicy(
        RetryConfig(
            time_budget_seconds=60.0,
            min_remaining_seconds=5.0,
            base_delay_seconds=30.0,
            jitter_max_seconds=0.0,
        ),
        clock=clock,
    )

    outcome = await asyncio.wait_for(policy.with_retry(_call), timeout=5)

    assert isinstance(outcome.error, RetryBudgetExhausted)
    assert isinstance(outcome.error.__cause__, ProcessError)
    assert script.calls == 1


@pytest.mark.asyncio
async def test_retry_callback_sees_attempts_and_its_errors_are_ignored() -> None:
    seen: list[tuple[int, str, float]] = []

    def _on_retry(attempt: int, error: BaseException, delay: float) -> None:
        seen.append((attempt, type(error).__name__, delay))
        raise RuntimeError("observer is broken")

    script = _Script(_transient(), _transient(), "ok")

    outcome = await RetryPolicy(_fast_config()).with_retry(script, on_retry=_on_retry)

    assert outcome.result == "ok"
    assert seen == [(1, "ProcessError", 0.0), (2, "ProcessError", 0.0)]


@pytest.mark.asyncio
async def test_cancellation_interrupts_backoff_sleep() -> None:
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.05, token.cancel)
    script = _Script(_transient(), "never")
    policy = RetryPolicy(RetryConfig(base_delay_seconds=30.0, jitter_max_seconds=0.0))

    outcome = await asyncio.wait_for(policy.with_retry(script, cancellation=token), timeout=5)

    assert isinstance(outcome.error, OperationCancelled)
    assert script.calls == 1


@pytest.mark.asyncio
async def test_cancelled_token_prevents_first_attempt() -> None:
    token = CancellationToken()
    token.cancel()
    script = _Script("never")

    outcome = await RetryPolicy(_fast_config()).with_retry(script, cancellation=token)

    assert isinstance(outcome.error, OperationCancelled)
    assert outcome.attempts == 0
    assert script.calls == 0
