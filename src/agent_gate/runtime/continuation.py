"""Resume-vs-fresh decisions, silent resume failure detection, reconstruction."""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from pathlib import Path

from agent_gate.runtime.backend.base import (
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_TIMEOUT_SECONDS,
    AgentBackend,
    ProcessCallbacks,
    ProcessRequest,
    ProcessResult,
)
from agent_gate.runtime.backend.commands import AgentCommand
from agent_gate.runtime.cancellation import CancellationToken
from agent_gate.runtime.errors import ProcessError, ProcessErrorKind, RetryBudgetExhausted
from agent_gate.runtime.models import ResumeStats, TokenUsage
from agent_gate.runtime.reconstruction import (
    HistoryRound,
    ReconstructionPolicy,
    build_reconstruction_prompt,
)
from agent_gate.runtime.retry import AttemptOutcome, RetryCallback, RetryPolicy

logger = logging.getLogger(__name__)

HistoryProvider = Callable[[str], Awaitable[list[HistoryRound]]]
ResumeFailureHook = Callable[[str, str], Awaitable[None] | None]


@dataclass(slots=True)
class CallSettings:
    """Per-call process limits shared by every invocation of one logical call."""

    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    fail_on_overflow: bool = False
    env_allowlist: tuple[str, ...] = ()
    cwd: Path | None = None
    heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_SECONDS


@dataclass(slots=True)
class ResumeCallResult:
    """Outcome of one logical call, however many invocations it took."""

    text: str
    continuation_token: str | None
    usage: TokenUsage
    duration_ms: int
    resumed: bool
    resume_attempted: bool
    reconstructed: bool
    attempts: int
    truncated: bool = False


@dataclass(slots=True)
class _Progress:
    attempts: int = 0
    duration_ms: int = 0
    usage: list[TokenUsage] = field(default_factory=list)

    def add(self, outcome: AttemptOutcome[ProcessResult]) -> None:
        self.attempts += outcome.attempts
        self.duration_ms += outcome.elapsed_ms
        if outcome.result is not None:
            self.usage.append(outcome.result.usage)

    def total_usage(self) -> TokenUsage:
        statuses = {usage.usage_status for usage in self.usage}
        return TokenUsage(
            input_tokens=sum(usage.input_tokens for usage in self.usage),
            output_tokens=sum(usage.output_tokens for usage in self.usage),
            total_tokens=sum(usage.total_tokens for usage in self.usage),
            usage_status="reported" if statuses == {"reported"} else "estimated",
        )


class ContinuationResolver:
    """Runs one logical call, resuming a prior session when a token is supplied.

    A resume that exits non-zero, or that answers under a different session
    token, counts as a resume failure: ``on_resume_failure`` fires so the
    caller can drop its stored token. A resumed answer that is implausibly
    short means the agent lost its context; the scope's durable history is
    then prepended and exactly one fresh call is made.
    """

    def __init__(
        self,
        backend: AgentBackend,
        command: AgentCommand,
        *,
        retry_policy: RetryPolicy | None = None,
        policy: ReconstructionPolicy | None = None,
        history_provider: HistoryProvider | None = None,
    ) -> None:
        self.backend = backend
        self.command = command
        self.retry_policy = retry_policy or RetryPolicy()
        self.policy = policy or ReconstructionPolicy()
        self.history_provider = history_provider
        self._stats: defaultdict[str, ResumeStats] = defaultdict(ResumeStats)

    def stats(self, scope: str) -> ResumeStats:
        """Copy of the per-scope resume counters."""

        return replace(self._stats[scope])

    async def call_with_resume(  # noqa: PLR0913
        self,
        prompt: str,
        *,
        scope: str,
        continuation_token: str | None = None,
        settings: CallSettings | None = None,
        callbacks: ProcessCallbacks | None = None,
        cancellation: CancellationToken | None = None,
        on_retry: RetryCallback | None = None,
        on_resume_failure: ResumeFailureHook | None = None,
    ) -> ResumeCallResult:
        settings = settings or CallSettings()
        callbacks = callbacks or ProcessCallbacks()
        progress = _Progress()

        async def _invoke(argv: list[str], text: str) -> ProcessResult:
            outcome = await self.retry_policy.with_retry(
                lambda: self.backend.run(
                    _build_request(
                        argv,
                        text,
                        settings=settings,
                        callbacks=callbacks,
                        cancellation=cancellation,
                    ),
                ),
                on_retry=on_retry,
                cancellation=cancellation,
            )
            progress.add(outcome)
            return outcome.unwrap()

        def _result(
            result: ProcessResult,
            *,
            token: str | None,
            resumed: bool,
            reconstructed: bool,
        ) -> ResumeCallResult:
            return ResumeCallResult(
                text=result.text,
                continuation_token=token,
                usage=progress.total_usage(),
                duration_ms=progress.duration_ms,
                resumed=resumed,
                resume_attempted=resume_attempted,
                reconstructed=reconstructed,
                attempts=progress.attempts,
                truncated=result.truncated,
            )

        async def _fresh(*, reconstruct: bool) -> ResumeCallResult:
            fresh_prompt = prompt
            rebuilt = False
            if reconstruct:
                history = await self._history(scope)
                if history:
                    fresh_prompt = build_reconstruction_prompt(history, prompt, policy=self.policy)
                    rebuilt = True
                    logger.info(
                        "Reconstructing context for scope=%s from %s completed round(s)",
                        scope,
                        len(history),
                    )
            result = await _invoke(self.command.argv_for(None), fresh_prompt)
            return _result(
                result,
                token=result.continuation_token,
                resumed=False,
                reconstructed=rebuilt,
            )

        resume_attempted = bool(continuation_token) and self.command.supports_resume
        if not resume_attempted or continuation_token is None:
            return await _fresh(reconstruct=False)

        stats = self._stats[scope]
        stats.resume_attempted += 1
        try:
            resumed = await _invoke(self.command.argv_for(continuation_token), prompt)
        except ProcessError as error:
            if error.kind is not ProcessErrorKind.NON_ZERO_EXIT:
                raise
            stats.resume_fallback += 1
            logger.warning(
                "Resume of %s failed for scope=%s (%s); falling back to a fresh call",
                continuation_token,
                scope,
                error,
            )
            await _fire_hook(on_resume_failure, continuation_token, "resume_exit_non_zero")
            return await _fresh(reconstruct=True)
        except RetryBudgetExhausted as error:
            # No budget left for a fresh call, but the session is still unusable.
            if _is_non_zero_exit(error.__cause__):
                await _fire_hook(on_resume_failure, continuation_token, "resume_exit_non_zero")
            raise

        returned = resumed.continuation_token
        if returned is not None and returned != continuation_token:
            stats.resume_fallback += 1
            logger.warning(
                "Resume of %s answered under session %s for scope=%s; dropping stored token",
                continuation_token,
                returned,
                scope,
            )
            await _fire_hook(on_resume_failure, continuation_token, "resume_token_mismatch")
            if self.policy.is_implausible(resumed.text, resumed.duration_ms):
                return await _fresh(reconstruct=True)
            return _result(resumed, token=None, resumed=False, reconstructed=False)

        if self.policy.is_implausible(resumed.text, resumed.duration_ms):
            stats.resume_fallback += 1
            logger.warning(
                "Resumed reply for scope=%s is implausibly short (%s chars after %sms)",
                scope,
                len(resumed.text.strip()),
                resumed.duration_ms,
            )
            return await _fresh(reconstruct=True)

        stats.resume_succeeded += 1
        return _result(
            resumed,
            token=returned or continuation_token,
            resumed=True,
            reconstructed=False,
        )

    async def _history(self, scope: str) -> list[HistoryRound]:
        if self.history_provider is None:
            return []
        return await self.history_provider(scope)


def _build_request(
    argv: list[str],
    prompt: str,
    *,
    settings: CallSettings,
    callbacks: ProcessCallbacks,
    cancellation: CancellationToken | None,
) -> ProcessRequest:
    return ProcessRequest(
        argv=argv,
        prompt=prompt,
        timeout_seconds=settings.timeout_seconds,
        idle_timeout_seconds=settings.idle_timeout_seconds,
        max_output_bytes=settings.max_output_bytes,
        fail_on_overflow=settings.fail_on_overflow,
        env_allowlist=settings.env_allowlist,
        cwd=settings.cwd,
        heartbeat_interval_seconds=settings.heartbeat_interval_seconds,
        callbacks=callbacks,
        cancellation=cancellation,
    )


async def _fire_hook(hook: ResumeFailureHook | None, token: str, reason: str) -> None:
    if hook is None:
        return
    try:
        result = hook(token, reason)
        if inspect.isawaitable(result):
            await result
    except Exception:  # noqa: BLE001
        logger.warning("Resume failure hook failed", exc_info=True)


def _is_non_zero_exit(error: BaseException | None) -> bool:
    return isinstance(error, ProcessError) and error.kind is ProcessErrorKind.NON_ZERO_EXIT
