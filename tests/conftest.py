"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from agent_gate.runtime.backend.base import ProcessRequest, ProcessResult
from agent_gate.runtime.backend.commands import AgentCommand
from agent_gate.runtime.ledger import Ledger
from agent_gate.runtime.models import TokenUsage
from agent_gate.runtime.sessions import SessionAccountStore

ECHO_AGENT = f"{shlex.quote(sys.executable)} -m agent_gate.runtime.backend.echo_agent"
# The echo agent runs under the filtered environment; keep it importable.
TEST_ENV_ALLOWLIST = ("PYTHONPATH", "VIRTUAL_ENV", "SYSTEMROOT")


class ScriptedBackend:
    """In-process backend replaying results or raising errors in order."""

    def __init__(self, steps: list[object]) -> None:
        self.steps = list(steps)
        self.requests: list[ProcessRequest] = []

    async def run(self, request: ProcessRequest) -> ProcessResult:
        self.requests.append(request)
        if not self.steps:
            raise AssertionError("ScriptedBackend ran out of steps")
        step = self.steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return await step(request)
        assert isinstance(step, ProcessResult)
        return step


def agent_result(
    text: str,
    *,
    token: str | None = None,
    total_tokens: int = 40,
    duration_ms: int = 1_000,
) -> ProcessResult:
    return ProcessResult(
        text=text,
        continuation_token=token,
        usage=TokenUsage(
            input_tokens=total_tokens // 2,
            output_tokens=total_tokens - total_tokens // 2,
            total_tokens=total_tokens,
            usage_status="reported",
        ),
        duration_ms=duration_ms,
        exit_code=0,
    )


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "agent-gate.db"


@pytest.fixture()
def ledger(db_path: Path) -> Iterator[Ledger]:
    store = Ledger(db_path)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


@pytest.fixture()
def session_store(db_path: Path) -> Iterator[SessionAccountStore]:
    store = SessionAccountStore(db_path)
    store.init_schema()
    try:
        yield store
    finally:
        store.dispose()


@pytest.fixture()
def echo_command() -> Callable[..., AgentCommand]:
    """Factory for echo-agent command templates with extra fresh/resume flags."""

    def _factory(*args: str, resume_args: tuple[str, ...] = ()) -> AgentCommand:
        extra = " ".join(shlex.quote(arg) for arg in args)
        resume_extra = " ".join(shlex.quote(arg) for arg in resume_args)
        return AgentCommand(
            template=f"{ECHO_AGENT} {extra}".strip(),
            resume_template=f"{ECHO_AGENT} {extra} --resume {{session_id}} {resume_extra}".strip(),
        )

    return _factory


@pytest.fixture()
def scripted_backend() -> Callable[[list[object]], ScriptedBackend]:
    return ScriptedBackend


@pytest.fixture()
def make_result() -> Callable[..., ProcessResult]:
    return agent_result
