"""Backend interface for one supervised agent-process invocation."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from agent_gate.runtime.cancellation import CancellationToken
from agent_gate.runtime.events import AgentEvent
from agent_gate.runtime.models import TokenUsage

DEFAULT_MAX_OUTPUT_BYTES = 512 * 1024
DEFAULT_TIMEOUT_SECONDS = 600.0
DEFAULT_IDLE_TIMEOUT_SECONDS = 120.0
DEFAULT_HEARTBEAT_SECONDS = 15.0


@dataclass(slots=True)
class ProcessCallbacks:
    """Optional progress hooks; exceptions raised by them are logged and ignored."""

    on_spawn: Callable[[int], None] | None = None
    on_progress: Callable[[str], None] | None = None
    on_stderr: Callable[[str], None] | None = None
    on_event: Callable[[AgentEvent], None] | None = None
    on_heartbeat: Callable[[float], Awaitable[None] | None] | None = None


@dataclass(slots=True)
class ProcessRequest:
    """Inputs required to execute one agent-process invocation."""

    argv: list[str]
    prompt: str
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    fail_on_overflow: bool = False
    env_allowlist: tuple[str, ...] = ()
    cwd: Path | None = None
    heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    callbacks: ProcessCallbacks = field(default_factory=ProcessCallbacks)
    cancellation: CancellationToken | None = None


@dataclass(slots=True)
class ProcessResult:
    """Normalized outcome of a successful invocation."""

    text: str
    continuation_token: str | None
    usage: TokenUsage
    duration_ms: int
    exit_code: int
    truncated: bool = False
    events: list[AgentEvent] = field(default_factory=list)
    stderr_tail: str = ""


class AgentBackend(Protocol):
    """Protocol implemented by process runners (real and fake)."""

    async def run(self, request: ProcessRequest) -> ProcessResult:
        """Run one invocation and return its normalized result."""
