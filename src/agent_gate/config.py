"""Runtime configuration for the agent call coordinator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from agent_gate.runtime.backend.base import (
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_TIMEOUT_SECONDS,
)
from agent_gate.runtime.backend.commands import (
    DEFAULT_COMMAND_TEMPLATE,
    DEFAULT_RESUME_TEMPLATE,
)


@dataclass(slots=True)
class ProcessSettings:
    """Agent command and per-invocation process limits."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    resume_template: str = DEFAULT_RESUME_TEMPLATE
    model: str = ""
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    fail_on_overflow: bool = False
    heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    env_allowlist: tuple[str, ...] = ()
    kill_grace_seconds: float = 5.0
    cwd: Path | None = None


@dataclass(slots=True)
class RetrySettings:
    """Retry and backoff limits."""

    max_retries: int = 3
    total_attempts: int = 5
    time_budget_seconds: float = 600.0
    min_remaining_seconds: float = 5.0
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter_max_seconds: float = 1.0
    max_rate_limit_wait_seconds: float = 60.0
    transient_exit_codes: tuple[int, ...] = (137, 143)


@dataclass(slots=True)
class GateSettings:
    """Concurrency ceilings per work class."""

    process_limit: int = 3
    network_limit: int = 5


@dataclass(slots=True)
class LedgerSettings:
    """Work item ledger settings."""

    stale_buffer_seconds: float = 60.0
    busy_timeout_ms: int = 5000
    default_max_retries: int = 1
    poll_interval_seconds: float = 1.0


@dataclass(slots=True)
class SessionSettings:
    """Session account settings."""

    budget_ceiling: int = 400_000


@dataclass(slots=True)
class ReconstructionSettings:
    """Silent resume failure thresholds and rebuild sizing."""

    min_plausible_chars: int = 50
    suspicious_chars: int = 200
    suspicious_after_seconds: float = 60.0
    max_chars: int = 100_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_gate.db")
    process: ProcessSettings = field(default_factory=ProcessSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    gate: GateSettings = field(default_factory=GateSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    sessions: SessionSettings = field(default_factory=SessionSettings)
    reconstruction: ReconstructionSettings = field(default_factory=ReconstructionSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        cwd = os.getenv("AGENT_GATE_AGENT_CWD", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("AGENT_GATE_DB_PATH", ".agent_gate.db")),
            process=ProcessSettings(
                command_template=os.getenv("AGENT_GATE_COMMAND", DEFAULT_COMMAND_TEMPLATE),
                resume_template=os.getenv("AGENT_GATE_RESUME_COMMAND", DEFAULT_RESUME_TEMPLATE),
                model=os.getenv("AGENT_GATE_MODEL", ""),
                timeout_seconds=float(os.getenv("AGENT_GATE_TIMEOUT_SECONDS", "600")),
                idle_timeout_seconds=float(os.getenv("AGENT_GATE_IDLE_TIMEOUT_SECONDS", "120")),
                max_output_bytes=int(
                    os.getenv("AGENT_GATE_MAX_OUTPUT_BYTES", str(DEFAULT_MAX_OUTPUT_BYTES)),
                ),
                fail_on_overflow=_env_bool("AGENT_GATE_FAIL_ON_OVERFLOW", default=False),
                heartbeat_interval_seconds=float(
                    os.getenv("AGENT_GATE_HEARTBEAT_SECONDS", "15"),
                ),
                env_allowlist=_env_csv("AGENT_GATE_ENV_ALLOWLIST"),
                kill_grace_seconds=float(os.getenv("AGENT_GATE_KILL_GRACE_SECONDS", "5")),
                cwd=Path(cwd) if cwd else None,
            ),
            retry=RetrySettings(
                max_retries=int(os.getenv("AGENT_GATE_RETRY_MAX_RETRIES", "3")),
                total_attempts=int(os.getenv("AGENT_GATE_RETRY_TOTAL_ATTEMPTS", "5")),
                time_budget_seconds=float(
                    os.getenv("AGENT_GATE_RETRY_TIME_BUDGET_SECONDS", "600"),
                ),
                min_remaining_seconds=float(
                    os.getenv("AGENT_GATE_RETRY_MIN_REMAINING_SECONDS", "5"),
                ),
                base_delay_seconds=float(os.getenv("AGENT_GATE_RETRY_BASE_DELAY_SECONDS", "1")),
                max_delay_seconds=float(os.getenv("AGENT_GATE_RETRY_MAX_DELAY_SECONDS", "30")),
                jitter_max_seconds=float(os.getenv("AGENT_GATE_RETRY_JITTER_SECONDS", "1")),
                max_rate_limit_wait_seconds=float(
                    os.getenv("AGENT_GATE_RETRY_MAX_RATE_LIMIT_WAIT_SECONDS", "60"),
                ),
                transient_exit_codes=_env_int_csv(
                    "AGENT_GATE_TRANSIENT_EXIT_CODES",
                    default=(137, 143),
                ),
            ),
            gate=GateSettings(
                process_limit=int(os.getenv("AGENT_GATE_PROCESS_CONCURRENCY", "3")),
                network_limit=int(os.getenv("AGENT_GATE_NETWORK_CONCURRENCY", "5")),
            ),
            ledger=LedgerSettings(
                stale_buffer_seconds=float(
                    os.getenv("AGENT_GATE_STALE_BUFFER_SECONDS", "60"),
                ),
                busy_timeout_ms=int(os.getenv("AGENT_GATE_BUSY_TIMEOUT_MS", "5000")),
                default_max_retries=int(os.getenv("AGENT_GATE_ITEM_MAX_RETRIES", "1")),
                poll_interval_seconds=float(
                    os.getenv("AGENT_GATE_WORKER_POLL_INTERVAL_SECONDS", "1"),
                ),
            ),
            sessions=SessionSettings(
                budget_ceiling=int(os.getenv("AGENT_GATE_SESSION_BUDGET_CEILING", "400000")),
            ),
            reconstruction=ReconstructionSettings(
                min_plausible_chars=int(
                    os.getenv("AGENT_GATE_RESUME_MIN_PLAUSIBLE_CHARS", "50"),
                ),
                suspicious_chars=int(os.getenv("AGENT_GATE_RESUME_SUSPICIOUS_CHARS", "200")),
                suspicious_after_seconds=float(
                    os.getenv("AGENT_GATE_RESUME_SUSPICIOUS_AFTER_SECONDS", "60"),
                ),
                max_chars=int(os.getenv("AGENT_GATE_RECONSTRUCTION_MAX_CHARS", "100000")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if not self.process.command_template.strip():
            raise ValueError("AGENT_GATE_COMMAND must not be empty.")
        if self.process.timeout_seconds <= 0:
            raise ValueError("AGENT_GATE_TIMEOUT_SECONDS must be > 0.")
        if self.process.idle_timeout_seconds <= 0:
            raise ValueError("AGENT_GATE_IDLE_TIMEOUT_SECONDS must be > 0.")
        if self.process.max_output_bytes <= 0:
            raise ValueError("AGENT_GATE_MAX_OUTPUT_BYTES must be > 0.")
        if self.process.heartbeat_interval_seconds <= 0:
            raise ValueError("AGENT_GATE_HEARTBEAT_SECONDS must be > 0.")
        if self.process.kill_grace_seconds < 0:
            raise ValueError("AGENT_GATE_KILL_GRACE_SECONDS must be >= 0.")
        if self.retry.max_retries < 0:
            raise ValueError("AGENT_GATE_RETRY_MAX_RETRIES must be >= 0.")
        if self.retry.total_attempts < 1:
            raise ValueError("AGENT_GATE_RETRY_TOTAL_ATTEMPTS must be >= 1.")
        if self.retry.base_delay_seconds < 0 or self.retry.max_delay_seconds < 0:
            raise ValueError("AGENT_GATE_RETRY_*_DELAY_SECONDS must be >= 0.")
        if self.retry.jitter_max_seconds < 0:
            raise ValueError("AGENT_GATE_RETRY_JITTER_SECONDS must be >= 0.")
        if self.gate.process_limit < 1:
            raise ValueError("AGENT_GATE_PROCESS_CONCURRENCY must be >= 1.")
        if self.gate.network_limit < 1:
            raise ValueError("AGENT_GATE_NETWORK_CONCURRENCY must be >= 1.")
        if self.ledger.stale_buffer_seconds < 0:
            raise ValueError("AGENT_GATE_STALE_BUFFER_SECONDS must be >= 0.")
        if self.ledger.default_max_retries < 0:
            raise ValueError("AGENT_GATE_ITEM_MAX_RETRIES must be >= 0.")
        if self.sessions.budget_ceiling <= 0:
            raise ValueError("AGENT_GATE_SESSION_BUDGET_CEILING must be > 0.")
        if self.reconstruction.max_chars <= 0:
            raise ValueError("AGENT_GATE_RECONSTRUCTION_MAX_CHARS must be > 0.")


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _env_int_csv(name: str, *, default: tuple[int, ...]) -> tuple[int, ...]:
    values = _env_csv(name)
    if not values:
        return default
    try:
        return tuple(int(value) for value in values)
    except ValueError as error:
        raise ValueError(f"Invalid integer list for {name}: {os.getenv(name)!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
