"""Asyncio supervisor for one agent-process invocation.

The prompt goes to stdin; stdout carries the JSONL event stream; stderr is
kept only as a bounded diagnostic tail. Two timers guard the call: an idle
timer reset on any output byte and an absolute wall-clock timer. When either
fires, or the cancellation token is signalled, the whole process group is
terminated.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import os
import signal
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from agent_gate.runtime.backend.base import ProcessRequest, ProcessResult
from agent_gate.runtime.errors import ProcessError, ProcessErrorKind
from agent_gate.runtime.events import (
    EventAccumulator,
    LineBuffer,
    decode_event_line,
    estimate_usage,
)

logger = logging.getLogger(__name__)

BASE_ENV_ALLOWLIST = (
    "PATH",
    "HOME",
    "TEMP",
    "TMP",
    "USERPROFILE",
    "SystemRoot",
    "COMSPEC",
    "SHELL",
    "LANG",
)
STDERR_TAIL_CHARS = 10_000
READ_CHUNK_BYTES = 64 * 1024
DEFAULT_GRACE_SECONDS = 5.0
_DRAIN_SECONDS = 2.0


def build_filtered_env(
    extra: Iterable[str] = (),
    *,
    source: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Project the parent environment through an explicit allow-list."""

    environ = os.environ if source is None else source
    env: dict[str, str] = {}
    for key in (*BASE_ENV_ALLOWLIST, *extra):
        value = environ.get(key)
        if value is not None:
            env[key] = value
    return env


def truncation_marker(max_output_bytes: int) -> str:
    if max_output_bytes % 1024 == 0:
        size = f"{max_output_bytes // 1024}KB"
    else:
        size = f"{max_output_bytes} bytes"
    return f"\n[TRUNCATED: output exceeded {size}]"


@dataclass(slots=True)
class _CallState:
    """Mutable per-call state shared by the reader tasks and timers."""

    started: float
    last_output: float
    stdout_bytes: int = 0
    stdout_chunks: list[bytes] = field(default_factory=list)
    stdout_overflowed: bool = False
    stderr_tail: str = ""
    accumulator: EventAccumulator = field(default_factory=EventAccumulator)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class ProcessRunner:
    """Spawn, supervise and normalize one agent invocation per ``run`` call."""

    def __init__(
        self,
        *,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        stderr_tail_chars: int = STDERR_TAIL_CHARS,
    ) -> None:
        self._grace_seconds = grace_seconds
        self._stderr_tail_chars = stderr_tail_chars

    async def run(self, request: ProcessRequest) -> ProcessResult:  # noqa: C901, PLR0915
        if not request.argv:
            raise ProcessError("Empty command line.", kind=ProcessErrorKind.SPAWN_FAILED)
        token = request.cancellation
        if token is not None and token.is_cancelled:
            raise ProcessError(
                "Process call cancelled before spawn.",
                kind=ProcessErrorKind.CANCELLED,
                elapsed_ms=0,
            )

        loop = asyncio.get_running_loop()
        now = time.monotonic()
        state = _CallState(started=now, last_output=now)
        env = build_filtered_env(request.env_allowlist)

        try:
            process = await asyncio.create_subprocess_exec(
                *request.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=str(request.cwd) if request.cwd is not None else None,
                start_new_session=os.name != "nt",
            )
        except OSError as error:
            raise ProcessError(
                f"Failed to spawn {request.argv[0]}: {error}",
                kind=ProcessErrorKind.SPAWN_FAILED,
                elapsed_ms=state.elapsed_ms(),
            ) from error

        logger.debug("Spawned agent process pid=%s argv0=%s", process.pid, request.argv[0])
        callbacks = request.callbacks
        _invoke(callbacks.on_spawn, process.pid)

        interrupted: asyncio.Future[ProcessErrorKind] = loop.create_future()

        def _interrupt(kind: ProcessErrorKind) -> None:
            if not interrupted.done():
                interrupted.set_result(kind)

        absolute_timer = loop.call_later(
            max(0.0, request.timeout_seconds),
            _interrupt,
            ProcessErrorKind.TIMEOUT,
        )
        idle_timer: asyncio.TimerHandle | None = None

        def _reset_idle() -> None:
            nonlocal idle_timer
            state.last_output = time.monotonic()
            if idle_timer is not None:
                idle_timer.cancel()
            idle_timer = loop.call_later(
                max(0.0, request.idle_timeout_seconds),
                _interrupt,
                ProcessErrorKind.IDLE_TIMEOUT,
            )

        _reset_idle()

        def _on_cancel() -> None:
            _interrupt(ProcessErrorKind.CANCELLED)

        if token is not None:
            token.on_cancel(_on_cancel)

        line_buffer = LineBuffer()

        def _consume_lines(lines: list[str]) -> None:
            for line in lines:
                event = decode_event_line(line)
                if event is None:
                    continue
                state.accumulator.add(event)
                _invoke(callbacks.on_event, event)

        async def _read_stdout() -> None:
            assert process.stdout is not None
            while True:
                chunk = await process.stdout.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                _reset_idle()
                remaining = request.max_output_bytes - state.stdout_bytes
                state.stdout_bytes += len(chunk)
                if remaining > 0:
                    state.stdout_chunks.append(chunk[:remaining])
                if state.stdout_bytes > request.max_output_bytes:
                    state.stdout_overflowed = True
                    if request.fail_on_overflow:
                        _interrupt(ProcessErrorKind.OUTPUT_TOO_LARGE)
                _consume_lines(line_buffer.feed(chunk))
                _invoke(callbacks.on_progress, chunk.decode("utf-8", errors="replace"))
            _consume_lines(line_buffer.flush())

        async def _read_stderr() -> None:
            assert process.stderr is not None
            while True:
                chunk = await process.stderr.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                _reset_idle()
                text = chunk.decode("utf-8", errors="replace")
                state.stderr_tail = (state.stderr_tail + text)[-self._stderr_tail_chars :]
                _invoke(callbacks.on_stderr, text)

        async def _write_stdin() -> None:
            assert process.stdin is not None
            try:
                process.stdin.write(request.prompt.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("Agent process pid=%s closed stdin early", process.pid)
            finally:
                with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                    process.stdin.close()

        async def _heartbeat() -> None:
            interval = max(0.01, request.heartbeat_interval_seconds)
            while True:
                await asyncio.sleep(interval)
                elapsed = round(time.monotonic() - state.started, 1)
                await _invoke_async(callbacks.on_heartbeat, elapsed)

        stdin_task = asyncio.ensure_future(_write_stdin())
        readers = asyncio.ensure_future(
            asyncio.gather(_read_stdout(), _read_stderr(), process.wait()),
        )
        heartbeat_task = (
            asyncio.ensure_future(_heartbeat()) if callbacks.on_heartbeat is not None else None
        )

        try:
            await asyncio.wait({readers, interrupted}, return_when=asyncio.FIRST_COMPLETED)
            if interrupted.done():
                kind = interrupted.result()
                await self._terminate_tree(process)
                await _settle(readers)
                raise self._interruption_error(kind, request=request, state=state)
            readers.result()
        except asyncio.CancelledError:
            await self._terminate_tree(process)
            await _settle(readers)
            raise
        finally:
            absolute_timer.cancel()
            if idle_timer is not None:
                idle_timer.cancel()
            if token is not None:
                token.off_cancel(_on_cancel)
            if heartbeat_task is not None:
                heartbeat_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat_task
            if not stdin_task.done():
                stdin_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stdin_task

        exit_code = _normalize_exit_code(process.returncode)
        duration_ms = state.elapsed_ms()
        raw_stdout = b"".join(state.stdout_chunks).decode("utf-8", errors="replace")
        if exit_code != 0:
            raise ProcessError(
                f"Process exited with code {exit_code}: {state.stderr_tail[-500:].strip()}",
                kind=ProcessErrorKind.NON_ZERO_EXIT,
                elapsed_ms=duration_ms,
                exit_code=exit_code,
                stderr_tail=state.stderr_tail,
                stdout_tail=raw_stdout[-2000:],
            )

        text, text_truncated = _cap_text(
            state.accumulator.text(raw_stdout),
            max_output_bytes=request.max_output_bytes,
            force_marker=state.stdout_overflowed and state.accumulator.recognised == 0,
        )
        usage = state.accumulator.usage or estimate_usage(request.prompt, text)
        logger.debug(
            "Agent process pid=%s finished in %sms (stdout %s bytes, events %s)",
            process.pid,
            duration_ms,
            state.stdout_bytes,
            len(state.accumulator.events),
        )
        return ProcessResult(
            text=text,
            continuation_token=state.accumulator.continuation_token,
            usage=usage,
            duration_ms=duration_ms,
            exit_code=exit_code,
            truncated=state.stdout_overflowed or text_truncated,
            events=list(state.accumulator.events),
            stderr_tail=state.stderr_tail,
        )

    def _interruption_error(
        self,
        kind: ProcessErrorKind,
        *,
        request: ProcessRequest,
        state: _CallState,
    ) -> ProcessError:
        elapsed_ms = state.elapsed_ms()
        if kind is ProcessErrorKind.TIMEOUT:
            limit_ms = int(request.timeout_seconds * 1000)
            message = f"Process timed out after {elapsed_ms}ms (limit {limit_ms}ms)"
        elif kind is ProcessErrorKind.IDLE_TIMEOUT:
            limit_ms = int(request.idle_timeout_seconds * 1000)
            silent_ms = int((time.monotonic() - state.last_output) * 1000)
            message = (
                f"Process idle timeout: no output for {silent_ms}ms "
                f"(idle limit {limit_ms}ms, elapsed {elapsed_ms}ms)"
            )
        elif kind is ProcessErrorKind.OUTPUT_TOO_LARGE:
            message = (
                f"Process output exceeded {request.max_output_bytes} bytes "
                f"after {elapsed_ms}ms"
            )
        else:
            message = f"Process call cancelled after {elapsed_ms}ms"
        return ProcessError(
            message,
            kind=kind,
            elapsed_ms=elapsed_ms,
            stderr_tail=state.stderr_tail,
        )

    async def _terminate_tree(self, process: asyncio.subprocess.Process) -> None:
        """Stop the process and everything it spawned; best effort."""

        if os.name == "nt":
            await _taskkill(process.pid)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(process.wait(), timeout=self._grace_seconds)
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
            return

        _signal_group(process.pid, signal.SIGTERM)
        if process.returncode is None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(process.wait(), timeout=self._grace_seconds)
        # Children that outlived the leader or ignored SIGTERM.
        _signal_group(process.pid, signal.SIGKILL)
        if process.returncode is None:
            await process.wait()


def _signal_group(pid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        logger.debug("Process group %s already gone (signal %s)", pid, sig.name)


async def _taskkill(pid: int) -> None:
    try:
        killer = await asyncio.create_subprocess_exec(
            "taskkill",
            "/PID",
            str(pid),
            "/T",
            "/F",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        logger.debug("taskkill unavailable for pid=%s", pid)
        return
    await killer.wait()


async def _settle(readers: asyncio.Future[Any]) -> None:
    """Give reader tasks a moment to hit EOF after a kill, then drop them."""

    with contextlib.suppress(asyncio.TimeoutError, asyncio.CancelledError, OSError):
        await asyncio.wait_for(asyncio.shield(readers), timeout=_DRAIN_SECONDS)
    if not readers.done():
        readers.cancel()
        with contextlib.suppress(asyncio.CancelledError, OSError):
            await readers


def _normalize_exit_code(returncode: int | None) -> int:
    if returncode is None:
        return -1
    if returncode < 0:
        return 128 - returncode
    return returncode


def _cap_text(text: str, *, max_output_bytes: int, force_marker: bool) -> tuple[str, bool]:
    encoded = text.encode("utf-8")
    if len(encoded) <= max_output_bytes and not force_marker:
        return text, False
    head = encoded[:max_output_bytes].decode("utf-8", errors="ignore")
    return head + truncation_marker(max_output_bytes), True


def _invoke(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:  # noqa: BLE001
        logger.warning("Process callback %r failed", callback, exc_info=True)


async def _invoke_async(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:  # noqa: BLE001
        logger.warning("Process callback %r failed", callback, exc_info=True)
