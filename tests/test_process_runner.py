from __future__ import annotations

import asyncio
import os
import sys
import time
from pathlib import Path

import allure
import pytest

from agent_gate.runtime.backend import ProcessRequest, ProcessRunner, build_filtered_env
from agent_gate.runtime.backend.base import ProcessCallbacks
from agent_gate.runtime.backend.process_runner import truncation_marker
from agent_gate.runtime.cancellation import CancellationToken
from agent_gate.runtime.errors import ProcessError, ProcessErrorKind
from agent_gate.runtime.events import SessionStarted

from conftest import TEST_ENV_ALLOWLIST

pytestmark = [
    allure.epic("Process Supervision"),
    allure.feature("Process Runner"),
]

posix_only = pytest.mark.skipif(os.name == "nt", reason="process groups are POSIX-only")


def _request(argv: list[str], prompt: str = "hello", **overrides: object) -> ProcessRequest:
    fields: dict[str, object] = {
        "timeout_seconds": 30.0,
        "idle_timeout_seconds": 30.0,
        "env_allowlist": TEST_ENV_ALLOWLIST,
    }
    fields.update(overrides)
    return ProcessRequest(argv=argv, prompt=prompt, **fields)  # type: ignore[arg-type]


def _alive(pid: int) -> bool:
    stat = Path(f"/proc/{pid}/stat")
    if stat.parent.parent.exists():
        try:
            fields = stat.read_text("utf-8").rsplit(")", 1)[1].split()
        except (FileNotFoundError, ProcessLookupError):
            return False
        return fields[0] not in {"Z", "X"}
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


@pytest.mark.asyncio
async def test_echo_agent_result_is_assembled_from_events(echo_command) -> None:
    spawned: list[int] = []
    events: list[object] = []

    result = await ProcessRunner().run(
        _request(
            echo_command().fresh_argv(),
            prompt="hello there",
            callbacks=ProcessCallbacks(on_spawn=spawned.append, on_event=events.append),
        ),
    )

    assert result.text == "echo: hello there"
    assert result.exit_code == 0
    assert result.continuation_token is not None
    assert result.continuation_token.startswith("thread-")
    assert result.usage.usage_status == "reported"
    assert result.truncated is False
    assert len(spawned) == 1
    assert any(isinstance(event, SessionStarted) for event in events)


@pytest.mark.asyncio
async def test_resume_command_keeps_supplied_thread(echo_command) -> None:
    command = echo_command()

    result = await ProcessRunner().run(_request(command.resume_argv("thread-keep")))

    assert result.continuation_token == "thread-keep"


@pytest.mark.asyncio
async def test_non_zero_exit_reports_exit_code_and_stderr_tail(echo_command) -> None:
    with pytest.raises(ProcessError) as caught:
        await ProcessRunner().run(_request(echo_command("--mode", "fail").fresh_argv()))

    error = caught.value
    assert error.kind is ProcessErrorKind.NON_ZERO_EXIT
    assert error.exit_code == 1
    assert "fatal: agent crashed" in error.stderr_tail
    assert "fatal: agent crashed" in str(error)


@pytest.mark.asyncio
async def test_silent_process_times_out_promptly(echo_command) -> None:
    started = time.monotonic()

    with pytest.raises(ProcessError) as caught:
        await ProcessRunner(grace_seconds=0.2).run(
            _request(echo_command("--mode", "silent").fresh_argv(), timeout_seconds=0.1),
        )

    assert caught.value.kind is ProcessErrorKind.TIMEOUT
    assert "timed out after" in str(caught.value)
    assert "limit 100ms" in str(caught.value)
    assert time.monotonic() - started < 1.0


@pytest.mark.asyncio
async def test_idle_timer_fires_when_output_stops(echo_command) -> None:
    with pytest.raises(ProcessError) as caught:
        await ProcessRunner(grace_seconds=1.0).run(
            _request(
                echo_command("--mode", "hang").fresh_argv(),
                idle_timeout_seconds=0.5,
            ),
        )

    assert caught.value.kind is ProcessErrorKind.IDLE_TIMEOUT
    assert "idle limit 500ms" in str(caught.value)


@pytest.mark.asyncio
async def test_missing_binary_is_spawn_failure() -> None:
    with pytest.raises(ProcessError) as caught:
        await ProcessRunner().run(_request(["/nonexistent/agent-binary-for-tests"]))

    assert caught.value.kind is ProcessErrorKind.SPAWN_FAILED


@pytest.mark.asyncio
async def test_raw_stdout_is_capped_with_marker() -> None:
    argv = [sys.executable, "-c", "import sys; sys.stdout.write('x' * 5000)"]

    result = await ProcessRunner().run(_request(argv, max_output_bytes=1024))

    assert result.truncated is True
    assert result.text == "x" * 1024 + "\n[TRUNCATED: output exceeded 1KB]"
    assert result.usage.usage_status == "estimated"


@pytest.mark.asyncio
async def test_overflow_can_fail_the_call() -> None:
    argv = [sys.executable, "-c", "import sys; sys.stdout.write('x' * 5000)"]

    with pytest.raises(ProcessError) as caught:
        await ProcessRunner().run(_request(argv, max_output_bytes=1024, fail_on_overflow=True))

    assert caught.value.kind is ProcessErrorKind.OUTPUT_TOO_LARGE


@pytest.mark.asyncio
async def test_child_environment_is_allow_listed(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_GATE_TEST_SECRET", "s3cret")
    argv = [
        sys.executable,
        "-c",
        "import os, sys; sys.stdout.write(os.environ.get('AGENT_GATE_TEST_SECRET', 'missing'))",
    ]

    hidden = await ProcessRunner().run(_request(argv))
    shared = await ProcessRunner().run(
        _request(argv, env_allowlist=(*TEST_ENV_ALLOWLIST, "AGENT_GATE_TEST_SECRET")),
    )

    assert hidden.text == "missing"
    assert shared.text == "s3cret"


@pytest.mark.asyncio
async def test_cancellation_token_stops_the_process(echo_command) -> None:
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.3, token.cancel)

    with pytest.raises(ProcessError) as caught:
        await ProcessRunner(grace_seconds=1.0).run(
            _request(echo_command("--mode", "silent").fresh_argv(), cancellation=token),
        )

    assert caught.value.kind is ProcessErrorKind.CANCELLED


@pytest.mark.asyncio
async def test_already_cancelled_token_never_spawns(echo_command) -> None:
    token = CancellationToken()
    token.cancel()
    spawned: list[int] = []

    with pytest.raises(ProcessError) as caught:
        await ProcessRunner().run(
            _request(
                echo_command().fresh_argv(),
                cancellation=token,
                callbacks=ProcessCallbacks(on_spawn=spawned.append),
            ),
        )

    assert caught.value.kind is ProcessErrorKind.CANCELLED
    assert spawned == []


@pytest.mark.asyncio
async def test_heartbeat_runs_and_callback_errors_are_isolated(echo_command) -> None:
    beats: list[float] = []

    async def _heartbeat(elapsed: float) -> None:
        beats.append(elapsed)
        raise RuntimeError("heartbeat sink is down")

    def _broken_progress(_: str) -> None:
        raise RuntimeError("progress sink is down")

    with pytest.raises(ProcessError) as caught:
        await ProcessRunner(grace_seconds=1.0).run(
            _request(
                echo_command("--mode", "hang").fresh_argv(),
                timeout_seconds=1.0,
                heartbeat_interval_seconds=0.1,
                callbacks=ProcessCallbacks(
                    on_heartbeat=_heartbeat,
                    on_progress=_broken_progress,
                ),
            ),
        )

    assert caught.value.kind is ProcessErrorKind.TIMEOUT
    assert len(beats) >= 2


@posix_only
@pytest.mark.asyncio
async def test_timeout_kills_the_whole_process_group(tmp_path: Path, echo_command) -> None:
    pid_file = tmp_path / "child.pid"
    argv = echo_command("--mode", "hang-with-child", "--pid-file", str(pid_file)).fresh_argv()

    with pytest.raises(ProcessError) as caught:
        await ProcessRunner(grace_seconds=1.0).run(_request(argv, timeout_seconds=2.0))

    assert caught.value.kind is ProcessErrorKind.TIMEOUT
    child_pid = int(pid_file.read_text("utf-8"))
    deadline = time.monotonic() + 5
    while _alive(child_pid) and time.monotonic() < deadline:
        await asyncio.sleep(0.05)
    assert not _alive(child_pid)


def test_filtered_env_is_default_deny() -> None:
    source = {"PATH": "/bin", "HOME": "/home/a", "AWS_SECRET_ACCESS_KEY": "x", "EXTRA": "1"}

    assert build_filtered_env(source=source) == {"PATH": "/bin", "HOME": "/home/a"}
    assert build_filtered_env(("EXTRA",), source=source)["EXTRA"] == "1"


def test_truncation_marker_names_the_limit() -> None:
    assert truncation_marker(512 * 1024) == "\n[TRUNCATED: output exceeded 512KB]"
    assert truncation_marker(1000) == "\n[TRUNCATED: output exceeded 1000 bytes]"
