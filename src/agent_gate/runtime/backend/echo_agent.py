"""Deterministic fake agent speaking the JSONL protocol, for subprocess tests."""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
import time
import uuid
from pathlib import Path

MODES = ("echo", "hang", "silent", "fail", "rate-limit", "hang-with-child")


def main(argv: list[str] | None = None) -> int:  # noqa: C901, PLR0911
    """Read the prompt from stdin and answer according to ``--mode``."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--mode", choices=MODES, default="echo")
    parser.add_argument("--resume", default=None, help="Continuation token to resume.")
    parser.add_argument(
        "--drop-resume",
        action="store_true",
        help="Ignore --resume and start a new thread (simulates a lost session).",
    )
    parser.add_argument("--pad", type=int, default=0, help="Pad reply to at least N chars.")
    parser.add_argument("--reply", default=None, help="Fixed reply text instead of echo.")
    parser.add_argument("--exit-code", type=int, default=1)
    parser.add_argument("--output-bytes", type=int, default=0, help="Extra stdout filler.")
    parser.add_argument("--stderr", default="", help="Diagnostic line written to stderr.")
    parser.add_argument("--fail-first", type=int, default=0)
    parser.add_argument("--state-file", default=None)
    parser.add_argument("--pid-file", default=None)
    args = parser.parse_args(argv)

    prompt = sys.stdin.read()
    if args.stderr:
        _stderr(args.stderr)

    if args.fail_first and _consume_failure(args.state_file, args.fail_first):
        _stderr("503 Service Unavailable: upstream overloaded")
        return args.exit_code

    if args.mode == "silent":
        _sleep_forever()
    if args.mode == "fail":
        _stderr("fatal: agent crashed")
        return args.exit_code
    if args.mode == "rate-limit":
        _stderr("Error: 429 Too Many Requests. Rate limit reached, retry after 2 seconds.")
        return args.exit_code

    if args.resume and not args.drop_resume:
        thread_id = args.resume
    else:
        thread_id = f"thread-{uuid.uuid4().hex[:12]}"
    _emit({"type": "thread.started", "thread_id": thread_id})

    if args.mode == "hang":
        _sleep_forever()
    if args.mode == "hang-with-child":
        child = subprocess.Popen(  # noqa: S603
            [sys.executable, "-c", "import time; time.sleep(600)"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        if args.pid_file:
            Path(args.pid_file).write_text(str(child.pid), "utf-8")
        _sleep_forever()

    _emit({"type": "turn.started"})
    reply = args.reply if args.reply is not None else f"echo: {prompt.strip()}"
    if len(reply) < args.pad:
        reply = reply + " " + "." * (args.pad - len(reply) - 1)
    _emit({"type": "item.started", "item": {"type": "reasoning", "text": "thinking"}})
    _emit({"type": "item.completed", "item": {"type": "agent_message", "text": reply}})
    if args.output_bytes:
        filler = json.dumps({"type": "debug.filler", "data": "x" * args.output_bytes})
        sys.stdout.write(filler + "\n")
    _emit(
        {
            "type": "turn.completed",
            "usage": {
                "input_tokens": len(prompt) // 4,
                "cached_input_tokens": 0,
                "output_tokens": len(reply) // 4,
            },
        },
    )
    return 0


def _emit(event: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(event) + "\n")
    sys.stdout.flush()


def _stderr(message: str) -> None:
    sys.stderr.write(message + "\n")
    sys.stderr.flush()


def _consume_failure(state_file: str | None, fail_first: int) -> bool:
    if state_file is None:
        return True
    path = Path(state_file)
    calls = int(path.read_text("utf-8")) if path.exists() else 0
    path.write_text(str(calls + 1), "utf-8")
    return calls < fail_first


def _sleep_forever() -> None:
    while True:
        time.sleep(3600)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
