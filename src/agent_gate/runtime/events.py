"""Line-delimited JSON event protocol spoken by agent processes on stdout.

Known event types map onto a closed set of variants:

* ``thread.started``  -> :class:`SessionStarted` (carries the continuation token)
* ``item.*``          -> :class:`ActivityEvent`
* ``turn.completed``  -> :class:`TurnFinished` (carries reported usage)
* anything else       -> :class:`UnknownEvent`

Malformed lines are dropped.
"""

from __future__ import annotations

import codecs
import json
import math
from dataclasses import dataclass, field
from typing import Any

from agent_gate.runtime.models import TokenUsage

DEFAULT_MAX_LINE_CHARS = 1024 * 1024
AGENT_MESSAGE_ITEM = "agent_message"


@dataclass(slots=True, frozen=True)
class SessionStarted:
    thread_id: str


@dataclass(slots=True, frozen=True)
class ActivityEvent:
    event_type: str
    item_type: str | None
    text: str | None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_agent_message(self) -> bool:
        return (
            self.event_type == "item.completed"
            and self.item_type == AGENT_MESSAGE_ITEM
            and bool(self.text)
        )


@dataclass(slots=True, frozen=True)
class TurnFinished:
    usage: TokenUsage


@dataclass(slots=True, frozen=True)
class UnknownEvent:
    event_type: str | None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


AgentEvent = SessionStarted | ActivityEvent | TurnFinished | UnknownEvent


def decode_event_line(line: str) -> AgentEvent | None:
    """Decode one stdout line; ``None`` for blank or malformed lines."""

    stripped = line.strip()
    if not stripped:
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    event_type = payload.get("type")
    if not isinstance(event_type, str):
        return UnknownEvent(event_type=None, raw=payload)

    if event_type == "thread.started":
        thread_id = payload.get("thread_id")
        if isinstance(thread_id, str) and thread_id:
            return SessionStarted(thread_id=thread_id)
        return UnknownEvent(event_type=event_type, raw=payload)

    if event_type.startswith("item."):
        item = payload.get("item")
        item_type: str | None = None
        text: str | None = None
        if isinstance(item, dict):
            raw_type = item.get("type")
            raw_text = item.get("text")
            item_type = raw_type if isinstance(raw_type, str) else None
            text = raw_text if isinstance(raw_text, str) else None
        return ActivityEvent(event_type=event_type, item_type=item_type, text=text, raw=payload)

    if event_type == "turn.completed":
        usage = payload.get("usage")
        if isinstance(usage, dict):
            return TurnFinished(usage=_reported_usage(usage))
        return UnknownEvent(event_type=event_type, raw=payload)

    return UnknownEvent(event_type=event_type, raw=payload)


def estimate_usage(prompt: str, output: str) -> TokenUsage:
    """Estimate tokens with the ~4 characters per token heuristic."""

    input_tokens = math.ceil(len(prompt) / 4)
    output_tokens = math.ceil(len(output) / 4)
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        usage_status="estimated",
    )


def _reported_usage(usage: dict[str, Any]) -> TokenUsage:
    input_tokens = _as_int(usage.get("input_tokens")) + _as_int(usage.get("cached_input_tokens"))
    output_tokens = _as_int(usage.get("output_tokens"))
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        usage_status="reported",
    )


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float) and math.isfinite(value):
        return max(0, int(value))
    return 0


class LineBuffer:
    """Incremental UTF-8 line splitter for chunked process output.

    A trailing partial line is carried across ``feed`` calls. A partial line
    that grows past ``max_line_chars`` is discarded up to the next newline.
    """

    def __init__(self, *, max_line_chars: int = DEFAULT_MAX_LINE_CHARS) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""
        self._discarding = False
        self._max_line_chars = max_line_chars

    def feed(self, chunk: bytes) -> list[str]:
        return self._split(self._decoder.decode(chunk))

    def flush(self) -> list[str]:
        text = self._decoder.decode(b"", final=True)
        lines = self._split(text)
        if self._partial and not self._discarding:
            lines.append(self._partial)
        self._partial = ""
        self._discarding = False
        return lines

    def _split(self, text: str) -> list[str]:
        if not text:
            return []
        pieces = (self._partial + text).split("\n")
        self._partial = pieces.pop()
        lines: list[str] = []
        for piece in pieces:
            if self._discarding:
                # Tail of an oversized line.
                self._discarding = False
                continue
            lines.append(piece.removesuffix("\r"))
        if len(self._partial) > self._max_line_chars:
            self._partial = ""
            self._discarding = True
        return lines


@dataclass(slots=True)
class EventAccumulator:
    """Folds decoded events into the text, token and usage of one call."""

    continuation_token: str | None = None
    usage: TokenUsage | None = None
    messages: list[str] = field(default_factory=list)
    events: list[AgentEvent] = field(default_factory=list)
    recognised: int = 0

    def add(self, event: AgentEvent) -> None:
        self.events.append(event)
        if isinstance(event, SessionStarted):
            self.recognised += 1
            self.continuation_token = event.thread_id
        elif isinstance(event, ActivityEvent):
            self.recognised += 1
            if event.is_agent_message and event.text is not None:
                self.messages.append(event.text)
        elif isinstance(event, TurnFinished):
            self.recognised += 1
            self.usage = event.usage

    def text(self, raw_stdout: str) -> str:
        """Joined agent messages, or raw stdout when no events were recognised."""

        if self.recognised == 0:
            return raw_stdout
        return "\n".join(self.messages)
