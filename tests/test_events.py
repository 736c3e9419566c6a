from __future__ import annotations

import allure

from agent_gate.runtime.events import (
    ActivityEvent,
    EventAccumulator,
    LineBuffer,
    SessionStarted,
    TurnFinished,
    UnknownEvent,
    decode_event_line,
    estimate_usage,
)

pytestmark = [
    allure.epic("Process Supervision"),
    allure.feature("Event Stream Decoding"),
]


def test_decode_maps_known_event_types_to_variants() -> None:
    assert decode_event_line('{"type": "thread.started", "thread_id": "t-1"}') == SessionStarted(
        thread_id="t-1",
    )

    activity = decode_event_line(
        '{"type": "item.completed", "item": {"type": "agent_message", "text": "hi"}}',
    )
    assert isinstance(activity, ActivityEvent)
    assert activity.is_agent_message
    assert activity.text == "hi"

    reasoning = decode_event_line(
        '{"type": "item.started", "item": {"type": "reasoning", "text": "hmm"}}',
    )
    assert isinstance(reasoning, ActivityEvent)
    assert not reasoning.is_agent_message

    unknown = decode_event_line('{"type": "turn.started"}')
    assert isinstance(unknown, UnknownEvent)
    assert unknown.event_type == "turn.started"


def test_turn_completed_usage_counts_cached_input() -> None:
    event = decode_event_line(
        '{"type": "turn.completed", "usage": '
        '{"input_tokens": 10, "cached_input_tokens": 5, "output_tokens": 3}}',
    )

    assert isinstance(event, TurnFinished)
    assert event.usage.input_tokens == 15
    assert event.usage.output_tokens == 3
    assert event.usage.total_tokens == 18
    assert event.usage.usage_status == "reported"


def test_malformed_and_blank_lines_are_dropped() -> None:
    assert decode_event_line("") is None
    assert decode_event_line("   ") is None
    assert decode_event_line("{not json") is None
    assert decode_event_line("[1, 2, 3]") is None
    assert isinstance(decode_event_line('{"type": "thread.started"}'), UnknownEvent)


def test_line_buffer_carries_split_utf8_and_partial_lines() -> None:
    buffer = LineBuffer()

    assert buffer.feed(b'{"a": "\xc3') == []
    assert buffer.feed(b'\xa9"}\r\nnext') == ['{"a": "é"}']
    assert buffer.flush() == ["next"]


def test_line_buffer_discards_oversized_partial_line() -> None:
    buffer = LineBuffer(max_line_chars=10)

    assert buffer.feed(b"x" * 20) == []
    assert buffer.feed(b"yy\nok\n") == ["ok"]
    assert buffer.flush() == []


def test_accumulator_prefers_agent_messages_over_raw_stdout() -> None:
    accumulator = EventAccumulator()
    assert accumulator.text("raw output") == "raw output"

    accumulator.add(SessionStarted(thread_id="t-9"))
    accumulator.add(ActivityEvent("item.completed", "agent_message", "first"))
    accumulator.add(ActivityEvent("item.completed", "reasoning", "skip me"))
    accumulator.add(ActivityEvent("item.completed", "agent_message", "second"))

    assert accumulator.continuation_token == "t-9"
    assert accumulator.text("ignored") == "first\nsecond"
    assert accumulator.usage is None


def test_estimate_usage_uses_four_chars_per_token() -> None:
    usage = estimate_usage("abcd" * 3, "abcde")

    assert usage.input_tokens == 3
    assert usage.output_tokens == 2
    assert usage.total_tokens == 5
    assert usage.usage_status == "estimated"
