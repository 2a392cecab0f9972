from __future__ import annotations

import asyncio

import pytest

from agent_relay.core.event_normalizer import (
    EventNormalizer,
    classify,
    classify_text_line,
    is_noise,
)
from agent_relay.core.ports.run_event import (
    Activity,
    Error,
    Message,
    SystemNotice,
    Thinking,
    TokenUsage,
    ToolCall,
    ToolResult,
)


def _normalizer(**kwargs) -> tuple[EventNormalizer, list]:
    events: list = []
    kwargs.setdefault("activity_debounce_seconds", 0)
    return EventNormalizer(events.append, **kwargs), events


@pytest.mark.parametrize(
    "line",
    [
        "",
        "   ",
        "[DEBUG] loading",
        "info starting up",
        "[MemoryDiscovery] scanning",
        "Loaded cached credentials.",
        "{",
        "  ],",
        "42,",
    ],
)
def test_noise_lines(line: str) -> None:
    assert is_noise(line)


def test_regular_text_is_not_noise() -> None:
    assert not is_noise("Here is the fix for your bug.")


def test_text_line_classification() -> None:
    assert classify_text_line("[DEBUG] x") is None
    error = classify_text_line("Error: boom")
    assert error is not None and isinstance(error.event, Error)
    assert error.event.text == "Error: boom"
    thinking = classify_text_line("Thinking...")
    assert thinking is not None and thinking.kind == "activity_begin"
    plain = classify_text_line("  hello  ")
    assert plain is not None and isinstance(plain.event, Message)
    assert plain.event.text == "hello"


def test_tool_call_key_aliases() -> None:
    classification = classify(
        {"type": "function_call", "function_name": "Bash", "callId": "c1", "arguments": {"cmd": "ls"}}
    )
    assert classification is not None
    event = classification.event
    assert isinstance(event, ToolCall)
    assert (event.name, event.call_id, event.input) == ("Bash", "c1", {"cmd": "ls"})


def test_tool_call_defaults() -> None:
    classification = classify({"type": "tool_use"})
    assert classification is not None
    event = classification.event
    assert isinstance(event, ToolCall)
    assert event.name == "unknown"
    assert event.call_id.startswith("call-")


def test_tool_result_error_status() -> None:
    classification = classify({"type": "tool_result", "tool_id": "c1", "status": "failed", "output": "nope"})
    assert classification is not None
    event = classification.event
    assert isinstance(event, ToolResult)
    assert event.is_error
    assert event.output == "nope"


def test_session_identifiers_from_nested_paths() -> None:
    classification = classify(
        {"type": "status", "session": {"id": "s1"}, "meta": {"conversationId": "c1"}}
    )
    assert classification is not None
    assert classification.kind == "noise"
    assert classification.session_id == "s1"
    assert classification.conversation_id == "c1"


def test_unknown_event_policy() -> None:
    as_text = classify({"type": "surprise", "text": "hello"})
    assert as_text is not None and isinstance(as_text.event, Message)
    dropped = classify({"type": "surprise", "text": "hello"}, unknown_event_policy="drop")
    assert dropped is not None and dropped.event is None


def test_noise_error_is_dropped() -> None:
    classification = classify({"type": "error", "message": "[DEBUG] retrying"})
    assert classification is not None and classification.event is None


def test_deltas_are_reassembled_into_one_message() -> None:
    normalizer, events = _normalizer()
    normalizer.feed({"type": "message", "delta": True, "content": "Hel"})
    normalizer.feed({"type": "message", "delta": True, "content": "lo"})
    assert normalizer.buffered_text == "Hello"
    assert events == []

    normalizer.feed({"type": "tool_use", "tool_name": "Read", "tool_id": "t1"})

    assert [type(event) for event in events] == [Message, Activity, ToolCall]
    assert events[0].text == "Hello"
    assert normalizer.buffered_text == ""


def test_complete_message_is_appended_to_buffer() -> None:
    normalizer, events = _normalizer()
    normalizer.feed({"type": "message", "delta": True, "content": "a"})
    normalizer.feed({"type": "message", "content": "b"})
    messages = [event for event in events if isinstance(event, Message)]
    assert [message.text for message in messages] == ["ab"]


def test_flush_emits_trailing_buffer() -> None:
    normalizer, events = _normalizer()
    normalizer.feed({"type": "message", "delta": True, "text": "tail"})
    flushed = normalizer.flush()
    assert [event.text for event in flushed if isinstance(event, Message)] == ["tail"]
    assert flushed == events


def test_reset_drops_buffer_silently() -> None:
    normalizer, events = _normalizer()
    normalizer.feed({"type": "message", "delta": True, "text": "tail"})
    normalizer.reset()
    assert normalizer.flush() == []
    assert events == []


def test_turn_complete_emits_usage_and_idles() -> None:
    normalizer, events = _normalizer()
    normalizer.feed({"type": "thinking", "text": "hmm"})
    normalizer.feed({"type": "result", "stats": {"input_tokens": 3, "output_tokens": 4}})

    assert [type(event) for event in events] == [Activity, Thinking, TokenUsage, Activity]
    assert events[0].active is True
    assert events[-1].active is False
    assert events[2].usage["input_tokens"] == 3
    assert events[2].usage["cache_read_input_tokens"] == 0


def test_system_event_and_session_latch() -> None:
    seen: list[str] = []
    normalizer, events = _normalizer(
        on_identifiers=lambda identifiers: seen.append(identifiers.session_id)
    )
    normalizer.feed({"type": "system", "message": "ready", "session_id": "s1"})
    normalizer.feed({"type": "system", "message": "", "session_id": "s2"})

    assert seen == ["s1"]
    assert normalizer.identifiers.session_id == "s1"
    assert [type(event) for event in events] == [SystemNotice]


def test_text_lines_pass_through() -> None:
    normalizer, events = _normalizer()
    assert normalizer.feed("[INFO] booting") == []
    emitted = normalizer.feed("plain answer")
    assert [event.text for event in emitted] == ["plain answer"]


@pytest.mark.anyio
async def test_activity_end_is_debounced() -> None:
    normalizer, events = _normalizer(activity_debounce_seconds=0.05)
    normalizer.feed({"type": "task_started"})
    normalizer.feed({"type": "task_complete"})
    assert normalizer.activity.end_pending
    normalizer.feed({"type": "fetch_start"})
    normalizer.feed({"type": "fetch_end"})

    await asyncio.sleep(0.15)

    toggles = [event.active for event in events if isinstance(event, Activity)]
    assert toggles == [True, False]
    assert not normalizer.activity.active
