"""Backend-native events to the canonical event set.

Every raw event is classified exactly once through ``_CLASSIFIERS``: the
event's type alias selects a canonical kind, and the kind's pure mapping
function builds a ``Classification``. The normalizer then applies the
stateful parts (delta reassembly, identifier latching, activity tracking).
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

from .activity import DEFAULT_ACTIVITY_DEBOUNCE_SECONDS, ActivityTracker
from .identifiers import Identifiers
from .logging_utils import log_event
from .ports.agent_adapter import RawEvent
from .ports.run_event import (
    Activity,
    CanonicalEvent,
    Error,
    Message,
    SystemNotice,
    Thinking,
    TokenUsage,
    ToolCall,
    ToolResult,
)

logger = logging.getLogger(__name__)

KIND_MESSAGE = "message"
KIND_TOOL_CALL = "tool_call"
KIND_TOOL_RESULT = "tool_result"
KIND_THINKING = "thinking"
KIND_ERROR = "error"
KIND_SYSTEM = "system"
KIND_TURN_COMPLETE = "turn_complete"
KIND_NOISE = "noise"
KIND_ACTIVITY_BEGIN = "activity_begin"
KIND_ACTIVITY_END = "activity_end"
KIND_UNKNOWN = "unknown"

KIND_ALIASES: dict[str, str] = {
    "message": KIND_MESSAGE,
    "assistant": KIND_MESSAGE,
    "assistant_message": KIND_MESSAGE,
    "tool_use": KIND_TOOL_CALL,
    "tool_call": KIND_TOOL_CALL,
    "function_call": KIND_TOOL_CALL,
    "tool_result": KIND_TOOL_RESULT,
    "function_result": KIND_TOOL_RESULT,
    "thinking": KIND_THINKING,
    "reasoning": KIND_THINKING,
    "error": KIND_ERROR,
    "system": KIND_SYSTEM,
    "system_message": KIND_SYSTEM,
    "done": KIND_TURN_COMPLETE,
    "complete": KIND_TURN_COMPLETE,
    "finished": KIND_TURN_COMPLETE,
    "result": KIND_TURN_COMPLETE,
    "progress": KIND_NOISE,
    "status": KIND_NOISE,
    "log": KIND_NOISE,
    "debug": KIND_NOISE,
    "info": KIND_NOISE,
    "task_started": KIND_ACTIVITY_BEGIN,
    "fetch_start": KIND_ACTIVITY_BEGIN,
    "reasoning_begin": KIND_ACTIVITY_BEGIN,
    "task_complete": KIND_ACTIVITY_END,
    "fetch_end": KIND_ACTIVITY_END,
    "reasoning_end": KIND_ACTIVITY_END,
}

# Priority-ordered candidate keys per concept.
TYPE_KEYS = ("type", "event", "kind")
TEXT_KEYS = ("message", "text", "content")
TOOL_NAME_KEYS = ("tool_name", "name", "function_name")
CALL_ID_KEYS = ("tool_id", "toolId", "call_id", "callId", "id")
TOOL_INPUT_KEYS = ("parameters", "input", "arguments")
TOOL_OUTPUT_KEYS = ("output", "result")
ERROR_TEXT_KEYS = ("message", "error", "text")
SESSION_ID_PATHS = (("sessionId",), ("session_id",), ("session", "id"), ("meta", "sessionId"))
CONVERSATION_ID_PATHS = (
    ("conversationId",),
    ("conversation_id",),
    ("conversation", "id"),
    ("meta", "conversationId"),
)

_NOISE_PATTERNS = (re.compile(r"^\[?(DEBUG|INFO|TRACE|WARN)\]?\s", re.IGNORECASE),) + tuple(
    re.compile(pattern)
    for pattern in (
        r"\[MemoryDiscovery\]",
        r"\[BfsFileSearch\]",
        r"\[AgentRegistry\]",
        r"Scanning \[",
        r"batch of",
        r"Experiments loaded",
        r"experimentIds",
        r"flagId",
        r"floatValue",
        r"stringValue",
        r"Session ID:",
        r"Flushing log events",
        r"Clearcut",
        r"cached credentials",
        r"Loaded cached",
        r"^(Loading|Loaded|Found readable|Searching for|Determined project|Initialized with)",
        r"^\s*[\[\{]",
        r"^\s*\d+,?\s*$",
        r"^\s*[\]\}],?\s*$",
    )
)
_ERROR_PREFIX = re.compile(r"^\s*Error:\s*", re.IGNORECASE)
_THINKING_LINE = re.compile(r"^\s*(Thinking\.\.\.|\[thinking\])", re.IGNORECASE)


def is_noise(text: Optional[str]) -> bool:
    """True for diagnostic chatter and JSON-fragment-shaped lines."""
    if text is None:
        return True
    stripped = text.strip()
    if not stripped:
        return True
    return any(pattern.search(stripped) for pattern in _NOISE_PATTERNS)


def _first(payload: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _first_text(payload: Mapping[str, Any], keys: Iterable[str]) -> str:
    value = _first(payload, keys)
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _lookup_path(payload: Mapping[str, Any], path: tuple[str, ...]) -> Optional[str]:
    current: Any = payload
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    if isinstance(current, str) and current:
        return current
    return None


def _first_path(payload: Mapping[str, Any], paths: Iterable[tuple[str, ...]]) -> Optional[str]:
    for path in paths:
        value = _lookup_path(payload, path)
        if value:
            return value
    return None


def _fallback_call_id() -> str:
    return f"call-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class Classification:
    """Result of classifying one raw event.

    ``event`` is the canonical event when the kind maps to one directly.
    Delta fragments carry ``delta_text`` instead and never an event.
    """

    kind: str
    event: Optional[CanonicalEvent] = None
    delta_text: Optional[str] = None
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None
    usage: Optional[dict[str, Any]] = None


def _map_message(payload: Mapping[str, Any]) -> Classification:
    text = _first_text(payload, TEXT_KEYS)
    if payload.get("delta") is True:
        return Classification(KIND_MESSAGE, delta_text=text)
    return Classification(KIND_MESSAGE, event=Message(text) if text else None)


def _map_tool_call(payload: Mapping[str, Any]) -> Classification:
    name = _first_text(payload, TOOL_NAME_KEYS) or "unknown"
    call_id = _first_text(payload, CALL_ID_KEYS) or _fallback_call_id()
    raw_input = _first(payload, TOOL_INPUT_KEYS)
    tool_input = dict(raw_input) if isinstance(raw_input, Mapping) else {}
    if raw_input is not None and not isinstance(raw_input, Mapping):
        tool_input = {"value": raw_input}
    return Classification(
        KIND_TOOL_CALL, event=ToolCall(name=name, call_id=call_id, input=tool_input)
    )


def _map_tool_result(payload: Mapping[str, Any]) -> Classification:
    call_id = _first_text(payload, CALL_ID_KEYS) or _fallback_call_id()
    output = _first(payload, TOOL_OUTPUT_KEYS)
    is_error = payload.get("status") in ("error", "failed") or payload.get("is_error") is True
    return Classification(
        KIND_TOOL_RESULT,
        event=ToolResult(call_id=call_id, output=output if output is not None else {}, is_error=is_error),
    )


def _map_thinking(payload: Mapping[str, Any]) -> Classification:
    text = _first_text(payload, ("text", "content"))
    return Classification(KIND_THINKING, event=Thinking(text) if text else None)


def _map_error(payload: Mapping[str, Any]) -> Classification:
    text = _first_text(payload, ERROR_TEXT_KEYS)
    if not text or is_noise(text):
        return Classification(KIND_ERROR)
    return Classification(KIND_ERROR, event=Error(text))


def _map_system(payload: Mapping[str, Any]) -> Classification:
    text = _first_text(payload, ("message", "text"))
    return Classification(KIND_SYSTEM, event=SystemNotice(text) if text else None)


def _usage_from_stats(stats: Any) -> Optional[dict[str, Any]]:
    if not isinstance(stats, Mapping):
        return None
    return {
        "input_tokens": stats.get("input_tokens") or 0,
        "output_tokens": stats.get("output_tokens") or 0,
        "cache_creation_input_tokens": 0,
        "cache_read_input_tokens": 0,
    }


def _map_turn_complete(payload: Mapping[str, Any]) -> Classification:
    return Classification(KIND_TURN_COMPLETE, usage=_usage_from_stats(payload.get("stats")))


def _map_noise(payload: Mapping[str, Any]) -> Classification:
    return Classification(KIND_NOISE)


def _map_activity_begin(payload: Mapping[str, Any]) -> Classification:
    return Classification(KIND_ACTIVITY_BEGIN)


def _map_activity_end(payload: Mapping[str, Any]) -> Classification:
    return Classification(KIND_ACTIVITY_END)


def _map_unknown(payload: Mapping[str, Any]) -> Classification:
    text = _first_text(payload, TEXT_KEYS)
    if is_noise(text):
        return Classification(KIND_UNKNOWN)
    return Classification(KIND_UNKNOWN, event=Message(text))


_CLASSIFIERS: dict[str, Callable[[Mapping[str, Any]], Classification]] = {
    KIND_MESSAGE: _map_message,
    KIND_TOOL_CALL: _map_tool_call,
    KIND_TOOL_RESULT: _map_tool_result,
    KIND_THINKING: _map_thinking,
    KIND_ERROR: _map_error,
    KIND_SYSTEM: _map_system,
    KIND_TURN_COMPLETE: _map_turn_complete,
    KIND_NOISE: _map_noise,
    KIND_ACTIVITY_BEGIN: _map_activity_begin,
    KIND_ACTIVITY_END: _map_activity_end,
    KIND_UNKNOWN: _map_unknown,
}


def classify_text_line(line: str) -> Optional[Classification]:
    if is_noise(line):
        return None
    if _ERROR_PREFIX.match(line):
        return Classification(KIND_ERROR, event=Error(line.strip()))
    if _THINKING_LINE.match(line):
        return Classification(KIND_ACTIVITY_BEGIN)
    return Classification(KIND_MESSAGE, event=Message(line.strip()))


def classify(raw: RawEvent, *, unknown_event_policy: str = "text") -> Optional[Classification]:
    """Pure mapping of one raw event; None means the event never goes downstream."""
    if isinstance(raw, str):
        return classify_text_line(raw)
    if not isinstance(raw, Mapping):
        return None
    event_type = _first_text(raw, TYPE_KEYS)
    kind = KIND_ALIASES.get(event_type, KIND_UNKNOWN)
    if kind == KIND_UNKNOWN and unknown_event_policy == "drop":
        classification = Classification(KIND_UNKNOWN)
    else:
        classification = _CLASSIFIERS[kind](raw)
    session_id = _first_path(raw, SESSION_ID_PATHS)
    conversation_id = _first_path(raw, CONVERSATION_ID_PATHS)
    if session_id or conversation_id:
        classification = Classification(
            kind=classification.kind,
            event=classification.event,
            delta_text=classification.delta_text,
            session_id=session_id,
            conversation_id=conversation_id,
            usage=classification.usage,
        )
    return classification


# Kinds that end a streamed assistant message.
_TERMINATOR_KINDS = frozenset({KIND_MESSAGE, KIND_TOOL_CALL, KIND_TURN_COMPLETE, KIND_ERROR})

EmitFn = Callable[[CanonicalEvent], None]
IdentifiersFn = Callable[[Identifiers], None]


class EventNormalizer:
    """Stateful half of normalization for one adapter session."""

    def __init__(
        self,
        emit: EmitFn,
        *,
        identifiers: Optional[Identifiers] = None,
        on_identifiers: Optional[IdentifiersFn] = None,
        activity_debounce_seconds: float = DEFAULT_ACTIVITY_DEBOUNCE_SECONDS,
        unknown_event_policy: str = "text",
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._emit_fn = emit
        self.identifiers = identifiers or Identifiers()
        self._on_identifiers = on_identifiers
        self._unknown_event_policy = unknown_event_policy
        self._log = log or logger
        self._buffer: list[str] = []
        self._emitted: Optional[list[CanonicalEvent]] = None
        self.activity = ActivityTracker(
            self._emit_activity, debounce_seconds=activity_debounce_seconds
        )

    def _emit(self, event: CanonicalEvent) -> None:
        if self._emitted is not None:
            self._emitted.append(event)
        self._emit_fn(event)

    def _emit_activity(self, active: bool) -> None:
        self._emit(Activity(active))

    def classify(self, raw: RawEvent) -> Optional[Classification]:
        return classify(raw, unknown_event_policy=self._unknown_event_policy)

    def feed(self, raw: RawEvent) -> list[CanonicalEvent]:
        """Process one raw event; returns the canonical events emitted synchronously."""
        emitted: list[CanonicalEvent] = []
        self._emitted = emitted
        try:
            self._apply(self.classify(raw), raw)
        finally:
            self._emitted = None
        return emitted

    def _apply(self, classification: Optional[Classification], raw: RawEvent) -> None:
        if classification is None:
            log_event(self._log, logging.DEBUG, "normalizer.noise_dropped", raw=raw)
            return
        self._latch_identifiers(classification)
        kind = classification.kind
        if classification.delta_text is not None:
            if classification.delta_text:
                self._buffer.append(classification.delta_text)
            return
        if kind in _TERMINATOR_KINDS:
            self._flush_buffer(classification.event if kind == KIND_MESSAGE else None)
            if kind == KIND_MESSAGE:
                return
        if kind == KIND_NOISE:
            log_event(self._log, logging.DEBUG, "normalizer.progress", raw=raw)
            return
        if kind in (KIND_ACTIVITY_BEGIN, KIND_THINKING, KIND_TOOL_CALL):
            self.activity.begin()
        if classification.event is not None:
            self._emit(classification.event)
        if classification.usage is not None:
            self._emit(TokenUsage(classification.usage))
        if kind in (KIND_ACTIVITY_END, KIND_TURN_COMPLETE):
            self.activity.end()
        if kind == KIND_UNKNOWN and classification.event is None:
            log_event(self._log, logging.DEBUG, "normalizer.unknown_dropped", raw=raw)

    def _flush_buffer(self, complete: Optional[CanonicalEvent]) -> None:
        buffered = "".join(self._buffer)
        self._buffer.clear()
        if buffered:
            if isinstance(complete, Message):
                buffered += complete.text
            self._emit(Message(buffered))
            return
        if complete is not None:
            self._emit(complete)

    def _latch_identifiers(self, classification: Classification) -> None:
        changed = False
        if classification.session_id:
            changed |= self.identifiers.latch_session_id(classification.session_id)
        if classification.conversation_id:
            changed |= self.identifiers.latch_conversation_id(classification.conversation_id)
        if changed and self._on_identifiers is not None:
            self._on_identifiers(self.identifiers)

    @property
    def buffered_text(self) -> str:
        return "".join(self._buffer)

    def flush(self) -> list[CanonicalEvent]:
        """Turn boundary: emit buffered text and commit any pending activity end."""
        emitted: list[CanonicalEvent] = []
        self._emitted = emitted
        try:
            self._flush_buffer(None)
            self.activity.settle()
        finally:
            self._emitted = None
        return emitted

    def reset(self) -> None:
        """Drop buffered state without emitting; used when the session is torn down."""
        self._buffer.clear()
        self.activity.discard()


__all__ = [
    "Classification",
    "EventNormalizer",
    "KIND_ALIASES",
    "classify",
    "classify_text_line",
    "is_noise",
]
