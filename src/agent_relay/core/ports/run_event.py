from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from ..time_utils import now_iso

# Canonical event contract delivered to the transport sink:
# - Message text is emitted once per complete assistant message, never per delta.
# - ToolCall precedes any ToolResult carrying the same call_id.
# - Activity toggles strictly alternate (True, False, True, ...).


@dataclass(frozen=True)
class Message:
    text: str
    timestamp: str = field(default_factory=now_iso)


@dataclass(frozen=True)
class ToolCall:
    name: str
    call_id: str
    input: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    output: Any = None
    is_error: bool = False
    timestamp: str = field(default_factory=now_iso)


@dataclass(frozen=True)
class Activity:
    active: bool
    timestamp: str = field(default_factory=now_iso)


@dataclass(frozen=True)
class SystemNotice:
    text: str
    timestamp: str = field(default_factory=now_iso)


@dataclass(frozen=True)
class Error:
    text: str
    timestamp: str = field(default_factory=now_iso)


@dataclass(frozen=True)
class Thinking:
    text: str
    timestamp: str = field(default_factory=now_iso)


@dataclass(frozen=True)
class TokenUsage:
    usage: dict[str, Any]
    timestamp: str = field(default_factory=now_iso)


CanonicalEvent = Union[
    Message,
    ToolCall,
    ToolResult,
    Activity,
    SystemNotice,
    Error,
    Thinking,
    TokenUsage,
]

_EVENT_TYPES: dict[type, str] = {
    Message: "message",
    ToolCall: "tool-call",
    ToolResult: "tool-call-result",
    Activity: "activity",
    SystemNotice: "system",
    Error: "error",
    Thinking: "thinking",
    TokenUsage: "usage",
}


def event_type_name(event: CanonicalEvent) -> str:
    return _EVENT_TYPES[type(event)]


def event_to_dict(event: CanonicalEvent, *, event_id: Optional[str] = None) -> dict[str, Any]:
    payload = {"type": event_type_name(event)}
    payload.update(dataclasses.asdict(event))
    if event_id is not None:
        payload["id"] = event_id
    return payload


__all__ = [
    "Activity",
    "CanonicalEvent",
    "Error",
    "Message",
    "SystemNotice",
    "Thinking",
    "TokenUsage",
    "ToolCall",
    "ToolResult",
    "event_to_dict",
    "event_type_name",
]
