from .agent_adapter import AgentAdapter, RawEvent
from .run_event import (
    Activity,
    CanonicalEvent,
    Error,
    Message,
    SystemNotice,
    Thinking,
    TokenUsage,
    ToolCall,
    ToolResult,
    event_to_dict,
)
from .sink import EventSink, SessionObserver

__all__ = [
    "Activity",
    "AgentAdapter",
    "CanonicalEvent",
    "Error",
    "EventSink",
    "Message",
    "RawEvent",
    "SessionObserver",
    "SystemNotice",
    "Thinking",
    "TokenUsage",
    "ToolCall",
    "ToolResult",
    "event_to_dict",
]
