from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

from .run_event import CanonicalEvent

if TYPE_CHECKING:
    from ..identifiers import IdentifierSnapshot
    from ..mode_controller import ControlMode
    from ..session_metadata import SessionMetadata


class EventSink(Protocol):
    """Transport collaborator; receives canonical events one at a time in order."""

    async def emit(self, event: CanonicalEvent) -> None: ...


class SessionObserver:
    """Lifecycle callbacks for a supervising process. All hooks default to no-ops."""

    async def on_mode_change(self, mode: "ControlMode") -> None:
        return None

    async def on_ready(self) -> None:
        return None

    async def on_session_found(self, identifiers: "IdentifierSnapshot") -> None:
        return None

    async def on_metadata(self, metadata: "SessionMetadata") -> None:
        return None

    async def on_agent_state(self, state: dict[str, Any]) -> None:
        return None

    async def on_keep_alive(self, thinking: bool, mode: "ControlMode") -> None:
        return None


__all__ = ["EventSink", "SessionObserver"]
