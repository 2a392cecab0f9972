from __future__ import annotations

from typing import TYPE_CHECKING, Any, AsyncIterator, Optional, Union

from ..agent_configuration import AgentConfiguration
from ..cancellation import CancelToken

if TYPE_CHECKING:
    from ..permissions import PermissionResult

# Backend-native event: a decoded JSON object or a raw text line.
RawEvent = Union[dict[str, Any], str]


class AgentAdapter:
    """Owns one backend session (a spawned process or a client handle).

    Events are backend-native and only ever interpreted by the EventNormalizer.
    """

    flavor: str = "agent"

    async def start(
        self,
        prompt: str,
        configuration: AgentConfiguration,
        cancel_token: CancelToken,
        *,
        resume_token: Optional[str] = None,
    ) -> AsyncIterator[RawEvent]:
        raise NotImplementedError

    async def continue_turn(
        self, prompt: str, cancel_token: CancelToken
    ) -> AsyncIterator[RawEvent]:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError

    def has_active_session(self) -> bool:
        raise NotImplementedError

    async def resolve_permission(
        self, call_id: str, result: "PermissionResult"
    ) -> None:
        """Forward a remote decision to backends that block on approval."""
        return None

    async def run_interactive(self, cancel_token: CancelToken) -> Optional[int]:
        """Run with the local terminal attached until the backend exits."""
        raise NotImplementedError(f"{self.flavor} does not support local control")

    @property
    def supports_local_control(self) -> bool:
        return type(self).run_interactive is not AgentAdapter.run_interactive


__all__ = ["AgentAdapter", "RawEvent"]
