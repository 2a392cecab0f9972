"""Correlates tool approval requests with asynchronous remote decisions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from .agent_configuration import AgentConfiguration
from .agent_state import AgentState
from .exceptions import DuplicateCallId
from .logging_utils import log_event
from .time_utils import now_ms

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"


class PermissionDecision(str, Enum):
    APPROVED = "approved"
    APPROVED_FOR_SCOPE = "approved_for_session"
    DENIED = "denied"
    ABORT = "abort"

    @property
    def is_approval(self) -> bool:
        return self in (PermissionDecision.APPROVED, PermissionDecision.APPROVED_FOR_SCOPE)


@dataclass(frozen=True)
class PermissionResult:
    decision: PermissionDecision
    reason: Optional[str] = None
    allow_tools: tuple[str, ...] = ()
    # Produced by the broker itself (reset, timeout) rather than the principal.
    synthetic: bool = False

    @property
    def approved(self) -> bool:
        return self.decision.is_approval


DENIED_NO_BROKER = PermissionResult(
    PermissionDecision.DENIED, reason="no permission handler", synthetic=True
)


@dataclass
class PendingPermission:
    call_id: str
    tool_name: str
    input: Any
    created_at: int
    future: "asyncio.Future[PermissionResult]" = field(repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.call_id,
            "tool": self.tool_name,
            "arguments": self.input,
            "createdAt": self.created_at,
        }


StateListener = Callable[[AgentState], None]


def _status_for(decision: PermissionDecision, *, synthetic: bool) -> str:
    if decision.is_approval:
        return "approved"
    if synthetic and decision is PermissionDecision.ABORT:
        return "canceled"
    return "denied"


class PermissionBroker:
    """Ledger of outstanding approvals; every entry is settled exactly once."""

    def __init__(
        self,
        *,
        state: Optional[AgentState] = None,
        on_state_change: Optional[StateListener] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._pending: dict[str, PendingPermission] = {}
        self._scope_tools: set[str] = set()
        self._state = state or AgentState()
        self._on_state_change = on_state_change
        self._log = log or logger

    @property
    def state(self) -> AgentState:
        return self._state

    def _publish(self) -> None:
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(self._state)
        except Exception as exc:
            log_event(self._log, logging.WARNING, "permission.state_publish_failed", exc=exc)

    def enumerate_pending(self) -> list[PendingPermission]:
        return sorted(self._pending.values(), key=lambda entry: entry.created_at)

    def is_pending(self, call_id: str) -> bool:
        return call_id in self._pending

    def is_scope_approved(self, tool_name: str) -> bool:
        return tool_name in self._scope_tools

    def clear_scope(self) -> None:
        self._scope_tools.clear()

    def request_approval(
        self, call_id: str, tool_name: str, input: Any
    ) -> "asyncio.Future[PermissionResult]":
        if call_id in self._pending:
            log_event(
                self._log,
                logging.WARNING,
                "permission.duplicate_call_id",
                call_id=call_id,
                tool=tool_name,
            )
            raise DuplicateCallId(call_id)
        future: asyncio.Future[PermissionResult] = (
            asyncio.get_running_loop().create_future()
        )
        entry = PendingPermission(
            call_id=call_id,
            tool_name=tool_name,
            input=input,
            created_at=now_ms(),
            future=future,
        )
        # Registered before returning so viewers see it ahead of any fallback path.
        self._pending[call_id] = entry
        self._state.add_request(call_id, tool_name, input, entry.created_at)
        log_event(
            self._log,
            logging.INFO,
            "permission.requested",
            call_id=call_id,
            tool=tool_name,
        )
        self._publish()
        return future

    def settle(self, call_id: str, result: PermissionResult) -> bool:
        entry = self._pending.pop(call_id, None)
        if entry is None:
            log_event(
                self._log,
                logging.DEBUG,
                "permission.settle_unknown",
                call_id=call_id,
                decision=result.decision.value,
            )
            return False
        if result.decision is PermissionDecision.APPROVED_FOR_SCOPE:
            self._scope_tools.add(entry.tool_name)
            self._scope_tools.update(result.allow_tools)
        if not entry.future.done():
            entry.future.set_result(result)
        self._state.complete_request(
            call_id,
            status=_status_for(result.decision, synthetic=result.synthetic),
            decision=result.decision.value,
            reason=result.reason,
        )
        log_event(
            self._log,
            logging.INFO,
            "permission.settled",
            call_id=call_id,
            tool=entry.tool_name,
            decision=result.decision.value,
            reason=result.reason,
        )
        self._publish()
        return True

    def reset(self, reason: str) -> int:
        """Settle every pending entry with a synthetic abort; leaves zero residue."""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            if not entry.future.done():
                entry.future.set_result(
                    PermissionResult(
                        PermissionDecision.ABORT, reason=reason, synthetic=True
                    )
                )
            self._state.complete_request(
                entry.call_id,
                status="canceled",
                decision=PermissionDecision.ABORT.value,
                reason=reason,
            )
        if entries:
            log_event(
                self._log,
                logging.INFO,
                "permission.reset",
                reason=reason,
                settled=len(entries),
            )
            self._publish()
        return len(entries)

    async def wait_for_decision(
        self,
        call_id: str,
        future: "asyncio.Future[PermissionResult]",
        *,
        timeout: Optional[float] = None,
    ) -> PermissionResult:
        if timeout is None:
            return await asyncio.shield(future)
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            log_event(
                self._log,
                logging.WARNING,
                "permission.timeout",
                call_id=call_id,
                timeout_seconds=timeout,
            )
            self.settle(
                call_id,
                PermissionResult(
                    PermissionDecision.DENIED, reason=TIMEOUT_REASON, synthetic=True
                ),
            )
            return await future


def evaluate_policy(
    configuration: AgentConfiguration,
    tool_name: str,
    broker: Optional[PermissionBroker] = None,
) -> Optional[PermissionResult]:
    """Decide locally when the configuration already answers; None defers to the principal."""
    if tool_name in configuration.disallowed_tools:
        return PermissionResult(
            PermissionDecision.DENIED, reason="tool disallowed", synthetic=True
        )
    if configuration.permission_mode == "yolo":
        return PermissionResult(PermissionDecision.APPROVED, reason="yolo", synthetic=True)
    if tool_name in configuration.allowed_tools:
        return PermissionResult(
            PermissionDecision.APPROVED, reason="tool allowed", synthetic=True
        )
    if broker is not None and broker.is_scope_approved(tool_name):
        return PermissionResult(
            PermissionDecision.APPROVED, reason="approved for session", synthetic=True
        )
    if broker is None:
        return DENIED_NO_BROKER
    return None


def parse_remote_decision(payload: Mapping[str, Any]) -> tuple[str, PermissionResult]:
    """Map ``{id, approved, decision, reason, allowTools}`` from the principal."""
    call_id = payload.get("id") or payload.get("requestId") or payload.get("callId")
    if not isinstance(call_id, str) or not call_id:
        raise ValueError("permission response is missing an id")
    raw_decision = payload.get("decision")
    approved = bool(payload.get("approved"))
    if approved:
        decision = (
            PermissionDecision.APPROVED_FOR_SCOPE
            if raw_decision == PermissionDecision.APPROVED_FOR_SCOPE.value
            else PermissionDecision.APPROVED
        )
    elif raw_decision == PermissionDecision.DENIED.value:
        decision = PermissionDecision.DENIED
    else:
        decision = PermissionDecision.ABORT
    allow_tools = payload.get("allowTools") or ()
    if isinstance(allow_tools, str):
        allow_tools = (allow_tools,)
    reason = payload.get("reason")
    return call_id, PermissionResult(
        decision,
        reason=str(reason) if reason else None,
        allow_tools=tuple(str(tool) for tool in allow_tools),
    )


__all__ = [
    "DENIED_NO_BROKER",
    "PendingPermission",
    "PermissionBroker",
    "PermissionDecision",
    "PermissionResult",
    "TIMEOUT_REASON",
    "evaluate_policy",
    "parse_remote_decision",
]
