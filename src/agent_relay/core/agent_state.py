from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Optional

from .time_utils import now_ms


@dataclass
class AgentState:
    """Mirror of the state published to the remote principal.

    ``requests`` holds outstanding tool approvals keyed by call id;
    ``completed_requests`` keeps the outcome of settled ones.
    """

    controlled_by_user: bool = False
    requests: dict[str, dict[str, Any]] = field(default_factory=dict)
    completed_requests: dict[str, dict[str, Any]] = field(default_factory=dict)

    def add_request(self, call_id: str, tool: str, arguments: Any, created_at: int) -> None:
        self.requests[call_id] = {
            "tool": tool,
            "arguments": arguments,
            "createdAt": created_at,
        }

    def complete_request(
        self,
        call_id: str,
        *,
        status: str,
        decision: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        request = self.requests.pop(call_id, None)
        if request is None:
            return
        completed = dict(request)
        completed["completedAt"] = now_ms()
        completed["status"] = status
        if decision is not None:
            completed["decision"] = decision
        if reason is not None:
            completed["reason"] = reason
        self.completed_requests[call_id] = completed

    def to_dict(self) -> dict[str, Any]:
        return {
            "controlledByUser": self.controlled_by_user,
            "requests": copy.deepcopy(self.requests),
            "completedRequests": copy.deepcopy(self.completed_requests),
        }


__all__ = ["AgentState"]
