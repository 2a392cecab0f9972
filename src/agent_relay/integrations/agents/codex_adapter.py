from __future__ import annotations

from typing import Any, Mapping, Optional

from ...core.agent_configuration import AgentConfiguration
from ...core.ports.agent_adapter import RawEvent
from .subprocess_adapter import SubprocessAgentAdapter

_SANDBOX_ARGS = {
    "default": [],
    "read-only": ["--sandbox", "read-only"],
    "safe-yolo": ["--full-auto"],
    "yolo": ["--dangerously-bypass-approvals-and-sandbox"],
}


def _item_events(phase: str, item: Mapping[str, Any]) -> list[RawEvent]:
    item_type = item.get("type") or item.get("item_type")
    item_id = item.get("id")
    if item_type in ("agent_message", "assistant_message"):
        if phase != "completed":
            return []
        return [{"type": "message", "text": item.get("text") or ""}]
    if item_type == "reasoning":
        if phase != "completed":
            return []
        return [{"type": "reasoning", "text": item.get("text") or ""}]
    if item_type == "command_execution":
        if phase == "started":
            return [
                {
                    "type": "tool_call",
                    "call_id": item_id,
                    "name": "shell",
                    "arguments": {"command": item.get("command")},
                }
            ]
        if phase == "completed":
            exit_code = item.get("exit_code")
            return [
                {
                    "type": "tool_result",
                    "call_id": item_id,
                    "output": item.get("aggregated_output"),
                    "status": "failed" if exit_code not in (0, None) else "completed",
                }
            ]
        return []
    if item_type == "error":
        return [{"type": "error", "message": item.get("message") or ""}]
    return []


def translate_exec_event(payload: Mapping[str, Any]) -> list[RawEvent]:
    """Map ``codex exec --json`` envelopes onto the shared event vocabulary."""
    event_type = str(payload.get("type") or "")
    if event_type == "thread.started":
        return [{"type": "status", "session_id": payload.get("thread_id")}]
    if event_type == "turn.started":
        return [{"type": "task_started"}]
    if event_type == "turn.completed":
        usage = payload.get("usage")
        event: dict[str, Any] = {"type": "result"}
        if isinstance(usage, Mapping):
            event["stats"] = {
                "input_tokens": usage.get("input_tokens") or 0,
                "output_tokens": usage.get("output_tokens") or 0,
            }
        return [event]
    if event_type == "turn.failed":
        error = payload.get("error")
        message = error.get("message") if isinstance(error, Mapping) else None
        return [{"type": "error", "message": message or "Turn failed"}, {"type": "done"}]
    if event_type.startswith("item."):
        item = payload.get("item")
        if isinstance(item, Mapping):
            return _item_events(event_type[len("item."):], item)
        return []
    return [dict(payload)]


class CodexAdapter(SubprocessAgentAdapter):
    """``codex exec --json``; follow-up turns use ``codex exec resume``."""

    flavor = "codex"
    supports_resume = True

    def _common_args(self, configuration: AgentConfiguration) -> list[str]:
        args = list(_SANDBOX_ARGS[configuration.permission_mode])
        if configuration.model:
            args.extend(["--model", configuration.model])
        return args

    def build_args(
        self,
        prompt: str,
        configuration: AgentConfiguration,
        *,
        resume_token: Optional[str] = None,
    ) -> list[str]:
        args = ["exec", "--json", *self._common_args(configuration)]
        if resume_token:
            args.extend(["resume", resume_token])
        args.extend(["--", prompt])
        return args

    def build_interactive_args(self, configuration: AgentConfiguration) -> list[str]:
        args = self._common_args(configuration)
        if self.session_id:
            return ["resume", self.session_id, *args]
        return args

    def decode_line(self, line: str) -> list[RawEvent]:
        decoded: list[RawEvent] = []
        for event in super().decode_line(line):
            if isinstance(event, dict):
                decoded.extend(translate_exec_event(event))
            else:
                decoded.append(event)
        return decoded


__all__ = ["CodexAdapter", "translate_exec_event"]
