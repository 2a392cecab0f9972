from __future__ import annotations

from typing import Any, Mapping, Optional

from ...core.agent_configuration import AgentConfiguration
from ...core.ports.agent_adapter import RawEvent
from .subprocess_adapter import SubprocessAgentAdapter

_PERMISSION_MODES = {
    "default": "default",
    "read-only": "plan",
    "safe-yolo": "acceptEdits",
    "yolo": "bypassPermissions",
}


def _usage_stats(payload: Mapping[str, Any]) -> Optional[dict[str, Any]]:
    usage = payload.get("usage")
    if not isinstance(usage, Mapping):
        return None
    return {
        "input_tokens": usage.get("input_tokens") or 0,
        "output_tokens": usage.get("output_tokens") or 0,
    }


def flatten_content_blocks(payload: Mapping[str, Any]) -> list[RawEvent]:
    """Expand an ``assistant``/``user`` envelope into one event per content block."""
    message = payload.get("message")
    content = message.get("content") if isinstance(message, Mapping) else None
    if isinstance(content, str):
        content = [{"type": "text", "text": content}]
    if not isinstance(content, list):
        return []
    session_id = payload.get("session_id")
    events: list[RawEvent] = []
    for block in content:
        if not isinstance(block, Mapping):
            continue
        block_type = block.get("type")
        event: Optional[dict[str, Any]] = None
        if block_type == "text" and payload.get("type") == "assistant":
            event = {"type": "message", "text": block.get("text") or ""}
        elif block_type == "thinking":
            event = {"type": "thinking", "text": block.get("thinking") or ""}
        elif block_type == "tool_use":
            event = {
                "type": "tool_use",
                "tool_id": block.get("id"),
                "tool_name": block.get("name"),
                "parameters": block.get("input") or {},
            }
        elif block_type == "tool_result":
            event = {
                "type": "tool_result",
                "tool_id": block.get("tool_use_id"),
                "output": block.get("content"),
                "status": "error" if block.get("is_error") else "success",
            }
        if event is None:
            continue
        if session_id:
            event["session_id"] = session_id
        events.append(event)
    return events


def flatten_stream_json(payload: Mapping[str, Any]) -> list[RawEvent]:
    event_type = payload.get("type")
    if event_type in ("assistant", "user"):
        return flatten_content_blocks(payload)
    if event_type == "system":
        # Session init carries ids and tool lists, nothing to show.
        return [{"type": "status", "session_id": payload.get("session_id")}]
    if event_type == "result":
        event: dict[str, Any] = {"type": "result", "session_id": payload.get("session_id")}
        stats = _usage_stats(payload)
        if stats is not None:
            event["stats"] = stats
        if payload.get("is_error"):
            return [{"type": "error", "message": payload.get("result") or "Agent error"}, event]
        return [event]
    return [dict(payload)]


class ClaudeAdapter(SubprocessAgentAdapter):
    """``claude -p --output-format stream-json``; resumes with ``--resume``."""

    flavor = "claude"
    supports_resume = True

    def _common_args(self, configuration: AgentConfiguration) -> list[str]:
        args = ["--permission-mode", _PERMISSION_MODES[configuration.permission_mode]]
        if configuration.model:
            args.extend(["--model", configuration.model])
        if configuration.fallback_model:
            args.extend(["--fallback-model", configuration.fallback_model])
        if configuration.custom_system_prompt:
            args.extend(["--system-prompt", configuration.custom_system_prompt])
        if configuration.append_system_prompt:
            args.extend(["--append-system-prompt", configuration.append_system_prompt])
        if configuration.allowed_tools:
            args.extend(["--allowedTools", ",".join(configuration.allowed_tools)])
        if configuration.disallowed_tools:
            args.extend(["--disallowedTools", ",".join(configuration.disallowed_tools)])
        return args

    def build_args(
        self,
        prompt: str,
        configuration: AgentConfiguration,
        *,
        resume_token: Optional[str] = None,
    ) -> list[str]:
        args = ["-p", "--output-format", "stream-json", "--verbose"]
        args.extend(self._common_args(configuration))
        if resume_token:
            args.extend(["--resume", resume_token])
        args.extend(["--", prompt])
        return args

    def build_interactive_args(self, configuration: AgentConfiguration) -> list[str]:
        args = self._common_args(configuration)
        if self.session_id:
            args.extend(["--resume", self.session_id])
        return args

    def decode_line(self, line: str) -> list[RawEvent]:
        decoded: list[RawEvent] = []
        for event in super().decode_line(line):
            if isinstance(event, dict):
                decoded.extend(flatten_stream_json(event))
            else:
                decoded.append(event)
        return decoded


__all__ = ["ClaudeAdapter", "flatten_content_blocks", "flatten_stream_json"]
