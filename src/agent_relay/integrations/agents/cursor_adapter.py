from __future__ import annotations

from typing import Any, Mapping, Optional

from ...core.agent_configuration import AgentConfiguration
from ...core.ports.agent_adapter import RawEvent
from .claude_adapter import flatten_stream_json
from .subprocess_adapter import SubprocessAgentAdapter


def _tool_call_event(payload: Mapping[str, Any]) -> RawEvent:
    # cursor-agent nests the call under a single "<name>ToolCall" key.
    tool_call = payload.get("tool_call")
    name = "unknown"
    arguments: Any = {}
    result: Any = None
    if isinstance(tool_call, Mapping) and tool_call:
        key, body = next(iter(tool_call.items()))
        name = key[: -len("ToolCall")] if key.endswith("ToolCall") else key
        if isinstance(body, Mapping):
            arguments = body.get("args") or {}
            result = body.get("result")
    call_id = payload.get("call_id")
    if payload.get("subtype") == "completed":
        failed = isinstance(result, Mapping) and "error" in result
        return {
            "type": "tool_result",
            "call_id": call_id,
            "output": result,
            "status": "error" if failed else "success",
        }
    return {"type": "tool_call", "call_id": call_id, "name": name, "arguments": arguments}


class CursorAdapter(SubprocessAgentAdapter):
    """``cursor-agent -p --output-format stream-json``; resumes with ``--resume``."""

    flavor = "cursor"
    supports_resume = True

    def _common_args(self, configuration: AgentConfiguration) -> list[str]:
        args: list[str] = []
        if configuration.model:
            args.extend(["--model", configuration.model])
        if configuration.permission_mode == "yolo":
            args.append("--force")
        return args

    def build_args(
        self,
        prompt: str,
        configuration: AgentConfiguration,
        *,
        resume_token: Optional[str] = None,
    ) -> list[str]:
        args = ["-p", "--output-format", "stream-json"]
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
            if not isinstance(event, dict):
                decoded.append(event)
            elif event.get("type") == "tool_call":
                decoded.append(_tool_call_event(event))
            elif event.get("type") == "result":
                # The result text repeats the assistant messages already streamed.
                decoded.append({"type": "result", "session_id": event.get("session_id")})
            else:
                decoded.extend(flatten_stream_json(event))
        return decoded


__all__ = ["CursorAdapter"]
