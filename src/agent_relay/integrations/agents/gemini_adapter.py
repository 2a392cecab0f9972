from __future__ import annotations

from typing import Optional

from ...core.agent_configuration import AgentConfiguration
from ...core.ports.agent_adapter import RawEvent
from .subprocess_adapter import SubprocessAgentAdapter

# read-only has no gemini equivalent; it runs with default approvals.
_APPROVAL_MODES = {
    "default": None,
    "read-only": None,
    "safe-yolo": "auto_edit",
    "yolo": "yolo",
}


class GeminiAdapter(SubprocessAgentAdapter):
    """``gemini -p <prompt> --output-format stream-json``; one process per turn."""

    flavor = "gemini"

    def _common_args(self, configuration: AgentConfiguration) -> list[str]:
        args: list[str] = []
        if configuration.model:
            args.extend(["-m", configuration.model])
        approval_mode = _APPROVAL_MODES.get(configuration.permission_mode)
        if approval_mode:
            args.extend(["--approval-mode", approval_mode])
        if configuration.allowed_tools:
            args.extend(["--allowed-tools", ",".join(configuration.allowed_tools)])
        return args

    def build_args(
        self,
        prompt: str,
        configuration: AgentConfiguration,
        *,
        resume_token: Optional[str] = None,
    ) -> list[str]:
        return [
            "--output-format",
            "stream-json",
            *self._common_args(configuration),
            f"--prompt={prompt}",
        ]

    def build_interactive_args(self, configuration: AgentConfiguration) -> list[str]:
        return self._common_args(configuration)

    def decode_line(self, line: str) -> list[RawEvent]:
        events = super().decode_line(line)
        # stream-json echoes the user prompt back as a message.
        return [
            event
            for event in events
            if not (isinstance(event, dict) and event.get("role") == "user")
        ]


__all__ = ["GeminiAdapter"]
