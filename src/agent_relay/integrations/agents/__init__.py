from .claude_adapter import ClaudeAdapter
from .codex_adapter import CodexAdapter
from .cursor_adapter import CursorAdapter
from .gemini_adapter import GeminiAdapter
from .subprocess_adapter import SubprocessAgentAdapter
from .wiring import ADAPTER_TYPES, build_agent_adapter

__all__ = [
    "ADAPTER_TYPES",
    "ClaudeAdapter",
    "CodexAdapter",
    "CursorAdapter",
    "GeminiAdapter",
    "SubprocessAgentAdapter",
    "build_agent_adapter",
]
