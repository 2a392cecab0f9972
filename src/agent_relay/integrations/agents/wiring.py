from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional

from ...core.config import AGENT_FLAVORS, RelayConfig
from ...core.exceptions import ConfigError
from .claude_adapter import ClaudeAdapter
from .codex_adapter import CodexAdapter
from .cursor_adapter import CursorAdapter
from .gemini_adapter import GeminiAdapter
from .subprocess_adapter import SubprocessAgentAdapter

ADAPTER_TYPES: dict[str, type[SubprocessAgentAdapter]] = {
    "gemini": GeminiAdapter,
    "cursor": CursorAdapter,
    "claude": ClaudeAdapter,
    "codex": CodexAdapter,
}


def build_agent_adapter(
    flavor: str,
    config: RelayConfig,
    *,
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> SubprocessAgentAdapter:
    if flavor not in AGENT_FLAVORS or flavor not in ADAPTER_TYPES:
        raise ConfigError(
            f"Unknown agent flavor: {flavor} (expected one of {', '.join(AGENT_FLAVORS)})"
        )
    adapter_type = ADAPTER_TYPES[flavor]
    return adapter_type(
        config.agent(flavor),
        cwd=cwd,
        env=env,
        terminate_grace_seconds=config.session.terminate_grace_seconds,
        log=logging.getLogger(f"agent_relay.agents.{flavor}"),
    )


__all__ = ["ADAPTER_TYPES", "build_agent_adapter"]
