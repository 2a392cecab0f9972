"""Per-message agent configuration and its fingerprint.

A fingerprint decides whether queued work can share the running backend
session or needs a fresh one.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Iterable, Mapping, Optional

from .config import PERMISSION_MODES
from .logging_utils import log_event

logger = logging.getLogger(__name__)

DEFAULT_PERMISSION_MODE = "default"

# meta key -> AgentConfiguration field
_META_FIELDS = {
    "model": "model",
    "fallbackModel": "fallback_model",
    "customSystemPrompt": "custom_system_prompt",
    "appendSystemPrompt": "append_system_prompt",
    "allowedTools": "allowed_tools",
    "disallowedTools": "disallowed_tools",
}


def _normalize_tools(tools: Optional[Iterable[Any]]) -> tuple[str, ...]:
    if not tools:
        return ()
    if isinstance(tools, str):
        tools = [tools]
    cleaned = {str(tool).strip() for tool in tools if str(tool).strip()}
    return tuple(sorted(cleaned))


def _normalize_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


@dataclass(frozen=True)
class AgentConfiguration:
    permission_mode: str = DEFAULT_PERMISSION_MODE
    model: Optional[str] = None
    fallback_model: Optional[str] = None
    custom_system_prompt: Optional[str] = None
    append_system_prompt: Optional[str] = None
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()

    def normalized(self) -> "AgentConfiguration":
        mode = self.permission_mode if self.permission_mode in PERMISSION_MODES else None
        return AgentConfiguration(
            permission_mode=mode or DEFAULT_PERMISSION_MODE,
            model=_normalize_text(self.model),
            fallback_model=_normalize_text(self.fallback_model),
            custom_system_prompt=_normalize_text(self.custom_system_prompt),
            append_system_prompt=_normalize_text(self.append_system_prompt),
            allowed_tools=_normalize_tools(self.allowed_tools),
            disallowed_tools=_normalize_tools(self.disallowed_tools),
        )

    def to_dict(self) -> dict[str, Any]:
        normalized = self.normalized()
        payload: dict[str, Any] = {"permission_mode": normalized.permission_mode}
        for field_name in _META_FIELDS.values():
            value = getattr(normalized, field_name)
            if value:
                payload[field_name] = list(value) if isinstance(value, tuple) else value
        return payload


def deterministic_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def fingerprint(configuration: AgentConfiguration) -> str:
    """sha256 over the normalized fields; equal iff configurations are interchangeable."""
    encoded = deterministic_json(configuration.to_dict()).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class ConfigurationTracker:
    """Tracks sticky configuration overrides carried on inbound message meta."""

    def __init__(self, initial: Optional[AgentConfiguration] = None) -> None:
        self._current = (initial or AgentConfiguration()).normalized()

    @property
    def current(self) -> AgentConfiguration:
        return self._current

    def resolve(self, meta: Optional[Mapping[str, Any]]) -> AgentConfiguration:
        meta = meta if isinstance(meta, Mapping) else {}
        updated = self._current
        mode = meta.get("permissionMode")
        if "permissionMode" in meta and not mode:
            updated = replace(updated, permission_mode=DEFAULT_PERMISSION_MODE)
        elif mode:
            if mode in PERMISSION_MODES:
                updated = replace(updated, permission_mode=str(mode))
            else:
                log_event(
                    logger,
                    logging.WARNING,
                    "configuration.invalid_permission_mode",
                    permission_mode=mode,
                )
        for meta_key, field_name in _META_FIELDS.items():
            if meta_key not in meta:
                continue
            value = meta.get(meta_key)
            if field_name.endswith("_tools"):
                updated = replace(updated, **{field_name: _normalize_tools(value)})
            else:
                updated = replace(updated, **{field_name: _normalize_text(value)})
        updated = updated.normalized()
        if updated != self._current:
            log_event(
                logger,
                logging.DEBUG,
                "configuration.updated",
                configuration=updated.to_dict(),
            )
        self._current = updated
        return updated


__all__ = [
    "AgentConfiguration",
    "ConfigurationTracker",
    "DEFAULT_PERMISSION_MODE",
    "deterministic_json",
    "fingerprint",
]
