"""JSON-lines transport over stdin/stdout.

Inbound lines drive the session (messages, permission decisions, abort,
kill, local handover); outbound lines carry canonical events and observer
notifications.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from typing import Any, Callable, Mapping, Optional

from ...core.agent_configuration import ConfigurationTracker
from ...core.identifiers import IdentifierSnapshot
from ...core.logging_utils import log_event
from ...core.mode_controller import ControlMode
from ...core.permissions import parse_remote_decision
from ...core.ports.run_event import CanonicalEvent, event_to_dict
from ...core.ports.sink import SessionObserver
from ...core.session_lifecycle import SessionLifecycle
from ...core.session_metadata import SessionMetadata

logger = logging.getLogger(__name__)

WriteLine = Callable[[str], None]


def _stdout_write_line(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


class JsonLinesSink(SessionObserver):
    """Writes canonical events and observer notifications as JSON lines."""

    def __init__(self, write_line: Optional[WriteLine] = None) -> None:
        self._write_line = write_line or _stdout_write_line

    def _write(self, payload: Mapping[str, Any]) -> None:
        self._write_line(json.dumps(payload, ensure_ascii=False, default=str))

    async def emit(self, event: CanonicalEvent) -> None:
        self._write(event_to_dict(event, event_id=uuid.uuid4().hex))

    async def on_mode_change(self, mode: ControlMode) -> None:
        self._write({"type": "mode", "mode": mode.value})

    async def on_ready(self) -> None:
        self._write({"type": "ready"})

    async def on_session_found(self, identifiers: IdentifierSnapshot) -> None:
        self._write(
            {
                "type": "session",
                "sessionId": identifiers.session_id,
                "conversationId": identifiers.conversation_id,
            }
        )

    async def on_metadata(self, metadata: SessionMetadata) -> None:
        self._write({"type": "metadata", "metadata": metadata.to_dict()})

    async def on_agent_state(self, state: dict[str, Any]) -> None:
        self._write({"type": "state", "state": state})

    async def on_keep_alive(self, thinking: bool, mode: ControlMode) -> None:
        self._write({"type": "keepalive", "thinking": thinking, "mode": mode.value})


class StdioTransport:
    def __init__(
        self,
        lifecycle: SessionLifecycle,
        tracker: ConfigurationTracker,
        *,
        on_local_request: Optional[Callable[[], None]] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._tracker = tracker
        self._on_local_request = on_local_request
        self._log = log or logger

    def handle_line(self, line: str) -> None:
        text = line.strip()
        if not text:
            return
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            payload = {"type": "message", "text": text}
        if not isinstance(payload, dict):
            log_event(self._log, logging.WARNING, "stdio.invalid_payload", line=text)
            return
        self.handle_payload(payload)

    def handle_payload(self, payload: Mapping[str, Any]) -> None:
        kind = payload.get("type")
        if kind == "message":
            self._handle_message(payload)
        elif kind == "permission":
            self._handle_permission(payload)
        elif kind == "abort":
            self._lifecycle.abort()
        elif kind == "kill":
            self._lifecycle.kill()
        elif kind == "local":
            if self._on_local_request is None:
                log_event(self._log, logging.INFO, "stdio.local_unsupported")
            else:
                self._on_local_request()
        else:
            log_event(self._log, logging.WARNING, "stdio.unknown_type", type=kind)

    def _handle_message(self, payload: Mapping[str, Any]) -> None:
        text = payload.get("text")
        if not isinstance(text, str) or not text.strip():
            log_event(self._log, logging.WARNING, "stdio.empty_message")
            return
        meta = payload.get("meta")
        configuration = self._tracker.resolve(meta if isinstance(meta, Mapping) else None)
        try:
            self._lifecycle.submit(text, configuration)
        except RuntimeError as exc:
            log_event(self._log, logging.WARNING, "stdio.message_after_close", exc=exc)

    def _handle_permission(self, payload: Mapping[str, Any]) -> None:
        try:
            call_id, result = parse_remote_decision(payload)
        except ValueError as exc:
            log_event(self._log, logging.WARNING, "stdio.invalid_permission", exc=exc)
            return
        self._lifecycle.on_permission_decision(call_id, result)

    async def pump(self, reader: asyncio.StreamReader) -> None:
        """Feed inbound lines until EOF, then close the queue."""
        try:
            async for raw_line in reader:
                self.handle_line(raw_line.decode("utf-8", errors="replace"))
        finally:
            if not self._lifecycle.queue.closed:
                self._lifecycle.queue.close()
            log_event(self._log, logging.INFO, "stdio.input_closed")


async def open_stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


__all__ = ["JsonLinesSink", "StdioTransport", "open_stdin_reader"]
