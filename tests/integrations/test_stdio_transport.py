from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from agent_relay.core.agent_configuration import ConfigurationTracker
from agent_relay.core.identifiers import IdentifierSnapshot
from agent_relay.core.message_queue import MessageQueue
from agent_relay.core.mode_controller import ControlMode
from agent_relay.core.permissions import PermissionDecision
from agent_relay.core.ports.run_event import Message, ToolCall
from agent_relay.core.session_metadata import build_session_metadata
from agent_relay.integrations.stdio import JsonLinesSink, StdioTransport


def _transport(**kwargs) -> tuple[StdioTransport, MagicMock]:
    lifecycle = MagicMock()
    lifecycle.queue = MessageQueue()
    return StdioTransport(lifecycle, ConfigurationTracker(), **kwargs), lifecycle


def test_message_resolves_sticky_configuration() -> None:
    transport, lifecycle = _transport()

    transport.handle_line(json.dumps({"type": "message", "text": "hi", "meta": {"permissionMode": "yolo"}}))
    transport.handle_line(json.dumps({"type": "message", "text": "again"}))

    first, second = lifecycle.submit.call_args_list
    assert first.args[0] == "hi"
    assert first.args[1].permission_mode == "yolo"
    assert second.args[1].permission_mode == "yolo"


def test_plain_text_line_is_a_message() -> None:
    transport, lifecycle = _transport()
    transport.handle_line("just text\n")
    lifecycle.submit.assert_called_once()
    assert lifecycle.submit.call_args.args[0] == "just text"


def test_blank_and_invalid_payloads_are_ignored() -> None:
    transport, lifecycle = _transport()
    transport.handle_line("   ")
    transport.handle_line("[1, 2]")
    transport.handle_line(json.dumps({"type": "message", "text": "  "}))
    transport.handle_line(json.dumps({"type": "mystery"}))
    lifecycle.submit.assert_not_called()


def test_message_after_close_is_logged_not_raised() -> None:
    transport, lifecycle = _transport()
    lifecycle.submit.side_effect = RuntimeError("MessageQueue is closed")
    transport.handle_line(json.dumps({"type": "message", "text": "late"}))


def test_permission_routes_to_lifecycle() -> None:
    transport, lifecycle = _transport()

    transport.handle_payload({"type": "permission", "id": "t1", "approved": True})
    transport.handle_payload({"type": "permission", "approved": True})

    lifecycle.on_permission_decision.assert_called_once()
    call_id, result = lifecycle.on_permission_decision.call_args.args
    assert call_id == "t1"
    assert result.decision is PermissionDecision.APPROVED


def test_control_payloads() -> None:
    requested = []
    transport, lifecycle = _transport(on_local_request=lambda: requested.append(True))

    transport.handle_payload({"type": "abort"})
    transport.handle_payload({"type": "kill"})
    transport.handle_payload({"type": "local"})

    lifecycle.abort.assert_called_once_with()
    lifecycle.kill.assert_called_once_with()
    assert requested == [True]


def test_local_request_without_handler_is_ignored() -> None:
    transport, lifecycle = _transport()
    transport.handle_payload({"type": "local"})
    lifecycle.abort.assert_not_called()


@pytest.mark.anyio
async def test_pump_closes_queue_at_eof() -> None:
    transport, lifecycle = _transport()
    reader = asyncio.StreamReader()
    reader.feed_data(b'{"type": "message", "text": "one"}\nplain\n')
    reader.feed_eof()

    await asyncio.wait_for(transport.pump(reader), timeout=1.0)

    assert lifecycle.submit.call_count == 2
    assert lifecycle.queue.closed


@pytest.mark.anyio
async def test_sink_writes_json_lines(tmp_path: Path) -> None:
    lines: list[str] = []
    sink = JsonLinesSink(lines.append)
    identifiers = IdentifierSnapshot(session_id="s1", conversation_id=None)

    await sink.emit(Message("hello"))
    await sink.emit(ToolCall(name="Bash", call_id="t1", input={"command": "ls"}))
    await sink.on_ready()
    await sink.on_mode_change(ControlMode.LOCAL)
    await sink.on_session_found(identifiers)
    await sink.on_keep_alive(True, ControlMode.REMOTE)
    await sink.on_metadata(build_session_metadata(flavor="claude", relay_home_dir=tmp_path, cwd=tmp_path))

    payloads = [json.loads(line) for line in lines]
    assert payloads[0]["type"] == "message"
    assert payloads[0]["text"] == "hello"
    assert payloads[0]["id"]
    assert payloads[1]["type"] == "tool-call"
    assert payloads[1]["input"] == {"command": "ls"}
    assert payloads[2] == {"type": "ready"}
    assert payloads[3] == {"type": "mode", "mode": "local"}
    assert payloads[4] == {"type": "session", "sessionId": "s1", "conversationId": None}
    assert payloads[5] == {"type": "keepalive", "thinking": True, "mode": "remote"}
    metadata = payloads[6]["metadata"]
    assert metadata["flavor"] == "claude"
    assert metadata["lifecycle_state"] == "running"
    assert metadata["started_from_daemon"] is False
    assert "archived_by" not in metadata
