from __future__ import annotations

import json
from pathlib import Path

import pytest

from agent_relay.core.agent_configuration import AgentConfiguration
from agent_relay.core.config import AgentBinaryConfig, load_relay_config
from agent_relay.core.event_normalizer import EventNormalizer
from agent_relay.core.exceptions import AdapterStartFailed, ConfigError
from agent_relay.core.ports.run_event import Message, ToolCall, ToolResult
from agent_relay.integrations.agents import (
    ClaudeAdapter,
    CodexAdapter,
    CursorAdapter,
    GeminiAdapter,
    build_agent_adapter,
)
from agent_relay.integrations.agents.codex_adapter import translate_exec_event


def _binary(name: str = "agent", *extra: str) -> AgentBinaryConfig:
    return AgentBinaryConfig(binary=name, extra_args=list(extra))


def _normalize(adapter, lines: list[dict]) -> list:
    events: list = []
    normalizer = EventNormalizer(events.append, activity_debounce_seconds=0)
    for line in lines:
        for raw in adapter.decode_line(json.dumps(line)):
            normalizer.feed(raw)
    return events


def test_gemini_args() -> None:
    adapter = GeminiAdapter(_binary("gemini"))
    configuration = AgentConfiguration(
        permission_mode="safe-yolo", model="gemini-2.5-pro", allowed_tools=("Read", "Glob")
    )

    args = adapter.build_args("fix it", configuration)

    assert args == [
        "--output-format",
        "stream-json",
        "-m",
        "gemini-2.5-pro",
        "--approval-mode",
        "auto_edit",
        "--allowed-tools",
        "Read,Glob",
        "--prompt=fix it",
    ]
    assert "--approval-mode" not in adapter.build_args("x", AgentConfiguration(permission_mode="read-only"))


def test_gemini_drops_echoed_user_messages() -> None:
    adapter = GeminiAdapter(_binary())
    assert adapter.decode_line(json.dumps({"type": "message", "role": "user", "content": "hi"})) == []
    assert adapter.decode_line("plain text") == ["plain text"]
    assert adapter.decode_line("[1, 2]") == ["[1, 2]"]


def test_gemini_stream_normalizes() -> None:
    events = _normalize(
        GeminiAdapter(_binary()),
        [
            {"type": "init", "session_id": "g1"},
            {"type": "message", "role": "assistant", "content": "Hel", "delta": True},
            {"type": "message", "role": "assistant", "content": "lo", "delta": True},
            {"type": "tool_use", "tool_name": "read_file", "tool_id": "t1", "parameters": {"path": "a"}},
            {"type": "tool_result", "tool_id": "t1", "status": "success", "output": "contents"},
            {"type": "result", "stats": {"input_tokens": 1, "output_tokens": 2}},
        ],
    )

    messages = [event.text for event in events if isinstance(event, Message)]
    assert messages == ["Hello"]
    calls = [event for event in events if isinstance(event, ToolCall)]
    results = [event for event in events if isinstance(event, ToolResult)]
    assert calls[0].call_id == results[0].call_id == "t1"
    assert events.index(calls[0]) < events.index(results[0])


def test_claude_args_with_resume() -> None:
    adapter = ClaudeAdapter(_binary("claude"))
    configuration = AgentConfiguration(
        permission_mode="read-only",
        model="opus",
        append_system_prompt="Be brief.",
        disallowed_tools=("Bash",),
    )

    args = adapter.build_args("hello", configuration, resume_token="abc")

    assert args[:4] == ["-p", "--output-format", "stream-json", "--verbose"]
    assert args[args.index("--permission-mode") + 1] == "plan"
    assert args[args.index("--model") + 1] == "opus"
    assert args[args.index("--append-system-prompt") + 1] == "Be brief."
    assert args[args.index("--disallowedTools") + 1] == "Bash"
    assert args[-4:] == ["--resume", "abc", "--", "hello"]


@pytest.mark.parametrize(
    "adapter_cls, binary",
    [(ClaudeAdapter, "claude"), (CursorAdapter, "cursor-agent"), (CodexAdapter, "codex")],
)
def test_dash_prompt_follows_option_terminator(adapter_cls: type, binary: str) -> None:
    adapter = adapter_cls(_binary(binary))
    configuration = AgentConfiguration(allowed_tools=("Bash", "Read"))

    args = adapter.build_args("-fix the bug", configuration)

    assert args[-2:] == ["--", "-fix the bug"]


def test_claude_tool_lists_do_not_swallow_prompt() -> None:
    adapter = ClaudeAdapter(_binary("claude"))
    configuration = AgentConfiguration(allowed_tools=("Bash", "Read"), disallowed_tools=("Write",))

    args = adapter.build_args("hello", configuration)

    assert args[args.index("--allowedTools") + 1] == "Bash,Read"
    assert args[args.index("--disallowedTools") + 1] == "Write"
    assert args.index("--") > args.index("--disallowedTools") + 1
    assert args[-1] == "hello"


def test_gemini_dash_prompt_is_bound_to_its_option() -> None:
    adapter = GeminiAdapter(_binary("gemini"))

    args = adapter.build_args("-fix the bug", AgentConfiguration(allowed_tools=("Read",)))

    assert args[-1] == "--prompt=-fix the bug"
    assert args[args.index("--allowed-tools") + 1] == "Read"


def test_claude_flattens_content_blocks() -> None:
    adapter = ClaudeAdapter(_binary())
    line = json.dumps(
        {
            "type": "assistant",
            "session_id": "c1",
            "message": {
                "content": [
                    {"type": "thinking", "thinking": "plan"},
                    {"type": "text", "text": "Running ls"},
                    {"type": "tool_use", "id": "tu1", "name": "Bash", "input": {"command": "ls"}},
                ]
            },
        }
    )

    decoded = adapter.decode_line(line)

    assert [event["type"] for event in decoded] == ["thinking", "message", "tool_use"]
    assert all(event["session_id"] == "c1" for event in decoded)
    assert decoded[2]["tool_id"] == "tu1"


def test_claude_user_text_is_not_echoed() -> None:
    adapter = ClaudeAdapter(_binary())
    decoded = adapter.decode_line(
        json.dumps(
            {
                "type": "user",
                "message": {
                    "content": [
                        {"type": "text", "text": "my prompt"},
                        {"type": "tool_result", "tool_use_id": "tu1", "content": "out", "is_error": True},
                    ]
                },
            }
        )
    )
    assert decoded == [
        {"type": "tool_result", "tool_id": "tu1", "output": "out", "status": "error"}
    ]


def test_claude_error_result() -> None:
    adapter = ClaudeAdapter(_binary())
    decoded = adapter.decode_line(
        json.dumps({"type": "result", "is_error": True, "result": "quota", "session_id": "c1"})
    )
    assert decoded[0] == {"type": "error", "message": "quota"}
    assert decoded[1]["type"] == "result"


def test_cursor_tool_calls() -> None:
    adapter = CursorAdapter(_binary("cursor-agent"))
    started = adapter.decode_line(
        json.dumps(
            {
                "type": "tool_call",
                "subtype": "started",
                "call_id": "k1",
                "tool_call": {"readToolCall": {"args": {"path": "a.py"}}},
            }
        )
    )
    completed = adapter.decode_line(
        json.dumps(
            {
                "type": "tool_call",
                "subtype": "completed",
                "call_id": "k1",
                "tool_call": {"readToolCall": {"args": {}, "result": {"error": "missing"}}},
            }
        )
    )

    assert started == [
        {"type": "tool_call", "call_id": "k1", "name": "read", "arguments": {"path": "a.py"}}
    ]
    assert completed[0]["type"] == "tool_result"
    assert completed[0]["status"] == "error"


def test_cursor_args() -> None:
    adapter = CursorAdapter(_binary("cursor-agent"))
    args = adapter.build_args("go", AgentConfiguration(permission_mode="yolo", model="gpt-5"), resume_token="r1")
    assert args == ["-p", "--output-format", "stream-json", "--model", "gpt-5", "--force", "--resume", "r1", "--", "go"]


def test_codex_translation() -> None:
    assert translate_exec_event({"type": "thread.started", "thread_id": "th1"}) == [
        {"type": "status", "session_id": "th1"}
    ]
    assert translate_exec_event({"type": "turn.started"}) == [{"type": "task_started"}]
    assert translate_exec_event(
        {"type": "item.started", "item": {"id": "i1", "type": "command_execution", "command": "ls"}}
    ) == [{"type": "tool_call", "call_id": "i1", "name": "shell", "arguments": {"command": "ls"}}]
    completed = translate_exec_event(
        {
            "type": "item.completed",
            "item": {"id": "i1", "type": "command_execution", "exit_code": 2, "aggregated_output": "err"},
        }
    )
    assert completed[0]["status"] == "failed"
    assert translate_exec_event({"type": "item.started", "item": {"type": "agent_message"}}) == []
    failed = translate_exec_event({"type": "turn.failed", "error": {"message": "boom"}})
    assert failed == [{"type": "error", "message": "boom"}, {"type": "done"}]


def test_codex_stream_normalizes_usage() -> None:
    events = _normalize(
        CodexAdapter(_binary("codex")),
        [
            {"type": "thread.started", "thread_id": "th1"},
            {"type": "turn.started"},
            {"type": "item.completed", "item": {"id": "m1", "type": "agent_message", "text": "Done."}},
            {"type": "turn.completed", "usage": {"input_tokens": 10, "output_tokens": 5}},
        ],
    )
    assert [event.text for event in events if isinstance(event, Message)] == ["Done."]
    assert events[-2].usage["output_tokens"] == 5


def test_codex_args() -> None:
    adapter = CodexAdapter(_binary("codex"))
    assert adapter.build_args("go", AgentConfiguration(permission_mode="read-only")) == [
        "exec",
        "--json",
        "--sandbox",
        "read-only",
        "--",
        "go",
    ]
    assert adapter.build_args("go", AgentConfiguration(), resume_token="th1") == [
        "exec",
        "--json",
        "resume",
        "th1",
        "--",
        "go",
    ]


def test_missing_binary_fails_to_start() -> None:
    adapter = GeminiAdapter(_binary("definitely-not-installed-agent-relay"))
    with pytest.raises(AdapterStartFailed) as excinfo:
        adapter.resolve_binary()
    assert "not found on PATH" in str(excinfo.value)


def test_command_includes_extra_args(tmp_path: Path) -> None:
    binary = tmp_path / "agent"
    binary.write_text("#!/bin/sh\n", encoding="utf-8")
    binary.chmod(0o755)
    adapter = GeminiAdapter(_binary(str(binary), "--sandbox"))
    assert adapter.command(["-p", "x"]) == [str(binary), "--sandbox", "-p", "x"]


def test_build_agent_adapter(tmp_path: Path) -> None:
    config = load_relay_config(tmp_path, env={})
    adapter = build_agent_adapter("claude", config, cwd=tmp_path)
    assert isinstance(adapter, ClaudeAdapter)
    assert adapter.supports_resume
    assert adapter.supports_local_control
    with pytest.raises(ConfigError):
        build_agent_adapter("copilot", config)
