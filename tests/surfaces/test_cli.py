from __future__ import annotations

import json
import sys
from pathlib import Path

from typer.testing import CliRunner

from agent_relay import __version__
from agent_relay.core.config import load_relay_config
from agent_relay.surfaces.cli.cli import app
from agent_relay.surfaces.cli.commands.doctor import collect_checks

runner = CliRunner()


def _write_agents(home: Path, binary: str) -> None:
    home.mkdir(parents=True, exist_ok=True)
    (home / "config.yml").write_text(
        "agents:\n"
        "  gemini:\n"
        f"    binary: {binary}\n"
        "  cursor:\n"
        "    binary: missing-cursor-agent-binary\n"
        "  claude:\n"
        "    binary: missing-claude-binary\n"
        "  codex:\n"
        "    binary: missing-codex-binary\n",
        encoding="utf-8",
    )


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.stdout.startswith("agent-relay ")
    assert result.stdout.strip().split()[-1]
    assert __version__


def test_help_lists_commands() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("run", "doctor", "config"):
        assert command in result.stdout


def test_config_prints_effective_configuration(relay_home: Path) -> None:
    result = runner.invoke(app, ["config", "--home", str(relay_home)])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["home_dir"] == str(relay_home)
    assert payload["session"]["activity_debounce_seconds"] == 0.5
    assert payload["agents"]["codex"]["binary"] == "codex"
    assert payload["log"]["level"] == "INFO"


def test_config_reports_invalid_file(relay_home: Path) -> None:
    relay_home.mkdir(parents=True)
    (relay_home / "config.yml").write_text("session: [broken\n", encoding="utf-8")

    result = runner.invoke(app, ["config", "--home", str(relay_home)])

    assert result.exit_code == 1


def test_doctor_json_with_one_agent_installed(relay_home: Path) -> None:
    _write_agents(relay_home, sys.executable)

    result = runner.invoke(app, ["doctor", "--home", str(relay_home), "--json"])

    assert result.exit_code == 0
    checks = {check["name"]: check for check in json.loads(result.stdout)}
    assert checks["home"]["status"] == "ok"
    assert checks["agent.gemini"]["status"] == "ok"
    assert checks["agent.claude"]["status"] == "warning"
    assert "agents" not in checks


def test_doctor_fails_without_any_agent(relay_home: Path) -> None:
    _write_agents(relay_home, "missing-gemini-binary")

    result = runner.invoke(app, ["doctor", "--home", str(relay_home)])

    assert result.exit_code == 1
    assert "No supported agent CLI is installed" in result.stdout


def test_collect_checks_reports_fix_hint(relay_home: Path) -> None:
    _write_agents(relay_home, "missing-gemini-binary")
    checks = collect_checks(load_relay_config(relay_home))
    gemini = next(check for check in checks if check.name == "agent.gemini")
    assert gemini.fix is not None and "agents.gemini.binary" in gemini.fix


def test_run_rejects_unknown_agent(relay_home: Path) -> None:
    result = runner.invoke(app, ["run", "--agent", "copilot", "--home", str(relay_home)])
    assert result.exit_code == 1


def test_run_rejects_missing_workdir(relay_home: Path, tmp_path: Path) -> None:
    result = runner.invoke(
        app,
        ["run", "--agent", "claude", "--home", str(relay_home), "--cwd", str(tmp_path / "nope")],
    )
    assert result.exit_code == 1
