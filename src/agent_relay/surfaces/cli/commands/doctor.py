from __future__ import annotations

import json
import os
import shutil
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

import typer

from ....core.config import AGENT_FLAVORS, ConfigError, RelayConfig, load_relay_config
from .utils import raise_exit


@dataclass(frozen=True)
class DoctorCheck:
    name: str
    status: str
    message: str
    fix: Optional[str] = None


def _binary_check(config: RelayConfig, flavor: str) -> DoctorCheck:
    binary = config.agent(flavor).binary
    resolved = shutil.which(binary)
    if resolved:
        return DoctorCheck(f"agent.{flavor}", "ok", f"{flavor}: {resolved}")
    return DoctorCheck(
        f"agent.{flavor}",
        "warning",
        f"{flavor}: {binary} not found on PATH",
        fix=f"Install {binary} or set agents.{flavor}.binary in config.yml",
    )


def collect_checks(config: RelayConfig) -> list[DoctorCheck]:
    checks: list[DoctorCheck] = []
    if os.access(config.home_dir, os.W_OK):
        checks.append(DoctorCheck("home", "ok", f"Home directory: {config.home_dir}"))
    else:
        checks.append(
            DoctorCheck(
                "home",
                "error",
                f"Home directory is not writable: {config.home_dir}",
                fix="Set AGENT_RELAY_HOME to a writable directory",
            )
        )
    checks.extend(_binary_check(config, flavor) for flavor in AGENT_FLAVORS)
    if not any(check.status == "ok" for check in checks if check.name.startswith("agent.")):
        checks.append(
            DoctorCheck("agents", "error", "No supported agent CLI is installed")
        )
    return checks


def register_doctor_commands(app: typer.Typer) -> None:
    @app.command("doctor")
    def doctor_cmd(
        home: Optional[Path] = typer.Option(None, "--home", help="Relay home directory"),
        json_output: bool = typer.Option(
            False, "--json", help="Output JSON for scripting"
        ),
    ):
        """Check the relay home directory and installed agent CLIs."""
        try:
            config = load_relay_config(home)
        except ConfigError as exc:
            raise_exit(str(exc), cause=exc)
        checks = collect_checks(config)
        has_errors = any(check.status == "error" for check in checks)
        if json_output:
            typer.echo(json.dumps([asdict(check) for check in checks], indent=2))
            if has_errors:
                raise typer.Exit(code=1)
            return
        for check in checks:
            line = f"- {check.status.upper()}: {check.message}"
            if check.fix:
                line = f"{line} Fix: {check.fix}"
            typer.echo(line)
        if has_errors:
            raise_exit("Doctor check failed")
        typer.echo("Doctor check passed")
