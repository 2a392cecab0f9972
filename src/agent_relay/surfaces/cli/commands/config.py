from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer

from ....core.config import RelayConfig
from .utils import require_relay_config


def config_payload(config: RelayConfig) -> dict[str, Any]:
    return {
        "home_dir": str(config.home_dir),
        "logs_dir": str(config.logs_dir),
        "settings_file": str(config.settings_file),
        "log": {
            "path": str(config.log.path),
            "max_bytes": config.log.max_bytes,
            "backup_count": config.log.backup_count,
            "level": logging.getLevelName(config.log.level),
        },
        "session": dataclasses.asdict(config.session),
        "agents": {
            flavor: dataclasses.asdict(agent) for flavor, agent in config.agents.items()
        },
    }


def register_config_commands(app: typer.Typer) -> None:
    @app.command("config")
    def config_cmd(
        home: Optional[Path] = typer.Option(None, "--home", help="Relay home directory"),
    ):
        """Print the effective configuration."""
        config = require_relay_config(home)
        typer.echo(json.dumps(config_payload(config), indent=2))
