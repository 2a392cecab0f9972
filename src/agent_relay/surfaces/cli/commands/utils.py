from __future__ import annotations

import logging
from pathlib import Path
from typing import NoReturn, Optional

import typer

from ....core.config import ConfigError, RelayConfig, load_relay_config

logger = logging.getLogger("agent_relay.cli")


def get_relay_version() -> str:
    import importlib.metadata

    try:
        return importlib.metadata.version("agent-relay")
    except importlib.metadata.PackageNotFoundError:
        from .... import __version__

        return __version__


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def require_relay_config(home: Optional[Path]) -> RelayConfig:
    try:
        return load_relay_config(home)
    except ConfigError as exc:
        raise_exit(str(exc), cause=exc)
