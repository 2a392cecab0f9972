from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from pathlib import Path
from typing import Optional

import typer

from ....core.agent_configuration import ConfigurationTracker
from ....core.config import AGENT_FLAVORS, ConfigError, RelayConfig
from ....core.logging_utils import log_event, setup_rotating_logger
from ....core.mode_controller import (
    ControlMode,
    ControlSurface,
    LocalControlSurface,
    ModeController,
    RemoteControlSurface,
)
from ....core.session_lifecycle import SessionLifecycle
from ....core.session_metadata import STARTED_BY_CHOICES, build_session_metadata
from ....integrations.agents import build_agent_adapter
from ....integrations.stdio import JsonLinesSink, StdioTransport, open_stdin_reader
from .utils import raise_exit, require_relay_config

logger = logging.getLogger("agent_relay.cli")


async def _open_input(path: Optional[Path]) -> asyncio.StreamReader:
    if path is None:
        return await open_stdin_reader()
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, open(path, "rb"))
    return reader


async def run_session(
    config: RelayConfig,
    flavor: str,
    *,
    cwd: Path,
    local: bool = False,
    started_by: str = "terminal",
    input_path: Optional[Path] = None,
) -> str:
    adapter = build_agent_adapter(flavor, config, cwd=cwd)
    sink = JsonLinesSink()
    metadata = build_session_metadata(
        flavor=flavor,
        relay_home_dir=config.home_dir,
        cwd=cwd,
        started_by=started_by,
    )
    lifecycle = SessionLifecycle(
        adapter,
        sink,
        observer=sink,
        settings=config.session,
        metadata=metadata,
    )
    surfaces: dict[ControlMode, ControlSurface] = {
        ControlMode.REMOTE: RemoteControlSurface(lifecycle)
    }
    if adapter.supports_local_control:
        surfaces[ControlMode.LOCAL] = LocalControlSurface(adapter, lifecycle.queue)
    initial = ControlMode.LOCAL if local and ControlMode.LOCAL in surfaces else ControlMode.REMOTE
    controller = ModeController(
        surfaces, initial=initial, on_transition=lifecycle.set_control_mode
    )

    def request_local() -> None:
        if controller.state is ControlMode.REMOTE:
            controller.request_handover()

    transport = StdioTransport(
        lifecycle,
        ConfigurationTracker(),
        on_local_request=request_local if ControlMode.LOCAL in surfaces else None,
    )
    loop = asyncio.get_running_loop()
    if os.name != "nt":
        loop.add_signal_handler(signal.SIGTERM, lifecycle.kill)
    log_event(
        logger,
        logging.INFO,
        "cli.run.started",
        flavor=flavor,
        cwd=str(cwd),
        mode=initial.value,
        started_by=started_by,
    )
    await lifecycle.start_services()
    reader = await _open_input(input_path)
    pump = asyncio.create_task(transport.pump(reader))
    try:
        await controller.run()
    finally:
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pump
        await lifecycle.terminate(
            archive_reason="User terminated" if lifecycle.killed else "Session ended"
        )
        if os.name != "nt":
            loop.remove_signal_handler(signal.SIGTERM)
    reason = "killed" if lifecycle.killed else "closed"
    log_event(logger, logging.INFO, "cli.run.finished", reason=reason)
    return reason


def register_run_commands(app: typer.Typer) -> None:
    @app.command("run")
    def run_cmd(
        agent: str = typer.Option(
            ..., "--agent", "-a", help=f"Agent backend: {', '.join(AGENT_FLAVORS)}"
        ),
        cwd: Optional[Path] = typer.Option(
            None, "--cwd", help="Working directory for the agent"
        ),
        local: bool = typer.Option(
            False, "--local", help="Start with the local terminal in control"
        ),
        started_by: str = typer.Option(
            "terminal", "--started-by", help="terminal or daemon"
        ),
        input_path: Optional[Path] = typer.Option(
            None, "--input", help="Read inbound JSON lines from this FIFO instead of stdin"
        ),
        home: Optional[Path] = typer.Option(
            None, "--home", help="Relay home directory (default ~/.agent-relay)"
        ),
        debug: bool = typer.Option(False, "--debug", help="Log at DEBUG level"),
    ):
        """Relay one agent session over JSON lines on stdin/stdout."""
        if agent not in AGENT_FLAVORS:
            raise_exit(f"Unknown agent {agent!r}; expected one of {', '.join(AGENT_FLAVORS)}")
        if started_by not in STARTED_BY_CHOICES:
            raise_exit(f"--started-by must be one of {', '.join(STARTED_BY_CHOICES)}")
        config = require_relay_config(home)
        if debug:
            config.log.level = logging.DEBUG
        setup_rotating_logger("agent_relay", config.log)
        workdir = (cwd or Path.cwd()).resolve()
        if not workdir.is_dir():
            raise_exit(f"Working directory does not exist: {workdir}")
        try:
            asyncio.run(
                run_session(
                    config,
                    agent,
                    cwd=workdir,
                    local=local,
                    started_by=started_by,
                    input_path=input_path,
                )
            )
        except ConfigError as exc:
            raise_exit(str(exc), cause=exc)
        except KeyboardInterrupt:
            raise typer.Exit(code=130) from None
