import logging

import typer

from .commands.config import register_config_commands
from .commands.doctor import register_doctor_commands
from .commands.run import register_run_commands
from .commands.utils import get_relay_version

logger = logging.getLogger("agent_relay.cli")

app = typer.Typer(add_completion=False)


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"agent-relay {get_relay_version()}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    return


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


register_run_commands(app)
register_doctor_commands(app)
register_config_commands(app)


if __name__ == "__main__":
    main()
