import logging

import typer

from ... import __version__
from .commands import register_bridge_commands
from .commands.utils import raise_exit as _raise_exit
from .commands.utils import require_bridge_config as _require_bridge_config

logger = logging.getLogger("ticket_bridge.cli")

app = typer.Typer(add_completion=False)


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"ticket-bridge {__version__}")
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
    # Subcommands implement behavior; `--version` is handled eagerly.
    return


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


register_bridge_commands(
    app,
    require_config=_require_bridge_config,
    raise_exit=_raise_exit,
)


if __name__ == "__main__":
    main()
