from __future__ import annotations

from pathlib import Path
from typing import NoReturn, Optional

import typer

from ....core.config import BridgeConfig, BridgeConfigError, load_bridge_config


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def require_bridge_config(path: Optional[Path]) -> BridgeConfig:
    root = (path or Path.cwd()).resolve()
    try:
        return load_bridge_config(root)
    except BridgeConfigError as exc:
        raise_exit(str(exc), cause=exc)
