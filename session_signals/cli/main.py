"""Root command group for the session-signals CLI."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import click

from .. import __version__


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


@click.group()
@click.version_option(__version__, prog_name="session-signals")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    envvar="SESSION_SIGNALS_CONFIG",
    help="Config file (default: ~/.config/session-signals/config.json).",
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Detect friction in coding-agent sessions and act on recurring patterns."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["debug"] = verbose or bool(os.environ.get("SESSION_SIGNALS_DEBUG"))
    _configure_logging(ctx.obj["debug"])
