"""Unified CLI entry point for flexscrape.

Config precedence: settings.default.toml -> settings.local.toml -> env vars (FLEXSCRAPE_* with double underscores) -> CLI flags.
"""

from __future__ import annotations

from typing import Optional

import typer

from flexscrape.cli.proxies_cmd import proxies_app
from flexscrape.cli.settings_cmd import settings_app
from flexscrape.cli.task_cmd import task_app

try:
    from importlib.metadata import version

    VERSION = version("flexscrape")
except Exception:
    VERSION = "unknown"

APP_HELP = (
    "flexscrape — declarative, human-paced browser scraping. "
    "Config precedence: settings.default.toml -> settings.local.toml -> env vars (FLEXSCRAPE_* with __) -> CLI flags."
)

app = typer.Typer(add_completion=True, help=APP_HELP)

app.add_typer(task_app, name="task")
app.add_typer(settings_app, name="settings")
app.add_typer(proxies_app, name="proxies")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit."),
    log_level: Optional[str] = typer.Option(None, "--log-level", "-l", help="Override logging.level."),
) -> None:
    """Show help when no subcommand is provided."""
    if version:
        typer.echo(f"flexscrape {VERSION}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()

    from flexscrape.logging_config import configure_logging

    configure_logging(log_level)


if __name__ == "__main__":
    app()
