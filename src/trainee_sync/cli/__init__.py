"""
trainee-sync CLI - Main application entry point.

This module sets up the Typer CLI application with all subcommands.
"""

import logging
import sys

import typer
from pydantic import ValidationError
from rich.console import Console

from trainee_sync import __version__
from trainee_sync.cli import config_cmd, graph, replay
from trainee_sync.cli.errors import ExitCode, print_error
from trainee_sync.core.config.loader import load_config

app = typer.Typer(
    name="trainee-sync",
    help="Dependency-ordered, idempotent sync of upstream entity changes",
    no_args_is_help=True,
    add_completion=False,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()


def setup_logging(level: str, debug: bool = False) -> None:
    """
    Configure root logging on stderr.

    Args:
        level: Configured level name, used unless debug is set
        debug: If True, log at DEBUG
    """
    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
        force=True,
    )


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug output with detailed logging",
    ),
) -> None:
    """
    trainee-sync - keep a downstream store consistent with upstream changes.

    Quick Start:
        trainee-sync graph                  # Entity kinds in dependency order
        trainee-sync config                 # Effective configuration
        trainee-sync replay changes.jsonl   # Run messages through the pipeline
    """
    try:
        sync_config = load_config(use_cache=False)
    except ValidationError as e:
        print_error(
            "Invalid configuration",
            reason=str(e),
            solution="check .trainee-sync.json and TRAINEE_SYNC_* variables",
        )
        raise typer.Exit(ExitCode.USER_ERROR) from e

    setup_logging(sync_config.logging.level, debug)
    ctx.obj = {"debug": debug, "config": sync_config}


app.command(name="replay")(replay.replay)
app.command(name="graph")(graph.graph)
app.command(name="config")(config_cmd.config)


@app.command()
def version() -> None:
    """Show trainee-sync version and exit."""
    console.print(f"trainee-sync version {__version__}")
    raise typer.Exit(ExitCode.SUCCESS)


def cli_main() -> None:
    """Main CLI entry point."""
    app()


__all__ = ["app", "cli_main"]
