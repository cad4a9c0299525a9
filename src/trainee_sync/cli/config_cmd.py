"""
trainee-sync CLI - Show the effective configuration.
"""

import typer
from rich.console import Console

from trainee_sync.core.config.loader import get_project_config_path, get_user_config_path
from trainee_sync.core.config.models import SyncConfig

console = Console()


def config(
    ctx: typer.Context,
    paths: bool = typer.Option(
        False,
        "--paths",
        help="Show which config files are consulted instead of the values",
    ),
) -> None:
    """
    Show the merged configuration (defaults, user, project, environment).
    """
    if paths:
        for label, path in (
            ("user", get_user_config_path()),
            ("project", get_project_config_path()),
        ):
            state = "[green]found[/green]" if path.exists() else "[dim]missing[/dim]"
            console.print(f"{label:8} {path} {state}")
        return

    sync_config: SyncConfig = ctx.obj["config"]
    console.print_json(sync_config.model_dump_json())
