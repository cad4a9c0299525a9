"""
trainee-sync CLI - Replay a file of transport messages.

Loads a JSONL file into an in-memory transport and runs the full pipeline
against the configured store and cache: decode, resolve, apply or defer,
cascade, sweep. Useful for backfills and for reproducing production
message sequences locally.
"""

from datetime import datetime, timezone
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from trainee_sync.cli.errors import ExitCode, print_error
from trainee_sync.core.config.models import SyncConfig
from trainee_sync.core.deferred.persistence import DeferredSnapshotError
from trainee_sync.core.gateway.transport import (
    InMemoryTransport,
    load_messages,
    write_dead_letters,
)
from trainee_sync.core.runtime import SyncRuntime
from trainee_sync.core.store.backend import StoreError

console = Console()


def replay(
    ctx: typer.Context,
    file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="JSONL file with one message per line",
    ),
    dead_letters: Path | None = typer.Option(
        None,
        "--dead-letters",
        "-d",
        help="Append dead-lettered messages to this JSONL file",
    ),
    repair: bool = typer.Option(
        False,
        "--repair",
        help="Apply notifications still deferred at the end as if the repair window had elapsed",
    ),
    workers: int | None = typer.Option(
        None,
        "--workers",
        "-w",
        min=1,
        help="Override the configured worker count",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output the summary as JSON",
    ),
) -> None:
    """
    Replay messages from FILE through the sync pipeline.

    Examples:
        trainee-sync replay changes.jsonl
        trainee-sync replay changes.jsonl --repair -d dead.jsonl
    """
    sync_config: SyncConfig = ctx.obj["config"]
    if workers is not None:
        sync_config = sync_config.model_copy(
            update={"workers": sync_config.workers.model_copy(update={"workers": workers})}
        )

    messages = load_messages(file)
    transport = InMemoryTransport()
    for message in messages:
        transport.put(message)

    try:
        runtime = SyncRuntime.from_config(sync_config, transport, project_dir=Path.cwd())
    except ValueError as e:
        print_error("Invalid configuration", reason=str(e), solution="trainee-sync config")
        raise typer.Exit(ExitCode.USER_ERROR) from e

    try:
        runtime.start()
        summary = runtime.pool.run_until_idle()
        now = datetime.now(timezone.utc)
        if repair:
            now += runtime.deferred.policy.max_age
        runtime.engine.sweep(now)
        remaining = len(runtime.deferred)
        stats = runtime.engine.stats
        letters = transport.dead_letters
    except DeferredSnapshotError as e:
        print_error("Deferred snapshot is corrupted", reason=str(e))
        raise typer.Exit(ExitCode.GENERAL_ERROR) from e
    except StoreError as e:
        print_error("Store failed during replay", reason=str(e))
        raise typer.Exit(ExitCode.GENERAL_ERROR) from e
    finally:
        runtime.shutdown()

    if dead_letters is not None and letters:
        write_dead_letters(dead_letters, letters)

    result = {
        "messages": len(messages),
        "acknowledged": len(transport.acknowledged),
        "deferred": remaining,
        "dead_letters": len(letters),
        "applied": stats.applied,
        "redeliveries": stats.redeliveries,
        "released": stats.released,
        "repaired": stats.repaired,
        "failed": stats.failed,
        "worker_errors": summary.errors,
        "requests": len(getattr(runtime.publisher, "requests", [])),
    }

    if json_output:
        console.print_json(data=result)
        return

    table = Table(title=f"Replay of {file.name}")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")
    for name, value in result.items():
        table.add_row(name.replace("_", " "), str(value))
    console.print(table)

    if letters:
        console.print(f"[yellow]{len(letters)} messages were dead-lettered[/yellow]")
        for letter in letters:
            console.print(
                f"  [dim]{letter.message.message_id}[/dim] {letter.reason.value}: {letter.error}"
            )
    if remaining:
        console.print(
            f"[yellow]{remaining} notifications are still waiting on dependencies[/yellow]"
        )
