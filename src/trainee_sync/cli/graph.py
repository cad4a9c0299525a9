"""
trainee-sync CLI - Show the entity dependency graph.
"""

import typer
from rich.console import Console
from rich.table import Table

from trainee_sync.core.entities.registry import default_entity_model

console = Console()


def graph(
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON",
    ),
) -> None:
    """
    Show entity kinds in dependency order with the fields that reference
    other kinds.

    Examples:
        trainee-sync graph
        trainee-sync graph --json
    """
    model = default_entity_model()
    order = model.topological_order()

    if json_output:
        payload = {
            kind.value: {
                edge.field: edge.target.value for edge in model.definition_for(kind).edges
            }
            for kind in order
        }
        console.print_json(data=payload)
        return

    table = Table(title="Entity dependencies")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Kind", style="cyan")
    table.add_column("References")

    for position, kind in enumerate(order, start=1):
        edges = model.definition_for(kind).edges
        references = ", ".join(f"{e.field} → {e.target.value}" for e in edges) or "[dim]-[/dim]"
        table.add_row(str(position), kind.value, references)

    console.print(table)
