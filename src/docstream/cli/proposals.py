"""docstream proposals: list generated documentation change proposals."""

from __future__ import annotations

from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from docstream.cli.context import ConfigOpt, DbOpt, open_service
from docstream.db.models import ProposalStatus

console = Console()

_TYPE_STYLE = {
    "INSERT": "[green]INSERT[/]",
    "UPDATE": "[cyan]UPDATE[/]",
    "DELETE": "[red]DELETE[/]",
    "NONE": "[dim]NONE[/]",
}


def proposals_cmd(
    status: Annotated[
        ProposalStatus | None,
        typer.Option("--status", help="Only show proposals with this review status."),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", min=1, help="Maximum proposals to show."),
    ] = 50,
    full: Annotated[
        bool,
        typer.Option("--full", help="Print the suggested text of each proposal."),
    ] = False,
    config: ConfigOpt = None,
    db: DbOpt = None,
) -> None:
    """List proposals (read-only)."""
    service = open_service(config, db)
    proposals = service.list_proposals(status=status, limit=limit)
    if not proposals:
        console.print("[dim]No proposals yet.[/] Run:  docstream process")
        return

    table = Table(title="Proposals")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Type")
    table.add_column("Page", style="bold")
    table.add_column("Section")
    table.add_column("Status")
    table.add_column("Messages", justify="right")
    table.add_column("Reasoning", style="dim", max_width=60)
    for p in proposals:
        table.add_row(
            str(p.id),
            _TYPE_STYLE.get(p.update_type.value, p.update_type.value),
            p.page,
            p.section or "",
            p.status.value,
            str(len(p.source_messages)),
            p.reasoning,
        )
    console.print(table)

    if full:
        for p in proposals:
            if p.suggested_text:
                console.print(f"\n[bold]#{p.id}[/] {p.page}")
                console.print(p.suggested_text, markup=False, highlight=False)
