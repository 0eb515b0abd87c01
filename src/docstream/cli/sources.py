"""docstream sources: list, enable and disable message sources."""

from __future__ import annotations

from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from docstream.cli.context import ConfigOpt, DbOpt, open_service
from docstream.cli.errors import describe
from docstream.errors import DocstreamError
from docstream.stream.coordinator import SourceState

console = Console()

sources_app = typer.Typer(help="Manage message sources.", no_args_is_help=True)

_STATE_STYLE = {
    SourceState.IDLE: "[green]idle[/]",
    SourceState.RUNNING: "[cyan]running[/]",
    SourceState.DISABLED: "[dim]disabled[/]",
    SourceState.ERROR_DISABLED: "[red]error-disabled[/]",
}


@sources_app.command("list")
def list_cmd(config: ConfigOpt = None, db: DbOpt = None) -> None:
    """List configured sources with their state."""
    service = open_service(config, db)
    if not service.cfg.sources:
        console.print("[dim]No sources configured.[/] Add a 'sources:' list to docstream.yaml.")
        return

    health = {h.source_id: h for h in service.get_health()}
    table = Table(title="Sources")
    table.add_column("Id", style="bold")
    table.add_column("Adapter")
    table.add_column("Schedule", style="dim")
    table.add_column("State")
    table.add_column("Imported", justify="right")
    table.add_column("Reason", style="dim")
    for src in service.cfg.sources:
        h = health.get(src.id)
        table.add_row(
            src.id,
            src.adapter,
            src.schedule or "manual",
            _STATE_STYLE[h.state] if h else "[dim]unregistered[/]",
            f"{h.total_imported:,}" if h else "0",
            (h.disabled_reason or "") if h else "",
        )
    console.print(table)


@sources_app.command("enable")
def enable_cmd(
    source_id: Annotated[str, typer.Argument(help="Source id.")],
    config: ConfigOpt = None,
    db: DbOpt = None,
) -> None:
    """Re-enable a source (also clears an error-disabled state)."""
    service = open_service(config, db)
    try:
        service.enable_source(source_id)
    except DocstreamError as exc:
        console.print(describe(exc, source_id))
        raise typer.Exit(1) from None
    console.print(f"[green]✓[/] Source '{source_id}' enabled")


@sources_app.command("disable")
def disable_cmd(
    source_id: Annotated[str, typer.Argument(help="Source id.")],
    config: ConfigOpt = None,
    db: DbOpt = None,
) -> None:
    """Disable a source until it is enabled again."""
    service = open_service(config, db)
    try:
        service.disable_source(source_id)
    except DocstreamError as exc:
        console.print(describe(exc, source_id))
        raise typer.Exit(1) from None
    console.print(f"[green]✓[/] Source '{source_id}' disabled")
