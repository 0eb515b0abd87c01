"""docstream status command.

Shows the database, per-source health, message and proposal counts, and the
state of the page index.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from docstream.cli.context import ConfigOpt, DbOpt, open_service
from docstream.cli.sources import _STATE_STYLE
from docstream.service import Overview
from docstream.stream.coordinator import SourceHealth

console = Console()


def status_cmd(config: ConfigOpt = None, db: DbOpt = None) -> None:
    """Show source health, queue depth, proposals and index state."""
    service = open_service(config, db)
    overview = service.overview()

    # ---- Panel 1: Database + queue ----
    _show_project_panel(Path(service.cfg.database), overview)

    # ---- Panel 2: Sources ----
    _show_sources_panel(service.get_health())

    # ---- Panel 3: Page index ----
    _show_index_panel(overview, service.cfg.docs.path)


# ---------------------------------------------------------------------------
# Panel renderers
# ---------------------------------------------------------------------------


def _show_project_panel(db: Path, overview: Overview) -> None:
    size_mb = db.stat().st_size / (1024 * 1024) if db.exists() else 0.0
    msgs = overview.messages
    props = overview.proposals
    lines = [
        f"Database:  {db} ({size_mb:.1f} MB)",
        f"Messages:  [bold]{sum(msgs.values()):,}[/]  "
        f"pending [cyan]{msgs.get('PENDING', 0):,}[/]  "
        f"completed [green]{msgs.get('COMPLETED', 0):,}[/]  "
        f"failed [red]{msgs.get('FAILED', 0):,}[/]",
        f"Proposals: [bold]{sum(props.values()):,}[/]  "
        f"pending [cyan]{props.get('pending', 0):,}[/]  "
        f"approved [green]{props.get('approved', 0):,}[/]  "
        f"ignored [dim]{props.get('ignored', 0):,}[/]",
    ]
    if msgs.get("FAILED"):
        lines.append("[dim]  Requeue failed messages with:  docstream retry-failed[/]")
    console.print(Panel("\n".join(lines), title="[bold]Project[/]", expand=False))


def _show_sources_panel(health: list[SourceHealth]) -> None:
    if not health:
        console.print(
            Panel(
                "[dim]No sources registered.[/]\n"
                "  Add a 'sources:' list to docstream.yaml",
                title="[bold]Sources[/]",
                expand=False,
            )
        )
        return

    table = Table(show_header=True, box=None, padding=(0, 1))
    table.add_column("Source", style="bold")
    table.add_column("State")
    table.add_column("Imported", justify="right")
    table.add_column("Pending", justify="right")
    table.add_column("Last success", style="dim")
    table.add_column("Last error")

    for h in health:
        error = ""
        if h.disabled_reason:
            error = f"[red]{h.disabled_reason}[/]"
        elif h.last_error:
            error = f"[yellow]{h.last_error}[/] [dim]({_fmt(h.last_error_at)})[/]"
        table.add_row(
            h.source_id,
            _STATE_STYLE[h.state],
            f"{h.total_imported:,}",
            f"{h.pending_messages:,}",
            _fmt(h.last_success_at),
            error,
        )

    healthy = sum(1 for h in health if h.is_healthy)
    console.print(
        Panel(
            table,
            title=f"[bold]Sources[/] [dim]({healthy}/{len(health)} healthy)[/]",
            expand=False,
        )
    )


def _show_index_panel(overview: Overview, docs_path: str | None) -> None:
    state = overview.index
    if state is None:
        hint = "  Run:  docstream index" if docs_path else "  Set docs.path, then run:  docstream index"
        console.print(
            Panel(
                f"[yellow]Pages are not indexed.[/]\n{hint}",
                title="[bold]Page Index[/]",
                expand=False,
            )
        )
        return

    lines = [
        f"Docs:     {docs_path or '[dim](not configured)[/]'}",
        f"Pages:    [bold]{overview.pages:,}[/]",
        f"Model:    {state.embedding_model} ({state.dimensions} dims)",
        f"Version:  [dim]{state.version_marker[:12]}[/]",
    ]
    if state.indexed_at:
        lines.append(f"Indexed:  [dim]{state.indexed_at[:16]}[/]")
    console.print(Panel("\n".join(lines), title="[bold]Page Index[/]", expand=False))


def _fmt(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "never"
