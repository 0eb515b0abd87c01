"""docstream fetch / process / run: drive the pipeline from the command line."""

from __future__ import annotations

import signal
import threading
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from docstream.cli.context import ConfigOpt, DbOpt, open_service
from docstream.cli.errors import describe, err_no_api_key
from docstream.errors import DocstreamError, SourceBusy, TransientAdapterError
from docstream.process.processor import BatchResult
from docstream.stream.coordinator import SourceState

console = Console()


def fetch_cmd(
    source_id: Annotated[
        str | None,
        typer.Argument(help="Source to fetch. Defaults to every enabled source."),
    ] = None,
    limit: Annotated[
        int | None,
        typer.Option("--limit", "-n", min=1, help="Maximum messages to fetch per source."),
    ] = None,
    config: ConfigOpt = None,
    db: DbOpt = None,
) -> None:
    """Run one fetch cycle now."""
    service = open_service(config, db)
    if source_id is not None:
        targets = [source_id]
    else:
        targets = [s.source_id for s in service.get_health() if s.state is SourceState.IDLE]
        if not targets:
            console.print("[dim]No enabled sources to fetch.[/]")
            return

    failed = False
    for sid in targets:
        try:
            imported = service.trigger_fetch(sid, limit)
        except (SourceBusy, TransientAdapterError) as exc:
            console.print(describe(exc, sid))
            continue
        except DocstreamError as exc:
            console.print(describe(exc, sid))
            failed = True
            continue
        console.print(f"  [green]✓[/] {sid}: {imported} new message(s)")
    if failed:
        raise typer.Exit(1)


def process_cmd(
    source: Annotated[
        list[str] | None,
        typer.Option("--source", "-s", help="Only process this source (repeatable)."),
    ] = None,
    config: ConfigOpt = None,
    db: DbOpt = None,
) -> None:
    """Analyse one window of pending messages per source."""
    service = open_service(config, db)
    try:
        service.check_models()
    except EnvironmentError as exc:
        console.print(err_no_api_key(str(exc)))
        raise typer.Exit(1) from None

    result = service.trigger_batch(source or None)
    if result.skipped:
        console.print("[yellow]Skipped:[/] a batch run is already in progress.")
        return
    _print_batch(result)
    if any(s.error for s in result.sources):
        raise typer.Exit(1)


def _print_batch(result: BatchResult) -> None:
    if not result.sources:
        console.print("[dim]No sources with messages.[/]")
        return
    table = Table(title="Batch")
    table.add_column("Source", style="bold")
    table.add_column("Window", style="dim")
    table.add_column("Messages", justify="right")
    table.add_column("Conversations", justify="right")
    table.add_column("Valuable", justify="right")
    table.add_column("Proposals", justify="right")
    table.add_column("Failed", justify="right")
    for s in result.sources:
        window = f"{s.window_start:%Y-%m-%d %H:%M} → {s.window_end:%Y-%m-%d %H:%M}"
        table.add_row(
            s.source_id,
            window + (" (capped)" if s.capped else ""),
            str(s.messages_processed),
            str(s.conversations),
            str(s.valuable_conversations),
            str(s.proposals_created),
            f"[red]{s.failed_conversations}[/]" if s.failed_conversations else "0",
        )
    console.print(table)
    for s in result.sources:
        if s.error:
            console.print(
                f"[red]Error:[/] {s.source_id}: {s.error}\n  The window is retried next run."
            )


def run_cmd(
    config: ConfigOpt = None,
    db: DbOpt = None,
) -> None:
    """Start scheduled fetching (and batches, if batch_schedule is set) until interrupted."""
    service = open_service(config, db)
    if service.cfg.scheduler.batch_schedule:
        try:
            service.check_models()
        except EnvironmentError as exc:
            console.print(err_no_api_key(str(exc)))
            raise typer.Exit(1) from None

    stop = threading.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, lambda *_: stop.set())
    try:
        service.start()
    except DocstreamError as exc:
        console.print(describe(exc))
        raise typer.Exit(1) from None

    stats = service.coordinator.stats()
    console.print(
        f"[bold]docstream running[/]: {stats.total_sources} source(s), "
        f"{stats.scheduled} scheduled. Ctrl-C to stop."
    )
    try:
        while not stop.wait(1.0):
            pass
    finally:
        console.print("[dim]Stopping…[/]")
        service.shutdown()
