"""docstream reset-processing / reset-import / retry-failed.

Usage:
  docstream reset-processing --source zulip-main --yes
  docstream reset-import zulip-main
  docstream retry-failed
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.console import Console

from docstream.cli.context import ConfigOpt, DbOpt, open_service
from docstream.cli.errors import describe
from docstream.errors import DocstreamError

console = Console()

_YesOpt = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")]


def reset_processing_cmd(
    source: Annotated[
        str | None,
        typer.Option("--source", "-s", help="Only reset this source. Defaults to all."),
    ] = None,
    yes: _YesOpt = False,
    config: ConfigOpt = None,
    db: DbOpt = None,
) -> None:
    """Discard analysis results so messages are analysed again."""
    service = open_service(config, db)
    target = f"source '{source}'" if source else "all sources"
    console.print(
        f"\nReset processing for [bold]{target}[/]\n"
        "  Classifications, contexts and proposals of analysed messages are deleted."
    )
    if not yes and not typer.confirm("Confirm reset?", default=False):
        console.print("[dim]Cancelled.[/]")
        raise typer.Exit(0)

    try:
        result = service.reset_processing(source)
    except DocstreamError as exc:
        console.print(describe(exc, source))
        raise typer.Exit(1) from None

    for s in result.sources:
        if s.watermark is None:
            console.print(f"  [green]✓[/] {s.source_id}: nothing analysed, watermark cleared")
        else:
            console.print(
                f"  [green]✓[/] {s.source_id}: {s.messages_reset} message(s) back to PENDING, "
                f"watermark {s.watermark:%Y-%m-%d %H:%M:%S}"
            )
    console.print(f"\n[green]✓[/] {result.messages_reset} message(s) reset")


def reset_import_cmd(
    source_id: Annotated[str, typer.Argument(help="Source whose import watermark is deleted.")],
    yes: _YesOpt = False,
    config: ConfigOpt = None,
    db: DbOpt = None,
) -> None:
    """Forget how far a source was fetched; the next fetch starts over."""
    service = open_service(config, db)
    if not yes and not typer.confirm(
        f"Delete the import watermark of '{source_id}'?", default=False
    ):
        console.print("[dim]Cancelled.[/]")
        raise typer.Exit(0)

    try:
        deleted = service.reset_import(source_id)
    except DocstreamError as exc:
        console.print(describe(exc, source_id))
        raise typer.Exit(1) from None

    if deleted:
        console.print(f"[green]✓[/] Import watermark of '{source_id}' deleted")
        console.print("  Already imported messages are kept; re-fetched ones are deduplicated.")
    else:
        console.print(f"[dim]'{source_id}' has no import watermark.[/]")


def retry_failed_cmd(
    source: Annotated[
        str | None,
        typer.Option("--source", "-s", help="Only requeue this source. Defaults to all."),
    ] = None,
    config: ConfigOpt = None,
    db: DbOpt = None,
) -> None:
    """Requeue FAILED messages for the next batch."""
    service = open_service(config, db)
    try:
        count = service.retry_failed(source)
    except DocstreamError as exc:
        console.print(describe(exc, source))
        raise typer.Exit(1) from None
    console.print(f"[green]✓[/] {count} failed message(s) requeued")
