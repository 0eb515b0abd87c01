"""docstream index: embed documentation pages for retrieval."""

from __future__ import annotations

from typing import Annotated

import typer
from rich.console import Console

from docstream.cli.context import ConfigOpt, DbOpt, open_service
from docstream.cli.errors import err_config, err_no_api_key, err_no_docs_path
from docstream.errors import ConfigError, ModelCallFailed
from docstream.rag.llm_client import validate_api_key

console = Console()


def index_cmd(
    full: Annotated[
        bool,
        typer.Option("--full", help="Drop the index and re-embed every page."),
    ] = False,
    config: ConfigOpt = None,
    db: DbOpt = None,
) -> None:
    """Bring the page index up to date with the documentation."""
    service = open_service(config, db)
    if not service.cfg.docs.path:
        console.print(err_no_docs_path())
        raise typer.Exit(1)
    try:
        validate_api_key(service.cfg.models.embedding)
    except EnvironmentError as exc:
        console.print(err_no_api_key(str(exc)))
        raise typer.Exit(1) from None

    try:
        result = service.sync_index(full=full)
    except ConfigError as exc:
        console.print(err_config(exc))
        raise typer.Exit(1) from None
    except ModelCallFailed as exc:
        hint = "Retry later." if exc.transient else "Check the embedding model name."
        console.print(f"[red]Error:[/] Embedding failed: {exc}\n  {hint}")
        raise typer.Exit(1) from None

    if result.skipped:
        console.print(f"[dim]Index is up to date ({result.version_marker[:12]}).[/]")
        return

    mode = "Full re-index" if result.full else "Incremental sync"
    console.print(f"[green]✓[/] {mode} at {result.version_marker[:12]}")
    console.print(
        f"  added {len(result.added)}  |  updated {len(result.updated)}  |  "
        f"removed {len(result.removed)}  |  unchanged {result.unchanged}"
    )
