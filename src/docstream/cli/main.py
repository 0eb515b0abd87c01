"""docstream CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from docstream.cli.index import index_cmd
from docstream.cli.init import init_cmd
from docstream.cli.pipeline import fetch_cmd, process_cmd, run_cmd
from docstream.cli.proposals import proposals_cmd
from docstream.cli.reset import reset_import_cmd, reset_processing_cmd, retry_failed_cmd
from docstream.cli.sources import sources_app
from docstream.cli.status import status_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("docstream")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"docstream {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="docstream",
    help=(
        "docstream: turn chat traffic into documentation change proposals.\n\n"
        "  docstream fetch    Import new messages from the configured sources.\n"
        "  docstream process  Classify pending messages and propose page updates."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """docstream: turn chat traffic into documentation change proposals."""


app.command("init")(init_cmd)
app.command("fetch")(fetch_cmd)
app.command("process")(process_cmd)
app.command("run")(run_cmd)
app.command("status")(status_cmd)
app.command("index")(index_cmd)
app.command("proposals")(proposals_cmd)
app.command("reset-processing")(reset_processing_cmd)
app.command("reset-import")(reset_import_cmd)
app.command("retry-failed")(retry_failed_cmd)
app.add_typer(sources_app, name="sources")


@app.command("version")
def version_cmd() -> None:
    """Show the installed docstream version."""
    typer.echo(f"docstream {_installed_version()}")


if __name__ == "__main__":
    app()
