"""docstream init: scaffold a project.

Creates:
  docstream.yaml   starter config (sources disabled until credentials are set)
  .docstream.db    database with schema
  docs/            empty knowledge-base directory (unless it exists)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from docstream.config import DEFAULT_DB_NAME, _PROJECT_CONFIG_NAME, write_project_config
from docstream.db.connection import Database

console = Console()


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = Path("."),
) -> None:
    """Create docstream.yaml, the database and a docs/ directory."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    config_path = project_dir / _PROJECT_CONFIG_NAME
    existed = config_path.exists()
    write_project_config(config_path)
    if existed:
        console.print(f"  [yellow]⚠[/] {_PROJECT_CONFIG_NAME} already exists, left unchanged")
    else:
        console.print(f"  [green]✓[/] {_PROJECT_CONFIG_NAME}")

    with Database(project_dir / DEFAULT_DB_NAME).session():
        pass
    console.print(f"  [green]✓[/] {DEFAULT_DB_NAME}")

    docs = project_dir / "docs"
    if not docs.exists():
        docs.mkdir()
        console.print("  [green]✓[/] docs/")

    console.print(
        "\n[bold]Next steps:[/]\n"
        f"  1. Edit {_PROJECT_CONFIG_NAME}: add sources and enable them\n"
        "  2. Export credentials, e.g.  export ZULIP_API_KEY=...\n"
        "  3. docstream index   (embed the documentation pages)\n"
        "  4. docstream run     (fetch + analyse on schedule)"
    )
