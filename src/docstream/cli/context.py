"""Shared command plumbing: options, config loading and service construction."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from docstream.cli.errors import err_config
from docstream.config import DocstreamConfig, load_config
from docstream.db.connection import Database
from docstream.errors import ConfigError
from docstream.log import configure_logging
from docstream.service import PipelineService

console = Console()

ConfigOpt = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to docstream.yaml (default: ./docstream.yaml)."),
]
DbOpt = Annotated[
    Path | None,
    typer.Option("--db", help="Database path (overrides the config)."),
]


def load_cfg(config: Path | None, db: Path | None = None) -> DocstreamConfig:
    """Load the config or exit 1 with an actionable message."""
    try:
        cfg = load_config(config_path=config)
    except ConfigError as exc:
        console.print(err_config(exc))
        raise typer.Exit(1) from None
    if db is not None:
        cfg.database = str(db)
    configure_logging(cfg.logging.level, cfg.logging.file)
    return cfg


def open_service(config: Path | None, db: Path | None = None) -> PipelineService:
    cfg = load_cfg(config, db)
    return PipelineService(cfg, Database(cfg.database))
