"""Logging setup for the docstream CLI.

Library modules only ever call ``logging.getLogger(__name__)``; handlers are
installed here, once, by the CLI entry point.
"""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

_FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore", "LiteLLM", "litellm")


def configure_logging(
    level: str = "INFO",
    file: str | Path | None = None,
    *,
    console: Console | None = None,
) -> None:
    """Install a RichHandler on the root logger (plus an optional file handler).

    Safe to call more than once: previously installed docstream handlers are
    replaced rather than stacked.

    Args:
        level: Log level name, e.g. "DEBUG" or "INFO".
        file: Optional path of a plain-text log file (appended to).
        console: Rich console to log to; stderr by default.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_docstream", False):
            root.removeHandler(handler)

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    rich_handler._docstream = True  # type: ignore[attr-defined]
    root.addHandler(rich_handler)

    if file:
        path = Path(file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        file_handler._docstream = True  # type: ignore[attr-defined]
        root.addHandler(file_handler)

    root.setLevel(numeric)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))
