"""Tests for docstream logging setup."""

from __future__ import annotations

import io
import logging

import pytest
from rich.console import Console
from rich.logging import RichHandler

from docstream.log import configure_logging


@pytest.fixture(autouse=True)
def _restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


def _ours() -> list[logging.Handler]:
    return [h for h in logging.getLogger().handlers if getattr(h, "_docstream", False)]


def test_installs_rich_handler_once() -> None:
    configure_logging("DEBUG")
    configure_logging("DEBUG")

    handlers = _ours()
    assert len(handlers) == 1
    assert isinstance(handlers[0], RichHandler)
    assert logging.getLogger().level == logging.DEBUG


def test_messages_reach_the_console() -> None:
    buf = io.StringIO()
    configure_logging("INFO", console=Console(file=buf, width=120))

    logging.getLogger("docstream.test").info("fetched 3 messages")

    assert "fetched 3 messages" in buf.getvalue()


def test_file_handler_writes_plain_lines(tmp_path) -> None:
    log_file = tmp_path / "logs" / "docstream.log"
    configure_logging("INFO", log_file, console=Console(file=io.StringIO()))

    logging.getLogger("docstream.test").warning("source disabled")
    for handler in _ours():
        handler.flush()

    text = log_file.read_text(encoding="utf-8")
    assert "docstream.test - WARNING - source disabled" in text


def test_unknown_level_falls_back_to_info() -> None:
    configure_logging("chatty", console=Console(file=io.StringIO()))
    assert logging.getLogger().level == logging.INFO


def test_third_party_loggers_quietened() -> None:
    configure_logging("DEBUG", console=Console(file=io.StringIO()))
    assert logging.getLogger("httpx").level == logging.WARNING
