"""Tests for schedule expression parsing."""

from __future__ import annotations

import pytest

from docstream.errors import ConfigError
from docstream.stream.recurrence import parse_interval


@pytest.mark.parametrize("expr,seconds", [
    ("30s", 30),
    ("15m", 900),
    ("2h", 7200),
    ("1d", 86400),
    (" 5M ", 300),
    ("*/10 * * * *", 600),
    ("0 */6 * * *", 21600),
    ("@hourly", 3600),
    ("@daily", 86400),
])
def test_parse_interval(expr, seconds):
    assert parse_interval(expr) == seconds


@pytest.mark.parametrize("expr", ["", "soon", "15", "5 4 * * *", "*/x * * * *"])
def test_parse_interval_rejects_unsupported(expr):
    with pytest.raises(ConfigError, match="Unsupported schedule"):
        parse_interval(expr)


def test_parse_interval_rejects_zero():
    with pytest.raises(ConfigError, match="positive"):
        parse_interval("0m")
