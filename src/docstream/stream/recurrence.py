"""Recurrence expressions for scheduled fetch and batch cycles.

Supported forms:
  "30s", "15m", "2h", "1d"   plain intervals
  "*/N * * * *"              every N minutes (cron shorthand)
  "0 */N * * *"              every N hours (cron shorthand)
  "@hourly", "@daily"

Cron shorthands are interpreted as fixed intervals starting from process
start, not wall-clock aligned. All times are UTC.
"""

from __future__ import annotations

import re

from docstream.errors import ConfigError

_INTERVAL_RE = re.compile(r"^\s*(\d+)\s*([smhd])\s*$", re.IGNORECASE)
_EVERY_MINUTES_RE = re.compile(r"^\*/(\d+) \* \* \* \*$")
_EVERY_HOURS_RE = re.compile(r"^0 \*/(\d+) \* \* \*$")

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_ALIASES = {"@hourly": 3600.0, "@daily": 86400.0}


def parse_interval(expr: str) -> float:
    """Return the period in seconds for recurrence expression *expr*.

    Raises:
        ConfigError: If *expr* is not a supported form or is not positive.
    """
    text = " ".join(str(expr).split())
    if text in _ALIASES:
        return _ALIASES[text]

    seconds: float | None = None
    if m := _INTERVAL_RE.match(text):
        seconds = float(int(m.group(1)) * _UNIT_SECONDS[m.group(2).lower()])
    elif m := _EVERY_MINUTES_RE.match(text):
        seconds = float(int(m.group(1)) * 60)
    elif m := _EVERY_HOURS_RE.match(text):
        seconds = float(int(m.group(1)) * 3600)

    if seconds is None:
        raise ConfigError(
            f"Unsupported schedule '{expr}'. "
            "Use an interval like '15m' / '2h' or '*/N * * * *'."
        )
    if seconds <= 0:
        raise ConfigError(f"Schedule '{expr}' must describe a positive interval.")
    return seconds
