"""Closed registry of source adapter variants.

The set of adapters is fixed at import time; a source's ``adapter`` tag is
resolved once, when the source is registered with the coordinator.
"""

from __future__ import annotations

from typing import Any

from docstream.config import SourceCfg, resolve_credentials
from docstream.db.connection import Database
from docstream.errors import ConfigError
from docstream.ingest.base import SourceAdapter
from docstream.ingest.csv_file import CsvFileAdapter
from docstream.ingest.telegram import TelegramAdapter
from docstream.ingest.zulip import ZulipAdapter

ADAPTERS: dict[str, type[SourceAdapter]] = {
    ZulipAdapter.adapter_type: ZulipAdapter,
    TelegramAdapter.adapter_type: TelegramAdapter,
    CsvFileAdapter.adapter_type: CsvFileAdapter,
}


def adapter_class(tag: str) -> type[SourceAdapter]:
    """Return the adapter class for *tag*.

    Raises:
        ConfigError: If *tag* is not one of the known adapters.
    """
    try:
        return ADAPTERS[tag]
    except KeyError:
        known = ", ".join(sorted(ADAPTERS))
        raise ConfigError(f"Unknown adapter '{tag}'. Known adapters: {known}") from None


def create_adapter(source: SourceCfg, db: Database, **kwargs: Any) -> SourceAdapter:
    """Build the adapter for *source* with env credentials injected.

    Extra keyword arguments (e.g. an ``httpx.Client`` for tests) are passed to
    the adapter constructor.
    """
    cls = adapter_class(source.adapter)
    return cls(source.id, resolve_credentials(source), db, schedule=source.schedule, **kwargs)
