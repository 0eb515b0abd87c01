"""docstream ingest layer: source adapters and their payload types."""

from docstream.ingest.base import SourceAdapter
from docstream.ingest.csv_file import CsvFileAdapter
from docstream.ingest.payloads import (
    CsvRowPayload,
    FetchedMessage,
    SourcePayload,
    TelegramPayload,
    ZulipPayload,
)
from docstream.ingest.registry import ADAPTERS, adapter_class, create_adapter
from docstream.ingest.telegram import TelegramAdapter
from docstream.ingest.zulip import ZulipAdapter

__all__ = [
    "ADAPTERS",
    "CsvFileAdapter",
    "CsvRowPayload",
    "FetchedMessage",
    "SourceAdapter",
    "SourcePayload",
    "TelegramAdapter",
    "TelegramPayload",
    "ZulipAdapter",
    "ZulipPayload",
    "adapter_class",
    "create_adapter",
]
