"""Normalized fetch results and the per-adapter payload variants.

Each adapter attaches its own typed payload (``ZulipPayload``,
``TelegramPayload`` or ``CsvRowPayload``) to a FetchedMessage. The untouched
source record travels alongside as ``raw`` and is persisted verbatim in
``messages.raw_payload`` for audit and debugging.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Union

from docstream.db.models import Message


@dataclass(frozen=True)
class ZulipPayload:
    kind = "zulip"

    message_id: int
    stream: str
    topic: str
    sender_email: str = ""
    stream_id: int | None = None


@dataclass(frozen=True)
class TelegramPayload:
    kind = "telegram"

    update_id: int
    chat_id: int
    message_id: int
    chat_type: str = ""
    reply_to_message_id: int | None = None


@dataclass(frozen=True)
class CsvRowPayload:
    kind = "csv"

    file: str
    row: int


SourcePayload = Union[ZulipPayload, TelegramPayload, CsvRowPayload]


@dataclass
class FetchedMessage:
    """A message as returned by SourceAdapter.fetch_messages(), before persistence.

    Attributes:
        source_message_id: Id unique within the source (dedup key).
        timestamp: Aware UTC timestamp.
        body: Plain-text message content.
        author: Display name or handle of the sender.
        channel: Channel / stream+topic / chat the message was posted in.
        payload: Adapter-specific typed fields.
        raw: Verbatim source record (JSON-serialisable).
        reply_to: source_message_id of the parent message, if this is a reply.
    """

    source_message_id: str
    timestamp: datetime
    body: str
    payload: SourcePayload
    author: str = ""
    channel: str = ""
    raw: dict[str, Any] = field(default_factory=dict)
    reply_to: str | None = None

    def to_message(self, source_id: str) -> Message:
        metadata: dict[str, Any] = {"kind": self.payload.kind, "payload": asdict(self.payload)}
        if self.reply_to is not None:
            metadata["reply_to"] = self.reply_to
        return Message(
            source_id=source_id,
            source_message_id=self.source_message_id,
            timestamp=self.timestamp,
            author=self.author,
            channel=self.channel,
            body=self.body,
            raw_payload=json.dumps(self.raw, default=str),
            metadata=json.dumps(metadata),
        )
