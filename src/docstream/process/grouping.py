"""Conversation grouping for one analysis window.

Rules, applied in strict timestamp order:
  * per channel, a gap larger than ``gap`` to the previous message of that
    channel starts a new conversation;
  * a message replying to a message already placed joins that message's
    conversation, whatever the gap or channel.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from docstream.db.models import Message, epoch_ms

_SLUG_RE = re.compile(r"[^a-z0-9]+")


@dataclass
class Conversation:
    id: str
    channel: str
    messages: list[Message] = field(default_factory=list)

    @property
    def started_at(self) -> datetime:
        return self.messages[0].timestamp

    @property
    def last_at(self) -> datetime:
        return self.messages[-1].timestamp

    @property
    def message_ids(self) -> list[int]:
        return [m.id for m in self.messages if m.id is not None]


def channel_slug(channel: str) -> str:
    return _SLUG_RE.sub("-", channel.lower()).strip("-")[:40] or "general"


def conversation_id(first: Message) -> str:
    """``conv_<channel>_<epoch ms>_<first message id>``; the id suffix keeps it unique."""
    return f"conv_{channel_slug(first.channel)}_{epoch_ms(first.timestamp)}_{first.id}"


def group_conversations(messages: list[Message], gap: timedelta) -> list[Conversation]:
    """Group *messages* into conversations, returned in order of first message."""
    ordered = sorted(messages, key=lambda m: (m.timestamp, m.id or 0))
    conversations: list[Conversation] = []
    by_source_id: dict[str, Conversation] = {}
    open_by_channel: dict[str, Conversation] = {}
    last_seen: dict[str, datetime] = {}

    for msg in ordered:
        conv = by_source_id.get(msg.reply_to) if msg.reply_to is not None else None

        if conv is None:
            previous = last_seen.get(msg.channel)
            if previous is not None and msg.timestamp - previous <= gap:
                conv = open_by_channel[msg.channel]

        if conv is None:
            conv = Conversation(id=conversation_id(msg), channel=msg.channel)
            conversations.append(conv)

        conv.messages.append(msg)
        by_source_id[msg.source_message_id] = conv
        open_by_channel[msg.channel] = conv
        last_seen[msg.channel] = msg.timestamp

    return conversations
