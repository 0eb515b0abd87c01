"""Domain models for the docstream database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

# Fixed-width UTC format: lexical order == chronological order in SQLite.
_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialise *value* as a fixed-width UTC string (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_ISO_FORMAT)


def from_iso(value: str) -> datetime:
    """Parse a timestamp written by to_iso() (or any ISO-8601 string) as aware UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class MessageStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class UpdateType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    NONE = "NONE"


class ProposalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    IGNORED = "ignored"


@dataclass
class SourceRecord:
    """Persisted state of a configured source.

    ``enabled`` is the effective flag: False both for operator-disabled sources
    and for sources the coordinator disabled after an unhandled error (the
    latter also carry ``disabled_reason``).
    """

    id: str
    adapter: str
    config: str = "{}"
    enabled: bool = True
    schedule: str | None = None
    disabled_reason: str | None = None
    disabled_at: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None
    last_success_at: datetime | None = None
    error_count: int = 0
    created_at: str | None = None

    @property
    def error_disabled(self) -> bool:
        return not self.enabled and self.disabled_reason is not None


@dataclass
class Message:
    source_id: str
    source_message_id: str
    timestamp: datetime
    body: str
    author: str = ""
    channel: str = ""
    raw_payload: str = "{}"
    metadata: str = field(default_factory=lambda: "{}")
    status: MessageStatus = MessageStatus.PENDING
    failure_count: int = 0
    last_error: str | None = None
    id: int | None = None  # set after insert
    created_at: str | None = None

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.metadata)

    @property
    def reply_to(self) -> str | None:
        value = self.metadata_dict.get("reply_to")
        return str(value) if value is not None else None


@dataclass
class ImportWatermark:
    """Fetch progress for one source.

    Attributes:
        last_message_id: Source id of the newest imported message.
        last_timestamp: Timestamp of the newest imported message.
        total_imported: Cumulative count of newly persisted messages.
        oldest_message_id: Source id of the oldest imported message (backfill boundary).
        oldest_timestamp: Timestamp of the oldest imported message.
        cursor: Adapter-specific strictly increasing sequence (e.g. bot update id).
    """

    source_id: str
    last_message_id: str | None = None
    last_timestamp: datetime | None = None
    total_imported: int = 0
    oldest_message_id: str | None = None
    oldest_timestamp: datetime | None = None
    cursor: int | None = None
    updated_at: str | None = None


@dataclass
class ProcessingWatermark:
    source_id: str
    watermark_time: datetime
    last_batch_id: str | None = None
    updated_at: str | None = None


@dataclass
class Classification:
    message_id: int
    batch_id: str
    category: str
    doc_value: bool
    doc_value_reason: str = ""
    conversation_id: str | None = None
    keywords: list[str] = field(default_factory=list)
    semantic_query: str | None = None
    created_at: str | None = None


@dataclass
class RetrievedPageRef:
    """Snapshot of one retrieved page, stored with the conversation context."""

    page_id: int
    title: str
    path: str
    similarity: float
    content_preview: str = ""


@dataclass
class ConversationContext:
    conversation_id: str
    batch_id: str
    source_id: str
    retrieved_pages: list[RetrievedPageRef] = field(default_factory=list)
    total_tokens: int = 0
    summary: str = ""
    proposals_rejected: bool = False
    rejection_reason: str | None = None
    created_at: str | None = None


@dataclass
class Proposal:
    conversation_id: str
    batch_id: str
    page: str
    update_type: UpdateType
    suggested_text: str | None = None
    reasoning: str = ""
    section: str | None = None
    location: dict = field(default_factory=dict)
    source_messages: list[int] = field(default_factory=list)
    raw_suggested_text: str | None = None
    status: ProposalStatus = ProposalStatus.PENDING
    edited_text: str | None = None
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class ImportReject:
    source_id: str
    location: str
    reason: str
    raw: str = ""
    id: int | None = None
    created_at: str | None = None


@dataclass
class DocPage:
    path: str
    title: str
    content: str
    content_hash: str
    id: int | None = None  # also the rowid in the vec_pages_* table
    updated_at: str | None = None


@dataclass
class IndexState:
    version_marker: str
    embedding_model: str
    dimensions: int
    chunking: str = "page"
    indexed_at: str | None = None
