"""Repository pattern for all docstream database operations.

Single interface for: sources, messages, both watermarks, classifications,
conversation contexts, proposals, import rejects, knowledge-base pages and
their vec embeddings.

Every write commits immediately unless it runs inside ``transaction()``, in
which case the whole block commits (or rolls back) as one unit.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime

from docstream.db.models import (
    Classification,
    ConversationContext,
    DocPage,
    ImportReject,
    ImportWatermark,
    IndexState,
    Message,
    MessageStatus,
    ProcessingWatermark,
    Proposal,
    ProposalStatus,
    RetrievedPageRef,
    SourceRecord,
    UpdateType,
    from_iso,
    to_iso,
    utcnow,
)

_MESSAGE_COLUMNS = (
    "id, source_id, source_message_id, timestamp, author, channel, body, "
    "raw_payload, metadata, status, failure_count, last_error, created_at"
)


class Repository:
    """Data access layer for all docstream database entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see docstream.db.schema.initialize).
        """
        self._conn = conn
        self._tx_depth = 0

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Repository]:
        """Group writes into one atomic unit. Nested blocks join the outer one."""
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._conn.rollback()
            raise
        else:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._conn.commit()

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self._conn.commit()

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def upsert_source(self, source: SourceRecord) -> None:
        """Insert a source or refresh its adapter, config and schedule.

        A source disabled at runtime (by the operator or after an error) stays
        disabled whatever the config says; only set_source_enabled(True)
        clears that state.
        """
        self._conn.execute(
            """
            INSERT INTO sources (id, adapter, config, enabled, schedule)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                adapter = excluded.adapter,
                config = excluded.config,
                schedule = excluded.schedule,
                enabled = CASE WHEN sources.disabled_at IS NULL
                               THEN excluded.enabled ELSE 0 END
            """,
            (source.id, source.adapter, source.config, int(source.enabled), source.schedule),
        )
        self._commit()

    def get_source(self, source_id: str) -> SourceRecord | None:
        row = self._conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        return _row_to_source(row) if row else None

    def list_sources(self) -> list[SourceRecord]:
        """Return all sources ordered by id."""
        rows = self._conn.execute("SELECT * FROM sources ORDER BY id").fetchall()
        return [_row_to_source(r) for r in rows]

    def disable_source(self, source_id: str, reason: str, at: datetime | None = None) -> None:
        """Disable *source_id* after an unhandled error, keeping reason and time."""
        stamp = to_iso(at or utcnow())
        self._conn.execute(
            """
            UPDATE sources SET enabled = 0, disabled_reason = ?, disabled_at = ?,
                last_error = ?, last_error_at = ?, error_count = error_count + 1
            WHERE id = ?
            """,
            (reason, stamp, reason, stamp, source_id),
        )
        self._commit()

    def set_source_enabled(self, source_id: str, enabled: bool) -> bool:
        """Operator enable/disable. Enabling clears any error-disabled state.

        Returns:
            False if no such source exists.
        """
        if enabled:
            cur = self._conn.execute(
                "UPDATE sources SET enabled = 1, disabled_reason = NULL, disabled_at = NULL "
                "WHERE id = ?",
                (source_id,),
            )
        else:
            cur = self._conn.execute(
                "UPDATE sources SET enabled = 0, disabled_at = ? WHERE id = ?",
                (to_iso(utcnow()), source_id),
            )
        self._commit()
        return cur.rowcount > 0

    def record_source_success(self, source_id: str, at: datetime | None = None) -> None:
        self._conn.execute(
            "UPDATE sources SET last_success_at = ? WHERE id = ?",
            (to_iso(at or utcnow()), source_id),
        )
        self._commit()

    def record_source_error(self, source_id: str, error: str, at: datetime | None = None) -> None:
        """Record a transient error without disabling the source."""
        self._conn.execute(
            """
            UPDATE sources SET last_error = ?, last_error_at = ?, error_count = error_count + 1
            WHERE id = ?
            """,
            (error, to_iso(at or utcnow()), source_id),
        )
        self._commit()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def insert_messages(self, messages: Iterable[Message]) -> int:
        """Insert messages, silently skipping (source_id, source_message_id) duplicates.

        Returns:
            Number of rows actually inserted.
        """
        inserted = 0
        with self.transaction():
            for msg in messages:
                cur = self._conn.execute(
                    """
                    INSERT OR IGNORE INTO messages
                        (source_id, source_message_id, timestamp, author, channel, body,
                         raw_payload, metadata, status)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        msg.source_id,
                        msg.source_message_id,
                        to_iso(msg.timestamp),
                        msg.author,
                        msg.channel,
                        msg.body,
                        msg.raw_payload,
                        msg.metadata,
                        MessageStatus.PENDING.value,
                    ),
                )
                if cur.rowcount > 0:
                    msg.id = cur.lastrowid
                    inserted += 1
        return inserted

    def get_message(self, message_id: int) -> Message | None:
        row = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
        ).fetchone()
        return _row_to_message(row) if row else None

    def get_message_by_source_id(self, source_id: str, source_message_id: str) -> Message | None:
        row = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE source_id = ? AND source_message_id = ?",
            (source_id, source_message_id),
        ).fetchone()
        return _row_to_message(row) if row else None

    def list_messages(self, source_id: str, status: MessageStatus | None = None) -> list[Message]:
        """Return messages of *source_id* in timestamp order (optionally by status)."""
        sql = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE source_id = ?"
        params: list = [source_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        rows = self._conn.execute(sql + " ORDER BY timestamp, id", params).fetchall()
        return [_row_to_message(r) for r in rows]

    def count_messages(
        self, source_id: str | None = None, status: MessageStatus | None = None
    ) -> int:
        sql = "SELECT COUNT(*) FROM messages WHERE 1 = 1"
        params: list = []
        if source_id is not None:
            sql += " AND source_id = ?"
            params.append(source_id)
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        return self._conn.execute(sql, params).fetchone()[0]

    def select_pending_window(self, source_id: str, end: datetime, limit: int) -> list[Message]:
        """Return up to *limit* PENDING messages with timestamp < *end*, oldest first.

        Messages older than the processing watermark (earlier failures) are
        included, so they are retried before newer traffic.
        """
        rows = self._conn.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE source_id = ? AND status = ? AND timestamp < ?
            ORDER BY timestamp, id
            LIMIT ?
            """,
            (source_id, MessageStatus.PENDING.value, to_iso(end), limit),
        ).fetchall()
        return [_row_to_message(r) for r in rows]

    def earliest_pending_timestamp(self, source_id: str) -> datetime | None:
        row = self._conn.execute(
            "SELECT MIN(timestamp) FROM messages WHERE source_id = ? AND status = ?",
            (source_id, MessageStatus.PENDING.value),
        ).fetchone()
        return from_iso(row[0]) if row and row[0] else None

    def mark_completed(self, message_ids: list[int]) -> None:
        if not message_ids:
            return
        placeholders = ",".join("?" * len(message_ids))
        self._conn.execute(
            f"UPDATE messages SET status = ?, last_error = NULL WHERE id IN ({placeholders})",
            [MessageStatus.COMPLETED.value, *message_ids],
        )
        self._commit()

    def record_failure(self, message_ids: list[int], error: str, max_failures: int) -> int:
        """Bump failure_count for PENDING messages; those reaching *max_failures* become FAILED.

        Returns:
            Number of messages that moved to FAILED.
        """
        if not message_ids:
            return 0
        placeholders = ",".join("?" * len(message_ids))
        with self.transaction():
            self._conn.execute(
                f"""
                UPDATE messages SET
                    failure_count = failure_count + 1,
                    last_error = ?,
                    status = CASE WHEN failure_count + 1 >= ? THEN ? ELSE status END
                WHERE id IN ({placeholders}) AND status = ?
                """,
                [
                    error,
                    max_failures,
                    MessageStatus.FAILED.value,
                    *message_ids,
                    MessageStatus.PENDING.value,
                ],
            )
            failed = self._conn.execute(
                f"SELECT COUNT(*) FROM messages WHERE id IN ({placeholders}) AND status = ?",
                [*message_ids, MessageStatus.FAILED.value],
            ).fetchone()[0]
        return failed

    def requeue_failed(self, source_id: str | None = None) -> int:
        """Move FAILED messages back to PENDING with a fresh failure budget."""
        sql = "UPDATE messages SET status = ?, failure_count = 0 WHERE status = ?"
        params: list = [MessageStatus.PENDING.value, MessageStatus.FAILED.value]
        if source_id is not None:
            sql += " AND source_id = ?"
            params.append(source_id)
        cur = self._conn.execute(sql, params)
        self._commit()
        return cur.rowcount

    def reset_analysis(self, source_id: str) -> tuple[int, datetime | None]:
        """Undo analysis for every non-PENDING message of *source_id*.

        Deletes their classifications plus the contexts and proposals of the
        conversations they belonged to, and puts the messages back to PENDING.

        Returns:
            (number of messages reset, timestamp of the earliest one or None).
        """
        with self.transaction():
            rows = self._conn.execute(
                """
                SELECT m.id, m.timestamp FROM messages m
                LEFT JOIN classifications c ON c.message_id = m.id
                WHERE m.source_id = ? AND (m.status != ? OR c.id IS NOT NULL)
                """,
                (source_id, MessageStatus.PENDING.value),
            ).fetchall()
            if not rows:
                return 0, None
            ids = [r["id"] for r in rows]
            earliest = min(r["timestamp"] for r in rows)

            conv_ids: set[str] = set()
            for start in range(0, len(ids), 500):
                part = ids[start:start + 500]
                placeholders = ",".join("?" * len(part))
                conv_ids.update(
                    r[0]
                    for r in self._conn.execute(
                        f"SELECT DISTINCT conversation_id FROM classifications "
                        f"WHERE message_id IN ({placeholders}) AND conversation_id IS NOT NULL",
                        part,
                    ).fetchall()
                )
                self._conn.execute(
                    f"DELETE FROM classifications WHERE message_id IN ({placeholders})", part
                )
                self._conn.execute(
                    f"UPDATE messages SET status = ?, failure_count = 0, last_error = NULL "
                    f"WHERE id IN ({placeholders})",
                    [MessageStatus.PENDING.value, *part],
                )
            for conv_id in conv_ids:
                self._conn.execute("DELETE FROM proposals WHERE conversation_id = ?", (conv_id,))
                self._conn.execute(
                    "DELETE FROM conversation_contexts WHERE conversation_id = ?", (conv_id,)
                )
        return len(ids), from_iso(earliest)

    # ------------------------------------------------------------------
    # Import watermarks
    # ------------------------------------------------------------------

    def get_import_watermark(self, source_id: str) -> ImportWatermark | None:
        row = self._conn.execute(
            "SELECT * FROM import_watermarks WHERE source_id = ?", (source_id,)
        ).fetchone()
        return _row_to_import_watermark(row) if row else None

    def save_import_watermark(self, wm: ImportWatermark) -> None:
        """Write *wm* as-is. Monotonicity is enforced by WatermarkStore."""
        self._conn.execute(
            """
            INSERT INTO import_watermarks
                (source_id, last_message_id, last_timestamp, total_imported,
                 oldest_message_id, oldest_timestamp, cursor, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, datetime('now'))
            ON CONFLICT (source_id) DO UPDATE SET
                last_message_id = excluded.last_message_id,
                last_timestamp = excluded.last_timestamp,
                total_imported = excluded.total_imported,
                oldest_message_id = excluded.oldest_message_id,
                oldest_timestamp = excluded.oldest_timestamp,
                cursor = excluded.cursor,
                updated_at = excluded.updated_at
            """,
            (
                wm.source_id,
                wm.last_message_id,
                to_iso(wm.last_timestamp) if wm.last_timestamp else None,
                wm.total_imported,
                wm.oldest_message_id,
                to_iso(wm.oldest_timestamp) if wm.oldest_timestamp else None,
                wm.cursor,
            ),
        )
        self._commit()

    def delete_import_watermark(self, source_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM import_watermarks WHERE source_id = ?", (source_id,))
        self._commit()
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Processing watermarks
    # ------------------------------------------------------------------

    def get_processing_watermark(self, source_id: str) -> ProcessingWatermark | None:
        row = self._conn.execute(
            "SELECT * FROM processing_watermarks WHERE source_id = ?", (source_id,)
        ).fetchone()
        if row is None:
            return None
        return ProcessingWatermark(
            source_id=row["source_id"],
            watermark_time=from_iso(row["watermark_time"]),
            last_batch_id=row["last_batch_id"],
            updated_at=row["updated_at"],
        )

    def save_processing_watermark(self, wm: ProcessingWatermark) -> None:
        self._conn.execute(
            """
            INSERT INTO processing_watermarks (source_id, watermark_time, last_batch_id, updated_at)
            VALUES (?, ?, ?, datetime('now'))
            ON CONFLICT (source_id) DO UPDATE SET
                watermark_time = excluded.watermark_time,
                last_batch_id = excluded.last_batch_id,
                updated_at = excluded.updated_at
            """,
            (wm.source_id, to_iso(wm.watermark_time), wm.last_batch_id),
        )
        self._commit()

    def delete_processing_watermark(self, source_id: str) -> bool:
        cur = self._conn.execute(
            "DELETE FROM processing_watermarks WHERE source_id = ?", (source_id,)
        )
        self._commit()
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Classifications
    # ------------------------------------------------------------------

    def add_classification(self, c: Classification) -> None:
        """Insert a classification. Raises sqlite3.IntegrityError if one exists."""
        self._conn.execute(
            """
            INSERT INTO classifications
                (message_id, batch_id, conversation_id, category, doc_value,
                 doc_value_reason, keywords, semantic_query)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                c.message_id,
                c.batch_id,
                c.conversation_id,
                c.category,
                int(c.doc_value),
                c.doc_value_reason,
                json.dumps(c.keywords),
                c.semantic_query,
            ),
        )
        self._commit()

    def get_classification(self, message_id: int) -> Classification | None:
        row = self._conn.execute(
            "SELECT * FROM classifications WHERE message_id = ?", (message_id,)
        ).fetchone()
        return _row_to_classification(row) if row else None

    def list_classifications(self, conversation_id: str) -> list[Classification]:
        rows = self._conn.execute(
            "SELECT * FROM classifications WHERE conversation_id = ? ORDER BY message_id",
            (conversation_id,),
        ).fetchall()
        return [_row_to_classification(r) for r in rows]

    # ------------------------------------------------------------------
    # Conversation contexts
    # ------------------------------------------------------------------

    def add_context(self, ctx: ConversationContext) -> None:
        self._conn.execute(
            """
            INSERT INTO conversation_contexts
                (conversation_id, batch_id, source_id, retrieved_pages, total_tokens,
                 summary, proposals_rejected, rejection_reason)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                ctx.conversation_id,
                ctx.batch_id,
                ctx.source_id,
                json.dumps([asdict(p) for p in ctx.retrieved_pages]),
                ctx.total_tokens,
                ctx.summary,
                int(ctx.proposals_rejected),
                ctx.rejection_reason,
            ),
        )
        self._commit()

    def get_context(self, conversation_id: str) -> ConversationContext | None:
        row = self._conn.execute(
            "SELECT * FROM conversation_contexts WHERE conversation_id = ?", (conversation_id,)
        ).fetchone()
        if row is None:
            return None
        return ConversationContext(
            conversation_id=row["conversation_id"],
            batch_id=row["batch_id"],
            source_id=row["source_id"],
            retrieved_pages=[RetrievedPageRef(**p) for p in json.loads(row["retrieved_pages"])],
            total_tokens=row["total_tokens"],
            summary=row["summary"],
            proposals_rejected=bool(row["proposals_rejected"]),
            rejection_reason=row["rejection_reason"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def add_proposal(self, p: Proposal) -> int:
        """Insert a proposal and return its id. Proposals are never updated here."""
        cur = self._conn.execute(
            """
            INSERT INTO proposals
                (conversation_id, batch_id, page, section, location, update_type,
                 suggested_text, raw_suggested_text, reasoning, source_messages, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                p.conversation_id,
                p.batch_id,
                p.page,
                p.section,
                json.dumps(p.location),
                p.update_type.value,
                p.suggested_text,
                p.raw_suggested_text,
                p.reasoning,
                json.dumps(p.source_messages),
                p.status.value,
            ),
        )
        self._commit()
        p.id = cur.lastrowid
        return p.id

    def list_proposals(
        self,
        *,
        status: ProposalStatus | None = None,
        conversation_id: str | None = None,
        include_none: bool = True,
        limit: int | None = None,
    ) -> list[Proposal]:
        sql = "SELECT * FROM proposals WHERE 1 = 1"
        params: list = []
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        if conversation_id is not None:
            sql += " AND conversation_id = ?"
            params.append(conversation_id)
        if not include_none:
            sql += " AND update_type != 'NONE'"
        sql += " ORDER BY id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_proposal(r) for r in self._conn.execute(sql, params).fetchall()]

    def count_proposals(self, status: ProposalStatus | None = None) -> int:
        if status is None:
            return self._conn.execute("SELECT COUNT(*) FROM proposals").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM proposals WHERE status = ?", (status.value,)
        ).fetchone()[0]

    # ------------------------------------------------------------------
    # Import rejects
    # ------------------------------------------------------------------

    def add_import_reject(self, reject: ImportReject) -> None:
        self._conn.execute(
            "INSERT INTO import_rejects (source_id, location, reason, raw) VALUES (?, ?, ?, ?)",
            (reject.source_id, reject.location, reject.reason, reject.raw),
        )
        self._commit()

    def list_import_rejects(self, source_id: str) -> list[ImportReject]:
        rows = self._conn.execute(
            "SELECT * FROM import_rejects WHERE source_id = ? ORDER BY id", (source_id,)
        ).fetchall()
        return [
            ImportReject(
                id=r["id"],
                source_id=r["source_id"],
                location=r["location"],
                reason=r["reason"],
                raw=r["raw"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Model response cache
    # ------------------------------------------------------------------

    def get_cached_response(self, key: str) -> str | None:
        row = self._conn.execute(
            "SELECT response FROM llm_cache WHERE key = ?", (key,)
        ).fetchone()
        return row["response"] if row else None

    def save_cached_response(self, key: str, purpose: str, model: str, response: str) -> None:
        self._conn.execute(
            """
            INSERT INTO llm_cache (key, purpose, model, response) VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET response = excluded.response,
                                           created_at = datetime('now')
            """,
            (key, purpose, model, response),
        )
        self._commit()

    def count_cached_responses(self, purpose: str | None = None) -> int:
        if purpose is None:
            return self._conn.execute("SELECT COUNT(*) FROM llm_cache").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM llm_cache WHERE purpose = ?", (purpose,)
        ).fetchone()[0]

    # ------------------------------------------------------------------
    # Knowledge-base pages
    # ------------------------------------------------------------------

    def upsert_page(self, page: DocPage) -> int:
        """Insert or update a page by path. Returns the page id (stable across updates)."""
        self._conn.execute(
            """
            INSERT INTO doc_pages (path, title, content, content_hash, updated_at)
            VALUES (?, ?, ?, ?, datetime('now'))
            ON CONFLICT (path) DO UPDATE SET
                title = excluded.title,
                content = excluded.content,
                content_hash = excluded.content_hash,
                updated_at = excluded.updated_at
            """,
            (page.path, page.title, page.content, page.content_hash),
        )
        row = self._conn.execute("SELECT id FROM doc_pages WHERE path = ?", (page.path,)).fetchone()
        self._commit()
        page.id = row["id"]
        return page.id

    def get_page(self, page_id: int) -> DocPage | None:
        row = self._conn.execute("SELECT * FROM doc_pages WHERE id = ?", (page_id,)).fetchone()
        return _row_to_page(row) if row else None

    def get_page_by_path(self, path: str) -> DocPage | None:
        row = self._conn.execute("SELECT * FROM doc_pages WHERE path = ?", (path,)).fetchone()
        return _row_to_page(row) if row else None

    def list_pages(self) -> list[DocPage]:
        rows = self._conn.execute("SELECT * FROM doc_pages ORDER BY path").fetchall()
        return [_row_to_page(r) for r in rows]

    def delete_page(self, page_id: int) -> None:
        self._conn.execute("DELETE FROM doc_pages WHERE id = ?", (page_id,))
        self._commit()

    def get_index_state(self) -> IndexState | None:
        row = self._conn.execute("SELECT * FROM doc_index_state WHERE id = 1").fetchone()
        if row is None:
            return None
        return IndexState(
            version_marker=row["version_marker"],
            embedding_model=row["embedding_model"],
            dimensions=row["dimensions"],
            chunking=row["chunking"],
            indexed_at=row["indexed_at"],
        )

    def save_index_state(self, state: IndexState) -> None:
        self._conn.execute(
            """
            INSERT INTO doc_index_state (id, version_marker, embedding_model, dimensions, chunking,
                                         indexed_at)
            VALUES (1, ?, ?, ?, ?, datetime('now'))
            ON CONFLICT (id) DO UPDATE SET
                version_marker = excluded.version_marker,
                embedding_model = excluded.embedding_model,
                dimensions = excluded.dimensions,
                chunking = excluded.chunking,
                indexed_at = excluded.indexed_at
            """,
            (state.version_marker, state.embedding_model, state.dimensions, state.chunking),
        )
        self._commit()

    # ------------------------------------------------------------------
    # Vec embeddings
    # ------------------------------------------------------------------

    def add_embedding(self, table: str, rowid: int, embedding: list[float]) -> None:
        """Insert (or replace) the embedding of page *rowid* in a vec table."""
        self._conn.execute(f"DELETE FROM {table} WHERE rowid = ?", (rowid,))
        self._conn.execute(
            f"INSERT INTO {table}(rowid, embedding) VALUES (?, ?)",
            (rowid, json.dumps(embedding)),
        )
        self._commit()

    def delete_embedding(self, table: str, rowid: int) -> None:
        self._conn.execute(f"DELETE FROM {table} WHERE rowid = ?", (rowid,))
        self._commit()

    def search_vec(
        self, table: str, embedding: list[float], limit: int = 5
    ) -> list[tuple[DocPage, float]]:
        """Nearest-neighbour search. Returns (page, cosine distance) sorted by distance."""
        vec_rows = self._conn.execute(
            f"SELECT rowid, distance FROM {table} WHERE embedding MATCH ? ORDER BY distance LIMIT ?",
            (json.dumps(embedding), limit),
        ).fetchall()

        results: list[tuple[DocPage, float]] = []
        for vec_row in vec_rows:
            page = self.get_page(vec_row["rowid"])
            if page is not None:
                results.append((page, vec_row["distance"]))
        return results


# ------------------------------------------------------------------
# Row mappers
# ------------------------------------------------------------------


def _opt_time(value: str | None) -> datetime | None:
    return from_iso(value) if value else None


def _row_to_source(row: sqlite3.Row) -> SourceRecord:
    return SourceRecord(
        id=row["id"],
        adapter=row["adapter"],
        config=row["config"],
        enabled=bool(row["enabled"]),
        schedule=row["schedule"],
        disabled_reason=row["disabled_reason"],
        disabled_at=_opt_time(row["disabled_at"]),
        last_error=row["last_error"],
        last_error_at=_opt_time(row["last_error_at"]),
        last_success_at=_opt_time(row["last_success_at"]),
        error_count=row["error_count"],
        created_at=row["created_at"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        source_id=row["source_id"],
        source_message_id=row["source_message_id"],
        timestamp=from_iso(row["timestamp"]),
        author=row["author"],
        channel=row["channel"],
        body=row["body"],
        raw_payload=row["raw_payload"],
        metadata=row["metadata"],
        status=MessageStatus(row["status"]),
        failure_count=row["failure_count"],
        last_error=row["last_error"],
        created_at=row["created_at"],
    )


def _row_to_import_watermark(row: sqlite3.Row) -> ImportWatermark:
    return ImportWatermark(
        source_id=row["source_id"],
        last_message_id=row["last_message_id"],
        last_timestamp=_opt_time(row["last_timestamp"]),
        total_imported=row["total_imported"],
        oldest_message_id=row["oldest_message_id"],
        oldest_timestamp=_opt_time(row["oldest_timestamp"]),
        cursor=row["cursor"],
        updated_at=row["updated_at"],
    )


def _row_to_classification(row: sqlite3.Row) -> Classification:
    return Classification(
        message_id=row["message_id"],
        batch_id=row["batch_id"],
        category=row["category"],
        doc_value=bool(row["doc_value"]),
        doc_value_reason=row["doc_value_reason"],
        conversation_id=row["conversation_id"],
        keywords=json.loads(row["keywords"]),
        semantic_query=row["semantic_query"],
        created_at=row["created_at"],
    )


def _row_to_proposal(row: sqlite3.Row) -> Proposal:
    return Proposal(
        id=row["id"],
        conversation_id=row["conversation_id"],
        batch_id=row["batch_id"],
        page=row["page"],
        section=row["section"],
        location=json.loads(row["location"]),
        update_type=UpdateType(row["update_type"]),
        suggested_text=row["suggested_text"],
        raw_suggested_text=row["raw_suggested_text"],
        reasoning=row["reasoning"],
        source_messages=json.loads(row["source_messages"]),
        status=ProposalStatus(row["status"]),
        edited_text=row["edited_text"],
        reviewed_by=row["reviewed_by"],
        reviewed_at=row["reviewed_at"],
        created_at=row["created_at"],
    )


def _row_to_page(row: sqlite3.Row) -> DocPage:
    return DocPage(
        id=row["id"],
        path=row["path"],
        title=row["title"],
        content=row["content"],
        content_hash=row["content_hash"],
        updated_at=row["updated_at"],
    )
