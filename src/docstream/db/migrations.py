"""Forward-only migration runner for the docstream database schema.

Vec tables (vec_pages_*) are NOT migration-managed; use ensure_vec_table().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS sources (
    id               TEXT PRIMARY KEY,
    adapter          TEXT NOT NULL,
    config           TEXT NOT NULL DEFAULT '{}',
    enabled          INTEGER NOT NULL DEFAULT 1,
    schedule         TEXT,
    disabled_reason  TEXT,
    disabled_at      TEXT,
    last_error       TEXT,
    last_error_at    TEXT,
    last_success_at  TEXT,
    error_count      INTEGER NOT NULL DEFAULT 0,
    created_at       DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS messages (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id          TEXT NOT NULL REFERENCES sources(id),
    source_message_id  TEXT NOT NULL,
    timestamp          TEXT NOT NULL,
    author             TEXT NOT NULL DEFAULT '',
    channel            TEXT NOT NULL DEFAULT '',
    body               TEXT NOT NULL,
    raw_payload        TEXT NOT NULL DEFAULT '{}',
    metadata           TEXT NOT NULL DEFAULT '{}',
    status             TEXT NOT NULL DEFAULT 'PENDING'
                       CHECK (status IN ('PENDING', 'COMPLETED', 'FAILED')),
    failure_count      INTEGER NOT NULL DEFAULT 0,
    last_error         TEXT,
    created_at         DATETIME NOT NULL DEFAULT (datetime('now')),
    UNIQUE (source_id, source_message_id)
);

CREATE INDEX IF NOT EXISTS idx_messages_window
    ON messages (source_id, status, timestamp);

CREATE TABLE IF NOT EXISTS import_watermarks (
    source_id          TEXT PRIMARY KEY REFERENCES sources(id),
    last_message_id    TEXT,
    last_timestamp     TEXT,
    total_imported     INTEGER NOT NULL DEFAULT 0,
    oldest_message_id  TEXT,
    oldest_timestamp   TEXT,
    cursor             INTEGER,
    updated_at         DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS processing_watermarks (
    source_id       TEXT PRIMARY KEY REFERENCES sources(id),
    watermark_time  TEXT NOT NULL,
    last_batch_id   TEXT,
    updated_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS classifications (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id        INTEGER NOT NULL UNIQUE REFERENCES messages(id),
    batch_id          TEXT NOT NULL,
    conversation_id   TEXT,
    category          TEXT NOT NULL,
    doc_value         INTEGER NOT NULL DEFAULT 0,
    doc_value_reason  TEXT NOT NULL DEFAULT '',
    keywords          TEXT NOT NULL DEFAULT '[]',
    semantic_query    TEXT,
    created_at        DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_classifications_conversation
    ON classifications (conversation_id);

CREATE TABLE IF NOT EXISTS conversation_contexts (
    conversation_id     TEXT PRIMARY KEY,
    batch_id            TEXT NOT NULL,
    source_id           TEXT NOT NULL REFERENCES sources(id),
    retrieved_pages     TEXT NOT NULL DEFAULT '[]',
    total_tokens        INTEGER NOT NULL DEFAULT 0,
    summary             TEXT NOT NULL DEFAULT '',
    proposals_rejected  INTEGER NOT NULL DEFAULT 0,
    rejection_reason    TEXT,
    created_at          DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS proposals (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id  TEXT NOT NULL,
    batch_id         TEXT NOT NULL,
    page             TEXT NOT NULL,
    section          TEXT,
    location         TEXT NOT NULL DEFAULT '{}',
    update_type      TEXT NOT NULL
                     CHECK (update_type IN ('INSERT', 'UPDATE', 'DELETE', 'NONE')),
    suggested_text   TEXT,
    reasoning        TEXT NOT NULL DEFAULT '',
    source_messages  TEXT NOT NULL DEFAULT '[]',
    status           TEXT NOT NULL DEFAULT 'pending'
                     CHECK (status IN ('pending', 'approved', 'ignored')),
    edited_text      TEXT,
    reviewed_by      TEXT,
    reviewed_at      TEXT,
    created_at       DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_proposals_conversation
    ON proposals (conversation_id);

CREATE TABLE IF NOT EXISTS import_rejects (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id   TEXT NOT NULL REFERENCES sources(id),
    location    TEXT NOT NULL,
    reason      TEXT NOT NULL,
    raw         TEXT NOT NULL DEFAULT '',
    created_at  DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS doc_pages (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    path          TEXT NOT NULL UNIQUE,
    title         TEXT NOT NULL DEFAULT '',
    content       TEXT NOT NULL,
    content_hash  TEXT NOT NULL,
    updated_at    DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS doc_index_state (
    id               INTEGER PRIMARY KEY CHECK (id = 1),
    version_marker   TEXT NOT NULL,
    embedding_model  TEXT NOT NULL,
    dimensions       INTEGER NOT NULL,
    chunking         TEXT NOT NULL DEFAULT 'page',
    indexed_at       DATETIME NOT NULL DEFAULT (datetime('now'))
);
"""

# Model response cache and the unformatted proposal text.
_V2_SQL = """
CREATE TABLE IF NOT EXISTS llm_cache (
    key         TEXT PRIMARY KEY,
    purpose     TEXT NOT NULL DEFAULT 'general',
    model       TEXT NOT NULL,
    response    TEXT NOT NULL,
    created_at  DATETIME NOT NULL DEFAULT (datetime('now'))
);

ALTER TABLE proposals ADD COLUMN raw_suggested_text TEXT;
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
    (2, _V2_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    Vec tables are NOT managed here; use ensure_vec_table() instead.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()


def current_version(conn: sqlite3.Connection) -> int:
    """Return the applied schema version (0 for a fresh database)."""
    conn.execute(_CREATE_SCHEMA_VERSION)
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row[0] is not None else 0
