"""Tests for the Database connection layer."""

from __future__ import annotations

from pathlib import Path

import pytest

from docstream.db.connection import Database


def test_connect_creates_file(tmp_path):
    db_path = tmp_path / ".docstream.db"
    conn = Database(db_path).connect()
    conn.close()
    assert db_path.exists()


def test_sqlite_vec_loads(tmp_path):
    conn = Database(tmp_path / ".docstream.db").connect()
    version = conn.execute("SELECT vec_version()").fetchone()[0]
    conn.close()
    assert version.startswith("v")


def test_foreign_keys_and_wal(tmp_path):
    conn = Database(tmp_path / ".docstream.db").connect()
    assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    conn.close()


def test_session_initializes_schema_and_closes(tmp_path):
    db = Database(tmp_path / ".docstream.db")
    with db.session() as conn:
        row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='messages'"
        ).fetchone()
        assert row is not None
    with pytest.raises(Exception):
        conn.execute("SELECT 1")


def test_sessions_are_independent_connections(tmp_path):
    db = Database(tmp_path / ".docstream.db")
    with db.session() as a, db.session() as b:
        assert a is not b


def test_context_manager_accepts_path_str(tmp_path):
    db = Database(str(tmp_path / ".docstream.db"))
    assert isinstance(db.db_path, Path)
    with db as conn:
        assert conn.execute("SELECT 1").fetchone()[0] == 1
