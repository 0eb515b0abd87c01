"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from docstream.db.connection import Database
from docstream.db.models import SourceRecord
from docstream.db.repository import Repository
from docstream.db.schema import initialize


@pytest.fixture
def database(tmp_path) -> Database:
    return Database(tmp_path / ".docstream.db")


@pytest.fixture
def tmp_db(database):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    conn = database.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db) -> Repository:
    """Repository with one registered source, 'zulip-main'."""
    r = Repository(tmp_db)
    r.upsert_source(SourceRecord(id="zulip-main", adapter="zulip"))
    return r
