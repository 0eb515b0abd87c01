"""Tests for the page indexer."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from docstream.db.vectors import model_to_slug, vec_table_exists, vec_table_name
from docstream.errors import ModelCallFailed
from docstream.rag.docs_source import DirectoryDocsSource
from docstream.rag.indexer import PageIndexer, page_title

MODEL = "openai/text-embedding-3-small"


def _fake_embed(dims):
    def _embed(model, texts):
        return [[float(len(t) % 7)] + [1.0] * (dims - 1) for t in texts]
    return _embed


def _write(root, rel, text):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


@pytest.fixture
def docs(tmp_path):
    root = tmp_path / "docs"
    _write(root, "install.md", "# Install\npip install docstream\n")
    _write(root, "config.md", "---\ntitle: Configuration\n---\nSettings live in yaml.\n")
    return root


def _sync(repo, docs, *, full=False, model=MODEL, dims=3):
    with patch("docstream.rag.indexer.embed", side_effect=_fake_embed(dims)) as mock_embed:
        result = PageIndexer(repo, model, dims).sync(DirectoryDocsSource(docs), full=full)
    return result, mock_embed


# ------------------------------------------------------------------
# sync
# ------------------------------------------------------------------


def test_first_sync_is_full(repo, docs):
    result, _ = _sync(repo, docs)

    assert result.full is True
    assert sorted(result.added) == ["config.md", "install.md"]
    assert {p.title for p in repo.list_pages()} == {"Install", "Configuration"}
    assert vec_table_exists(repo.conn, vec_table_name(model_to_slug(MODEL)))
    state = repo.get_index_state()
    assert state.version_marker == result.version_marker
    assert state.embedding_model == MODEL
    assert state.dimensions == 3


def test_unchanged_docs_are_skipped(repo, docs):
    _sync(repo, docs)
    result, mock_embed = _sync(repo, docs)
    assert result.skipped is True
    mock_embed.assert_not_called()


def test_incremental_embeds_only_changes(repo, docs):
    _sync(repo, docs)
    install_id = repo.get_page_by_path("install.md").id
    _write(docs, "install.md", "# Install\nuv pip install docstream\n")
    _write(docs, "faq.md", "# FAQ\n")

    result, mock_embed = _sync(repo, docs)

    assert result.full is False
    assert result.updated == ["install.md"]
    assert result.added == ["faq.md"]
    assert result.unchanged == 1
    embedded = mock_embed.call_args.args[1]
    assert len(embedded) == 2
    assert repo.get_page_by_path("install.md").id == install_id


def test_removed_pages_leave_index(repo, docs):
    _sync(repo, docs)
    (docs / "config.md").unlink()

    result, _ = _sync(repo, docs)

    assert result.removed == ["config.md"]
    assert [p.path for p in repo.list_pages()] == ["install.md"]
    table = vec_table_name(model_to_slug(MODEL))
    assert repo.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0] == 1


def test_full_flag_reembeds_everything(repo, docs):
    _sync(repo, docs)
    result, mock_embed = _sync(repo, docs, full=True)
    assert result.full is True
    assert len(result.updated) == 2
    assert len(mock_embed.call_args.args[1]) == 2


def test_model_change_forces_full_and_drops_old_table(repo, docs):
    _sync(repo, docs)
    result, _ = _sync(repo, docs, model="openai/text-embedding-3-large", dims=4)

    assert result.full is True
    assert not vec_table_exists(repo.conn, vec_table_name(model_to_slug(MODEL)))
    assert repo.get_index_state().embedding_model == "openai/text-embedding-3-large"


def test_embedding_failure_keeps_old_marker(repo, docs):
    first, _ = _sync(repo, docs)
    _write(docs, "install.md", "# Install\nchanged\n")

    with patch("docstream.rag.indexer.embed", side_effect=ModelCallFailed("down")):
        with pytest.raises(ModelCallFailed):
            PageIndexer(repo, MODEL, 3).sync(DirectoryDocsSource(docs))

    assert repo.get_index_state().version_marker == first.version_marker


# ------------------------------------------------------------------
# page_title
# ------------------------------------------------------------------


@pytest.mark.parametrize("path,content,expected", [
    ("a.md", "# Getting Started\nbody", "Getting Started"),
    ("a.md", "---\ntitle: 'Front Matter'\n---\n# Heading", "Front Matter"),
    ("guide/quick-start_notes.md", "no heading here", "quick start notes"),
    ("a.md", "intro\n\n# Later Heading ##\n", "Later Heading"),
])
def test_page_title(path, content, expected):
    assert page_title(path, content) == expected
