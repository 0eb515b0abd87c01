"""Tests for the page retriever."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from docstream.db.models import DocPage
from docstream.db.vectors import ensure_vec_table, model_to_slug
from docstream.errors import ModelCallFailed
from docstream.rag.retriever import RetrieverConfig, build_query, retrieve_pages

MODEL = "openai/text-embedding-3-small"
CFG = RetrieverConfig(embedding_model=MODEL, top_k=2)


def _index(repo, pages):
    """Index *pages* as (path, vector) pairs into a 3-dim table."""
    table = ensure_vec_table(repo.conn, model_to_slug(MODEL), dimensions=3)
    for i, (path, vector) in enumerate(pages):
        page_id = repo.upsert_page(
            DocPage(path=path, title=path.removesuffix(".md").title(), content=f"{path} body",
                    content_hash=str(i))
        )
        repo.add_embedding(table, page_id, vector)
    return table


# ------------------------------------------------------------------
# build_query
# ------------------------------------------------------------------


def test_build_query_joins_parts():
    assert build_query("how to install", ["pip", " venv "]) == "how to install\npip, venv"


def test_build_query_keywords_only():
    assert build_query(None, ["pip"]) == "pip"


def test_build_query_empty():
    assert build_query("  ", []) == ""


# ------------------------------------------------------------------
# retrieve_pages
# ------------------------------------------------------------------


def test_blank_query_returns_nothing(repo):
    with patch("docstream.rag.retriever.embed") as mock_embed:
        assert retrieve_pages("   ", repo, CFG) == []
    mock_embed.assert_not_called()


def test_missing_index_returns_nothing(repo, caplog):
    with patch("docstream.rag.retriever.embed") as mock_embed:
        assert retrieve_pages("install", repo, CFG) == []
    mock_embed.assert_not_called()
    assert "docstream index" in caplog.text


def test_pages_ranked_best_first(repo):
    _index(repo, [
        ("install.md", [1.0, 0.0, 0.0]),
        ("config.md", [0.0, 1.0, 0.0]),
        ("faq.md", [0.7, 0.7, 0.0]),
    ])
    with patch("docstream.rag.retriever.embed", return_value=[[1.0, 0.0, 0.0]]):
        hits = retrieve_pages("install", repo, CFG)

    assert [h.page.path for h in hits] == ["install.md", "faq.md"]
    assert [h.rank for h in hits] == [1, 2]
    assert hits[0].similarity == pytest.approx(1.0, abs=1e-5)
    assert hits[0].similarity > hits[1].similarity


def test_to_ref_carries_preview(repo):
    _index(repo, [("install.md", [1.0, 0.0, 0.0])])
    with patch("docstream.rag.retriever.embed", return_value=[[1.0, 0.0, 0.0]]):
        [hit] = retrieve_pages("install", repo, CFG)
    ref = hit.to_ref()
    assert ref.path == "install.md"
    assert ref.title == "Install"
    assert ref.content_preview == "install.md body"


def test_embedding_failure_propagates(repo):
    _index(repo, [("install.md", [1.0, 0.0, 0.0])])
    with patch("docstream.rag.retriever.embed",
               side_effect=ModelCallFailed("down", transient=True)):
        with pytest.raises(ModelCallFailed):
            retrieve_pages("install", repo, CFG)
