"""Page-level dense retriever over the knowledge-base index.

The query text (a thread's semantic query plus its keywords) is embedded with
the same ``models.embedding`` used by the indexer and matched against the
``vec_pages_<slug>`` table. Similarity is ``1 - cosine distance``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from docstream.db.models import DocPage, RetrievedPageRef
from docstream.db.repository import Repository
from docstream.db.vectors import model_to_slug, vec_table_exists, vec_table_name
from docstream.rag.llm_client import embed

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 1000


@dataclass
class RetrieverConfig:
    """Configuration for page retrieval.

    Attributes:
        embedding_model: LiteLLM embedding model string (provider/model format).
        top_k: Maximum number of pages to return.
    """

    embedding_model: str = "openai/text-embedding-3-small"
    top_k: int = 5


@dataclass
class ScoredPage:
    """A knowledge-base page with its similarity to the query (higher = closer)."""

    page: DocPage
    similarity: float
    rank: int

    def to_ref(self) -> RetrievedPageRef:
        return RetrievedPageRef(
            page_id=self.page.id or 0,
            title=self.page.title,
            path=self.page.path,
            similarity=round(self.similarity, 6),
            content_preview=self.page.content[:_PREVIEW_CHARS],
        )


def build_query(semantic_query: str | None, keywords: list[str] | None = None) -> str:
    """Join a semantic query and keywords into one embedding input."""
    parts = [semantic_query.strip()] if semantic_query and semantic_query.strip() else []
    if keywords:
        parts.append(", ".join(k.strip() for k in keywords if k and k.strip()))
    return "\n".join(p for p in parts if p)


def retrieve_pages(
    query: str,
    repo: Repository,
    config: RetrieverConfig,
    *,
    attempts: int = 3,
    base_delay: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> list[ScoredPage]:
    """Return up to ``top_k`` pages ranked by similarity to *query*, best first.

    Returns an empty list when *query* is blank or the knowledge base has not
    been indexed for the configured embedding model.

    Raises:
        ModelCallFailed: If embedding the query fails.
    """
    if not query.strip():
        return []

    table = vec_table_name(model_to_slug(config.embedding_model))
    if not vec_table_exists(repo.conn, table):
        logger.warning(
            "No page index for embedding model '%s'; run 'docstream index' first",
            config.embedding_model,
        )
        return []

    [vector] = embed(
        config.embedding_model, [query], attempts=attempts, base_delay=base_delay, sleep=sleep
    )
    hits = repo.search_vec(table, vector, limit=config.top_k)
    scored = [
        ScoredPage(page=page, similarity=1.0 - distance, rank=i + 1)
        for i, (page, distance) in enumerate(hits)
    ]
    logger.debug("Retrieved %d page(s) for query %.60r", len(scored), query)
    return scored
