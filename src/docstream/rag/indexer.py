"""Page indexer: keeps ``doc_pages`` and the page vec table in sync with the docs.

One embedding per page (no chunking). The stored index state records the
docs version marker plus the embedding model, dimensions and content shape;
any of the last three differing forces a full re-index.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field

from docstream.db.models import DocPage, IndexState
from docstream.db.repository import Repository
from docstream.db.vectors import drop_vec_table, ensure_vec_table, model_to_slug
from docstream.rag.docs_source import DocsSource
from docstream.rag.llm_client import embed

logger = logging.getLogger(__name__)

CHUNKING = "page"
_EMBED_BATCH = 16
# ≈ 6k tokens; longer pages are embedded by their head.
_EMBED_CHAR_LIMIT = 24_000

_HEADING_RE = re.compile(r"^\s*#\s+(.+?)\s*#*\s*$", re.MULTILINE)
_FRONTMATTER_TITLE_RE = re.compile(r"^title:\s*[\"']?(.+?)[\"']?\s*$", re.MULTILINE)


@dataclass
class IndexResult:
    version_marker: str
    full: bool = False
    skipped: bool = False
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: int = 0

    @property
    def embedded(self) -> int:
        return len(self.added) + len(self.updated)


class PageIndexer:
    """Sync a docs source into the page index.

    Args:
        repo: Open Repository.
        embedding_model: LiteLLM embedding model string.
        dimensions: Embedding size of that model.
    """

    def __init__(self, repo: Repository, embedding_model: str, dimensions: int) -> None:
        self._repo = repo
        self._model = embedding_model
        self._dims = dimensions
        self._slug = model_to_slug(embedding_model)

    def needs_full_reindex(self, state: IndexState | None) -> bool:
        return (
            state is None
            or state.embedding_model != self._model
            or state.dimensions != self._dims
            or state.chunking != CHUNKING
        )

    def sync(self, source: DocsSource, *, full: bool = False) -> IndexResult:
        """Bring the index up to date with *source*.

        Raises:
            ModelCallFailed: If an embedding call fails. Pages embedded before
                the failure stay indexed; the version marker is not advanced.
        """
        state = self._repo.get_index_state()
        marker = source.version_marker()
        full = full or self.needs_full_reindex(state)

        if not full and state is not None and state.version_marker == marker:
            logger.info("Page index already at %s", marker[:12])
            return IndexResult(version_marker=marker, skipped=True)

        if full:
            if state is not None and state.embedding_model != self._model:
                drop_vec_table(self._repo.conn, model_to_slug(state.embedding_model))
            drop_vec_table(self._repo.conn, self._slug)
        table = ensure_vec_table(self._repo.conn, self._slug, self._dims)

        result = IndexResult(version_marker=marker, full=full)
        current = source.list_paths()
        existing = {p.path: p for p in self._repo.list_pages()}

        for path in sorted(set(existing) - set(current)):
            page = existing[path]
            with self._repo.transaction():
                if page.id is not None:
                    self._repo.delete_embedding(table, page.id)
                    self._repo.delete_page(page.id)
            result.removed.append(path)

        candidates = current
        if not full and state is not None:
            changed = source.changed_paths(state.version_marker)
            if changed is not None:
                candidates = [p for p in current if p in changed or p not in existing]

        pending: list[DocPage] = []
        for path in candidates:
            content = source.read(path)
            digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
            known = existing.get(path)
            if not full and known is not None and known.content_hash == digest:
                result.unchanged += 1
                continue
            pending.append(
                DocPage(path=path, title=page_title(path, content), content=content,
                        content_hash=digest)
            )
            (result.updated if known is not None else result.added).append(path)
        result.unchanged += len(current) - len(candidates)

        for start in range(0, len(pending), _EMBED_BATCH):
            batch = pending[start:start + _EMBED_BATCH]
            vectors = embed(self._model, [_embed_text(p) for p in batch])
            with self._repo.transaction():
                for page, vector in zip(batch, vectors):
                    page_id = self._repo.upsert_page(page)
                    self._repo.add_embedding(table, page_id, vector)

        self._repo.save_index_state(
            IndexState(
                version_marker=marker,
                embedding_model=self._model,
                dimensions=self._dims,
                chunking=CHUNKING,
            )
        )
        logger.info(
            "Indexed %s (%s): %d added, %d updated, %d removed, %d unchanged",
            source,
            "full" if full else "incremental",
            len(result.added),
            len(result.updated),
            len(result.removed),
            result.unchanged,
        )
        return result


def page_title(path: str, content: str) -> str:
    """First front-matter title or level-1 heading; the file stem otherwise."""
    head = content[:4000]
    if head.startswith("---"):
        m = _FRONTMATTER_TITLE_RE.search(head.split("---", 2)[1] if head.count("---") >= 2 else "")
        if m:
            return m.group(1)
    m = _HEADING_RE.search(head)
    if m:
        return m.group(1)
    stem = path.rsplit("/", 1)[-1].rsplit(".", 1)[0]
    return stem.replace("-", " ").replace("_", " ").strip() or path


def _embed_text(page: DocPage) -> str:
    return f"{page.title}\n\n{page.content}"[:_EMBED_CHAR_LIMIT]
