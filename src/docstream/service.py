"""Operations facade used by the CLI (and any other front end).

Wires the coordinator, the batch processor, the watermark store and the page
indexer to one configuration and database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from docstream.config import DocstreamConfig
from docstream.db.connection import Database
from docstream.db.models import IndexState, MessageStatus, Proposal, ProposalStatus
from docstream.db.repository import Repository
from docstream.errors import (
    ConfigError,
    PermanentAdapterError,
    SourceBusy,
    SourceNotFound,
    TransientAdapterError,
)
from docstream.process.processor import BatchProcessor, BatchResult
from docstream.rag.docs_source import open_docs_source
from docstream.rag.indexer import IndexResult, PageIndexer
from docstream.rag.llm_client import validate_api_key
from docstream.stream.coordinator import SourceHealth, StreamCoordinator
from docstream.stream.watermarks import WatermarkStore

logger = logging.getLogger(__name__)


@dataclass
class SourceReset:
    source_id: str
    messages_reset: int
    watermark: datetime | None


@dataclass
class Overview:
    """Counts shown by `docstream status`."""

    messages: dict[str, int] = field(default_factory=dict)
    proposals: dict[str, int] = field(default_factory=dict)
    pages: int = 0
    index: IndexState | None = None


@dataclass
class ResetResult:
    sources: list[SourceReset] = field(default_factory=list)

    @property
    def messages_reset(self) -> int:
        return sum(s.messages_reset for s in self.sources)


class PipelineService:
    """Entry point for every pipeline operation.

    Args:
        cfg: Loaded configuration.
        db: Project database.
        coordinator: Pre-built coordinator (tests inject one with fake adapters).
        processor: Pre-built batch processor.
    """

    def __init__(
        self,
        cfg: DocstreamConfig,
        db: Database,
        *,
        coordinator: StreamCoordinator | None = None,
        processor: BatchProcessor | None = None,
    ) -> None:
        self.cfg = cfg
        self.db = db
        self.coordinator = coordinator or StreamCoordinator(cfg, db)
        self.processor = processor or BatchProcessor(cfg, db)

    # ------------------------------------------------------------------
    # Runtime
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start scheduled fetching, plus scheduled batches when configured."""
        self.coordinator.start(batch_job=self.trigger_batch)

    def shutdown(self, timeout: float | None = None) -> None:
        self.coordinator.shutdown(timeout)

    def check_models(self) -> None:
        """Fail fast when an API key for a configured model is missing.

        Raises:
            EnvironmentError: Naming the missing environment variable.
        """
        models = self.cfg.models
        for model in dict.fromkeys((models.classification, models.proposal, models.embedding)):
            validate_api_key(model)

    # ------------------------------------------------------------------
    # Fetch / batch
    # ------------------------------------------------------------------

    def trigger_fetch(self, source_id: str, limit: int | None = None) -> int:
        """Run one fetch cycle now. Returns the number of newly imported messages.

        Raises:
            SourceNotFound: Unknown source id.
            SourceBusy: The source is running or the concurrency ceiling is reached.
            TransientAdapterError: The cycle failed; the source stays enabled.
            PermanentAdapterError: The source is disabled (before or by this cycle).
        """
        result = self.coordinator.trigger(source_id, limit)
        if result.status == "skipped":
            raise SourceBusy(f"Fetch for '{source_id}' skipped: {result.error}")
        if result.status == "error":
            raise TransientAdapterError(result.error or "fetch failed", source_id=source_id)
        if result.status == "disabled":
            raise PermanentAdapterError(
                f"Source '{source_id}' is disabled: {result.error}", source_id=source_id
            )
        return result.imported

    def trigger_batch(self, source_ids: list[str] | None = None) -> BatchResult:
        return self.processor.run(source_ids)

    def get_health(self) -> list[SourceHealth]:
        return self.coordinator.health()

    # ------------------------------------------------------------------
    # Resets
    # ------------------------------------------------------------------

    def _source_ids(self, repo: Repository, source_id: str | None) -> list[str]:
        if source_id is None:
            return [s.id for s in repo.list_sources()]
        if repo.get_source(source_id) is None and self.cfg.get_source(source_id) is None:
            raise SourceNotFound(f"No source '{source_id}'")
        return [source_id]

    def reset_processing(self, source_id: str | None = None) -> ResetResult:
        """Undo analysis so messages are analysed again.

        Classifications, contexts and proposals of the affected messages are
        deleted; the messages go back to PENDING and the processing watermark
        moves to one second before the earliest of them (or is deleted when
        no message was affected).
        """
        result = ResetResult()
        with self.db.session() as conn:
            repo = Repository(conn)
            store = WatermarkStore(repo)
            for sid in self._source_ids(repo, source_id):
                with repo.transaction():
                    count, earliest = repo.reset_analysis(sid)
                    if earliest is not None:
                        wm = store.rewind_processing(sid, earliest - timedelta(seconds=1))
                        result.sources.append(SourceReset(sid, count, wm.watermark_time))
                    else:
                        store.reset_processing(sid)
                        result.sources.append(SourceReset(sid, 0, None))
                logger.info("Processing reset for %s: %d message(s)", sid, count)
        return result

    def reset_import(self, source_id: str) -> bool:
        """Delete the import watermark of *source_id*. Returns False if there was none."""
        with self.db.session() as conn:
            repo = Repository(conn)
            self._source_ids(repo, source_id)
            return WatermarkStore(repo).reset_import(source_id)

    def retry_failed(self, source_id: str | None = None) -> int:
        """Requeue FAILED messages as PENDING with a fresh failure budget."""
        with self.db.session() as conn:
            repo = Repository(conn)
            if source_id is not None:
                self._source_ids(repo, source_id)
            count = repo.requeue_failed(source_id)
        logger.info("Requeued %d failed message(s)", count)
        return count

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def enable_source(self, source_id: str) -> None:
        self.coordinator.enable_source(source_id)

    def disable_source(self, source_id: str, reason: str | None = None) -> None:
        self.coordinator.disable_source(source_id, reason)

    # ------------------------------------------------------------------
    # Knowledge base / proposals
    # ------------------------------------------------------------------

    def sync_index(self, full: bool = False) -> IndexResult:
        """Bring the page index up to date with the configured docs.

        Raises:
            ConfigError: If ``docs.path`` is not configured.
        """
        docs = self.cfg.docs
        if not docs.path:
            raise ConfigError("docs.path is not set; configure the documentation location")
        source = open_docs_source(docs.path, docs.kind)
        with self.db.session() as conn:
            indexer = PageIndexer(
                Repository(conn), self.cfg.models.embedding, self.cfg.models.embedding_dims
            )
            return indexer.sync(source, full=full)

    def list_proposals(
        self, status: ProposalStatus | None = None, limit: int | None = 50
    ) -> list[Proposal]:
        with self.db.session() as conn:
            return Repository(conn).list_proposals(status=status, limit=limit)

    def overview(self) -> Overview:
        with self.db.session() as conn:
            repo = Repository(conn)
            return Overview(
                messages={s.value: repo.count_messages(status=s) for s in MessageStatus},
                proposals={s.value: repo.count_proposals(s) for s in ProposalStatus},
                pages=len(repo.list_pages()),
                index=repo.get_index_state(),
            )
