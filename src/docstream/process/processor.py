"""Batch processor: watermark-driven analysis of imported messages.

Per source and per run:
  1. select the PENDING window below ``end`` (processing watermark + window)
  2. group it into conversations
  3. classify the whole window in one model call
  4. for each valuable conversation: retrieve pages, assemble context,
     generate proposals, persist everything in one transaction
  5. advance the processing watermark

A classification failure leaves the window untouched. A failure inside step 4
only affects that conversation: its messages get ``failure_count + 1`` and
the rest of the batch carries on. A source whose window cannot be persisted
is reported with an error and the run moves on to the next source.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from docstream.config import DocstreamConfig
from docstream.db.connection import Database
from docstream.db.models import ConversationContext, epoch_ms, utcnow
from docstream.db.repository import Repository
from docstream.errors import DocstreamError, ModelCallFailed
from docstream.process.classifier import ClassifiedWindow, classify_window
from docstream.process.generator import generate_proposals, to_proposals
from docstream.process.grouping import Conversation, group_conversations
from docstream.rag.assembler import assemble_context
from docstream.rag.llm_cache import ResponseCache
from docstream.rag.retriever import RetrieverConfig, build_query, retrieve_pages
from docstream.stream.watermarks import WatermarkStore

logger = logging.getLogger(__name__)

# One batch run per process at a time.
_RUN_LOCK = threading.Lock()


@dataclass
class SourceBatchResult:
    source_id: str
    batch_id: str
    window_start: datetime
    window_end: datetime
    messages_processed: int = 0
    conversations: int = 0
    valuable_conversations: int = 0
    proposals_created: int = 0
    failed_conversations: int = 0
    capped: bool = False
    watermark: datetime | None = None
    error: str | None = None


@dataclass
class BatchResult:
    sources: list[SourceBatchResult] = field(default_factory=list)
    skipped: bool = False

    @property
    def messages_processed(self) -> int:
        return sum(s.messages_processed for s in self.sources)

    @property
    def conversations(self) -> int:
        return sum(s.conversations for s in self.sources)

    @property
    def valuable_conversations(self) -> int:
        return sum(s.valuable_conversations for s in self.sources)

    @property
    def proposals_created(self) -> int:
        return sum(s.proposals_created for s in self.sources)

    @property
    def failed_conversations(self) -> int:
        return sum(s.failed_conversations for s in self.sources)


class BatchProcessor:
    """Run analysis windows for every source.

    Args:
        cfg: Loaded configuration (batch, models, retrieval sections).
        db: Project database.
        clock: Returns the current UTC time (tests pin it).
        sleep: Backoff sleep between transient model errors.
    """

    def __init__(
        self,
        cfg: DocstreamConfig,
        db: Database,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cfg = cfg
        self._db = db
        self._clock = clock
        self._sleep = sleep

    def run(self, source_ids: list[str] | None = None) -> BatchResult:
        """Process one window per source. Returns a skipped result if a run is active."""
        if not _RUN_LOCK.acquire(blocking=False):
            logger.info("Batch run already in progress; skipped")
            return BatchResult(skipped=True)
        try:
            result = BatchResult()
            with self._db.session() as conn:
                repo = Repository(conn)
                targets = source_ids or [s.id for s in repo.list_sources()]
                for source_id in targets:
                    result.sources.append(self._process_guarded(repo, source_id))
            logger.info(
                "Batch run: %d message(s), %d conversation(s), %d valuable, "
                "%d proposal(s), %d failed",
                result.messages_processed,
                result.conversations,
                result.valuable_conversations,
                result.proposals_created,
                result.failed_conversations,
            )
            return result
        finally:
            _RUN_LOCK.release()

    # ------------------------------------------------------------------
    # One source
    # ------------------------------------------------------------------

    def _process_guarded(self, repo: Repository, source_id: str) -> SourceBatchResult:
        try:
            return self.process_source(repo, source_id)
        except Exception as exc:
            logger.exception("Source %s: batch failed", source_id)
            now = self._clock()
            return SourceBatchResult(
                source_id,
                batch_id="",
                window_start=now,
                window_end=now,
                error=f"{type(exc).__name__}: {exc}",
            )

    def process_source(self, repo: Repository, source_id: str) -> SourceBatchResult:
        batch_cfg = self._cfg.batch
        cache = ResponseCache(repo) if self._cfg.models.cache else None
        store = WatermarkStore(repo)
        now = self._clock()

        wm = store.get_processing(source_id)
        if wm is not None:
            start = wm.watermark_time
        else:
            start = repo.earliest_pending_timestamp(source_id) or (
                now - timedelta(days=batch_cfg.lookback_days)
            )
        end = max(min(start + timedelta(hours=batch_cfg.window_hours), now), start)
        batch_id = f"{source_id[:10]}_{epoch_ms(start)}"
        result = SourceBatchResult(source_id, batch_id, window_start=start, window_end=end)

        messages = repo.select_pending_window(source_id, end, batch_cfg.max_batch_size)
        if not messages:
            if wm is None or end > wm.watermark_time:
                store.advance_processing(source_id, end, batch_id)
            result.watermark = end
            logger.debug("Source %s: empty window up to %s", source_id, end.isoformat())
            return result

        result.capped = len(messages) >= batch_cfg.max_batch_size
        conversations = group_conversations(
            messages, timedelta(minutes=batch_cfg.conversation_gap_minutes)
        )
        result.conversations = len(conversations)

        try:
            window = classify_window(
                conversations,
                source_id=source_id,
                batch_id=batch_id,
                model=self._cfg.models.classification,
                attempts=self._cfg.models.max_attempts,
                base_delay=self._cfg.models.base_delay,
                sleep=self._sleep,
                cache=cache,
            )
        except ModelCallFailed as exc:
            logger.error("Source %s batch %s not classified: %s", source_id, batch_id, exc)
            result.error = str(exc)
            return result

        valuable_ids = {c.id for c in window.valuable}
        try:
            self._complete_without_value(
                repo, [c for c in conversations if c.id not in valuable_ids], window
            )
        except Exception as exc:
            logger.exception(
                "Source %s batch %s: saving classifications failed", source_id, batch_id
            )
            result.error = f"{type(exc).__name__}: {exc}"
            return result
        result.messages_processed += sum(
            len(c.messages) for c in conversations if c.id not in valuable_ids
        )

        result.valuable_conversations = len(window.valuable)
        for conv in window.valuable:
            try:
                created = self._process_conversation(
                    repo, conv, window, batch_id, source_id, cache
                )
            except Exception as exc:
                if isinstance(exc, DocstreamError):
                    logger.warning("Conversation %s failed: %s", conv.id, exc)
                else:
                    logger.exception("Conversation %s failed unexpectedly", conv.id)
                moved = repo.record_failure(
                    conv.message_ids, f"{type(exc).__name__}: {exc}", batch_cfg.max_failures
                )
                if moved:
                    logger.warning("%d message(s) of %s moved to FAILED", moved, conv.id)
                result.failed_conversations += 1
                continue
            result.proposals_created += created
            result.messages_processed += len(conv.messages)

        target = messages[-1].timestamp if result.capped else end
        result.watermark = wm.watermark_time if wm is not None else None
        if wm is None or target > wm.watermark_time:
            try:
                store.advance_processing(source_id, target, batch_id)
            except Exception as exc:
                logger.exception("Source %s: processing watermark not advanced", source_id)
                result.error = f"{type(exc).__name__}: {exc}"
                return result
            result.watermark = target
        return result

    def _complete_without_value(
        self, repo: Repository, conversations: list[Conversation], window: ClassifiedWindow
    ) -> None:
        if not conversations:
            return
        with repo.transaction():
            for conv in conversations:
                for msg in conv.messages:
                    if msg.id is not None:
                        repo.add_classification(window.classifications[msg.id])
                repo.mark_completed(conv.message_ids)

    def _process_conversation(
        self,
        repo: Repository,
        conv: Conversation,
        window: ClassifiedWindow,
        batch_id: str,
        source_id: str,
        cache: ResponseCache | None = None,
    ) -> int:
        models = self._cfg.models
        query = build_query(window.queries.get(conv.id), window.keywords.get(conv.id))
        pages = retrieve_pages(
            query,
            repo,
            RetrieverConfig(embedding_model=models.embedding, top_k=self._cfg.retrieval.top_k),
            attempts=models.max_attempts,
            base_delay=models.base_delay,
            sleep=self._sleep,
        )
        context = assemble_context(pages, models.proposal, self._cfg.retrieval.token_budget)
        if context.dropped:
            logger.debug(
                "Conversation %s: %d page(s) dropped by the token budget",
                conv.id,
                len(context.dropped),
            )

        members = {mid: window.classifications[mid] for mid in conv.message_ids}
        drafts = generate_proposals(
            conv,
            members,
            context,
            model=models.proposal,
            attempts=models.max_attempts,
            base_delay=models.base_delay,
            sleep=self._sleep,
            cache=cache,
        )
        proposals = to_proposals(drafts, conv, batch_id)
        rejected = drafts.proposals_rejected or not proposals

        with repo.transaction():
            for classification in members.values():
                repo.add_classification(classification)
            repo.add_context(
                ConversationContext(
                    conversation_id=conv.id,
                    batch_id=batch_id,
                    source_id=source_id,
                    retrieved_pages=[sp.to_ref() for sp in context.pages],
                    total_tokens=context.total_tokens,
                    summary=window.summaries.get(conv.id, ""),
                    proposals_rejected=rejected,
                    rejection_reason=drafts.rejection_reason if rejected else None,
                )
            )
            for proposal in proposals:
                repo.add_proposal(proposal)
            repo.mark_completed(conv.message_ids)

        logger.info("Conversation %s: %d proposal(s)", conv.id, len(proposals))
        return len(proposals)
