"""Window classification: one model call decides which conversations matter."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from docstream.db.models import Classification
from docstream.errors import ModelCallFailed
from docstream.process.grouping import Conversation
from docstream.process.prompts import CLASSIFY_SYSTEM, classification_prompt
from docstream.process.schemas import NO_DOC_VALUE, BatchClassification, Thread
from docstream.rag.llm_client import (
    Success,
    TransientError,
    call_with_backoff,
    request_json,
)
from docstream.rag.llm_cache import ResponseCache

logger = logging.getLogger(__name__)


@dataclass
class ClassifiedWindow:
    """Classification outcome for every message of a window.

    Attributes:
        classifications: Message id -> unsaved Classification row.
        valuable: Conversations with at least one message in a valued thread.
        keywords: Conversation id -> merged search keywords.
        queries: Conversation id -> merged semantic query.
        summaries: Conversation id -> summaries of its valued threads.
    """

    batch_summary: str = ""
    classifications: dict[int, Classification] = field(default_factory=dict)
    valuable: list[Conversation] = field(default_factory=list)
    keywords: dict[str, list[str]] = field(default_factory=dict)
    queries: dict[str, str] = field(default_factory=dict)
    summaries: dict[str, str] = field(default_factory=dict)


def classify_window(
    conversations: list[Conversation],
    *,
    source_id: str,
    batch_id: str,
    model: str,
    attempts: int = 3,
    base_delay: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
    cache: ResponseCache | None = None,
) -> ClassifiedWindow:
    """Classify all messages of *conversations* in one model call.

    Raises:
        ModelCallFailed: When the call ends in an error; nothing is classified.
    """
    prompt = classification_prompt(conversations, source_id, batch_id)
    result = call_with_backoff(
        lambda: request_json(
            model,
            CLASSIFY_SYSTEM,
            prompt,
            BatchClassification,
            max_tokens=8192,
            cache=cache,
            purpose="classification",
        ),
        attempts=attempts,
        base_delay=base_delay,
        sleep=sleep,
    )
    if not isinstance(result, Success):
        raise ModelCallFailed(
            f"Classification of batch {batch_id} failed: {result.message}",
            transient=isinstance(result, TransientError),
        )
    return interpret(result.value, conversations, batch_id)


def interpret(
    parsed: BatchClassification, conversations: list[Conversation], batch_id: str
) -> ClassifiedWindow:
    """Map the model's threads back onto the window's conversations.

    A message claimed by several threads keeps the first. Ids outside the
    window are ignored; window messages the model left out fall back to
    ``no-doc-value``.
    """
    window_ids = {m.id for conv in conversations for m in conv.messages}
    thread_of: dict[int, Thread] = {}
    for thread in parsed.threads:
        for mid in thread.messages:
            if mid in window_ids and mid not in thread_of:
                thread_of[mid] = thread
    omitted = window_ids - set(thread_of)
    if omitted:
        logger.info("Batch %s: %d message(s) not classified; marked %s", batch_id,
                    len(omitted), NO_DOC_VALUE)

    out = ClassifiedWindow(batch_summary=parsed.batch_summary)
    for conv in conversations:
        threads = [thread_of[m.id] for m in conv.messages if m.id in thread_of]
        valued = [t for t in threads if t.has_doc_value]
        if valued:
            out.valuable.append(conv)
            out.keywords[conv.id] = _merge_keywords(valued)
            out.summaries[conv.id] = " ".join(
                dict.fromkeys(t.summary for t in valued if t.summary)
            )
            out.queries[conv.id] = "\n".join(
                dict.fromkeys(
                    t.rag_search_criteria.semantic_query.strip()
                    for t in valued
                    if t.rag_search_criteria.semantic_query.strip()
                )
            )

        for msg in conv.messages:
            if msg.id is None:
                continue
            thread = thread_of.get(msg.id)
            valuable_msg = thread is not None and thread.has_doc_value
            out.classifications[msg.id] = Classification(
                message_id=msg.id,
                batch_id=batch_id,
                category=thread.category if thread else NO_DOC_VALUE,
                doc_value=valuable_msg,
                doc_value_reason=thread.doc_value_reason if thread else "not classified",
                conversation_id=conv.id if valuable_msg else None,
                keywords=list(thread.rag_search_criteria.keywords) if valuable_msg else [],
                semantic_query=(
                    thread.rag_search_criteria.semantic_query or None if valuable_msg else None
                ),
            )
    return out


def _merge_keywords(threads: list[Thread]) -> list[str]:
    merged: dict[str, None] = {}
    for t in threads:
        for kw in t.rag_search_criteria.keywords:
            kw = kw.strip()
            if kw:
                merged.setdefault(kw, None)
    return list(merged)
