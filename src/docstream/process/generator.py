"""Proposal generation for one valuable conversation."""

from __future__ import annotations

import time
from collections.abc import Callable

from docstream.db.models import Classification, Proposal, UpdateType
from docstream.errors import ModelCallFailed
from docstream.process.grouping import Conversation
from docstream.process.postprocess import postprocess_text
from docstream.process.prompts import PROPOSE_SYSTEM, proposal_prompt
from docstream.process.schemas import ProposalSet
from docstream.rag.assembler import AssembledContext
from docstream.rag.llm_cache import ResponseCache
from docstream.rag.llm_client import Success, TransientError, call_with_backoff, request_json


def generate_proposals(
    conv: Conversation,
    classifications: dict[int, Classification],
    context: AssembledContext,
    *,
    model: str,
    attempts: int = 3,
    base_delay: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
    cache: ResponseCache | None = None,
) -> ProposalSet:
    """Ask the proposal model for documentation changes.

    Raises:
        ModelCallFailed: When the call ends in an error.
    """
    prompt = proposal_prompt(conv, classifications, context)
    result = call_with_backoff(
        lambda: request_json(
            model,
            PROPOSE_SYSTEM,
            prompt,
            ProposalSet,
            max_tokens=8192,
            cache=cache,
            purpose="proposal",
        ),
        attempts=attempts,
        base_delay=base_delay,
        sleep=sleep,
    )
    if not isinstance(result, Success):
        raise ModelCallFailed(
            f"Proposal generation for {conv.id} failed: {result.message}",
            transient=isinstance(result, TransientError),
        )
    return result.value


def to_proposals(drafts: ProposalSet, conv: Conversation, batch_id: str) -> list[Proposal]:
    """Turn model drafts into Proposal rows.

    ``source_messages`` is restricted to the conversation's own messages and
    defaults to all of them. ``suggested_text`` gets its line breaks repaired
    (see ``postprocess_text``); the model's text is kept in
    ``raw_suggested_text``.
    """
    members = conv.message_ids
    proposals: list[Proposal] = []
    for draft in drafts.proposals:
        cited = [mid for mid in draft.source_messages if mid in members] or list(members)
        location = draft.location.model_dump(exclude_none=True) if draft.location else {}
        text = draft.suggested_text
        if text is not None:
            text = postprocess_text(text, draft.page).text
        proposals.append(
            Proposal(
                conversation_id=conv.id,
                batch_id=batch_id,
                page=draft.page,
                update_type=UpdateType(draft.update_type),
                suggested_text=text,
                raw_suggested_text=draft.suggested_text,
                reasoning=draft.reasoning,
                section=draft.section,
                location=location,
                source_messages=cited,
            )
        )
    return proposals
