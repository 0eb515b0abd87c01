"""Tests for the model response schemas."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from docstream.process.schemas import BatchClassification, ProposalSet, Thread


def test_camel_case_keys_accepted():
    parsed = BatchClassification.model_validate_json(
        '{"threads": [{"category": "install", "messages": [1, 2],'
        ' "docValueReason": "answers a setup question",'
        ' "ragSearchCriteria": {"keywords": ["pip"], "semanticQuery": "install with pip"}}],'
        ' "batchSummary": "setup help"}'
    )
    thread = parsed.threads[0]
    assert thread.doc_value_reason == "answers a setup question"
    assert thread.rag_search_criteria.semantic_query == "install with pip"
    assert parsed.batch_summary == "setup help"


def test_snake_case_keys_accepted():
    thread = Thread.model_validate({"category": "x", "messages": [1], "doc_value_reason": "r"})
    assert thread.doc_value_reason == "r"


@pytest.mark.parametrize("category,expected", [
    ("no-doc-value", False),
    (" No-Doc-Value ", False),
    ("troubleshooting", True),
])
def test_has_doc_value(category, expected):
    assert Thread(category=category, messages=[1]).has_doc_value is expected


def test_thread_needs_messages():
    with pytest.raises(ValidationError):
        Thread(category="x", messages=[])


def test_unknown_update_type_rejected():
    with pytest.raises(ValidationError):
        ProposalSet.model_validate({"proposals": [{"updateType": "REWRITE", "page": "a.md"}]})


def test_too_many_proposals_rejected():
    drafts = [{"update_type": "NONE", "page": "a.md"}] * 11
    with pytest.raises(ValidationError):
        ProposalSet.model_validate({"proposals": drafts})


def test_suggested_text_length_limit():
    with pytest.raises(ValidationError):
        ProposalSet.model_validate(
            {"proposals": [{"update_type": "INSERT", "page": "a.md", "suggested_text": "x" * 2001}]}
        )
