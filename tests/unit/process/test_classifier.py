"""Tests for window classification."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from docstream.db.models import Message
from docstream.errors import ModelCallFailed
from docstream.process.classifier import classify_window, interpret
from docstream.process.grouping import Conversation
from docstream.process.schemas import BatchClassification

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _conv(conv_id, *ids):
    msgs = [
        Message(id=i, source_id="zulip-main", source_message_id=str(i),
                timestamp=T0 + timedelta(minutes=i), body=f"m{i}", channel="general")
        for i in ids
    ]
    return Conversation(id=conv_id, channel="general", messages=msgs)


def _thread(category, messages, keywords=(), query=""):
    return {
        "category": category,
        "messages": list(messages),
        "summary": f"{category} thread",
        "ragSearchCriteria": {"keywords": list(keywords), "semanticQuery": query},
    }


def _parsed(*threads):
    return BatchClassification.model_validate({"threads": list(threads)})


def _response(content):
    resp = MagicMock()
    resp.choices[0].message.content = content
    return resp


# ------------------------------------------------------------------
# interpret
# ------------------------------------------------------------------


def test_only_valued_members_carry_conversation_id():
    conv = _conv("conv_a", 1, 2, 3)
    window = interpret(_parsed(_thread("install", [1, 2], ["pip"], "install with pip")),
                       [conv], "b1")

    assert window.valuable == [conv]
    assert window.classifications[1].conversation_id == "conv_a"
    assert window.classifications[2].conversation_id == "conv_a"
    assert window.classifications[3].conversation_id is None
    assert window.classifications[1].doc_value is True
    assert window.classifications[3].category == "no-doc-value"
    assert window.classifications[3].doc_value is False
    assert window.keywords["conv_a"] == ["pip"]
    assert window.queries["conv_a"] == "install with pip"


def test_no_doc_value_thread_inside_valuable_conversation():
    conv = _conv("conv_a", 1, 2, 3)
    window = interpret(
        _parsed(_thread("install", [1, 2]), _thread("no-doc-value", [3])), [conv], "b1"
    )

    assert window.valuable == [conv]
    assert window.classifications[3].category == "no-doc-value"
    assert window.classifications[3].conversation_id is None
    assert [window.classifications[i].conversation_id for i in (1, 2)] == ["conv_a"] * 2


def test_non_valuable_conversation_has_no_conversation_id():
    conv = _conv("conv_a", 1, 2)
    window = interpret(_parsed(_thread("no-doc-value", [1, 2])), [conv], "b1")

    assert window.valuable == []
    assert all(c.conversation_id is None for c in window.classifications.values())


def test_omitted_and_foreign_ids():
    conv = _conv("conv_a", 1, 2)
    window = interpret(_parsed(_thread("install", [1, 99])), [conv], "b1")

    assert set(window.classifications) == {1, 2}
    assert window.classifications[2].doc_value_reason == "not classified"


def test_first_thread_claiming_a_message_wins():
    conv = _conv("conv_a", 1)
    window = interpret(
        _parsed(_thread("install", [1]), _thread("no-doc-value", [1])), [conv], "b1"
    )
    assert window.classifications[1].category == "install"


def test_keywords_merge_across_threads():
    conv = _conv("conv_a", 1, 2)
    window = interpret(
        _parsed(_thread("install", [1], ["pip", "venv"]), _thread("config", [2], ["venv", "yaml"])),
        [conv],
        "b1",
    )
    assert window.keywords["conv_a"] == ["pip", "venv", "yaml"]


# ------------------------------------------------------------------
# classify_window
# ------------------------------------------------------------------


def test_classify_window_calls_model_once():
    conv = _conv("conv_a", 1, 2)
    content = json.dumps({"threads": [_thread("install", [1, 2])]})
    with patch("docstream.rag.llm_client.litellm.completion",
               return_value=_response(content)) as mock_completion:
        window = classify_window([conv], source_id="zulip-main", batch_id="b1",
                                 model="openai/gpt-4o-mini")
    assert mock_completion.call_count == 1
    assert window.valuable == [conv]


def test_classify_window_raises_after_permanent_error():
    conv = _conv("conv_a", 1)
    with patch("docstream.rag.llm_client.litellm.completion",
               return_value=_response("not json at all")):
        with pytest.raises(ModelCallFailed) as excinfo:
            classify_window([conv], source_id="zulip-main", batch_id="b1",
                            model="openai/gpt-4o-mini", sleep=lambda s: None)
    assert excinfo.value.transient is False
