"""Tests for docstream rich error messages."""

from __future__ import annotations

import pytest

from docstream.cli.errors import (
    describe,
    err_adapter_config,
    err_config,
    err_no_api_key,
    err_no_docs_path,
    err_source_busy,
    err_source_disabled,
    err_transient,
)
from docstream.errors import (
    AdapterConfigError,
    ConfigError,
    DocstreamError,
    PermanentAdapterError,
    SourceBusy,
    SourceNotFound,
    TransientAdapterError,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _has_what_and_action(msg: str) -> bool:
    """Every error must contain a cause AND an actionable instruction."""
    lower = msg.lower()
    return any(
        kw in lower
        for kw in [
            "run:", "export ", "set ", "docstream ", "retry", "next run", "fix ", "check ", "add to"
        ]
    )


# ---------------------------------------------------------------------------
# Individual messages
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("msg", [
    err_no_api_key("Set the OPENAI_API_KEY environment variable."),
    err_config(ConfigError("bad value")),
    err_source_busy("zulip-main", "already running"),
    err_source_disabled("zulip-main", "HTTP 404"),
    err_adapter_config("zulip-main", "'email' is required"),
    err_transient("zulip-main", "timed out"),
    err_no_docs_path(),
])
def test_every_error_is_actionable(msg):
    assert _has_what_and_action(msg)


def test_disabled_message_names_enable_command():
    assert "docstream sources enable zulip-main" in err_source_disabled("zulip-main", "x")


def test_no_api_key_mentions_environment():
    assert "environment" in err_no_api_key("OPENAI_API_KEY missing")


# ---------------------------------------------------------------------------
# describe()
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("exc,needle", [
    (SourceNotFound("No source 'x'"), "docstream sources list"),
    (SourceBusy("running"), "Skipped"),
    (AdapterConfigError("no key"), "misconfigured"),
    (TransientAdapterError("timeout"), "temporarily"),
    (PermanentAdapterError("gone"), "is disabled"),
    (ConfigError("bad"), "Invalid configuration"),
    (DocstreamError("other"), "other"),
])
def test_describe_picks_message(exc, needle):
    assert needle in describe(exc, "zulip-main")


def test_describe_uses_error_source_id():
    exc = PermanentAdapterError("gone", source_id="tg")
    assert "'tg'" in describe(exc)
