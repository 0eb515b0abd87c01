"""Tests for the Telegram getUpdates adapter."""

from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from docstream.config import DocstreamConfig, SourceCfg
from docstream.db.repository import Repository
from docstream.errors import AdapterConfigError, TransientAdapterError
from docstream.ingest.registry import create_adapter
from docstream.ingest.telegram import TelegramAdapter
from docstream.stream.coordinator import StreamCoordinator

TOKEN = "123456:ABC-secret"
EPOCH = int(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc).timestamp())


def _update(update_id, message_id, text="hello", chat_id=-100, reply_to=None):
    message = {
        "message_id": message_id,
        "date": EPOCH + update_id,
        "text": text,
        "chat": {"id": chat_id, "title": "Support", "type": "supergroup"},
        "from": {"id": 9, "username": "alice"},
    }
    if reply_to is not None:
        message["reply_to_message"] = {"message_id": reply_to}
    return {"update_id": update_id, "message": message}


class FakeBotApi:
    """Keeps a queue of updates and honours the getUpdates offset."""

    def __init__(self, updates=None) -> None:
        self.updates = list(updates or [])
        self.offsets: list[int | None] = []
        self.status = 200
        self.ignore_offset = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert request.url.path.startswith(f"/bot{TOKEN}/")
        method = request.url.path.rsplit("/", 1)[-1]
        if method == "getMe":
            return httpx.Response(200, json={"ok": True, "result": {"username": "docbot"}})
        if self.status != 200:
            return httpx.Response(
                self.status, json={"ok": False, "description": "Conflict: terminated"}
            )
        offset = request.url.params.get("offset")
        self.offsets.append(int(offset) if offset is not None else None)
        result = self.updates
        if offset is not None and not self.ignore_offset:
            result = [u for u in self.updates if u["update_id"] >= int(offset)]
        return httpx.Response(200, json={"ok": True, "result": result})


def _client(server) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(server))


def _coordinator(database, server, **settings) -> StreamCoordinator:
    cfg = DocstreamConfig(
        sources=[
            SourceCfg(
                id="tg",
                adapter="telegram",
                config={"bot_token": TOKEN, "poll_timeout": 0, **settings},
            )
        ]
    )
    client = _client(server)
    return StreamCoordinator(
        cfg, database, adapter_factory=lambda src, db: create_adapter(src, db, client=client)
    )


def _messages(database):
    with database.session() as conn:
        return Repository(conn).list_messages("tg")


# ---------------------------------------------------------------------------
# validate_config
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("token", [None, "", "no-colon"])
def test_bad_token_rejected(token):
    with pytest.raises(AdapterConfigError, match="bot_token"):
        TelegramAdapter.validate_config({"bot_token": token})


def test_negative_poll_timeout_rejected():
    with pytest.raises(AdapterConfigError, match="poll_timeout"):
        TelegramAdapter.validate_config({"bot_token": TOKEN, "poll_timeout": -1})


def test_allowed_chats_must_be_list():
    with pytest.raises(AdapterConfigError, match="allowed_chats"):
        TelegramAdapter.validate_config({"bot_token": TOKEN, "allowed_chats": "-100"})


# ---------------------------------------------------------------------------
# Cursor handling
# ---------------------------------------------------------------------------


def test_first_fetch_stores_cursor(database):
    server = FakeBotApi([_update(10, 1), _update(11, 2)])
    coord = _coordinator(database, server)

    result = coord.trigger("tg")

    assert result.imported == 2
    assert server.offsets == [None]
    with database.session() as conn:
        wm = Repository(conn).get_import_watermark("tg")
    assert wm.cursor == 11
    assert wm.last_message_id == "-100-2"


def test_next_fetch_sends_offset(database):
    server = FakeBotApi([_update(10, 1), _update(11, 2)])
    coord = _coordinator(database, server)
    coord.trigger("tg")
    server.updates.append(_update(12, 3))

    result = coord.trigger("tg")

    assert result.imported == 1
    assert server.offsets[-1] == 12


def test_redelivered_updates_are_dropped(database):
    server = FakeBotApi([_update(10, 1), _update(11, 2)])
    coord = _coordinator(database, server)
    coord.trigger("tg")
    server.ignore_offset = True

    result = coord.trigger("tg")

    assert result.fetched == 0
    assert len(_messages(database)) == 2


def test_conflict_returns_nothing(database):
    server = FakeBotApi([_update(10, 1)])
    server.status = 409
    coord = _coordinator(database, server)

    result = coord.trigger("tg")

    assert result.status == "ok"
    assert result.fetched == 0
    with database.session() as conn:
        assert Repository(conn).get_source("tg").enabled is True


def test_server_error_is_transient(database):
    server = FakeBotApi()
    adapter = TelegramAdapter("tg", {"bot_token": TOKEN}, database, client=_client(server))
    adapter.initialize()
    server.status = 502
    with pytest.raises(TransientAdapterError):
        adapter.fetch_messages(None, 10)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def test_reply_to_is_qualified_by_chat(database):
    server = FakeBotApi([_update(10, 1), _update(11, 2, reply_to=1)])
    _coordinator(database, server).trigger("tg")

    by_id = {m.source_message_id: m for m in _messages(database)}
    assert by_id["-100-2"].reply_to == "-100-1"
    assert by_id["-100-1"].reply_to is None
    assert by_id["-100-2"].author == "alice"
    assert by_id["-100-2"].channel == "Support"


def test_allowed_chats_filter(database):
    server = FakeBotApi([_update(10, 1, chat_id=-100), _update(11, 1, chat_id=-200)])
    coord = _coordinator(database, server, allowed_chats=[-200])

    coord.trigger("tg")

    assert [m.source_message_id for m in _messages(database)] == ["-200-1"]
    with database.session() as conn:
        assert Repository(conn).get_import_watermark("tg").cursor == 11


def test_updates_without_text_advance_cursor(database):
    server = FakeBotApi([_update(10, 1, text="")])
    coord = _coordinator(database, server)

    result = coord.trigger("tg")

    assert result.imported == 0
    with database.session() as conn:
        assert Repository(conn).get_import_watermark("tg").cursor == 10
