"""Tests for the Zulip adapter against an in-memory Zulip server."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from docstream.config import DocstreamConfig, SourceCfg
from docstream.db.repository import Repository
from docstream.errors import AdapterConfigError, PermanentAdapterError, TransientAdapterError
from docstream.ingest.registry import create_adapter
from docstream.ingest.zulip import ZulipAdapter
from docstream.stream.coordinator import StreamCoordinator

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
SITE = "https://chat.example.com"


class FakeZulip:
    """Serves messages 1..count of stream 'general' with Zulip anchor semantics."""

    def __init__(self, count: int = 150) -> None:
        self.ids = list(range(1, count + 1))
        self.requests: list[dict[str, str]] = []
        self.fail_with: int | None = None

    def message(self, mid: int) -> dict:
        return {
            "id": mid,
            "timestamp": int((T0 + timedelta(minutes=mid)).timestamp()),
            "content": f"message {mid}",
            "sender_full_name": f"User {mid % 3}",
            "sender_email": f"user{mid % 3}@example.com",
            "display_recipient": "general",
            "subject": "install",
            "stream_id": 7,
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, text="nope")
        if request.url.path == "/api/v1/users/me":
            return httpx.Response(200, json={"result": "success", "email": "bot@example.com"})
        params = dict(request.url.params)
        self.requests.append(params)
        narrow = json.loads(params["narrow"])
        ids = self.ids if narrow[0]["operand"] == "general" else []
        anchor = params["anchor"]
        include = params["include_anchor"] == "true"
        before, after = int(params["num_before"]), int(params["num_after"])

        if before:
            top = max(ids, default=0) if anchor == "newest" else int(anchor)
            older = [i for i in ids if i < top or (include and i == top)]
            page = older[-before:]
            found = not older or page[0] == older[0]
            body = {"messages": [self.message(i) for i in page], "found_oldest": found}
        else:
            newer = [i for i in ids if i > int(anchor) or (include and i == int(anchor))]
            page = newer[:after]
            found = not newer or page[-1] == newer[-1]
            body = {"messages": [self.message(i) for i in page], "found_newest": found}
        return httpx.Response(200, json={"result": "success", **body})


def _settings(**extra) -> dict:
    return {
        "site": SITE,
        "email": "bot@example.com",
        "api_key": "secret",
        "streams": ["general"],
        "batch_size": 100,
        **extra,
    }


def _coordinator(database, server: FakeZulip, **extra) -> StreamCoordinator:
    client = httpx.Client(transport=httpx.MockTransport(server), base_url=SITE)
    cfg = DocstreamConfig(
        sources=[SourceCfg(id="zulip-main", adapter="zulip", config=_settings(**extra))]
    )
    return StreamCoordinator(
        cfg, database, adapter_factory=lambda src, db: create_adapter(src, db, client=client)
    )


def _watermark(database):
    with database.session() as conn:
        return Repository(conn).get_import_watermark("zulip-main")


# ---------------------------------------------------------------------------
# validate_config
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("missing", ["site", "email", "api_key"])
def test_validate_config_requires_credentials(missing):
    settings = _settings()
    del settings[missing]
    with pytest.raises(AdapterConfigError, match=missing):
        ZulipAdapter.validate_config(settings)


def test_validate_config_requires_streams():
    with pytest.raises(AdapterConfigError, match="streams"):
        ZulipAdapter.validate_config(_settings(streams=[]))


def test_validate_config_rejects_bad_start_date():
    with pytest.raises(AdapterConfigError, match="start_date"):
        ZulipAdapter.validate_config(_settings(start_date="last tuesday"))


def test_validate_config_ok():
    assert ZulipAdapter.validate_config(_settings(start_date="2024-01-01")) is True


# ---------------------------------------------------------------------------
# First fetch / incremental / backfill
# ---------------------------------------------------------------------------


def test_first_fetch_takes_newest_limit(database):
    coord = _coordinator(database, FakeZulip(150))
    result = coord.trigger("zulip-main", limit=100)

    assert result.imported == 100
    with database.session() as conn:
        repo = Repository(conn)
        ids = sorted(int(m.source_message_id) for m in repo.list_messages("zulip-main"))
    assert ids == list(range(51, 151))
    wm = _watermark(database)
    assert wm.last_message_id == "150"
    assert wm.oldest_message_id == "51"
    assert wm.total_imported == 100


def test_second_fetch_without_start_date_imports_nothing(database):
    coord = _coordinator(database, FakeZulip(150))
    coord.trigger("zulip-main", limit=100)

    second = coord.trigger("zulip-main", limit=100)

    assert second.status == "ok"
    assert second.imported == 0
    assert _watermark(database).total_imported == 100


def test_second_fetch_with_start_date_backfills(database):
    coord = _coordinator(database, FakeZulip(150), start_date=T0.isoformat())
    coord.trigger("zulip-main", limit=100)

    second = coord.trigger("zulip-main", limit=100)

    assert second.imported == 50
    wm = _watermark(database)
    assert wm.last_message_id == "150"
    assert wm.oldest_message_id == "1"
    assert wm.total_imported == 150


def test_backfill_stops_at_start_date(database):
    start = T0 + timedelta(minutes=41)
    coord = _coordinator(database, FakeZulip(150), start_date=start.isoformat())
    coord.trigger("zulip-main", limit=100)

    second = coord.trigger("zulip-main", limit=100)

    assert second.imported == 10  # ids 41..50
    assert _watermark(database).oldest_message_id == "41"


def test_incremental_fetch_pages_forward(database):
    server = FakeZulip(150)
    coord = _coordinator(database, server)
    coord.trigger("zulip-main", limit=100)
    server.ids.extend(range(151, 161))

    result = coord.trigger("zulip-main", limit=100)

    assert result.imported == 10
    assert server.requests[-1]["anchor"] == "150"
    assert server.requests[-1]["include_anchor"] == "false"
    assert _watermark(database).last_message_id == "160"


def test_normalized_fields(database):
    coord = _coordinator(database, FakeZulip(3))
    coord.trigger("zulip-main", limit=10)
    with database.session() as conn:
        msg = Repository(conn).get_message_by_source_id("zulip-main", "2")
    assert msg.channel == "general/install"
    assert msg.author == "User 2"
    assert msg.timestamp == T0 + timedelta(minutes=2)
    assert msg.metadata_dict["kind"] == "zulip"
    assert json.loads(msg.raw_payload)["stream_id"] == 7


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def _adapter(database, server) -> ZulipAdapter:
    client = httpx.Client(transport=httpx.MockTransport(server), base_url=SITE)
    return ZulipAdapter("zulip-main", _settings(), database, client=client)


def test_server_error_is_transient(database):
    server = FakeZulip(5)
    adapter = _adapter(database, server)
    adapter.initialize()
    server.fail_with = 503
    with pytest.raises(TransientAdapterError):
        adapter.fetch_messages(None, 10)


def test_unauthorized_is_config_error(database):
    server = FakeZulip(5)
    server.fail_with = 401
    with pytest.raises(AdapterConfigError):
        _adapter(database, server).initialize()


def test_not_found_is_permanent(database):
    server = FakeZulip(5)
    adapter = _adapter(database, server)
    adapter.initialize()
    server.fail_with = 404
    with pytest.raises(PermanentAdapterError):
        adapter.fetch_messages(None, 10)


def test_transport_error_is_transient(database):
    def boom(request):
        raise httpx.ConnectError("refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(boom), base_url=SITE)
    adapter = ZulipAdapter("zulip-main", _settings(), database, client=client)
    with pytest.raises(TransientAdapterError):
        adapter.initialize()


def test_fetch_before_initialize(database):
    adapter = ZulipAdapter("zulip-main", _settings(), database)
    with pytest.raises(PermanentAdapterError, match="initialize"):
        adapter.fetch_messages(None, 10)
