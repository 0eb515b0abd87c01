"""Zulip adapter: pull-based REST poller.

First run (no watermark): anchor at "newest" and page backward until *limit*
messages are collected. Later runs page forward from the last imported
message id. With ``start_date`` configured, leftover budget is spent paging
backward from the oldest imported message until ``start_date`` is reached.

Zulip message ids are global and strictly increasing, so one id anchor works
across every stream in the allow-list.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from docstream.db.connection import Database
from docstream.db.models import ImportWatermark, from_iso
from docstream.errors import AdapterConfigError, PermanentAdapterError
from docstream.ingest.base import SourceAdapter, request_json
from docstream.ingest.payloads import FetchedMessage, ZulipPayload

logger = logging.getLogger(__name__)

# Zulip caps num_before / num_after at 5000; smaller pages keep requests fast.
_MAX_PAGE = 1000
_DEFAULT_TIMEOUT = 30.0


class ZulipAdapter(SourceAdapter):
    """Poll one Zulip organisation for messages in an allow-list of streams.

    Settings:
        site: Organisation URL, e.g. ``https://example.zulipchat.com``.
        email: Bot email address (HTTP basic auth user).
        api_key: Bot API key (HTTP basic auth password).
        streams: Non-empty list of stream names to import.
        batch_size: Page size for each request (default 100, max 1000).
        start_date: Optional ISO date; enables backfill down to that date.
        timeout: Request timeout in seconds (default 30).
    """

    adapter_type = "zulip"

    def __init__(
        self,
        source_id: str,
        settings: dict[str, Any],
        db: Database,
        *,
        schedule: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(source_id, settings, db, schedule=schedule)
        self._client = client
        self._owns_client = client is None

    @classmethod
    def validate_config(cls, settings: dict[str, Any]) -> bool:
        for key in ("site", "email", "api_key"):
            if not settings.get(key):
                raise AdapterConfigError(
                    f"zulip: '{key}' is required (set it in the source config or the environment)"
                )
        site = str(settings["site"])
        if not site.startswith(("https://", "http://")):
            raise AdapterConfigError(f"zulip: site must be an http(s) URL, got '{site}'")
        streams = settings.get("streams")
        if not isinstance(streams, list) or not streams:
            raise AdapterConfigError("zulip: 'streams' must be a non-empty list of stream names")
        batch_size = int(settings.get("batch_size", 100))
        if not 1 <= batch_size <= _MAX_PAGE:
            raise AdapterConfigError(f"zulip: batch_size must be in 1..{_MAX_PAGE}")
        if settings.get("start_date"):
            try:
                _parse_start_date(settings["start_date"])
            except ValueError as exc:
                raise AdapterConfigError(f"zulip: invalid start_date: {exc}") from exc
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Validate settings, open the HTTP client and test connectivity."""
        super().initialize()
        if self._client is None:
            self._client = httpx.Client(
                base_url=str(self.settings["site"]).rstrip("/"),
                auth=(str(self.settings["email"]), str(self.settings["api_key"])),
                timeout=float(self.settings.get("timeout", _DEFAULT_TIMEOUT)),
            )
        _, data = request_json(
            self._client,
            "GET",
            "/api/v1/users/me",
            source_id=self.source_id,
            what="Zulip connectivity check",
        )
        if data.get("result") != "success":
            raise AdapterConfigError(
                f"Zulip connectivity check rejected: {data.get('msg', 'unknown error')}",
                source_id=self.source_id,
            )
        logger.info(
            "Zulip source %s connected as %s", self.source_id, data.get("email", "?")
        )

    def cleanup(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
        super().cleanup()

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def fetch_messages(
        self, watermark: ImportWatermark | None, limit: int
    ) -> list[FetchedMessage]:
        if self._client is None:
            raise PermanentAdapterError(
                "Zulip adapter used before initialize()", source_id=self.source_id
            )
        streams: list[str] = list(self.settings["streams"])

        if watermark is None or watermark.last_message_id is None:
            merged = self._collect(streams, anchor="newest", backward=True, limit=limit)
            fetched = sorted(merged, key=_sort_key)[-limit:]
            logger.info("Zulip %s first run: %d newest messages", self.source_id, len(fetched))
            return fetched

        forward = self._collect(
            streams, anchor=watermark.last_message_id, backward=False, limit=limit
        )
        fetched = sorted(forward, key=_sort_key)[:limit]

        remaining = limit - len(fetched)
        start_date = self._start_date()
        if (
            remaining > 0
            and start_date is not None
            and watermark.oldest_message_id is not None
            and watermark.oldest_timestamp is not None
            and watermark.oldest_timestamp > start_date
        ):
            older = self._collect(
                streams,
                anchor=watermark.oldest_message_id,
                backward=True,
                limit=remaining,
                not_before=start_date,
            )
            backfill = sorted(older, key=_sort_key)[-remaining:]
            if backfill:
                logger.info(
                    "Zulip %s backfill: %d messages down to %s",
                    self.source_id,
                    len(backfill),
                    backfill[0].timestamp.isoformat(),
                )
            fetched = sorted(backfill + fetched, key=_sort_key)

        return fetched

    def _collect(
        self,
        streams: list[str],
        *,
        anchor: str,
        backward: bool,
        limit: int,
        not_before: datetime | None = None,
    ) -> list[FetchedMessage]:
        """Collect up to *limit* messages per stream, paging from *anchor*."""
        collected: dict[str, FetchedMessage] = {}
        for stream in streams:
            for msg in self._page_stream(stream, anchor, backward, limit, not_before):
                collected[msg.source_message_id] = msg
        return list(collected.values())

    def _page_stream(
        self,
        stream: str,
        anchor: str,
        backward: bool,
        limit: int,
        not_before: datetime | None,
    ) -> list[FetchedMessage]:
        page_size = min(int(self.settings.get("batch_size", 100)), _MAX_PAGE)
        results: list[FetchedMessage] = []
        current_anchor = anchor
        include_anchor = anchor == "newest"

        while len(results) < limit:
            want = min(page_size, limit - len(results))
            data = self._get_messages(
                stream,
                anchor=current_anchor,
                num_before=want if backward else 0,
                num_after=0 if backward else want,
                include_anchor=include_anchor,
            )
            raw_messages = data.get("messages", [])
            page = [self._normalize(raw, stream) for raw in raw_messages]
            if not_before is not None:
                page = [m for m in page if m.timestamp >= not_before]
            results.extend(page)

            exhausted = data.get("found_oldest") if backward else data.get("found_newest")
            if exhausted or not raw_messages or len(raw_messages) < want:
                break
            if not_before is not None and len(page) < len(raw_messages):
                break
            ids = [int(raw["id"]) for raw in raw_messages]
            current_anchor = str(min(ids) if backward else max(ids))
            include_anchor = False

        return results

    def _get_messages(
        self,
        stream: str,
        *,
        anchor: str,
        num_before: int,
        num_after: int,
        include_anchor: bool,
    ) -> dict[str, Any]:
        assert self._client is not None
        params = {
            "anchor": anchor,
            "num_before": num_before,
            "num_after": num_after,
            "include_anchor": json.dumps(include_anchor),
            "apply_markdown": "false",
            "narrow": json.dumps([{"operator": "stream", "operand": stream}]),
        }
        _, data = request_json(
            self._client,
            "GET",
            "/api/v1/messages",
            source_id=self.source_id,
            what=f"Zulip fetch for stream '{stream}'",
            params=params,
        )
        if data.get("result") != "success":
            raise PermanentAdapterError(
                f"Zulip rejected fetch for stream '{stream}': {data.get('msg', 'unknown error')}",
                source_id=self.source_id,
            )
        return data

    def _normalize(self, raw: dict[str, Any], stream: str) -> FetchedMessage:
        recipient = raw.get("display_recipient")
        stream_name = recipient if isinstance(recipient, str) else stream
        topic = str(raw.get("subject", ""))
        return FetchedMessage(
            source_message_id=str(raw["id"]),
            timestamp=datetime.fromtimestamp(int(raw["timestamp"]), tz=timezone.utc),
            body=str(raw.get("content", "")),
            author=str(raw.get("sender_full_name") or raw.get("sender_email") or ""),
            channel=f"{stream_name}/{topic}" if topic else str(stream_name),
            payload=ZulipPayload(
                message_id=int(raw["id"]),
                stream=str(stream_name),
                topic=topic,
                sender_email=str(raw.get("sender_email", "")),
                stream_id=raw.get("stream_id"),
            ),
            raw=raw,
        )

    def _start_date(self) -> datetime | None:
        value = self.settings.get("start_date")
        return _parse_start_date(value) if value else None


def _parse_start_date(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return from_iso(str(value))


def _sort_key(msg: FetchedMessage) -> tuple[datetime, int]:
    return msg.timestamp, int(msg.source_message_id)
