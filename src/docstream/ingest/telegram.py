"""Telegram adapter: Bot API long-poll via getUpdates.

The bot owns its subscription: Telegram keeps undelivered updates for 24 hours
and forgets everything up to ``offset - 1`` once we ask for ``offset``. The
strictly increasing ``update_id`` is stored as the watermark cursor, and any
update at or below the cursor is dropped as a duplicate.

HTTP 409 means another process (or a webhook) holds the subscription. That is
logged and the cycle returns nothing; it is not an adapter failure.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from docstream.db.connection import Database
from docstream.db.models import ImportWatermark
from docstream.errors import AdapterConfigError, PermanentAdapterError, TransientAdapterError
from docstream.ingest.base import SourceAdapter, request_json
from docstream.ingest.payloads import FetchedMessage, TelegramPayload

logger = logging.getLogger(__name__)

_API_BASE = "https://api.telegram.org"
_MAX_UPDATES = 100  # Bot API limit per getUpdates call
_ALLOWED_UPDATES = ["message", "channel_post"]


class TelegramAdapter(SourceAdapter):
    """Import messages a bot receives in groups and channels.

    Settings:
        bot_token: Bot API token (usually from TELEGRAM_BOT_TOKEN).
        poll_timeout: Long-poll timeout in seconds (default 10; 0 = short poll).
        allowed_chats: Optional list of chat ids to keep; others are dropped.
        api_base: Override the Bot API base URL (self-hosted API servers).
    """

    adapter_type = "telegram"

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
        self._pending_cursor: int | None = None

    @classmethod
    def validate_config(cls, settings: dict[str, Any]) -> bool:
        token = settings.get("bot_token")
        if not token or ":" not in str(token):
            raise AdapterConfigError(
                "telegram: 'bot_token' is missing or malformed (expected '<id>:<secret>')"
            )
        timeout = settings.get("poll_timeout", 10)
        if int(timeout) < 0:
            raise AdapterConfigError("telegram: poll_timeout must be >= 0")
        chats = settings.get("allowed_chats")
        if chats is not None and not isinstance(chats, list):
            raise AdapterConfigError("telegram: allowed_chats must be a list of chat ids")
        return True

    def initialize(self) -> None:
        super().initialize()
        if self._client is None:
            poll = int(self.settings.get("poll_timeout", 10))
            self._client = httpx.Client(timeout=httpx.Timeout(10.0, read=poll + 10.0))
        _, data = request_json(
            self._client,
            "GET",
            self._url("getMe"),
            source_id=self.source_id,
            what="Telegram getMe",
        )
        if not data.get("ok"):
            raise AdapterConfigError(
                f"Telegram getMe rejected: {data.get('description', 'unknown error')}",
                source_id=self.source_id,
            )
        logger.info(
            "Telegram source %s connected as @%s",
            self.source_id,
            data.get("result", {}).get("username", "?"),
        )

    def cleanup(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
        self._pending_cursor = None
        super().cleanup()

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def fetch_messages(
        self, watermark: ImportWatermark | None, limit: int
    ) -> list[FetchedMessage]:
        if self._client is None:
            raise PermanentAdapterError(
                "Telegram adapter used before initialize()", source_id=self.source_id
            )
        cursor = watermark.cursor if watermark is not None else None
        params: dict[str, Any] = {
            "timeout": int(self.settings.get("poll_timeout", 10)),
            "limit": max(1, min(limit, _MAX_UPDATES)),
            "allowed_updates": json.dumps(_ALLOWED_UPDATES),
        }
        if cursor is not None:
            params["offset"] = cursor + 1

        response, data = request_json(
            self._client,
            "GET",
            self._url("getUpdates"),
            source_id=self.source_id,
            what="Telegram getUpdates",
            ok_statuses=(200, 409),
            params=params,
        )
        if response.status_code == 409:
            logger.warning(
                "Telegram source %s: getUpdates conflict (another poller or a webhook holds "
                "this bot): %s",
                self.source_id,
                data.get("description", ""),
            )
            self._pending_cursor = None
            return []
        if not data.get("ok"):
            raise TransientAdapterError(
                f"Telegram getUpdates not ok: {data.get('description', 'unknown error')}",
                source_id=self.source_id,
            )

        allowed = self.settings.get("allowed_chats")
        allowed_ids = {int(c) for c in allowed} if allowed else None

        fetched: list[FetchedMessage] = []
        highest = cursor
        for update in data.get("result", []):
            update_id = int(update["update_id"])
            if cursor is not None and update_id <= cursor:
                continue
            highest = update_id if highest is None else max(highest, update_id)
            message = update.get("message") or update.get("channel_post")
            if not message:
                continue
            normalized = self._normalize(update_id, message)
            if normalized is None:
                continue
            if allowed_ids is not None and normalized.payload.chat_id not in allowed_ids:
                continue
            fetched.append(normalized)

        self._pending_cursor = highest if highest != cursor else None
        fetched.sort(key=lambda m: (m.timestamp, m.payload.update_id))
        return fetched

    def next_cursor(self) -> int | None:
        return self._pending_cursor

    def update_watermark(self, *args: Any, **kwargs: Any) -> ImportWatermark | None:
        wm = super().update_watermark(*args, **kwargs)
        self._pending_cursor = None
        return wm

    def _normalize(self, update_id: int, message: dict[str, Any]) -> FetchedMessage | None:
        text = message.get("text") or message.get("caption")
        if not text:
            return None
        chat = message.get("chat", {})
        chat_id = int(chat["id"])
        sender = message.get("from") or {}
        author = (
            sender.get("username")
            or " ".join(p for p in (sender.get("first_name"), sender.get("last_name")) if p)
            or chat.get("title", "")
        )
        reply = message.get("reply_to_message")
        reply_id = int(reply["message_id"]) if reply else None
        return FetchedMessage(
            source_message_id=f"{chat_id}-{message['message_id']}",
            timestamp=datetime.fromtimestamp(int(message["date"]), tz=timezone.utc),
            body=str(text),
            author=str(author),
            channel=str(chat.get("title") or chat.get("username") or chat_id),
            payload=TelegramPayload(
                update_id=update_id,
                chat_id=chat_id,
                message_id=int(message["message_id"]),
                chat_type=str(chat.get("type", "")),
                reply_to_message_id=reply_id,
            ),
            raw=message,
            reply_to=f"{chat_id}-{reply_id}" if reply_id is not None else None,
        )

    def _url(self, method: str) -> str:
        base = str(self.settings.get("api_base", _API_BASE)).rstrip("/")
        return f"{base}/bot{self.settings['bot_token']}/{method}"
