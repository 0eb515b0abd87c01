"""Base adapter interface for all docstream message sources."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, ClassVar

import httpx

from docstream.db.connection import Database
from docstream.db.models import ImportWatermark, SourceRecord
from docstream.db.repository import Repository
from docstream.errors import (
    AdapterConfigError,
    PermanentAdapterError,
    TransientAdapterError,
)
from docstream.ingest.payloads import FetchedMessage
from docstream.stream.watermarks import WatermarkStore

logger = logging.getLogger(__name__)


class SourceAdapter(ABC):
    """Abstract base for all source adapters.

    Subclasses implement ``validate_config()`` and ``fetch_messages()`` and may
    extend ``initialize()``, ``update_watermark()`` and ``cleanup()``.

    Adapters do not hold a database connection. Watermark reads and writes open
    a short session on *db*, so the same adapter can be driven from any
    scheduler thread.

    Args:
        source_id: Id of the source this adapter serves.
        settings: Adapter settings with credentials already resolved.
        db: Project database.
        schedule: Recurrence expression recorded on the source row.
    """

    adapter_type: ClassVar[str] = ""

    def __init__(
        self,
        source_id: str,
        settings: dict[str, Any],
        db: Database,
        *,
        schedule: str | None = None,
    ) -> None:
        self.source_id = source_id
        self.settings = dict(settings)
        self.schedule = schedule
        self._db = db
        self._initialized = False

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @classmethod
    @abstractmethod
    def validate_config(cls, settings: dict[str, Any]) -> bool:
        """Check *settings* without touching the network.

        Returns:
            True when the settings are usable.

        Raises:
            AdapterConfigError: With the reason when they are not.
        """

    def initialize(self) -> None:
        """Validate settings and make sure the source row exists.

        Subclasses that talk to a remote service call ``super().initialize()``
        and then test connectivity.
        """
        try:
            self.validate_config(self.settings)
        except AdapterConfigError as exc:
            exc.source_id = self.source_id
            raise
        with self._db.session() as conn:
            repo = Repository(conn)
            if repo.get_source(self.source_id) is None:
                repo.upsert_source(
                    SourceRecord(
                        id=self.source_id,
                        adapter=self.adapter_type,
                        config=json.dumps(_redact(self.settings)),
                        schedule=self.schedule,
                    )
                )
        self._initialized = True

    @abstractmethod
    def fetch_messages(
        self, watermark: ImportWatermark | None, limit: int
    ) -> list[FetchedMessage]:
        """Fetch up to *limit* messages.

        With no watermark, return the newest *limit* messages. With one, return
        only messages strictly after it (plus backfill where configured).
        """

    def get_watermark(self) -> ImportWatermark | None:
        with self._db.session() as conn:
            return WatermarkStore(Repository(conn)).get_import(self.source_id)

    def update_watermark(
        self,
        last_timestamp: datetime | None,
        last_id: str | None,
        count: int,
        *,
        oldest_timestamp: datetime | None = None,
        oldest_id: str | None = None,
    ) -> ImportWatermark | None:
        """Record fetch progress. Call only after the messages were persisted."""
        with self._db.session() as conn:
            return WatermarkStore(Repository(conn)).advance_import(
                self.source_id,
                last_timestamp=last_timestamp,
                last_id=last_id,
                count=count,
                oldest_timestamp=oldest_timestamp,
                oldest_id=oldest_id,
                cursor=self.next_cursor(),
            )

    def next_cursor(self) -> int | None:
        """Sequence number to store with the next watermark update (None = unchanged)."""
        return None

    def cleanup(self) -> None:
        """Release connections and other resources. Safe to call twice."""
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def __repr__(self) -> str:
        return f"{type(self).__name__}(source_id={self.source_id!r})"


# ------------------------------------------------------------------
# HTTP helpers shared by the network adapters
# ------------------------------------------------------------------

_SECRET_KEYS = ("api_key", "bot_token", "password", "token", "secret")


def _redact(settings: dict[str, Any]) -> dict[str, Any]:
    return {
        k: ("***" if any(s in k.lower() for s in _SECRET_KEYS) else v)
        for k, v in settings.items()
    }


def classify_http_error(response: httpx.Response, source_id: str, what: str) -> Exception:
    """Map a failed HTTP response onto the adapter error taxonomy."""
    detail = response.text[:300]
    message = f"{what} failed with HTTP {response.status_code}: {detail}"
    if response.status_code in (401, 403):
        return AdapterConfigError(message, source_id=source_id)
    if response.status_code == 429 or response.status_code >= 500:
        return TransientAdapterError(message, source_id=source_id)
    return PermanentAdapterError(message, source_id=source_id)


def request_json(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    source_id: str,
    what: str,
    ok_statuses: tuple[int, ...] = (200,),
    **kwargs: Any,
) -> tuple[httpx.Response, Any]:
    """Send a request and decode JSON, translating transport failures to adapter errors."""
    try:
        response = client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientAdapterError(f"{what} timed out: {exc}", source_id=source_id) from exc
    except httpx.TransportError as exc:
        raise TransientAdapterError(f"{what} failed: {exc}", source_id=source_id) from exc

    if response.status_code not in ok_statuses:
        raise classify_http_error(response, source_id, what)
    try:
        return response, response.json()
    except ValueError as exc:
        raise TransientAdapterError(
            f"{what} returned a non-JSON body", source_id=source_id
        ) from exc
