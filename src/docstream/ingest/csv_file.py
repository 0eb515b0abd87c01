"""File-drop adapter: CSV files dropped into a directory.

Columns are mapped onto the normalized message shape through ``column_map``.
Malformed rows are skipped and recorded in ``import_rejects``; they never fail
the file. A file counts as consumed (moved to ``processed_dir``) only once
update_watermark() runs, i.e. after its rows were persisted, so a crash in
between re-reads the file and the uniqueness key absorbs the duplicates.
"""

from __future__ import annotations

import csv
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from docstream.db.connection import Database
from docstream.db.models import ImportReject, ImportWatermark, from_iso
from docstream.db.repository import Repository
from docstream.errors import AdapterConfigError
from docstream.ingest.base import SourceAdapter
from docstream.ingest.payloads import CsvRowPayload, FetchedMessage

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("id", "timestamp", "body")
_OPTIONAL_FIELDS = ("author", "channel", "reply_to")


@dataclass
class _PendingFile:
    path: Path
    rejects: list[ImportReject] = field(default_factory=list)


class CsvFileAdapter(SourceAdapter):
    """Read CSV exports dropped into ``drop_dir``.

    Settings:
        drop_dir: Directory watched for files.
        pattern: Glob for files to pick up (default ``*.csv``).
        processed_dir: Where consumed files go (default ``<drop_dir>/processed``).
        column_map: Normalized field -> CSV column. ``id``, ``timestamp`` and
            ``body`` are required; ``author``, ``channel``, ``reply_to`` optional.
        timestamp_format: strptime format; ISO-8601 or epoch seconds otherwise.
        default_channel: Channel for rows without one (default: file stem).
        encoding: File encoding (default utf-8).
    """

    adapter_type = "csv"

    def __init__(
        self,
        source_id: str,
        settings: dict[str, Any],
        db: Database,
        *,
        schedule: str | None = None,
    ) -> None:
        super().__init__(source_id, settings, db, schedule=schedule)
        self._pending: list[_PendingFile] = []

    @classmethod
    def validate_config(cls, settings: dict[str, Any]) -> bool:
        if not settings.get("drop_dir"):
            raise AdapterConfigError("csv: 'drop_dir' is required")
        column_map = settings.get("column_map")
        if not isinstance(column_map, dict):
            raise AdapterConfigError("csv: 'column_map' must be a mapping of field -> column")
        missing = [f for f in _REQUIRED_FIELDS if not column_map.get(f)]
        if missing:
            raise AdapterConfigError(f"csv: column_map is missing required fields: {missing}")
        unknown = set(column_map) - set(_REQUIRED_FIELDS) - set(_OPTIONAL_FIELDS)
        if unknown:
            raise AdapterConfigError(f"csv: column_map has unknown fields: {sorted(unknown)}")
        return True

    @property
    def drop_dir(self) -> Path:
        return Path(self.settings["drop_dir"])

    @property
    def processed_dir(self) -> Path:
        configured = self.settings.get("processed_dir")
        return Path(configured) if configured else self.drop_dir / "processed"

    def initialize(self) -> None:
        super().initialize()
        if not self.drop_dir.is_dir():
            raise AdapterConfigError(
                f"csv: drop_dir does not exist: {self.drop_dir}", source_id=self.source_id
            )
        self.processed_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def fetch_messages(
        self, watermark: ImportWatermark | None, limit: int
    ) -> list[FetchedMessage]:
        """Read whole files in name order until at least *limit* rows are collected.

        The watermark is not used for filtering: consumed files leave the drop
        directory, which is what keeps re-fetches cheap.
        """
        self._pending = []
        fetched: list[FetchedMessage] = []
        pattern = self.settings.get("pattern", "*.csv")
        files = sorted(p for p in self.drop_dir.glob(pattern) if p.is_file())

        for path in files:
            if fetched and len(fetched) >= limit:
                break
            pending = _PendingFile(path=path)
            fetched.extend(self._read_file(path, pending))
            self._pending.append(pending)

        fetched.sort(key=lambda m: (m.timestamp, m.source_message_id))
        if self._pending:
            logger.info(
                "CSV source %s: %d rows from %d file(s), %d rejected",
                self.source_id,
                len(fetched),
                len(self._pending),
                sum(len(p.rejects) for p in self._pending),
            )
        return fetched

    def _read_file(self, path: Path, pending: _PendingFile) -> list[FetchedMessage]:
        column_map: dict[str, str] = self.settings["column_map"]
        encoding = self.settings.get("encoding", "utf-8")
        messages: list[FetchedMessage] = []

        # Undecodable bytes come through as lone surrogates and are rejected
        # per row below.
        with path.open(newline="", encoding=encoding, errors="surrogateescape") as fh:
            reader = csv.DictReader(fh)
            try:
                header = reader.fieldnames or []
            except (csv.Error, UnicodeError) as exc:
                pending.rejects.append(
                    ImportReject(
                        source_id=self.source_id,
                        location=path.name,
                        reason=f"unreadable header: {exc}",
                    )
                )
                return messages
            absent = [column_map[f] for f in _REQUIRED_FIELDS if column_map[f] not in header]
            if absent:
                pending.rejects.append(
                    ImportReject(
                        source_id=self.source_id,
                        location=path.name,
                        reason=f"missing required columns: {absent}",
                        raw=_printable(",".join(header), encoding),
                    )
                )
                return messages

            # Row 1 is the header; data rows start at 2 like a spreadsheet.
            row_number = 1
            while True:
                try:
                    row = next(reader)
                except StopIteration:
                    break
                except (csv.Error, UnicodeError) as exc:
                    pending.rejects.append(
                        ImportReject(
                            source_id=self.source_id,
                            location=f"{path.name}:{row_number + 1}",
                            reason=f"malformed CSV, rest of file skipped: {exc}",
                        )
                    )
                    break
                row_number += 1
                raw = _row_text(row)
                if _has_undecodable(row):
                    pending.rejects.append(
                        ImportReject(
                            source_id=self.source_id,
                            location=f"{path.name}:{row_number}",
                            reason=f"not valid {encoding}",
                            raw=_printable(raw, encoding),
                        )
                    )
                    continue
                try:
                    messages.append(self._row_to_message(path, row_number, row))
                except ValueError as exc:
                    pending.rejects.append(
                        ImportReject(
                            source_id=self.source_id,
                            location=f"{path.name}:{row_number}",
                            reason=str(exc),
                            raw=raw,
                        )
                    )
        return messages

    def _row_to_message(self, path: Path, row_number: int, row: dict[str, Any]) -> FetchedMessage:
        column_map: dict[str, str] = self.settings["column_map"]

        def value(field_name: str) -> str:
            column = column_map.get(field_name)
            return (row.get(column) or "").strip() if column else ""

        msg_id = value("id")
        if not msg_id:
            raise ValueError("empty id")
        body = value("body")
        if not body:
            raise ValueError("empty body")
        timestamp = self._parse_timestamp(value("timestamp"))

        reply_to = value("reply_to") or None
        return FetchedMessage(
            source_message_id=msg_id,
            timestamp=timestamp,
            body=body,
            author=value("author"),
            channel=value("channel") or self.settings.get("default_channel") or path.stem,
            payload=CsvRowPayload(file=path.name, row=row_number),
            raw={k: v for k, v in row.items() if k is not None},
            reply_to=reply_to,
        )

    def _parse_timestamp(self, text: str) -> datetime:
        if not text:
            raise ValueError("empty timestamp")
        fmt = self.settings.get("timestamp_format")
        try:
            if fmt:
                parsed = datetime.strptime(text, fmt)
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
            if text.replace(".", "", 1).isdigit():
                return datetime.fromtimestamp(float(text), tz=timezone.utc)
            return from_iso(text)
        except (ValueError, OverflowError, OSError) as exc:
            raise ValueError(f"unparseable timestamp '{text}'") from exc

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def update_watermark(self, *args: Any, **kwargs: Any) -> ImportWatermark | None:
        """Advance the watermark, record rejects, then move the consumed files."""
        wm = super().update_watermark(*args, **kwargs)
        if not self._pending:
            return wm

        with self._db.session() as conn:
            repo = Repository(conn)
            with repo.transaction():
                for pending in self._pending:
                    for reject in pending.rejects:
                        repo.add_import_reject(reject)

        self.processed_dir.mkdir(parents=True, exist_ok=True)
        for pending in self._pending:
            target = self.processed_dir / pending.path.name
            if target.exists():
                stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
                target = self.processed_dir / f"{pending.path.stem}.{stamp}{pending.path.suffix}"
            shutil.move(str(pending.path), str(target))
            logger.debug("CSV source %s consumed %s", self.source_id, pending.path.name)
        self._pending = []
        return wm

    def cleanup(self) -> None:
        self._pending = []
        super().cleanup()


def _row_text(row: dict[str, Any]) -> str:
    return ",".join(f"{k}={v}" for k, v in row.items() if k is not None)


def _has_undecodable(row: dict[Any, Any]) -> bool:
    for value in row.values():
        for text in value if isinstance(value, list) else [value]:
            if isinstance(text, str) and any("\udc80" <= ch <= "\udcff" for ch in text):
                return True
    return False


def _printable(text: str, encoding: str) -> str:
    """Swap undecodable bytes for U+FFFD so the text can be stored."""
    return text.encode(encoding, "surrogateescape").decode(encoding, "replace")
