"""Dual watermark store: import progress vs. processing progress, per source.

Both cursors only move forward during normal operation. The reset_* and
rewind_processing() methods are the explicit operator escape hatches; nothing
in a regular fetch or batch cycle calls them.
"""

from __future__ import annotations

import logging
from datetime import datetime

from docstream.db.models import ImportWatermark, ProcessingWatermark
from docstream.db.repository import Repository
from docstream.errors import WatermarkRegression

logger = logging.getLogger(__name__)


class WatermarkStore:
    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    # ------------------------------------------------------------------
    # Import watermark
    # ------------------------------------------------------------------

    def get_import(self, source_id: str) -> ImportWatermark | None:
        return self._repo.get_import_watermark(source_id)

    def advance_import(
        self,
        source_id: str,
        *,
        last_timestamp: datetime | None,
        last_id: str | None,
        count: int,
        oldest_timestamp: datetime | None = None,
        oldest_id: str | None = None,
        cursor: int | None = None,
    ) -> ImportWatermark | None:
        """Move the import watermark forward after messages were persisted.

        Args:
            source_id: Source whose watermark moves.
            last_timestamp: Timestamp of the newest persisted message, or None
                when the cycle produced no messages.
            last_id: Source message id matching *last_timestamp*.
            count: Number of newly persisted messages (added to the total).
            oldest_timestamp: Oldest message of this cycle; extends the backfill
                boundary when older than the stored one.
            oldest_id: Source message id matching *oldest_timestamp*.
            cursor: Adapter sequence number (e.g. bot update id).

        Returns:
            The stored watermark, or None when there was nothing to record.

        Raises:
            WatermarkRegression: If *last_timestamp* or *cursor* is older than
                the stored value.
        """
        current = self._repo.get_import_watermark(source_id)

        if current is None:
            if last_timestamp is None and cursor is None:
                return None
            current = ImportWatermark(source_id=source_id)

        if last_timestamp is not None:
            if current.last_timestamp is not None and last_timestamp < current.last_timestamp:
                raise WatermarkRegression(
                    f"Import watermark for '{source_id}' would move back from "
                    f"{current.last_timestamp.isoformat()} to {last_timestamp.isoformat()}"
                )
            current.last_timestamp = last_timestamp
            current.last_message_id = last_id

        if cursor is not None:
            if current.cursor is not None and cursor < current.cursor:
                raise WatermarkRegression(
                    f"Import cursor for '{source_id}' would move back from {current.cursor} to {cursor}"
                )
            current.cursor = cursor

        boundary_ts = oldest_timestamp or last_timestamp
        boundary_id = oldest_id if oldest_timestamp is not None else last_id
        if boundary_ts is not None and (
            current.oldest_timestamp is None or boundary_ts < current.oldest_timestamp
        ):
            current.oldest_timestamp = boundary_ts
            current.oldest_message_id = boundary_id

        current.total_imported += count
        self._repo.save_import_watermark(current)
        return current

    def reset_import(self, source_id: str) -> bool:
        """Delete the import watermark: the next fetch behaves like a first run."""
        removed = self._repo.delete_import_watermark(source_id)
        logger.info("Import watermark reset for %s (existed=%s)", source_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Processing watermark
    # ------------------------------------------------------------------

    def get_processing(self, source_id: str) -> ProcessingWatermark | None:
        return self._repo.get_processing_watermark(source_id)

    def advance_processing(
        self, source_id: str, to_time: datetime, batch_id: str | None = None
    ) -> ProcessingWatermark:
        """Move the processing watermark to *to_time*.

        Raises:
            WatermarkRegression: If *to_time* is before the stored watermark.
        """
        current = self._repo.get_processing_watermark(source_id)
        if current is not None and to_time < current.watermark_time:
            raise WatermarkRegression(
                f"Processing watermark for '{source_id}' would move back from "
                f"{current.watermark_time.isoformat()} to {to_time.isoformat()}"
            )
        wm = ProcessingWatermark(source_id=source_id, watermark_time=to_time, last_batch_id=batch_id)
        self._repo.save_processing_watermark(wm)
        return wm

    def rewind_processing(self, source_id: str, to_time: datetime) -> ProcessingWatermark:
        """Set the processing watermark to *to_time* even if that moves it backward."""
        wm = ProcessingWatermark(source_id=source_id, watermark_time=to_time, last_batch_id=None)
        self._repo.save_processing_watermark(wm)
        logger.info("Processing watermark for %s rewound to %s", source_id, to_time.isoformat())
        return wm

    def reset_processing(self, source_id: str) -> bool:
        """Delete the processing watermark: the next batch starts at the earliest PENDING message."""
        removed = self._repo.delete_processing_watermark(source_id)
        logger.info("Processing watermark reset for %s (existed=%s)", source_id, removed)
        return removed
