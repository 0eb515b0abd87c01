"""Tests for docstream reset-processing / reset-import / retry-failed."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import yaml
from typer.testing import CliRunner

from docstream.cli.main import app
from docstream.db.connection import Database
from docstream.db.models import (
    Classification,
    ImportWatermark,
    Message,
    MessageStatus,
    SourceRecord,
)
from docstream.db.repository import Repository

runner = CliRunner()

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _project(tmp_path: Path) -> Path:
    data = {
        "database": str(tmp_path / ".docstream.db"),
        "sources": [{"id": "zulip-main", "adapter": "zulip", "enabled": False,
                     "config": {"site": "https://z.example.com"}}],
    }
    path = tmp_path / "docstream.yaml"
    path.write_text(yaml.dump(data), encoding="utf-8")
    return path


def _seed(tmp_path: Path) -> list[Message]:
    """Three messages: two analysed, one FAILED, plus an import watermark."""
    msgs = [
        Message(source_id="zulip-main", source_message_id=str(i),
                timestamp=T0 + timedelta(minutes=i), body=f"m{i}")
        for i in range(3)
    ]
    with Database(tmp_path / ".docstream.db").session() as conn:
        repo = Repository(conn)
        repo.upsert_source(SourceRecord(id="zulip-main", adapter="zulip"))
        repo.insert_messages(msgs)
        for m in msgs[:2]:
            repo.add_classification(Classification(
                message_id=m.id, batch_id="b1", category="install", doc_value=False))
        repo.mark_completed([m.id for m in msgs[:2]])
        repo.record_failure([msgs[2].id], "boom", max_failures=1)
        repo.save_import_watermark(
            ImportWatermark(source_id="zulip-main", last_message_id="2", last_timestamp=T0)
        )
    return msgs


def _count(tmp_path: Path, status: MessageStatus) -> int:
    with Database(tmp_path / ".docstream.db").session() as conn:
        return Repository(conn).count_messages(status=status)


# ---------------------------------------------------------------------------
# reset-processing
# ---------------------------------------------------------------------------


def test_reset_processing_with_yes(tmp_path: Path) -> None:
    cfg = _project(tmp_path)
    _seed(tmp_path)

    result = runner.invoke(app, ["reset-processing", "--yes", "--config", str(cfg)])

    assert result.exit_code == 0, result.output
    assert "3 message(s) reset" in result.output
    assert _count(tmp_path, MessageStatus.COMPLETED) == 0
    assert _count(tmp_path, MessageStatus.PENDING) == 3


def test_reset_processing_cancelled(tmp_path: Path) -> None:
    cfg = _project(tmp_path)
    _seed(tmp_path)

    result = runner.invoke(app, ["reset-processing", "--config", str(cfg)], input="n\n")

    assert result.exit_code == 0
    assert "Cancelled." in result.output
    assert _count(tmp_path, MessageStatus.COMPLETED) == 2


def test_reset_processing_unknown_source(tmp_path: Path) -> None:
    cfg = _project(tmp_path)
    result = runner.invoke(
        app, ["reset-processing", "--source", "nope", "--yes", "--config", str(cfg)]
    )
    assert result.exit_code == 1
    assert "sources list" in result.output


# ---------------------------------------------------------------------------
# reset-import
# ---------------------------------------------------------------------------


def test_reset_import_deletes_then_reports_none(tmp_path: Path) -> None:
    cfg = _project(tmp_path)
    _seed(tmp_path)

    first = runner.invoke(app, ["reset-import", "zulip-main", "-y", "--config", str(cfg)])
    second = runner.invoke(app, ["reset-import", "zulip-main", "-y", "--config", str(cfg)])

    assert first.exit_code == 0, first.output
    assert "deleted" in first.output
    assert "no import watermark" in second.output


# ---------------------------------------------------------------------------
# retry-failed
# ---------------------------------------------------------------------------


def test_retry_failed_requeues(tmp_path: Path) -> None:
    cfg = _project(tmp_path)
    _seed(tmp_path)

    result = runner.invoke(app, ["retry-failed", "--config", str(cfg)])

    assert result.exit_code == 0, result.output
    assert "1 failed message(s) requeued" in result.output
    assert _count(tmp_path, MessageStatus.FAILED) == 0
