"""Tests for docstream sources list / enable / disable and docstream fetch."""

from __future__ import annotations

from pathlib import Path

import yaml
from typer.testing import CliRunner

from docstream.cli.main import app
from docstream.db.connection import Database
from docstream.db.repository import Repository

runner = CliRunner()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _project(tmp_path: Path, sources: list[dict]) -> Path:
    path = tmp_path / "docstream.yaml"
    data = {"database": str(tmp_path / ".docstream.db"), "sources": sources}
    path.write_text(yaml.dump(data), encoding="utf-8")
    return path


def _csv_source(tmp_path: Path, source_id: str = "export") -> dict:
    drop = tmp_path / "drop"
    drop.mkdir(exist_ok=True)
    return {
        "id": source_id,
        "adapter": "csv",
        "config": {
            "drop_dir": str(drop),
            "column_map": {"id": "id", "timestamp": "ts", "body": "text"},
        },
    }


def _source_row(tmp_path: Path, source_id: str):
    with Database(tmp_path / ".docstream.db").session() as conn:
        return Repository(conn).get_source(source_id)


# ---------------------------------------------------------------------------
# sources list
# ---------------------------------------------------------------------------


def test_sources_list_empty(tmp_path: Path) -> None:
    cfg = _project(tmp_path, [])
    result = runner.invoke(app, ["sources", "list", "--config", str(cfg)])
    assert result.exit_code == 0
    assert "No sources configured" in result.output


def test_sources_list_shows_state(tmp_path: Path) -> None:
    off = _csv_source(tmp_path, "off")
    off["enabled"] = False
    cfg = _project(tmp_path, [_csv_source(tmp_path), off])

    result = runner.invoke(app, ["sources", "list", "--config", str(cfg)])

    assert result.exit_code == 0, result.output
    assert "export" in result.output
    assert "idle" in result.output
    assert "disabled" in result.output


# ---------------------------------------------------------------------------
# sources enable / disable
# ---------------------------------------------------------------------------


def test_disable_then_enable(tmp_path: Path) -> None:
    cfg = _project(tmp_path, [_csv_source(tmp_path)])

    result = runner.invoke(app, ["sources", "disable", "export", "--config", str(cfg)])
    assert result.exit_code == 0, result.output
    assert _source_row(tmp_path, "export").enabled is False

    result = runner.invoke(app, ["sources", "enable", "export", "--config", str(cfg)])
    assert result.exit_code == 0, result.output
    assert _source_row(tmp_path, "export").enabled is True


def test_enable_unknown_source_exits_1(tmp_path: Path) -> None:
    cfg = _project(tmp_path, [_csv_source(tmp_path)])
    result = runner.invoke(app, ["sources", "enable", "nope", "--config", str(cfg)])
    assert result.exit_code == 1
    assert "sources list" in result.output


# ---------------------------------------------------------------------------
# fetch
# ---------------------------------------------------------------------------


def test_fetch_imports_csv_rows(tmp_path: Path) -> None:
    cfg = _project(tmp_path, [_csv_source(tmp_path)])
    (tmp_path / "drop" / "a.csv").write_text(
        "id,ts,text\n1,2024-03-01T09:00:00Z,hello\n2,2024-03-01T09:01:00Z,world\n",
        encoding="utf-8",
    )

    result = runner.invoke(app, ["fetch", "--config", str(cfg)])

    assert result.exit_code == 0, result.output
    assert "export: 2 new message(s)" in result.output


def test_fetch_unknown_source_exits_1(tmp_path: Path) -> None:
    cfg = _project(tmp_path, [_csv_source(tmp_path)])
    result = runner.invoke(app, ["fetch", "nope", "--config", str(cfg)])
    assert result.exit_code == 1
    assert "nope" in result.output


def test_fetch_misconfigured_source_exits_1(tmp_path: Path) -> None:
    source = _csv_source(tmp_path)
    source["config"]["drop_dir"] = str(tmp_path / "missing")
    cfg = _project(tmp_path, [source])

    result = runner.invoke(app, ["fetch", "export", "--config", str(cfg)])

    assert result.exit_code == 1
    assert "disabled" in result.output
    assert _source_row(tmp_path, "export").error_disabled is True


def test_fetch_nothing_enabled(tmp_path: Path) -> None:
    cfg = _project(tmp_path, [])
    result = runner.invoke(app, ["fetch", "--config", str(cfg)])
    assert result.exit_code == 0
    assert "No enabled sources" in result.output
