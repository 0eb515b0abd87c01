"""Tests for proposal text formatting repair."""

from __future__ import annotations

import pytest

from docstream.process.postprocess import is_markdown, postprocess_text


@pytest.mark.parametrize("page,expected", [
    ("docs/install.md", True),
    ("guide.MDX", True),
    ("notes.markdown", True),
    ("api.rst", False),
    ("README", False),
])
def test_is_markdown(page, expected):
    assert is_markdown(page) is expected


def test_empty_text():
    result = postprocess_text("", "a.md")
    assert result.text == ""
    assert result.modified is False


def test_clean_text_untouched():
    text = "## Install\n\nRun `pip install docstream`.\n\n1. Create a venv.\n2. Install."
    result = postprocess_text(text, "install.md")
    assert result.text == text
    assert result.applied == []


def test_escaped_newlines_become_real():
    result = postprocess_text("First line\\nSecond line", "a.txt")
    assert result.text == "First line\nSecond line"
    assert result.applied == ["escaped-newline"]


def test_numbered_steps_split_from_sentence():
    result = postprocess_text("Do this first.1. Open the file.2. Save it.", "a.rst")
    assert result.text == "Do this first.\n\n1. Open the file.\n\n2. Save it."


def test_bullets_after_colon():
    result = postprocess_text("Options:- Fast mode\n- Slow mode", "a.md")
    assert result.text == "Options:\n\n- Fast mode\n- Slow mode"


def test_bold_heading_runs_into_paragraph():
    result = postprocess_text("**Troubleshooting**If pip fails, upgrade it.", "faq.md")
    assert result.text == "**Troubleshooting**\n\nIf pip fails, upgrade it."
    assert "bold-runs-on" in result.applied


def test_labels_after_sentence_end():
    result = postprocess_text("The cache is stale.Solution: delete it.", "faq.md")
    assert result.text == "The cache is stale.\n\nSolution:\n\ndelete it."


def test_markdown_rules_skipped_for_other_pages():
    text = "**Troubleshooting**If pip fails, upgrade it."
    assert postprocess_text(text, "faq.rst").text == text


def test_times_and_ports_not_split():
    text = "Meet at 10:30. Then open localhost:8080. Done."
    assert postprocess_text(text, "a.md").text == text


def test_excess_blank_lines_collapsed():
    result = postprocess_text("One.\n\n\n\nTwo.", "a.md")
    assert result.text == "One.\n\nTwo."
    assert result.applied == ["excess-newlines"]
