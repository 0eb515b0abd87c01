"""Formatting repair for model-written proposal text.

Models regularly lose line breaks when they emit markdown inside JSON
strings: numbered steps run into the previous sentence, bullets follow a
colon on the same line, ``**Bold**Text`` headings merge with the paragraph
after them. The rules below put the breaks back. List rules apply to every
page; markdown rules only to markdown targets.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath

MARKDOWN_SUFFIXES = frozenset({".md", ".mdx", ".markdown"})

_LABELS = r"(?:Cause|Solution|Note|Warning|Important|Example)"
_SECTIONS = (
    r"(?:Troubleshooting|Overview|Prerequisites|Installation|Configuration|Usage|Examples?"
    r"|Summary|Conclusion|Introduction|Background|Requirements|Setup|Notes?|Tips?"
    r"|Warnings?|Errors?|Solutions?|Steps|Instructions)"
)

Rule = tuple[str, re.Pattern[str], str]

_LIST_RULES: list[Rule] = [
    ("escaped-newline", re.compile(r"\\n"), "\n"),
    ("numbered-after-paren", re.compile(r"(\))(\d+\.\s*\*{0,2}\s*[A-Z])"), r"\1\n\n\2"),
    ("numbered-after-sentence", re.compile(r"([.!?])(\d+\.\s*\*{0,2}\s*[A-Z])"), r"\1\n\n\2"),
    ("numbered-after-word", re.compile(r"([a-z])(\d+\.\s+[A-Z])"), r"\1\n\n\2"),
    ("dash-after-paren", re.compile(r"(\))(-\s+[A-Z])"), r"\1\n\n\2"),
    ("dash-after-sentence", re.compile(r"([.!?])(-\s+[A-Z])"), r"\1\n\n\2"),
    ("numbered-after-colon", re.compile(r"([A-Za-z]:)(1\.\s*\*{0,2}\s*[A-Z])"), r"\1\n\n\2"),
    ("dash-after-colon", re.compile(r"([A-Za-z]:)(-\s+[A-Z])"), r"\1\n\n\2"),
    ("star-after-colon", re.compile(r"([A-Za-z]:)[ \t]*(\*\s+)"), r"\1\n\n\2"),
    ("star-after-quote", re.compile(r"([`'\"])\*\s+"), r"\1\n\n* "),
    ("star-after-sentence", re.compile(r"([.!?])[ \t]+(\*\s+\*{0,2}[A-Z])"), r"\1\n\n\2"),
]

_MARKDOWN_RULES: list[Rule] = [
    ("bold-runs-on", re.compile(r"(\*{2,3}[^*\n]+\*{2,3})([A-Z])"), r"\1\n\n\2"),
    ("admonition-runs-on", re.compile(r"(:::[a-z]+[^:\n]*:::)([A-Z])", re.IGNORECASE), r"\1\n\n\2"),
    ("section-title-runs-on", re.compile(rf"\b({_SECTIONS})([A-Z][a-z])"), r"\1\n\n\2"),
    (
        "leading-label",
        re.compile(rf"^({_LABELS}):[ \t]+(\S)", re.IGNORECASE | re.MULTILINE),
        r"\1:\n\n\2",
    ),
    (
        "label-after-sentence",
        re.compile(rf"([.!?:])[ \t]*({_LABELS}(?:\s*\d+)?):[ \t]*(\S)", re.IGNORECASE),
        r"\1\n\n\2:\n\n\3",
    ),
]

_EXCESS_NEWLINES = re.compile(r"\n{3,}")


@dataclass
class PostProcessResult:
    """Formatted text plus the names of the rules that changed it."""

    text: str
    applied: list[str] = field(default_factory=list)

    @property
    def modified(self) -> bool:
        return bool(self.applied)


def is_markdown(page: str) -> bool:
    return PurePosixPath(page).suffix.lower() in MARKDOWN_SUFFIXES


def postprocess_text(text: str, page: str) -> PostProcessResult:
    """Repair line breaks in *text* destined for *page*."""
    if not text:
        return PostProcessResult(text="")
    rules = _LIST_RULES + (_MARKDOWN_RULES if is_markdown(page) else [])
    out = PostProcessResult(text=text)
    for name, pattern, replacement in rules:
        fixed = pattern.sub(replacement, out.text)
        if fixed != out.text:
            out.text = fixed
            out.applied.append(name)
    collapsed = _EXCESS_NEWLINES.sub("\n\n", out.text)
    if collapsed != out.text:
        out.text = collapsed
        out.applied.append("excess-newlines")
    return out
