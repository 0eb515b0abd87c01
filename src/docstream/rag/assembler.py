"""Context assembler: fit ranked pages into a token budget.

Pages arrive best-first from the retriever. They are added in rank order until
the next one would overflow the budget; that page and everything ranked below
it are dropped. The kept set is therefore always a prefix of the ranking.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from docstream.rag.llm_client import count_tokens
from docstream.rag.retriever import ScoredPage


@dataclass
class AssembledContext:
    pages: list[ScoredPage] = field(default_factory=list)
    total_tokens: int = 0
    dropped: list[ScoredPage] = field(default_factory=list)

    def render(self) -> str:
        """Prompt-ready text of the kept pages."""
        return "\n\n".join(_page_text(sp) for sp in self.pages)


def _page_text(sp: ScoredPage) -> str:
    return f"## {sp.page.title} ({sp.page.path})\n{sp.page.content}"


def assemble_context(pages: list[ScoredPage], model: str, budget: int) -> AssembledContext:
    """Select the longest rank prefix of *pages* whose tokens fit *budget*.

    Args:
        pages: Retrieved pages, best first.
        model: Model whose tokenizer counts the page text.
        budget: Maximum total tokens for the kept pages.
    """
    ordered = sorted(pages, key=lambda sp: sp.rank)
    kept: list[ScoredPage] = []
    total = 0
    for i, sp in enumerate(ordered):
        tokens = count_tokens(model, _page_text(sp))
        if total + tokens > budget:
            return AssembledContext(pages=kept, total_tokens=total, dropped=ordered[i:])
        kept.append(sp)
        total += tokens
    return AssembledContext(pages=kept, total_tokens=total)
