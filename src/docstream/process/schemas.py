"""Response schemas for the classification and proposal model calls.

Field names are snake_case; the camelCase spelling some models prefer is
accepted as an alias.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

NO_DOC_VALUE = "no-doc-value"


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SearchCriteria(_Schema):
    keywords: list[str] = Field(default_factory=list)
    semantic_query: str = Field(default="", max_length=200)


class Thread(_Schema):
    category: str = Field(max_length=50)
    messages: list[int] = Field(min_length=1)
    summary: str = Field(default="", max_length=200)
    doc_value_reason: str = Field(default="", max_length=300)
    rag_search_criteria: SearchCriteria = Field(default_factory=SearchCriteria)

    @property
    def has_doc_value(self) -> bool:
        return self.category.strip().lower() != NO_DOC_VALUE


class BatchClassification(_Schema):
    threads: list[Thread] = Field(default_factory=list)
    batch_summary: str = Field(default="", max_length=500)


class ProposalLocation(_Schema):
    line_start: int | None = None
    line_end: int | None = None
    section_name: str | None = Field(default=None, max_length=100)


class ProposalDraft(_Schema):
    update_type: Literal["INSERT", "UPDATE", "DELETE", "NONE"]
    page: str = Field(max_length=150)
    section: str | None = Field(default=None, max_length=100)
    location: ProposalLocation | None = None
    suggested_text: str | None = Field(default=None, max_length=2000)
    reasoning: str = Field(default="", max_length=300)
    source_messages: list[int] = Field(default_factory=list)


class ProposalSet(_Schema):
    proposals: list[ProposalDraft] = Field(default_factory=list, max_length=10)
    proposals_rejected: bool = False
    rejection_reason: str | None = None
