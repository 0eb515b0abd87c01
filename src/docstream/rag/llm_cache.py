"""SQLite-backed cache of structured model replies.

A repeated window (a reset followed by a re-run, a retry of a conversation
whose persistence failed) sends byte-identical prompts; the cached reply is
served instead of paying for the call again. Entries are keyed on the
purpose label, model, full message list and reply schema.
"""

from __future__ import annotations

import hashlib
import json
import logging

from pydantic import BaseModel

from docstream.db.repository import Repository

logger = logging.getLogger(__name__)


class ResponseCache:
    """Model reply cache stored in the project database (``llm_cache`` table).

    Args:
        repo: Repository over the run's open connection.
    """

    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    @staticmethod
    def make_key(
        purpose: str,
        model: str,
        messages: list[dict[str, str]],
        schema: type[BaseModel],
    ) -> str:
        """Return the sha256 hex digest identifying one request."""
        payload = json.dumps(
            {
                "purpose": purpose,
                "model": model,
                "messages": messages,
                "schema": schema.model_json_schema(),
            },
            sort_keys=True,
            ensure_ascii=False,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def get(self, key: str) -> str | None:
        response = self._repo.get_cached_response(key)
        if response is not None:
            logger.debug("Model cache hit %s", key[:8])
        return response

    def put(self, key: str, purpose: str, model: str, response: str) -> None:
        self._repo.save_cached_response(key, purpose, model, response)
        logger.debug("Model cache saved %s/%s", purpose, key[:8])
