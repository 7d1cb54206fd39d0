"""
In-memory long-term memory store with keyword-overlap ranking.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from taleforge.engine.protocols import MemoryFact

logger = logging.getLogger(__name__)

_WORD = re.compile(r"[a-z0-9']+")


def _tokens(text: str) -> set[str]:
    return {word for word in _WORD.findall(text.lower()) if len(word) > 2}


class InMemoryMemoryStore:
    """Archive and search payloads by key.

    Each payload is indexed by its "content" field (or its string form if
    it has none). Search ranks items by the fraction of query words they
    contain; items sharing no words with the query are not returned.
    """

    def __init__(self):
        self._items: dict[str, dict[str, Any]] = {}

    async def archive(self, key: str, payload: dict[str, Any]) -> None:
        self._items[key] = dict(payload)
        logger.debug(f"Archived memory item {key}")

    async def search(
        self,
        query: str,
        filters: dict[str, Any] | None = None,
        limit: int = 5,
    ) -> list[MemoryFact]:
        query_words = _tokens(query)
        if not query_words:
            return []

        hits: list[MemoryFact] = []
        for key, payload in self._items.items():
            if filters and any(payload.get(k) != v for k, v in filters.items()):
                continue
            content = str(payload.get("content", payload))
            overlap = query_words & _tokens(content)
            if not overlap:
                continue
            metadata = {k: v for k, v in payload.items() if k != "content"}
            hits.append(
                MemoryFact(
                    key=key,
                    content=content,
                    score=len(overlap) / len(query_words),
                    metadata=metadata,
                )
            )

        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:limit]

    def get(self, key: str) -> dict[str, Any] | None:
        return self._items.get(key)

    def keys(self) -> list[str]:
        return list(self._items)
