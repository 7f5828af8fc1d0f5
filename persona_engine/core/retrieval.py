"""Per-turn memory retrieval.

Pipeline:
  1. Extract keywords from the user's utterance
  2. Lexical search over the persona's memories, over-fetching 2x the limit
  3. Score every hit with the relevance scorer
  4. Drop hits under the threshold, rank by score, truncate

The search step counts as an access for every hit it returns, whether or
not the hit survives scoring.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from persona_engine.config import ENGINE_CONFIG
from persona_engine.core.keywords import extract_keywords
from persona_engine.core.relevance import relevance_score
from persona_engine.models import Memory, MemoryCategory
from persona_engine.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)


class MemoryRetriever:
    """Selects the memories worth injecting into the next prompt."""

    def __init__(self, store: SQLiteStore, config: dict | None = None) -> None:
        self.store = store
        self.config = config or ENGINE_CONFIG

    async def retrieve_relevant_memories(
        self,
        persona_id: str,
        message: str,
        limit: int | None = None,
        min_score: float | None = None,
        categories: list[MemoryCategory] | None = None,
    ) -> list[Memory]:
        """Return up to ``limit`` memories scoring at least ``min_score``, best first."""
        limit = limit if limit is not None else self.config["retrieval_limit"]
        min_score = min_score if min_score is not None else self.config["retrieval_min_score"]

        keywords = extract_keywords(message)
        hits = await self.store.search_memories_by_keywords(
            persona_id, keywords, limit=limit * self.config["retrieval_overfetch_factor"],
        )

        now = datetime.now(timezone.utc)
        scored = [
            (mem, relevance_score(mem, keywords, now=now, config=self.config))
            for mem in hits
        ]
        ranked = sorted(
            (item for item in scored if item[1] >= min_score),
            key=lambda x: x[1],
            reverse=True,
        )
        memories = [mem for mem, _score in ranked[:limit]]

        if categories:
            wanted = {MemoryCategory(c) for c in categories}
            memories = [m for m in memories if m.category in wanted]

        logger.debug(
            "Retrieved %d/%d memories for persona %s (%d keywords)",
            len(memories), len(hits), persona_id, len(keywords),
        )
        return memories
