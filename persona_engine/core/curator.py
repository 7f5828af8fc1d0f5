"""Memory curation: extraction, consolidation and forgetting.

Extraction asks the generation backend which facts in a finished exchange are
worth keeping. Consolidation merges near-duplicates within a category by
lexical (Jaccard) similarity. Forgetting deletes memories that are both old
and unimportant; either condition alone never deletes anything.
"""

from __future__ import annotations

import json
import logging
import re
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any

from persona_engine.config import ENGINE_CONFIG
from persona_engine.core.keywords import jaccard_similarity
from persona_engine.models import (
    ExtractedMemory,
    MaintenanceResult,
    Memory,
    MemoryCategory,
    MemoryStats,
    parse_timestamp,
)
from persona_engine.prompts import MEMORY_EXTRACTION_PROMPT, MEMORY_EXTRACTION_SYSTEM
from persona_engine.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")
_NON_WORD = re.compile(r"[^一-龥a-z0-9\s]")


def text_similarity(text_a: str, text_b: str) -> float:
    return jaccard_similarity(text_a, text_b)


def extract_tags(text: str, max_tags: int = 5) -> list[str]:
    """First few distinct multi-character tokens of a text."""
    words = _NON_WORD.sub(" ", text.lower()).split()
    return [w for w in dict.fromkeys(words) if len(w) > 1][:max_tags]


def parse_extracted_memories(text: str) -> list[ExtractedMemory]:
    """Parse the backend's reply into candidate memories.

    Looks for the outermost JSON array anywhere in the reply. Anything
    unparseable yields an empty list. Items missing content, category or
    importance are dropped; unknown categories become ``other`` and
    importance is clamped to 1-5.
    """
    match = _JSON_ARRAY.search(text or "")
    if not match:
        return []
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.warning("Memory extraction returned malformed JSON")
        return []
    if not isinstance(data, list):
        return []

    results = []
    for item in data:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        category = item.get("category")
        importance = item.get("importance")
        if not content or not category or not importance:
            continue
        results.append(ExtractedMemory(
            content=str(content).strip(),
            category=_coerce_category(category),
            importance=_clamp_importance(importance),
        ))
    return [r for r in results if r.content]


def _coerce_category(value: Any) -> MemoryCategory:
    try:
        return MemoryCategory(str(value).strip().lower())
    except ValueError:
        return MemoryCategory.OTHER


def _clamp_importance(value: Any) -> int:
    try:
        importance = int(round(float(value)))
    except (TypeError, ValueError):
        return 3
    return max(1, min(5, importance))


class MemoryCurator:
    """Creates, merges and prunes a persona's memories."""

    def __init__(self, store: SQLiteStore, generator=None, config: dict | None = None) -> None:
        self.store = store
        self.generator = generator
        self.config = config or ENGINE_CONFIG

    # ── Extraction ──

    async def extract_from_exchange(
        self,
        persona_id: str,
        user_message: str,
        assistant_reply: str,
        source_turn_id: str | None = None,
    ) -> list[Memory]:
        """Extract and persist memorable facts from one user/assistant exchange.

        A malformed reply yields no memories. Backend and store failures
        propagate; the extraction queue is where they get logged.
        """
        if self.generator is None:
            return []

        prompt = MEMORY_EXTRACTION_PROMPT.format(
            user_message=user_message, assistant_reply=assistant_reply,
        )
        result = await self.generator.complete(
            [
                {"role": "system", "content": MEMORY_EXTRACTION_SYSTEM},
                {"role": "user", "content": prompt},
            ],
            temperature=self.config["extraction_temperature"],
        )
        candidates = parse_extracted_memories(result.content)

        context = _truncate(user_message, self.config["extraction_context_chars"])
        key_chars = self.config["extraction_key_chars"]
        saved = []
        for candidate in candidates:
            saved.append(await self.store.create_memory(
                persona_id=persona_id,
                category=candidate.category,
                key=candidate.content[:key_chars],
                value=candidate.content,
                importance=candidate.importance,
                source_turn_id=source_turn_id,
                context=context,
                tags=extract_tags(candidate.content),
            ))

        if saved:
            logger.info("Extracted %d memories for persona %s", len(saved), persona_id)
        return saved

    # ── Consolidation ──

    async def consolidate(self, persona_id: str) -> int:
        """Merge near-duplicate memories within each category.

        For each pair scoring above the similarity threshold, the more
        important memory (the earlier one on ties) absorbs the other:
        contents are joined with "; ", importance is the max, tags the union.
        Returns the number of merges.
        """
        threshold = self.config["consolidation_similarity_threshold"]
        memories = await self.store.list_memories(persona_id)

        by_category: dict[MemoryCategory, list[Memory]] = defaultdict(list)
        for mem in memories:
            by_category[mem.category].append(mem)

        merged = 0
        for group in by_category.values():
            absorbed: set[str] = set()
            for i, first in enumerate(group):
                if first.id in absorbed:
                    continue
                for second in group[i + 1:]:
                    if second.id in absorbed or first.id in absorbed:
                        continue
                    if text_similarity(first.content, second.content) <= threshold:
                        continue
                    primary, secondary = (
                        (first, second) if first.importance >= second.importance else (second, first)
                    )
                    try:
                        await self._merge(primary, secondary)
                    except Exception:
                        logger.exception(
                            "Failed to merge memory %s into %s", secondary.id, primary.id,
                        )
                        continue
                    absorbed.add(secondary.id)
                    merged += 1

        if merged:
            logger.info("Consolidated %d memory pairs for persona %s", merged, persona_id)
        return merged

    async def _merge(self, primary: Memory, secondary: Memory) -> None:
        value = f"{primary.content}; {secondary.content}"
        importance = max(primary.importance, secondary.importance)
        tags = list(dict.fromkeys([*primary.tags, *secondary.tags]))
        await self.store.merge_memories(
            primary_id=primary.id,
            value=value,
            importance=importance,
            tags=tags,
            secondary_id=secondary.id,
        )
        primary.value = value
        primary.importance = importance
        primary.tags = tags

    # ── Forgetting ──

    async def forget(
        self,
        persona_id: str,
        max_age_days: int | None = None,
        min_importance: int | None = None,
    ) -> int:
        """Delete memories older than ``max_age_days`` with importance below ``min_importance``."""
        if max_age_days is None:
            max_age_days = self.config["forget_max_age_days"]
        if min_importance is None:
            min_importance = self.config["forget_min_importance"]
        cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)

        forgotten = 0
        for mem in await self.store.list_memories(persona_id):
            if parse_timestamp(mem.created_at) < cutoff and mem.importance < min_importance:
                await self.store.delete_memory(mem.id)
                forgotten += 1

        if forgotten:
            logger.info("Forgot %d memories for persona %s", forgotten, persona_id)
        return forgotten

    async def run_maintenance(self, persona_id: str) -> MaintenanceResult:
        consolidated = await self.consolidate(persona_id)
        forgotten = await self.forget(
            persona_id, max_age_days=self.config["maintenance_max_age_days"],
        )
        logger.info(
            "Maintenance for persona %s: %d merged, %d forgotten",
            persona_id, consolidated, forgotten,
        )
        return MaintenanceResult(consolidated=consolidated, forgotten=forgotten)

    # ── Statistics ──

    async def memory_stats(self, persona_id: str) -> MemoryStats:
        memories = await self.store.list_memories(persona_id)
        if not memories:
            return MemoryStats()

        by_category: dict[str, int] = {}
        by_importance: dict[int, int] = {}
        for mem in memories:
            by_category[mem.category.value] = by_category.get(mem.category.value, 0) + 1
            by_importance[mem.importance] = by_importance.get(mem.importance, 0) + 1

        created = sorted(mem.created_at for mem in memories)
        return MemoryStats(
            total=len(memories),
            by_category=by_category,
            by_importance=by_importance,
            average_importance=sum(m.importance for m in memories) / len(memories),
            oldest=created[0],
            newest=created[-1],
        )


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."
