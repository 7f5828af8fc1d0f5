"""Relevance scoring for stored memories.

A memory's relevance to the current utterance blends four signals:
  - Keyword overlap: fraction of utterance keywords found in the memory text
  - Importance: the stored 1-5 rating, normalised
  - Recency: linear decay to zero over the recency horizon (one year)
  - Category: fixed priority, identity facts highest

The weights come from ENGINE_CONFIG and must sum to 1.0, which keeps every
score inside [0, 1].
"""

from __future__ import annotations

from datetime import datetime, timezone

from persona_engine.config import ENGINE_CONFIG
from persona_engine.models import Memory, parse_timestamp


def keyword_overlap(memory: Memory, keywords: list[str]) -> float:
    """Fraction of keywords present in the memory's content and context."""
    if not keywords:
        return 0.0
    text = f"{memory.content} {memory.context or ''}".lower()
    matched = sum(1 for kw in keywords if kw in text)
    return matched / len(keywords)


def recency(created_at: datetime, now: datetime | None = None, horizon_days: float = 365) -> float:
    """Linear decay from 1.0 at creation to 0.0 at ``horizon_days``."""
    now = now or datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    days_since = max((now - created_at).total_seconds() / 86400, 0.0)
    return max(0.0, 1.0 - days_since / horizon_days)


def relevance_score(
    memory: Memory,
    keywords: list[str],
    now: datetime | None = None,
    config: dict | None = None,
) -> float:
    """Score a memory against the current utterance's keywords.

    With no keywords (a very short utterance) the lexical term is zero and
    the score falls back to importance, recency and category alone.

    Returns:
        A float in [0.0, 1.0].
    """
    cfg = config or ENGINE_CONFIG
    category_weights = cfg["category_weights"]

    lexical = keyword_overlap(memory, keywords)
    importance = memory.importance / 5
    fresh = recency(
        parse_timestamp(memory.created_at), now, horizon_days=cfg["recency_horizon_days"],
    )
    category = category_weights.get(memory.category.value, category_weights["other"])

    score = (
        cfg["relevance_keyword_weight"] * lexical
        + cfg["relevance_importance_weight"] * importance
        + cfg["relevance_recency_weight"] * fresh
        + cfg["relevance_category_weight"] * category
    )
    return max(0.0, min(1.0, score))
