"""Conversation context assembly.

Builds the slice of history sent with each request, keeping it under a token
budget. Token counts are estimated from character length
(``ceil(len / chars_per_token)``), which approximates CJK-heavy text; they
are not tokenizer-exact.

Strategies:
  - Optimized: recent history, compressed into a summary turn plus the last
    few turns when over budget
  - Sliding window: the last N turns as-is
  - Relevant: historical turns lexically closest to the current message
"""

from __future__ import annotations

import logging
import math

from persona_engine.config import ENGINE_CONFIG
from persona_engine.core.keywords import extract_keywords, overlap_coefficient, top_terms
from persona_engine.models import (
    ContextStats,
    ConversationContext,
    ConversationTurn,
    Role,
    parse_timestamp,
)
from persona_engine.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[早期对话总结]"
NO_HISTORY_SUMMARY = "暂无对话历史"


def estimate_tokens(text: str, chars_per_token: float | None = None) -> int:
    """Approximate token count from character length."""
    chars_per_token = chars_per_token or ENGINE_CONFIG["chars_per_token"]
    return math.ceil(len(text) / chars_per_token)


def message_relevance(current: str, historical: str) -> float:
    """Overlap coefficient between the keyword sets of two messages."""
    return overlap_coefficient(set(extract_keywords(current)), set(extract_keywords(historical)))


def extract_key_topics(text: str, max_topics: int = 5) -> list[str]:
    return top_terms(text, max_terms=max_topics)


def summarize_turns(turns: list[ConversationTurn], max_topics: int = 5) -> str:
    """One-line topical summary of a run of turns."""
    topics = extract_key_topics(" ".join(t.content for t in turns), max_topics)
    return f"用户和AI讨论了：{'、'.join(topics)}等话题。"


class ContextAssembler:
    """Selects and budgets conversation history for a request."""

    def __init__(self, store: SQLiteStore, config: dict | None = None) -> None:
        self.store = store
        self.config = config or ENGINE_CONFIG

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text, self.config["chars_per_token"])

    def _count(self, turns: list[ConversationTurn]) -> int:
        return self.estimate_tokens("".join(t.content for t in turns))

    async def get_optimized_context(
        self,
        persona_id: str,
        max_messages: int | None = None,
        max_tokens: int | None = None,
    ) -> ConversationContext:
        """Recent history, compressed when it exceeds the token budget.

        Over-fetches twice ``max_messages`` turns. If their estimated size
        exceeds ``max_tokens``, early turns collapse into a single summary
        turn followed by the most recent turns.
        """
        if max_messages is None:
            max_messages = self.config["context_max_messages"]
        if max_tokens is None:
            max_tokens = self.config["max_context_tokens"]

        turns = await self.store.get_recent_turns(persona_id, limit=max_messages * 2)
        token_count = self._count(turns)
        summary = None

        if token_count > max_tokens:
            turns = self.compress_turns(turns)
            token_count = self._count(turns)
            if turns and turns[0].content.startswith(SUMMARY_PREFIX):
                summary = turns[0].content

        logger.debug(
            "Context for persona %s: %d turns, ~%d tokens", persona_id, len(turns), token_count,
        )
        return ConversationContext(turns=turns, token_count=token_count, summary=summary)

    def compress_turns(self, turns: list[ConversationTurn]) -> list[ConversationTurn]:
        """Replace all but the most recent turns with one summary turn.

        The summary turn is synthetic: assistant role, timestamped with the
        first early turn, never persisted.
        """
        keep = self.config["compression_keep_recent"]
        if len(turns) <= keep:
            return turns

        early, recent = turns[:-keep], turns[-keep:]
        summary = summarize_turns(early, self.config["summary_topic_count"])
        summary_turn = ConversationTurn(
            persona_id=early[0].persona_id,
            role=Role.ASSISTANT,
            content=f"{SUMMARY_PREFIX} {summary}",
            created_at=early[0].created_at,
        )
        return [summary_turn, *recent]

    async def get_sliding_window_context(
        self, persona_id: str, window_size: int | None = None,
    ) -> ConversationContext:
        window_size = window_size if window_size is not None else self.config["sliding_window_size"]
        turns = await self.store.get_recent_turns(persona_id, limit=window_size)
        return ConversationContext(turns=turns, token_count=self._count(turns))

    async def get_relevant_context(
        self,
        persona_id: str,
        message: str,
        max_messages: int | None = None,
        threshold: float | None = None,
    ) -> ConversationContext:
        """Historical turns most similar to ``message``, in chronological order."""
        if max_messages is None:
            max_messages = self.config["relevant_context_max_messages"]
        threshold = threshold if threshold is not None else self.config["relevant_context_threshold"]

        history = await self.store.get_recent_turns(
            persona_id, limit=self.config["relevant_context_fetch"],
        )
        current = set(extract_keywords(message))
        scored = [
            (index, turn, overlap_coefficient(current, set(extract_keywords(turn.content))))
            for index, turn in enumerate(history)
        ]
        ranked = sorted(
            (item for item in scored if item[2] >= threshold),
            key=lambda x: x[2],
            reverse=True,
        )[:max_messages]
        # history is chronological, so its index restores time order
        turns = [turn for _index, turn, _score in sorted(ranked, key=lambda x: x[0])]
        return ConversationContext(turns=turns, token_count=self._count(turns))

    async def get_context_stats(self, persona_id: str) -> ContextStats:
        turns = await self.store.get_recent_turns(
            persona_id, limit=self.config["stats_history_limit"],
        )
        if not turns:
            return ContextStats()

        total_length = sum(len(t.content) for t in turns)
        return ContextStats(
            total_messages=len(turns),
            user_messages=sum(1 for t in turns if t.role == Role.USER),
            assistant_messages=sum(1 for t in turns if t.role == Role.ASSISTANT),
            average_message_length=round(total_length / len(turns)),
            estimated_total_tokens=self._count(turns),
            conversation_days=_day_span(turns),
        )

    async def generate_context_summary(self, persona_id: str) -> str:
        """Plain-text report of the recent conversation."""
        turns = await self.store.get_recent_turns(
            persona_id, limit=self.config["summary_history_limit"],
        )
        if not turns:
            return NO_HISTORY_SUMMARY

        user_count = sum(1 for t in turns if t.role == Role.USER)
        assistant_count = sum(1 for t in turns if t.role == Role.ASSISTANT)
        topics = extract_key_topics(" ".join(t.content for t in turns), 10)
        first = parse_timestamp(turns[0].created_at).date().isoformat()
        last = parse_timestamp(turns[-1].created_at).date().isoformat()

        return (
            "对话统计：\n"
            f"- 总消息数：{len(turns)} 条（用户 {user_count} 条，AI {assistant_count} 条）\n"
            f"- 时间跨度：{_day_span(turns)} 天\n"
            f"- 主要话题：{'、'.join(topics)}\n"
            f"- 首次对话：{first}\n"
            f"- 最近对话：{last}"
        )


def _day_span(turns: list[ConversationTurn]) -> int:
    """Whole days, rounded up, between the first and last turn."""
    first = parse_timestamp(turns[0].created_at)
    last = parse_timestamp(turns[-1].created_at)
    return math.ceil((last - first).total_seconds() / 86400)
