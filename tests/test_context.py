"""Tests for conversation context assembly."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from persona_engine.core.context import (
    SUMMARY_PREFIX,
    ContextAssembler,
    estimate_tokens,
    message_relevance,
    summarize_turns,
)
from persona_engine.models import ConversationTurn, Role
from persona_engine.storage.sqlite_store import SQLiteStore


@pytest_asyncio.fixture
async def store(tmp_path):
    s = SQLiteStore(tmp_path / "test.db")
    await s.initialize()
    yield s
    await s.close()


async def _backdate(store, turn_id, when: datetime):
    await store.db.execute(
        "UPDATE conversation_turns SET created_at = ? WHERE id = ?",
        (when.isoformat(timespec="microseconds"), turn_id),
    )
    await store.db.commit()


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("abcdef") == 3


def test_summarize_turns():
    turns = [
        ConversationTurn(content="咖啡 旅行 咖啡"),
        ConversationTurn(content="旅行 咖啡 电影"),
    ]
    assert summarize_turns(turns) == "用户和AI讨论了：咖啡、旅行、电影等话题。"


def test_message_relevance_symmetric():
    a, b = "我喜欢喝咖啡", "你喜欢喝咖啡吗"
    assert message_relevance(a, b) == pytest.approx(message_relevance(b, a))
    assert message_relevance(a, "") == 0.0


@pytest.mark.asyncio
async def test_optimized_context_under_budget(store):
    for i in range(5):
        await store.add_turn("p1", Role.USER if i % 2 == 0 else Role.ASSISTANT, f"短消息{i}")

    ctx = await ContextAssembler(store).get_optimized_context("p1")
    assert len(ctx.turns) == 5
    assert ctx.summary is None
    assert ctx.token_count == estimate_tokens("".join(t.content for t in ctx.turns))


@pytest.mark.asyncio
async def test_optimized_context_compresses_over_budget(store):
    for i in range(25):
        role = Role.USER if i % 2 == 0 else Role.ASSISTANT
        await store.add_turn("p1", role, f"旅行 话题{i} " + "很长的内容" * 80)

    ctx = await ContextAssembler(store).get_optimized_context("p1", max_messages=20)
    assert len(ctx.turns) == 11
    summary = ctx.turns[0]
    assert summary.content.startswith(SUMMARY_PREFIX)
    assert "旅行" in summary.content
    assert summary.role == Role.ASSISTANT
    assert ctx.summary == summary.content
    assert [t.content.split()[1] for t in ctx.turns[1:]] == [f"话题{i}" for i in range(15, 25)]


@pytest.mark.asyncio
async def test_summary_turn_takes_first_early_timestamp(store):
    assembler = ContextAssembler(store)
    turns = [ConversationTurn(content=f"内容 {i}", created_at=f"2025-01-01T00:00:{i:02d}+00:00") for i in range(12)]
    compressed = assembler.compress_turns(turns)
    assert len(compressed) == 11
    assert compressed[0].created_at == turns[0].created_at
    assert assembler.compress_turns(turns[:10]) == turns[:10]


@pytest.mark.asyncio
async def test_sliding_window(store):
    for i in range(12):
        await store.add_turn("p1", Role.USER, f"消息{i}")

    ctx = await ContextAssembler(store).get_sliding_window_context("p1")
    assert [t.content for t in ctx.turns] == [f"消息{i}" for i in range(2, 12)]

    empty = await ContextAssembler(store).get_sliding_window_context("p1", window_size=0)
    assert empty.turns == []


@pytest.mark.asyncio
async def test_relevant_context_chronological(store):
    await store.add_turn("p1", Role.USER, "喝咖啡会失眠吗")
    await store.add_turn("p1", Role.ASSISTANT, "今天天气很好")
    await store.add_turn("p1", Role.USER, "我喜欢喝咖啡")

    assembler = ContextAssembler(store)
    ctx = await assembler.get_relevant_context("p1", "你喜欢喝咖啡吗")
    assert [t.content for t in ctx.turns] == ["喝咖啡会失眠吗", "我喜欢喝咖啡"]

    top = await assembler.get_relevant_context("p1", "你喜欢喝咖啡吗", max_messages=1)
    assert [t.content for t in top.turns] == ["我喜欢喝咖啡"]


@pytest.mark.asyncio
async def test_context_stats(store):
    first = await store.add_turn("p1", Role.USER, "你好啊")
    await store.add_turn("p1", Role.ASSISTANT, "你好，很高兴认识你")
    await _backdate(store, first.id, datetime.now(timezone.utc) - timedelta(days=2, hours=12))

    stats = await ContextAssembler(store).get_context_stats("p1")
    assert stats.total_messages == 2
    assert stats.user_messages == 1
    assert stats.assistant_messages == 1
    assert stats.average_message_length == 6
    assert stats.estimated_total_tokens == 5
    assert stats.conversation_days == 3


@pytest.mark.asyncio
async def test_context_stats_empty(store):
    stats = await ContextAssembler(store).get_context_stats("p1")
    assert stats.total_messages == 0
    assert stats.conversation_days == 0


@pytest.mark.asyncio
async def test_generate_context_summary(store):
    assembler = ContextAssembler(store)
    assert await assembler.generate_context_summary("p1") == "暂无对话历史"

    await store.add_turn("p1", Role.USER, "咖啡 咖啡 旅行")
    await store.add_turn("p1", Role.ASSISTANT, "咖啡 很好")
    summary = await assembler.generate_context_summary("p1")
    assert "总消息数：2 条（用户 1 条，AI 1 条）" in summary
    assert "主要话题：咖啡、旅行、很好" in summary
