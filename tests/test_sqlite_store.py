"""Tests for the SQLite store."""

from datetime import datetime, timedelta, timezone

import asyncio

import pytest
import pytest_asyncio

from persona_engine.errors import ValidationError
from persona_engine.models import (
    Emotion,
    Experience,
    Memory,
    MemoryCategory,
    Persona,
    Personality,
    Role,
)
from persona_engine.storage.sqlite_store import SQLiteStore


@pytest_asyncio.fixture
async def store(tmp_path):
    s = SQLiteStore(tmp_path / "test.db")
    await s.initialize()
    yield s
    await s.close()


@pytest.mark.asyncio
async def test_create_and_get_memory(store):
    mem = await store.create_memory(
        "p1", MemoryCategory.PREFERENCES, "coffee", "喜欢喝咖啡",
        importance=4, context="聊到早餐", tags=["咖啡", "早餐", "咖啡"],
    )

    result = await store.get_memory(mem.id)
    assert result is not None
    assert result.value == "喜欢喝咖啡"
    assert result.category == MemoryCategory.PREFERENCES
    assert result.importance == 4
    assert result.context == "聊到早餐"
    assert result.tags == ["咖啡", "早餐"]
    assert result.access_count == 0


@pytest.mark.asyncio
async def test_get_nonexistent_memory(store):
    assert await store.get_memory("nonexistent") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("importance", [0, 6, 2.5, True])
async def test_create_memory_rejects_bad_importance(store, importance):
    with pytest.raises(ValidationError):
        await store.create_memory("p1", "other", "k", "v", importance=importance)


@pytest.mark.asyncio
async def test_create_memory_rejects_empty_value(store):
    with pytest.raises(ValidationError):
        await store.create_memory("p1", "other", "k", "   ")


@pytest.mark.asyncio
async def test_create_memory_rejects_unknown_category(store):
    with pytest.raises(ValidationError):
        await store.create_memory("p1", "hobbies", "k", "v")


@pytest.mark.asyncio
async def test_list_memories_orders_by_importance(store):
    await store.create_memory("p1", "other", "a", "low", importance=1)
    await store.create_memory("p1", "basic_info", "b", "high", importance=5)
    await store.create_memory("p1", "other", "c", "mid", importance=3)
    await store.create_memory("p2", "other", "d", "other persona", importance=5)

    results = await store.list_memories("p1")
    assert [m.value for m in results] == ["high", "mid", "low"]

    only_other = await store.list_memories("p1", category="other")
    assert {m.value for m in only_other} == {"low", "mid"}

    important = await store.list_memories("p1", min_importance=3)
    assert len(important) == 2


@pytest.mark.asyncio
async def test_expired_memory_excluded(store):
    past = datetime.now(timezone.utc) - timedelta(days=1)
    future = datetime.now(timezone.utc) + timedelta(days=1)
    await store.create_memory("p1", "other", "old", "已过期", expires_at=past)
    await store.create_memory("p1", "other", "new", "未过期", expires_at=future)

    values = [m.value for m in await store.list_memories("p1")]
    assert values == ["未过期"]
    assert await store.search_memories_by_keywords("p1", ["过期"]) != []
    assert [m.value for m in await store.search_memories_by_keywords("p1", ["过期"])] == ["未过期"]

    assert await store.purge_expired() == 1
    assert await store.count_memories("p1") == 1


@pytest.mark.asyncio
async def test_search_bumps_access(store):
    mem = await store.create_memory("p1", "preferences", "drink", "喜欢喝咖啡")
    await store.create_memory("p1", "basic_info", "city", "住在北京")

    hits = await store.search_memories("p1", "咖啡")
    assert [h.id for h in hits] == [mem.id]
    assert hits[0].access_count == 1
    assert hits[0].last_accessed is not None

    stored = await store.get_memory(mem.id)
    assert stored.access_count == 1


@pytest.mark.asyncio
async def test_search_by_keywords_matches_any_field(store):
    await store.create_memory("p1", "other", "k1", "养了一只猫", context="聊宠物")
    await store.create_memory("p1", "other", "k2", "喜欢爬山")
    await store.create_memory("p1", "other", "k3", "会弹钢琴")

    hits = await store.search_memories_by_keywords("p1", ["宠物", "爬山"])
    assert {h.value for h in hits} == {"养了一只猫", "喜欢爬山"}

    everything = await store.search_memories_by_keywords("p1", [], limit=10)
    assert len(everything) == 3


@pytest.mark.asyncio
async def test_update_memory(store):
    mem = await store.create_memory("p1", "other", "k", "v", tags=["a"])
    await store.update_memory(mem.id, value="new value", importance=5, tags=["b", "c"])

    result = await store.get_memory(mem.id)
    assert result.value == "new value"
    assert result.importance == 5
    assert result.tags == ["b", "c"]


@pytest.mark.asyncio
async def test_update_memory_rejects_unknown_field(store):
    mem = await store.create_memory("p1", "other", "k", "v")
    with pytest.raises(ValidationError):
        await store.update_memory(mem.id, persona_id="p2")
    with pytest.raises(ValidationError):
        await store.update_memory(mem.id, importance=9)


@pytest.mark.asyncio
async def test_merge_memories(store):
    primary = await store.create_memory("p1", "other", "a", "first", importance=4, tags=["x"])
    secondary = await store.create_memory("p1", "other", "b", "second", importance=2, tags=["y"])

    await store.merge_memories(primary.id, "first; second", 4, ["x", "y"], secondary.id)

    assert await store.get_memory(secondary.id) is None
    merged = await store.get_memory(primary.id)
    assert merged.value == "first; second"
    assert merged.tags == ["x", "y"]


@pytest.mark.asyncio
@pytest.mark.parametrize("spins", range(1, 13))
async def test_cancelled_merge_leaves_no_partial_state(store, spins):
    primary = await store.create_memory("p1", "other", "a", "likes coffee", importance=3)
    secondary = await store.create_memory("p1", "other", "b", "likes coffee a lot", importance=2)

    task = asyncio.create_task(
        store.merge_memories(primary.id, "likes coffee; likes coffee a lot", 3, [], secondary.id)
    )
    for _ in range(spins):
        await asyncio.sleep(0)
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass

    # an unrelated write commits on the same connection
    await store.add_turn("p1", Role.USER, "hello")

    kept = await store.get_memory(primary.id)
    absorbed = await store.get_memory(secondary.id)
    if absorbed is None:
        assert kept.value == "likes coffee; likes coffee a lot"
    else:
        assert kept.value == "likes coffee"


@pytest.mark.asyncio
async def test_concurrent_writes_do_not_split_merge(store):
    primary = await store.create_memory("p1", "other", "a", "first", importance=3)
    secondary = await store.create_memory("p1", "other", "b", "second", importance=2)

    await asyncio.gather(
        store.merge_memories(primary.id, "first; second", 3, [], secondary.id),
        store.add_turn("p1", Role.USER, "hello"),
        store.create_memory("p1", "other", "c", "third"),
    )

    assert await store.get_memory(secondary.id) is None
    assert (await store.get_memory(primary.id)).value == "first; second"
    assert await store.count_memories("p1") == 2


@pytest.mark.asyncio
async def test_search_treats_wildcards_literally(store):
    await store.create_memory("p1", "other", "juice", "100% 橙汁")
    await store.create_memory("p1", "other", "count", "跑了1000米")
    await store.create_memory("p1", "other", "code", "变量名叫abc")

    hits = await store.search_memories("p1", "100%")
    assert [h.value for h in hits] == ["100% 橙汁"]
    assert await store.search_memories_by_keywords("p1", ["a_c"]) == []
    assert [h.value for h in await store.search_memories("p1", "%")] == ["100% 橙汁"]


@pytest.mark.asyncio
async def test_save_memory_preserves_created_at(store):
    created = (datetime.now(timezone.utc) - timedelta(days=400)).isoformat()
    mem = Memory(persona_id="p1", value="old fact", created_at=created)
    await store.save_memory(mem)
    assert (await store.get_memory(mem.id)).created_at == created


@pytest.mark.asyncio
async def test_delete_memory(store):
    mem = await store.create_memory("p1", "other", "k", "v", tags=["t"])
    await store.delete_memory(mem.id)
    assert await store.get_memory(mem.id) is None


@pytest.mark.asyncio
async def test_turns_are_chronological(store):
    for i in range(5):
        await store.add_turn("p1", Role.USER if i % 2 == 0 else Role.ASSISTANT, f"msg {i}")

    turns = await store.get_recent_turns("p1", limit=3)
    assert [t.content for t in turns] == ["msg 2", "msg 3", "msg 4"]


@pytest.mark.asyncio
async def test_turn_fields_roundtrip(store):
    turn = await store.add_turn(
        "p1", "assistant", "你好呀", mode="voice", emotion="happy",
        tokens_used=42, response_time_ms=350,
    )
    [result] = await store.get_recent_turns("p1")
    assert result.id == turn.id
    assert result.emotion == Emotion.HAPPY
    assert result.tokens_used == 42
    assert result.response_time_ms == 350
    assert result.mode.value == "voice"


@pytest.mark.asyncio
async def test_add_turn_rejects_unknown_role(store):
    with pytest.raises(ValidationError):
        await store.add_turn("p1", "narrator", "hello")


@pytest.mark.asyncio
async def test_soft_delete_and_clear_history(store):
    first = await store.add_turn("p1", "user", "one")
    await store.add_turn("p1", "assistant", "two")
    await store.soft_delete_turn(first.id)
    assert [t.content for t in await store.get_recent_turns("p1")] == ["two"]

    await store.clear_history("p1")
    assert await store.get_recent_turns("p1") == []


@pytest.mark.asyncio
async def test_mark_turn_important(store):
    turn = await store.add_turn("p1", "user", "记住这个")
    await store.mark_turn_important(turn.id)
    [result] = await store.get_recent_turns("p1")
    assert result.is_important is True


@pytest.mark.asyncio
async def test_persona_roundtrip(store):
    persona = Persona(
        id="p1",
        name="林晓",
        age=28,
        gender="female",
        occupation="设计师",
        personality=Personality(extroversion=0.8, gentleness=0.9),
        background_story="在杭州长大",
        experiences=[Experience(year=2015, event="大学毕业", importance=4)],
    )
    await store.save_persona(persona)

    result = await store.get_persona("p1")
    assert result == persona
    assert await store.get_persona("missing") is None
