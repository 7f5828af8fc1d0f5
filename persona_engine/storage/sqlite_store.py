"""SQLite storage for personas, memories, and conversation turns."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from pathlib import Path

import aiosqlite

from persona_engine.config import DB_PATH
from persona_engine.errors import ValidationError
from persona_engine.models import (
    ChatMode,
    ConversationTurn,
    Emotion,
    Experience,
    Memory,
    MemoryCategory,
    Persona,
    Personality,
    Role,
    _now,
    _uuid,
    to_timestamp,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS personas (
    id                TEXT PRIMARY KEY,
    name              TEXT NOT NULL,
    age               INTEGER,
    gender            TEXT NOT NULL DEFAULT 'other',
    occupation        TEXT,
    personality       TEXT NOT NULL,
    background_story  TEXT NOT NULL DEFAULT '',
    experiences       TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS memories (
    id              TEXT PRIMARY KEY,
    persona_id      TEXT NOT NULL,
    category        TEXT NOT NULL,
    key             TEXT NOT NULL,
    value           TEXT NOT NULL,
    importance      INTEGER NOT NULL DEFAULT 3,
    context         TEXT,
    created_at      TEXT NOT NULL,
    source_turn_id  TEXT,
    last_accessed   TEXT,
    access_count    INTEGER NOT NULL DEFAULT 0,
    expires_at      TEXT
);

CREATE INDEX IF NOT EXISTS idx_memories_persona ON memories(persona_id, category);

CREATE TABLE IF NOT EXISTS memory_tags (
    memory_id   TEXT NOT NULL,
    tag         TEXT NOT NULL,
    PRIMARY KEY (memory_id, tag),
    FOREIGN KEY (memory_id) REFERENCES memories(id)
);

CREATE TABLE IF NOT EXISTS conversation_turns (
    id                TEXT PRIMARY KEY,
    persona_id        TEXT NOT NULL,
    role              TEXT NOT NULL,
    content           TEXT NOT NULL,
    mode              TEXT NOT NULL DEFAULT 'text',
    emotion           TEXT,
    tokens_used       INTEGER,
    response_time_ms  INTEGER,
    created_at        TEXT NOT NULL,
    is_important      INTEGER NOT NULL DEFAULT 0,
    is_deleted        INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_turns_persona ON conversation_turns(persona_id, created_at);
"""

_NOT_EXPIRED = "(expires_at IS NULL OR expires_at > ?)"

_LIKE_ESCAPE = "ESCAPE '\\'"

_UPDATABLE_MEMORY_FIELDS = {"category", "key", "value", "importance", "context", "tags", "expires_at"}


class SQLiteStore:
    """Async SQLite store. Also serves as the read-only persona provider."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or DB_PATH
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        async with self._write_lock:
            if self._db:
                await self._db.close()
                self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        assert self._db is not None, "SQLiteStore not initialized, call initialize() first"
        return self._db

    @asynccontextmanager
    async def _transaction(self):
        """Serialize writers on the shared connection; commit on success, roll back otherwise.

        Cancellation also rolls back, so a half-applied write is never left
        pending for another writer's commit to persist.
        """
        async with self._write_lock:
            try:
                yield self.db
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise

    # ── Personas ──

    async def save_persona(self, persona: Persona) -> None:
        async with self._transaction() as db:
            await db.execute(
                """INSERT OR REPLACE INTO personas
                (id, name, age, gender, occupation, personality, background_story, experiences)
                VALUES (?,?,?,?,?,?,?,?)""",
                (
                    persona.id, persona.name, persona.age, persona.gender, persona.occupation,
                    json.dumps(asdict(persona.personality)),
                    persona.background_story,
                    json.dumps([asdict(e) for e in persona.experiences], ensure_ascii=False),
                ),
            )

    async def get_persona(self, persona_id: str) -> Persona | None:
        async with self.db.execute(
            "SELECT * FROM personas WHERE id = ?", (persona_id,)
        ) as cur:
            row = await cur.fetchone()
            return _row_to_persona(dict(row)) if row else None

    # ── Memories ──

    async def create_memory(
        self,
        persona_id: str,
        category: MemoryCategory | str,
        key: str,
        value: str,
        importance: int = 3,
        source_turn_id: str | None = None,
        expires_at: datetime | str | None = None,
        context: str | None = None,
        tags: list[str] | None = None,
    ) -> Memory:
        mem = Memory(
            persona_id=persona_id,
            category=_validate_category(category),
            key=key,
            value=_validate_value(value),
            importance=_validate_importance(importance),
            context=context,
            tags=list(dict.fromkeys(tags or [])),
            source_turn_id=source_turn_id,
            expires_at=to_timestamp(expires_at),
        )
        await self.save_memory(mem)
        return mem

    async def save_memory(self, mem: Memory) -> None:
        """Insert or replace a fully-formed memory, validating it first."""
        _validate_value(mem.value)
        _validate_importance(mem.importance)
        mem.category = _validate_category(mem.category)
        async with self._transaction() as db:
            await db.execute(
                """INSERT OR REPLACE INTO memories
                (id, persona_id, category, key, value, importance, context, created_at,
                 source_turn_id, last_accessed, access_count, expires_at)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?)""",
                (
                    mem.id, mem.persona_id, mem.category.value, mem.key, mem.value,
                    mem.importance, mem.context, mem.created_at, mem.source_turn_id,
                    mem.last_accessed, mem.access_count, mem.expires_at,
                ),
            )
            await self._replace_tags(mem.id, mem.tags)

    async def get_memory(self, memory_id: str) -> Memory | None:
        async with self.db.execute(
            "SELECT * FROM memories WHERE id = ?", (memory_id,)
        ) as cur:
            row = await cur.fetchone()
            if not row:
                return None
            mem = _row_to_memory(dict(row))
        await self._load_tags([mem])
        return mem

    async def list_memories(
        self,
        persona_id: str,
        category: MemoryCategory | str | None = None,
        min_importance: int | None = None,
    ) -> list[Memory]:
        """Return non-expired memories, most important and most recently used first."""
        sql = f"SELECT * FROM memories WHERE persona_id = ? AND {_NOT_EXPIRED}"
        params: list = [persona_id, _now()]
        if category:
            sql += " AND category = ?"
            params.append(_validate_category(category).value)
        if min_importance:
            sql += " AND importance >= ?"
            params.append(min_importance)
        sql += " ORDER BY importance DESC, last_accessed DESC"

        memories = []
        async with self.db.execute(sql, params) as cur:
            async for row in cur:
                memories.append(_row_to_memory(dict(row)))
        await self._load_tags(memories)
        return memories

    async def count_memories(self, persona_id: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) as cnt FROM memories WHERE persona_id = ?", (persona_id,)
        ) as cur:
            row = await cur.fetchone()
            return row["cnt"] if row else 0

    async def search_memories(self, persona_id: str, query: str, limit: int = 10) -> list[Memory]:
        """Substring search over key and value. Every hit counts as an access."""
        pattern = _like_pattern(query)
        return await self._search(
            persona_id,
            f"(key LIKE ? {_LIKE_ESCAPE} OR value LIKE ? {_LIKE_ESCAPE})",
            [pattern, pattern],
            limit,
        )

    async def search_memories_by_keywords(
        self, persona_id: str, keywords: list[str], limit: int = 10,
    ) -> list[Memory]:
        """Match memories whose key, value or context contains any keyword.

        An empty keyword list matches every non-expired memory.
        """
        if not keywords:
            return await self._search(persona_id, "1 = 1", [], limit)
        clauses = []
        params: list = []
        for kw in keywords:
            pattern = _like_pattern(kw)
            clauses.append(
                f"key LIKE ? {_LIKE_ESCAPE} OR value LIKE ? {_LIKE_ESCAPE} "
                f"OR IFNULL(context, '') LIKE ? {_LIKE_ESCAPE}"
            )
            params.extend([pattern, pattern, pattern])
        return await self._search(persona_id, "(" + " OR ".join(clauses) + ")", params, limit)

    async def _search(
        self, persona_id: str, where: str, params: list, limit: int,
    ) -> list[Memory]:
        sql = f"""
            SELECT * FROM memories
            WHERE persona_id = ? AND {_NOT_EXPIRED} AND {where}
            ORDER BY importance DESC, access_count DESC
            LIMIT ?
        """
        memories = []
        async with self.db.execute(sql, (persona_id, _now(), *params, limit)) as cur:
            async for row in cur:
                memories.append(_row_to_memory(dict(row)))
        await self._load_tags(memories)

        now = _now()
        for mem in memories:
            mem.access_count += 1
            mem.last_accessed = now
        await self._record_access([m.id for m in memories], now)
        return memories

    async def _record_access(self, memory_ids: list[str], accessed_at: str) -> None:
        if not memory_ids:
            return
        try:
            async with self._transaction() as db:
                await db.executemany(
                    "UPDATE memories SET access_count = access_count + 1, last_accessed = ? WHERE id = ?",
                    [(accessed_at, mid) for mid in memory_ids],
                )
        except aiosqlite.Error:
            logger.exception("Failed to record access for %d memories", len(memory_ids))

    async def update_memory(self, memory_id: str, **fields) -> None:
        unknown = set(fields) - _UPDATABLE_MEMORY_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update memory fields: {sorted(unknown)}")

        tags = fields.pop("tags", None)
        updates: list[str] = []
        values: list = []
        for name, value in fields.items():
            if name == "value":
                value = _validate_value(value)
            elif name == "importance":
                value = _validate_importance(value)
            elif name == "category":
                value = _validate_category(value).value
            elif name == "expires_at":
                value = to_timestamp(value)
            updates.append(f"{name} = ?")
            values.append(value)

        async with self._transaction() as db:
            if updates:
                await db.execute(
                    f"UPDATE memories SET {', '.join(updates)} WHERE id = ?", (*values, memory_id),
                )
            if tags is not None:
                await self._replace_tags(memory_id, tags)

    async def delete_memory(self, memory_id: str) -> None:
        async with self._transaction() as db:
            await db.execute("DELETE FROM memory_tags WHERE memory_id = ?", (memory_id,))
            await db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))

    async def merge_memories(
        self,
        primary_id: str,
        value: str,
        importance: int,
        tags: list[str],
        secondary_id: str,
    ) -> None:
        """Update the surviving memory and delete the absorbed one atomically."""
        value = _validate_value(value)
        importance = _validate_importance(importance)
        async with self._transaction() as db:
            await db.execute(
                "UPDATE memories SET value = ?, importance = ? WHERE id = ?",
                (value, importance, primary_id),
            )
            await self._replace_tags(primary_id, tags)
            await db.execute("DELETE FROM memory_tags WHERE memory_id = ?", (secondary_id,))
            await db.execute("DELETE FROM memories WHERE id = ?", (secondary_id,))

    async def purge_expired(self) -> int:
        now = _now()
        async with self._transaction() as db:
            await db.execute(
                "DELETE FROM memory_tags WHERE memory_id IN "
                "(SELECT id FROM memories WHERE expires_at IS NOT NULL AND expires_at <= ?)",
                (now,),
            )
            cur = await db.execute(
                "DELETE FROM memories WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,),
            )
        return cur.rowcount

    async def _replace_tags(self, memory_id: str, tags: list[str]) -> None:
        await self.db.execute("DELETE FROM memory_tags WHERE memory_id = ?", (memory_id,))
        await self.db.executemany(
            "INSERT OR IGNORE INTO memory_tags (memory_id, tag) VALUES (?, ?)",
            [(memory_id, tag) for tag in tags],
        )

    async def _load_tags(self, memories: list[Memory]) -> None:
        if not memories:
            return
        ids = [m.id for m in memories]
        placeholders = ",".join("?" for _ in ids)
        tag_map: dict[str, list[str]] = {mid: [] for mid in ids}
        async with self.db.execute(
            f"SELECT memory_id, tag FROM memory_tags WHERE memory_id IN ({placeholders}) "
            "ORDER BY rowid",
            ids,
        ) as cur:
            async for row in cur:
                tag_map[row["memory_id"]].append(row["tag"])
        for m in memories:
            m.tags = tag_map.get(m.id, [])

    # ── Conversation turns ──

    async def add_turn(
        self,
        persona_id: str,
        role: Role | str,
        content: str,
        mode: ChatMode | str = ChatMode.TEXT,
        emotion: Emotion | str | None = None,
        tokens_used: int | None = None,
        response_time_ms: int | None = None,
    ) -> ConversationTurn:
        turn = ConversationTurn(
            id=_uuid(),
            persona_id=persona_id,
            role=_validate_enum(Role, role, "role"),
            content=content,
            mode=_validate_enum(ChatMode, mode, "mode"),
            emotion=_validate_enum(Emotion, emotion, "emotion") if emotion else None,
            tokens_used=tokens_used,
            response_time_ms=response_time_ms,
        )
        async with self._transaction() as db:
            await db.execute(
                """INSERT INTO conversation_turns
                (id, persona_id, role, content, mode, emotion, tokens_used, response_time_ms,
                 created_at, is_important, is_deleted)
                VALUES (?,?,?,?,?,?,?,?,?,0,0)""",
                (
                    turn.id, turn.persona_id, turn.role.value, turn.content, turn.mode.value,
                    turn.emotion.value if turn.emotion else None,
                    turn.tokens_used, turn.response_time_ms, turn.created_at,
                ),
            )
        return turn

    async def get_recent_turns(
        self, persona_id: str, limit: int = 50, offset: int = 0,
    ) -> list[ConversationTurn]:
        """Return the most recent non-deleted turns in chronological order."""
        sql = """
            SELECT * FROM conversation_turns
            WHERE persona_id = ? AND is_deleted = 0
            ORDER BY created_at DESC, rowid DESC
            LIMIT ? OFFSET ?
        """
        turns = []
        async with self.db.execute(sql, (persona_id, limit, offset)) as cur:
            async for row in cur:
                turns.append(_row_to_turn(dict(row)))
        turns.reverse()
        return turns

    async def mark_turn_important(self, turn_id: str, important: bool = True) -> None:
        async with self._transaction() as db:
            await db.execute(
                "UPDATE conversation_turns SET is_important = ? WHERE id = ?",
                (int(important), turn_id),
            )

    async def soft_delete_turn(self, turn_id: str) -> None:
        async with self._transaction() as db:
            await db.execute(
                "UPDATE conversation_turns SET is_deleted = 1 WHERE id = ?", (turn_id,)
            )

    async def clear_history(self, persona_id: str) -> None:
        async with self._transaction() as db:
            await db.execute(
                "UPDATE conversation_turns SET is_deleted = 1 WHERE persona_id = ?", (persona_id,)
            )


def _like_pattern(text: str) -> str:
    """Substring LIKE pattern with the wildcards in ``text`` taken literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


# ── Boundary validation ──

def _validate_value(value: str) -> str:
    if not value or not value.strip():
        raise ValidationError("Memory value must not be empty")
    return value


def _validate_importance(importance: int) -> int:
    if isinstance(importance, bool) or not isinstance(importance, int) or not 1 <= importance <= 5:
        raise ValidationError(f"Memory importance must be an integer in [1, 5], got {importance!r}")
    return importance


def _validate_category(category: MemoryCategory | str) -> MemoryCategory:
    return _validate_enum(MemoryCategory, category, "category")


def _validate_enum(enum_cls, value, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {name}: {value!r}") from None


# ── Row mapping ──

def _row_to_memory(row: dict) -> Memory:
    return Memory(
        id=row["id"],
        persona_id=row["persona_id"],
        category=MemoryCategory(row["category"]),
        key=row["key"],
        value=row["value"],
        importance=row["importance"],
        context=row.get("context"),
        created_at=row["created_at"],
        source_turn_id=row.get("source_turn_id"),
        last_accessed=row.get("last_accessed"),
        access_count=row.get("access_count", 0),
        expires_at=row.get("expires_at"),
    )


def _row_to_turn(row: dict) -> ConversationTurn:
    return ConversationTurn(
        id=row["id"],
        persona_id=row["persona_id"],
        role=Role(row["role"]),
        content=row["content"],
        mode=ChatMode(row.get("mode") or "text"),
        emotion=Emotion(row["emotion"]) if row.get("emotion") else None,
        tokens_used=row.get("tokens_used"),
        response_time_ms=row.get("response_time_ms"),
        created_at=row["created_at"],
        is_important=bool(row.get("is_important", 0)),
        is_deleted=bool(row.get("is_deleted", 0)),
    )


def _row_to_persona(row: dict) -> Persona:
    return Persona(
        id=row["id"],
        name=row["name"],
        age=row.get("age"),
        gender=row.get("gender") or "other",
        occupation=row.get("occupation"),
        personality=Personality(**json.loads(row["personality"])),
        background_story=row.get("background_story") or "",
        experiences=[Experience(**e) for e in json.loads(row.get("experiences") or "[]")],
    )
