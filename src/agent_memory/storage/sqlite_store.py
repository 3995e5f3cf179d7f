"""SQLite storage backend for agent memory.

Holds agents, topics, memories and the message index in a single database
file, using aiosqlite for async access. Conversation content itself lives in
the per-topic logs; the ``message_index`` table only points into them.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator

import aiosqlite
from loguru import logger

from ..exceptions import StorageError
from ..models import (
    Agent,
    IndexStatus,
    Memory,
    MemoryScope,
    MessageIndexEntry,
    Topic,
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class SQLiteStore:
    """SQLite storage backend.

    Provides async CRUD operations for agents, topics, memories and
    message index entries. Uses WAL mode for concurrent reads and enforces
    foreign keys so deleting an agent cascades to its topics, memories and
    index entries.
    """

    def __init__(self, db_path: str | Path):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None
        logger.info(f"SQLiteStore initialized with db_path: {self.db_path}")

    async def initialize(self) -> None:
        """Create database tables and indexes if they don't exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            self._db = await aiosqlite.connect(self.db_path)
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA foreign_keys=ON")
            await self._create_tables()
            await self._create_indexes()
            await self._db.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to open database: {e}", self.db_path) from e

        logger.info("SQLite database initialized successfully")

    async def _create_tables(self) -> None:
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                model TEXT NOT NULL,
                context_limit INTEGER NOT NULL DEFAULT 128000,
                color TEXT NOT NULL DEFAULT '#6366F1',
                created_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS topics (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL,
                last_message_at TEXT,
                message_count INTEGER NOT NULL DEFAULT 0,
                token_count INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (agent_id) REFERENCES agents(id) ON DELETE CASCADE
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                scope TEXT NOT NULL
                    CHECK (scope IN ('global', 'agent', 'topic', 'personal')),
                memory_type TEXT NOT NULL
                    CHECK (memory_type IN
                        ('correction', 'preference', 'fact', 'workflow', 'constraint')),
                agent_id TEXT,
                topic_id TEXT,
                content TEXT NOT NULL,
                context TEXT,
                tags TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                last_used_at TEXT,
                retrieval_count INTEGER NOT NULL DEFAULT 0,
                active INTEGER NOT NULL DEFAULT 1,
                index_status TEXT NOT NULL DEFAULT 'pending',
                FOREIGN KEY (agent_id) REFERENCES agents(id) ON DELETE CASCADE,
                FOREIGN KEY (topic_id) REFERENCES topics(id) ON DELETE CASCADE
            )
        """)

        # Lightweight pointers into the JSONL logs
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS message_index (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                topic_id TEXT NOT NULL,
                role TEXT NOT NULL,
                tokens INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                file_offset INTEGER NOT NULL,
                FOREIGN KEY (agent_id) REFERENCES agents(id) ON DELETE CASCADE,
                FOREIGN KEY (topic_id) REFERENCES topics(id) ON DELETE CASCADE
            )
        """)

        # Values that must stay stable across restarts of one data_dir
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

    async def _create_indexes(self) -> None:
        statements = [
            "CREATE INDEX IF NOT EXISTS idx_topics_agent ON topics(agent_id)",
            "CREATE INDEX IF NOT EXISTS idx_memories_scope ON memories(scope)",
            "CREATE INDEX IF NOT EXISTS idx_memories_agent ON memories(agent_id)",
            "CREATE INDEX IF NOT EXISTS idx_memories_topic ON memories(topic_id)",
            "CREATE INDEX IF NOT EXISTS idx_memories_active ON memories(active)",
            "CREATE INDEX IF NOT EXISTS idx_memories_index_status ON memories(index_status)",
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_topic_offset "
            "ON message_index(topic_id, file_offset)",
        ]
        for sql in statements:
            await self._db.execute(sql)

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("SQLite database connection closed")

    # ── helpers ─────────────────────────────────────────────────────────

    def _require_db(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._db

    @asynccontextmanager
    async def _storage_errors(self, action: str) -> AsyncIterator[None]:
        try:
            yield
        except aiosqlite.Error as e:
            logger.error(f"SQLite {action} failed: {e}")
            raise StorageError(f"{action} failed: {e}", self.db_path) from e

    async def _write(self, sql: str, params: tuple = ()) -> int:
        """Execute one write statement and commit; returns affected rows."""
        db = self._require_db()
        async with self._storage_errors("write"):
            cursor = await db.execute(sql, params)
            await db.commit()
            return cursor.rowcount

    async def _fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        db = self._require_db()
        async with self._storage_errors("read"):
            async with db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
                cols = [d[0] for d in cursor.description]
                return [dict(zip(cols, row)) for row in rows]

    async def _fetch_one(self, sql: str, params: tuple = ()) -> dict | None:
        rows = await self._fetch_all(sql, params)
        return rows[0] if rows else None

    # ── agents ──────────────────────────────────────────────────────────

    async def upsert_agent(self, agent: Agent) -> str:
        await self._write(
            """
            INSERT INTO agents (id, name, model, context_limit, color, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                model = excluded.model,
                context_limit = excluded.context_limit,
                color = excluded.color
            """,
            (
                agent.id,
                agent.name,
                agent.model,
                agent.context_limit,
                agent.color,
                _iso(agent.created_at),
            ),
        )
        logger.debug(f"Agent upserted: {agent.id}")
        return agent.id

    async def get_agent(self, agent_id: str) -> Agent | None:
        row = await self._fetch_one("SELECT * FROM agents WHERE id = ?", (agent_id,))
        return Agent(**row) if row else None

    async def list_agents(self) -> list[Agent]:
        rows = await self._fetch_all("SELECT * FROM agents ORDER BY created_at, id")
        return [Agent(**row) for row in rows]

    async def delete_agent(self, agent_id: str) -> bool:
        deleted = await self._write("DELETE FROM agents WHERE id = ?", (agent_id,))
        if deleted:
            logger.debug(f"Agent deleted (cascade): {agent_id}")
        return deleted > 0

    # ── topics ──────────────────────────────────────────────────────────

    async def insert_topic(self, topic: Topic) -> str:
        """Insert a topic; an existing topic with the same id is left untouched."""
        await self._write(
            """
            INSERT OR IGNORE INTO topics
                (id, agent_id, name, created_at, last_message_at,
                 message_count, token_count)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                topic.id,
                topic.agent_id,
                topic.name,
                _iso(topic.created_at),
                _iso(topic.last_message_at),
                topic.message_count,
                topic.token_count,
            ),
        )
        return topic.id

    async def get_topic(self, topic_id: str) -> Topic | None:
        row = await self._fetch_one("SELECT * FROM topics WHERE id = ?", (topic_id,))
        return Topic(**row) if row else None

    async def list_topics(self, agent_id: str) -> list[Topic]:
        rows = await self._fetch_all(
            "SELECT * FROM topics WHERE agent_id = ? ORDER BY created_at, id",
            (agent_id,),
        )
        return [Topic(**row) for row in rows]

    async def delete_topic(self, topic_id: str) -> bool:
        return await self._write("DELETE FROM topics WHERE id = ?", (topic_id,)) > 0

    async def recompute_topic_stats(self, topic_id: str) -> None:
        """Rebuild message_count/token_count/last_message_at from the index."""
        await self._write(
            """
            UPDATE topics SET
                message_count = (SELECT COUNT(*) FROM message_index WHERE topic_id = ?),
                token_count = (SELECT COALESCE(SUM(tokens), 0)
                               FROM message_index WHERE topic_id = ?),
                last_message_at = (SELECT MAX(timestamp)
                                   FROM message_index WHERE topic_id = ?)
            WHERE id = ?
            """,
            (topic_id, topic_id, topic_id, topic_id),
        )

    # ── message index ───────────────────────────────────────────────────

    async def insert_index_entry(self, entry: MessageIndexEntry) -> None:
        """Record a log pointer and bump the owning topic's stats together."""
        db = self._require_db()
        async with self._storage_errors("index write"):
            await db.execute(
                """
                INSERT INTO message_index
                    (id, agent_id, topic_id, role, tokens, timestamp, file_offset)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.agent_id,
                    entry.topic_id,
                    entry.role.value,
                    entry.tokens,
                    _iso(entry.timestamp),
                    entry.file_offset,
                ),
            )
            await db.execute(
                """
                UPDATE topics SET
                    message_count = message_count + 1,
                    token_count = token_count + ?,
                    last_message_at = ?
                WHERE id = ?
                """,
                (entry.tokens, _iso(entry.timestamp), entry.topic_id),
            )
            await db.commit()

    async def get_index_entries(
        self,
        topic_id: str,
        limit: int | None = None,
        last: int | None = None,
    ) -> list[MessageIndexEntry]:
        """Index entries for a topic in file order.

        Args:
            topic_id: Topic identifier
            limit: Return only the first ``limit`` entries
            last: Return only the last ``last`` entries
        """
        if last is not None:
            rows = await self._fetch_all(
                """
                SELECT * FROM (
                    SELECT * FROM message_index WHERE topic_id = ?
                    ORDER BY file_offset DESC LIMIT ?
                ) ORDER BY file_offset
                """,
                (topic_id, last),
            )
        else:
            rows = await self._fetch_all(
                "SELECT * FROM message_index WHERE topic_id = ? "
                "ORDER BY file_offset LIMIT ?",
                (topic_id, -1 if limit is None else limit),
            )
        return [MessageIndexEntry(**row) for row in rows]

    async def last_index_entry(self, topic_id: str) -> MessageIndexEntry | None:
        entries = await self.get_index_entries(topic_id, last=1)
        return entries[0] if entries else None

    async def delete_index_entries_from(self, topic_id: str, offset: int) -> int:
        """Drop index entries at or beyond ``offset`` (used after truncation)."""
        deleted = await self._write(
            "DELETE FROM message_index WHERE topic_id = ? AND file_offset >= ?",
            (topic_id, offset),
        )
        if deleted:
            await self.recompute_topic_stats(topic_id)
        return deleted

    async def token_totals_by_role(self, topic_id: str) -> dict[str, int]:
        rows = await self._fetch_all(
            "SELECT role, COALESCE(SUM(tokens), 0) AS tokens "
            "FROM message_index WHERE topic_id = ? GROUP BY role",
            (topic_id,),
        )
        return {row["role"]: row["tokens"] for row in rows}

    # ── memories ────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_memory(row: dict) -> Memory:
        row = dict(row)
        row["tags"] = json.loads(row.get("tags") or "[]")
        row["active"] = bool(row["active"])
        return Memory(**row)

    async def insert_memory(self, memory: Memory) -> str:
        await self._write(
            """
            INSERT INTO memories
                (id, scope, memory_type, agent_id, topic_id, content, context,
                 tags, created_at, last_used_at, retrieval_count, active,
                 index_status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                memory.id,
                memory.scope.value,
                memory.memory_type.value,
                memory.agent_id,
                memory.topic_id,
                memory.content,
                memory.context,
                json.dumps(memory.tags),
                _iso(memory.created_at),
                _iso(memory.last_used_at),
                memory.retrieval_count,
                int(memory.active),
                memory.index_status.value,
            ),
        )
        logger.debug(f"Memory inserted: {memory.id} ({memory.scope.value})")
        return memory.id

    async def get_memory(self, memory_id: str) -> Memory | None:
        row = await self._fetch_one("SELECT * FROM memories WHERE id = ?", (memory_id,))
        return self._row_to_memory(row) if row else None

    async def get_memories(self, memory_ids: list[str]) -> dict[str, Memory]:
        if not memory_ids:
            return {}
        placeholders = ",".join("?" for _ in memory_ids)
        rows = await self._fetch_all(
            f"SELECT * FROM memories WHERE id IN ({placeholders})",
            tuple(memory_ids),
        )
        return {row["id"]: self._row_to_memory(row) for row in rows}

    async def list_memories(
        self,
        scope: MemoryScope | None = None,
        agent_id: str | None = None,
        topic_id: str | None = None,
        active: bool | None = None,
        index_status: IndexStatus | None = None,
    ) -> list[Memory]:
        sql = "SELECT * FROM memories WHERE 1=1"
        params: list = []
        if scope is not None:
            sql += " AND scope = ?"
            params.append(scope.value)
        if agent_id is not None:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        if topic_id is not None:
            sql += " AND topic_id = ?"
            params.append(topic_id)
        if active is not None:
            sql += " AND active = ?"
            params.append(int(active))
        if index_status is not None:
            sql += " AND index_status = ?"
            params.append(index_status.value)
        sql += " ORDER BY created_at, id"

        rows = await self._fetch_all(sql, tuple(params))
        return [self._row_to_memory(row) for row in rows]

    async def touch_memory(self, memory_id: str, used_at: datetime) -> bool:
        """Increment retrieval_count and set last_used_at in one statement."""
        updated = await self._write(
            """
            UPDATE memories
            SET retrieval_count = retrieval_count + 1,
                last_used_at = ?
            WHERE id = ?
            """,
            (_iso(used_at), memory_id),
        )
        return updated > 0

    async def set_memory_active(self, memory_id: str, active: bool) -> bool:
        return await self._write(
            "UPDATE memories SET active = ? WHERE id = ?",
            (int(active), memory_id),
        ) > 0

    async def set_index_status(self, memory_id: str, status: IndexStatus) -> bool:
        return await self._write(
            "UPDATE memories SET index_status = ? WHERE id = ?",
            (status.value, memory_id),
        ) > 0

    async def delete_memory(self, memory_id: str) -> bool:
        deleted = await self._write("DELETE FROM memories WHERE id = ?", (memory_id,))
        if deleted:
            logger.debug(f"Memory deleted: {memory_id}")
        return deleted > 0

    # ── settings ────────────────────────────────────────────────────────

    async def get_setting(self, key: str) -> str | None:
        row = await self._fetch_one("SELECT value FROM settings WHERE key = ?", (key,))
        return row["value"] if row else None

    async def set_setting(self, key: str, value: str) -> None:
        await self._write(
            """
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )
