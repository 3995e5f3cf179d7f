"""Validated CRUD over learned memories.

The structured store is the source of truth for memory records; the vector
index only mirrors embeddings of active, indexed memories.
"""

from __future__ import annotations

from datetime import datetime, timezone

from loguru import logger

from .exceptions import NotFoundError, ValidationError
from .models import IndexStatus, Memory, MemoryScope
from .storage.sqlite_store import SQLiteStore
from .storage.vector_index import VectorIndex


class MemoryStore:
    """Create, read, retire and count uses of memories."""

    def __init__(self, store: SQLiteStore, vector_index: VectorIndex):
        self._store = store
        self._vectors = vector_index

    async def validate(self, memory: Memory) -> None:
        """Check scope ownership rules against the stored agents and topics.

        Raises:
            ValidationError: on empty content, missing or forbidden owner ids,
                an unknown agent or topic, or a topic owned by another agent
        """
        if not memory.content.strip():
            raise ValidationError("content", "must not be empty")

        scope = memory.scope
        if scope in (MemoryScope.GLOBAL, MemoryScope.PERSONAL):
            if memory.agent_id is not None or memory.topic_id is not None:
                raise ValidationError(
                    "scope", f"{scope.value} memories take no agent_id or topic_id"
                )
            return

        if not memory.agent_id:
            raise ValidationError("agent_id", f"required for {scope.value} scope")
        if await self._store.get_agent(memory.agent_id) is None:
            raise ValidationError("agent_id", f"unknown agent {memory.agent_id}")

        if scope == MemoryScope.AGENT:
            if memory.topic_id is not None:
                raise ValidationError("topic_id", "agent memories take no topic_id")
            return

        if not memory.topic_id:
            raise ValidationError("topic_id", "required for topic scope")
        topic = await self._store.get_topic(memory.topic_id)
        if topic is None:
            raise ValidationError("topic_id", f"unknown topic {memory.topic_id}")
        if topic.agent_id != memory.agent_id:
            raise ValidationError(
                "topic_id",
                f"topic {memory.topic_id} belongs to agent {topic.agent_id}, "
                f"not {memory.agent_id}",
            )

    async def create(self, memory: Memory) -> str:
        """Validate and insert a memory; it starts out pending indexing."""
        await self.validate(memory)
        if await self._store.get_memory(memory.id) is not None:
            raise ValidationError("id", f"memory {memory.id} already exists")

        memory = memory.model_copy(update={"index_status": IndexStatus.PENDING})
        await self._store.insert_memory(memory)
        logger.info(
            f"Memory created: {memory.id} ({memory.scope.value}/"
            f"{memory.memory_type.value})"
        )
        return memory.id

    async def get(self, memory_id: str) -> Memory:
        memory = await self._store.get_memory(memory_id)
        if memory is None:
            raise NotFoundError("memory", memory_id)
        return memory

    async def get_many(self, memory_ids: list[str]) -> dict[str, Memory]:
        return await self._store.get_memories(memory_ids)

    async def list(
        self,
        scope: MemoryScope | None = None,
        agent_id: str | None = None,
        topic_id: str | None = None,
        active: bool | None = None,
    ) -> list[Memory]:
        """Memories matching every given filter, oldest first."""
        return await self._store.list_memories(
            scope=scope, agent_id=agent_id, topic_id=topic_id, active=active
        )

    async def record_use(self, memory_id: str) -> None:
        """Count one retrieval and stamp last_used_at.

        A single UPDATE does both, so concurrent calls never lose increments.
        """
        if not await self._store.touch_memory(memory_id, datetime.now(timezone.utc)):
            raise NotFoundError("memory", memory_id)

    async def delete(self, memory_id: str, hard: bool = False) -> None:
        """Retire a memory.

        Soft delete keeps the row (inactive) for listing and audit; hard
        delete removes it. Either way the vector is removed, so the memory
        can no longer be retrieved.
        """
        await self.get(memory_id)
        if hard:
            await self._store.delete_memory(memory_id)
        else:
            await self._store.set_memory_active(memory_id, False)
        await self._vectors.delete(memory_id)
        logger.info(f"Memory {'hard' if hard else 'soft'}-deleted: {memory_id}")

    async def reactivate(self, memory_id: str) -> Memory:
        """Make a soft-deleted memory active again; it needs re-indexing."""
        await self.get(memory_id)
        await self._store.set_memory_active(memory_id, True)
        await self._store.set_index_status(memory_id, IndexStatus.PENDING)
        logger.info(f"Memory reactivated: {memory_id}")
        return await self.get(memory_id)

    async def mark_index_status(self, memory_id: str, status: IndexStatus) -> None:
        if not await self._store.set_index_status(memory_id, status):
            raise NotFoundError("memory", memory_id)

    async def pending_index(self) -> list[Memory]:
        """Active memories stored but not yet searchable."""
        return await self._store.list_memories(
            active=True, index_status=IndexStatus.PENDING
        )
