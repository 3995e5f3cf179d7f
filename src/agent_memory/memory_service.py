"""Memory Service - Facade over the agent memory engine.

Wires the structured store, conversation logs, vector index, token
accountant, retrieval engine and self-learning pipeline together from one
:class:`MemoryConfig`. The HTTP routes and any embedding application talk to
this class only.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from .config import MemoryConfig
from .embedding import EmbeddingProvider, EmbeddingService, create_provider
from .exceptions import NotFoundError, StorageError, ValidationError
from .memory_store import MemoryStore
from .models import (
    Agent,
    Memory,
    MemoryScope,
    Message,
    RetrievedContext,
    Role,
    Topic,
    TokenBudget,
    TokenUsage,
)
from .retrieval import RetrievalEngine
from .self_learning import LearningPipeline, MemoryClassifier, PatternLearningDetector
from .storage.conversation_log import ConversationLog
from .storage.sqlite_store import SQLiteStore
from .storage.vector_index import VectorIndex
from .token_accountant import TokenAccountant
from .token_counter import TokenCounter

TOKEN_SCHEME_KEY = "token_scheme"


@dataclass
class AppendResult:
    """Outcome of appending one message."""

    message: Message
    offset: int
    learned: list[Memory] = field(default_factory=list)


class MemoryService:
    """Main memory service facade.

    Provides:
    - Agent and topic registration (topics are created on first message)
    - Durable message logging with self-learning on user messages
    - Memory CRUD with scope validation and vector indexing
    - Token-budgeted context retrieval
    - Token counting and per-topic budget reporting
    - Background re-indexing of memories left pending by provider failures

    Call :meth:`initialize` before use and :meth:`close` when done.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        classifier: MemoryClassifier | None = None,
    ):
        """Initialize memory service.

        Args:
            config: Memory configuration (uses defaults if not provided)
            embedding_provider: Provider override; built from config otherwise
            classifier: Learning classifier (pattern tables by default)
        """
        self.config = config or MemoryConfig()
        storage = self.config.storage

        self._store = SQLiteStore(db_path=storage.sqlite_path)
        self._embedding = EmbeddingService(
            embedding_provider or create_provider(self.config.embedding),
            max_concurrency=self.config.embedding.max_concurrency,
        )
        self._vectors = VectorIndex(
            storage.vector_dir,
            self._embedding,
            min_similarity=self.config.retrieval.min_similarity,
        )
        self._log = ConversationLog(storage.conversations_dir, self._store)
        self._accountant = TokenAccountant(
            self._store,
            TokenCounter(model=self.config.tokens.encoding_model),
            self.config.tokens,
        )
        self._memories = MemoryStore(self._store, self._vectors)
        self._retrieval = RetrievalEngine(
            self._store,
            self._memories,
            self._vectors,
            self._log,
            self._accountant,
            self.config.retrieval,
        )
        self._classifier = classifier or PatternLearningDetector()
        self._pipeline = LearningPipeline(self._memories, self._vectors)
        self._reconcile_task: asyncio.Task | None = None
        self._initialized = False

        logger.debug(f"MemoryService full config: {self.config.model_dump()}")
        logger.info(
            f"MemoryService created: data_dir={storage.data_dir!r}, "
            f"embedding={self.config.embedding.provider}, "
            f"tokens={self._accountant.counter.scheme}"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the store, load vectors and start the reconcile loop."""
        if self._initialized:
            return
        await self._store.initialize()
        await self._check_token_scheme()
        await self._vectors.load()
        self._initialized = True

        interval = self.config.learning.reconcile_interval_seconds
        if interval > 0:
            self._reconcile_task = asyncio.create_task(self._reconcile_loop(interval))
        logger.info("MemoryService initialized")

    async def _check_token_scheme(self) -> None:
        """Record the tokenization scheme; warn when it differs from the last run."""
        scheme = self._accountant.counter.scheme
        previous = await self._store.get_setting(TOKEN_SCHEME_KEY)
        if previous is not None and previous != scheme:
            logger.warning(
                f"Token scheme changed from {previous} to {scheme}; token counts "
                f"stored with existing messages were made under {previous}"
            )
        if previous != scheme:
            await self._store.set_setting(TOKEN_SCHEME_KEY, scheme)

    async def close(self) -> None:
        """Stop background work and close the store."""
        if self._reconcile_task is not None:
            self._reconcile_task.cancel()
            try:
                await self._reconcile_task
            except asyncio.CancelledError:
                pass
            self._reconcile_task = None
        if self._initialized:
            await self._store.close()
            self._initialized = False
            logger.info("MemoryService closed")

    async def _reconcile_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self._pipeline.reconcile_pending()
            except StorageError as e:
                logger.error(f"Pending-index reconciliation failed: {e}")

    @property
    def accountant(self) -> TokenAccountant:
        return self._accountant

    # ------------------------------------------------------------------
    # Agents and topics
    # ------------------------------------------------------------------

    async def register_agent(self, agent: Agent) -> Agent:
        """Create or update an agent."""
        await self._store.upsert_agent(agent)
        logger.info(f"Agent registered: {agent.id} ({agent.model})")
        return await self.get_agent(agent.id)

    async def get_agent(self, agent_id: str) -> Agent:
        agent = await self._store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("agent", agent_id)
        return agent

    async def list_agents(self) -> list[Agent]:
        return await self._store.list_agents()

    async def delete_agent(self, agent_id: str) -> None:
        """Delete an agent with its topics, logs, scoped memories and vectors."""
        await self.get_agent(agent_id)
        for memory in await self._memories.list(agent_id=agent_id):
            await self._vectors.delete(memory.id)
        await self._store.delete_agent(agent_id)
        await self._log.delete_agent(agent_id)
        self._accountant.forget(agent_id)
        logger.info(f"Agent deleted: {agent_id}")

    async def list_topics(self, agent_id: str) -> list[Topic]:
        await self.get_agent(agent_id)
        return await self._store.list_topics(agent_id)

    async def ensure_topic(
        self, agent_id: str, topic_id: str, name: str | None = None
    ) -> Topic:
        """Return the topic, registering it (and its agent) on first use.

        Raises:
            ValidationError: if the topic id already belongs to another agent
        """
        if not agent_id or not topic_id:
            raise ValidationError("topic", "agent_id and topic_id are required")

        topic = await self._store.get_topic(topic_id)
        if topic is not None:
            if topic.agent_id != agent_id:
                raise ValidationError(
                    "topic_id", f"topic {topic_id} belongs to agent {topic.agent_id}"
                )
            return topic

        if await self._store.get_agent(agent_id) is None:
            await self._store.upsert_agent(
                Agent(
                    id=agent_id,
                    name=agent_id,
                    context_limit=self.config.tokens.default_context_limit,
                )
            )
            logger.info(f"Agent auto-registered: {agent_id}")

        await self._store.insert_topic(
            Topic(id=topic_id, agent_id=agent_id, name=name or topic_id)
        )
        logger.info(f"Topic created: {agent_id}/{topic_id}")
        topic = await self._store.get_topic(topic_id)
        if topic is None or topic.agent_id != agent_id:
            raise ValidationError("topic_id", f"topic {topic_id} belongs to another agent")
        return topic

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def append_message(
        self,
        agent_id: str,
        topic_id: str,
        role: Role,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> AppendResult:
        """Log a message, then scan it for something worth remembering.

        Args:
            agent_id: Agent speaking or spoken to
            topic_id: Conversation thread; created on first message
            role: Message role
            content: Message text
            metadata: Opaque caller data stored with the record

        Returns:
            AppendResult with the stored message, its log offset and any
            memories learned from it
        """
        await self.ensure_topic(agent_id, topic_id)

        message = Message(
            agent_id=agent_id,
            topic_id=topic_id,
            role=role,
            content=content,
            tokens=self._accountant.count(content),
            metadata=metadata,
        )
        offset, prior = await self._log.append_after(agent_id, topic_id, message)

        learned: list[Memory] = []
        if self.config.learning.enabled:
            drafts = self._classifier.scan(message, prior)
            if drafts and self.config.learning.auto_persist:
                for draft in drafts:
                    try:
                        # Shielded: a cancelled caller still leaves a consistent memory
                        memory = await asyncio.shield(self._pipeline.persist(draft))
                    except ValidationError as e:
                        logger.warning(f"Learned draft rejected: {e}")
                        continue
                    learned.append(memory)
                logger.info(
                    f"Learned {len(learned)} memories from message {message.id}"
                )

        return AppendResult(message=message, offset=offset, learned=learned)

    async def read_messages(
        self,
        agent_id: str,
        topic_id: str,
        from_offset: int | None = None,
        limit: int | None = None,
        last: int | None = None,
    ) -> list[Message]:
        """Page through a topic's history in file order."""
        messages, _ = await self.read_page(agent_id, topic_id, from_offset, limit, last)
        return messages

    async def read_page(
        self,
        agent_id: str,
        topic_id: str,
        from_offset: int | None = None,
        limit: int | None = None,
        last: int | None = None,
    ) -> tuple[list[Message], int]:
        """A page of history and the ``from_offset`` of the next page."""
        await self._require_topic(agent_id, topic_id)
        return await self._log.read_page(
            agent_id, topic_id, from_offset=from_offset, limit=limit, last=last
        )

    async def search_messages(
        self, agent_id: str, topic_id: str, query: str
    ) -> list[Message]:
        await self._require_topic(agent_id, topic_id)
        return await self._log.search(agent_id, topic_id, query)

    async def export_topic(
        self, agent_id: str, topic_id: str, output_path: str | Path
    ) -> int:
        await self._require_topic(agent_id, topic_id)
        count = await self._log.export_topic(agent_id, topic_id, output_path)
        logger.info(f"Exported {count} messages from {agent_id}/{topic_id}")
        return count

    async def import_topic(
        self, agent_id: str, topic_id: str, input_path: str | Path
    ) -> int:
        await self.ensure_topic(agent_id, topic_id)
        count = await self._log.import_topic(agent_id, topic_id, input_path)
        logger.info(f"Imported {count} messages into {agent_id}/{topic_id}")
        return count

    async def _require_topic(self, agent_id: str, topic_id: str) -> Topic:
        topic = await self._store.get_topic(topic_id)
        if topic is None or topic.agent_id != agent_id:
            raise NotFoundError("topic", f"{agent_id}/{topic_id}")
        return topic

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def create_memory(self, memory: Memory) -> Memory:
        """Store and index a memory; it stays pending if indexing fails."""
        return await asyncio.shield(self._pipeline.store_and_index(memory))

    async def get_memory(self, memory_id: str) -> Memory:
        return await self._memories.get(memory_id)

    async def list_memories(
        self,
        scope: MemoryScope | None = None,
        agent_id: str | None = None,
        topic_id: str | None = None,
        active: bool | None = None,
    ) -> list[Memory]:
        return await self._memories.list(
            scope=scope, agent_id=agent_id, topic_id=topic_id, active=active
        )

    async def delete_memory(self, memory_id: str, hard: bool = False) -> None:
        await self._memories.delete(memory_id, hard=hard)

    async def reactivate_memory(self, memory_id: str) -> Memory:
        """Undo a soft delete and try to index the memory right away."""
        memory = await self._memories.reactivate(memory_id)
        await self._pipeline.index(memory)
        return await self._memories.get(memory_id)

    async def reconcile_pending(self) -> int:
        return await self._pipeline.reconcile_pending()

    # ------------------------------------------------------------------
    # Retrieval and tokens
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        query: str,
        agent_id: str | None = None,
        topic_id: str | None = None,
        max_recent_messages: int | None = None,
        token_budget: int | None = None,
    ) -> RetrievedContext:
        return await self._retrieval.retrieve(
            query,
            agent_id=agent_id,
            topic_id=topic_id,
            max_recent_messages=max_recent_messages,
            token_budget=token_budget,
        )

    def count_tokens(self, text: str) -> int:
        return self._accountant.count(text)

    async def budget_for(self, agent_id: str, topic_id: str) -> TokenBudget:
        return await self._accountant.budget_for(agent_id, topic_id)

    async def usage_for(self, agent_id: str, topic_id: str) -> TokenUsage:
        return await self._accountant.usage_for(agent_id, topic_id)

    async def health(self) -> dict[str, Any]:
        pending = await self._memories.pending_index()
        return {
            "status": "ok" if self._initialized else "starting",
            "vectors": len(self._vectors),
            "pending_index": len(pending),
            "token_scheme": self._accountant.counter.scheme,
        }
