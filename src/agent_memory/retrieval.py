"""Token-budgeted context retrieval.

Assembles the context handed to an agent before each turn:

1. Recent conversation messages are reserved first, oldest dropped until
   they fit the budget.
2. The query is embedded and every scope the caller can see is searched:
   global, the agent's own, the topic's and personal memories.
3. Candidates are ranked by similarity. Retrieval count and recency only
   break ties, so a memory that is reused a lot never outranks a more
   relevant one.
4. Memories are added greedily while they fit; the first one that does not
   fit ends the fill. A memory is never truncated.

If the embedding provider fails the result is degraded to recent messages
only; retrieval itself never fails because of the provider or the budget.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

from loguru import logger

from .config import RetrievalConfig
from .exceptions import NotFoundError, ProviderError, ValidationError
from .memory_store import MemoryStore
from .models import Memory, MemoryScope, Message, RetrievedContext, RetrievedMemory
from .storage.conversation_log import ConversationLog
from .storage.sqlite_store import SQLiteStore
from .storage.vector_index import SearchFilter, VectorIndex
from .token_accountant import TokenAccountant


class RetrievalEngine:
    """Builds a :class:`RetrievedContext` that fits a token budget."""

    def __init__(
        self,
        store: SQLiteStore,
        memory_store: MemoryStore,
        vector_index: VectorIndex,
        conversation_log: ConversationLog,
        accountant: TokenAccountant,
        config: RetrievalConfig | None = None,
    ):
        """
        Args:
            store: Structured store, used to resolve agents and topics
            memory_store: Memory records and usage counters
            vector_index: Similarity search over memory embeddings
            conversation_log: Source of recent messages
            accountant: Token counting and injected-token bookkeeping
            config: Retrieval configuration
        """
        self._store = store
        self._memories = memory_store
        self._vectors = vector_index
        self._log = conversation_log
        self._accountant = accountant
        self._config = config or RetrievalConfig()

    async def retrieve(
        self,
        query: str,
        agent_id: str | None = None,
        topic_id: str | None = None,
        max_recent_messages: int | None = None,
        token_budget: int | None = None,
    ) -> RetrievedContext:
        """Assemble memories and recent messages for the next agent turn.

        Args:
            query: Text the memories should be relevant to
            agent_id: Agent whose scoped memories and topic are searched
            topic_id: Topic supplying recent messages and topic memories
            max_recent_messages: How many trailing messages to consider
            token_budget: Upper bound on ``total_tokens`` of the result

        Returns:
            RetrievedContext with ``total_tokens <= token_budget``

        Raises:
            ValidationError: on negative limits, a topic without an agent,
                or a topic owned by another agent
        """
        if max_recent_messages is None:
            max_recent_messages = self._config.default_recent_messages
        if token_budget is None:
            token_budget = self._config.default_token_budget
        if max_recent_messages < 0:
            raise ValidationError("max_recent_messages", "must be >= 0")
        if token_budget < 0:
            raise ValidationError("token_budget", "must be >= 0")
        if topic_id is not None and agent_id is None:
            raise ValidationError("agent_id", "required when topic_id is given")

        has_topic = await self._topic_exists(agent_id, topic_id)

        # Recent messages first
        recent: list[Message] = []
        if has_topic and max_recent_messages > 0:
            recent = await self._log.read_last(agent_id, topic_id, max_recent_messages)
        recent, message_tokens = self._fit_messages(recent, token_budget)
        remaining = token_budget - message_tokens

        memories: list[RetrievedMemory] = []
        degraded = False
        k = self._scaled_k(remaining)
        if k > 0 and query.strip():
            try:
                # Shielded: a cancelled caller lets the embed finish
                query_vector = await asyncio.shield(self._vectors.embed(query))
            except ProviderError as e:
                logger.warning(
                    f"Query embedding failed, degrading to recent messages only: {e}"
                )
                degraded = True
            else:
                candidates = await self._gather_candidates(
                    query_vector, k, agent_id, topic_id
                )
                memories = await self._fill(candidates, remaining)

        memory_tokens = sum(m.tokens for m in memories)
        if has_topic:
            self._accountant.record_injection(agent_id, topic_id, memory_tokens)

        context = RetrievedContext(
            memories=memories,
            recent_messages=recent,
            total_tokens=message_tokens + memory_tokens,
            degraded=degraded,
        )
        logger.debug(
            f"Retrieved {len(memories)} memories and {len(recent)} messages "
            f"({context.total_tokens}/{token_budget} tokens, degraded={degraded})"
        )
        return context

    async def _topic_exists(self, agent_id: str | None, topic_id: str | None) -> bool:
        if topic_id is None:
            return False
        topic = await self._store.get_topic(topic_id)
        if topic is None:
            return False
        if topic.agent_id != agent_id:
            raise ValidationError(
                "topic_id", f"topic {topic_id} does not belong to agent {agent_id}"
            )
        return True

    def _message_tokens(self, message: Message) -> int:
        return message.tokens or self._accountant.count(message.content)

    def _fit_messages(
        self, messages: list[Message], budget: int
    ) -> tuple[list[Message], int]:
        """Drop the oldest messages until the rest fit ``budget``."""
        costs = [self._message_tokens(m) for m in messages]
        total = sum(costs)
        start = 0
        while start < len(messages) and total > budget:
            total -= costs[start]
            start += 1
        if start:
            logger.debug(f"Dropped {start} oldest messages to fit budget {budget}")
        return messages[start:], total

    def _scaled_k(self, remaining: int) -> int:
        """Per-scope result count: what the remaining budget could plausibly hold."""
        if remaining <= 0:
            return 0
        return min(self._config.top_k, max(1, remaining // self._config.min_memory_tokens))

    async def _gather_candidates(
        self,
        query_vector: list[float],
        k: int,
        agent_id: str | None,
        topic_id: str | None,
    ) -> list[tuple[Memory, float]]:
        filters = [
            SearchFilter(scope=MemoryScope.GLOBAL),
            SearchFilter(scope=MemoryScope.PERSONAL),
        ]
        if agent_id is not None:
            filters.append(SearchFilter(scope=MemoryScope.AGENT, agent_id=agent_id))
        if topic_id is not None:
            filters.append(
                SearchFilter(scope=MemoryScope.TOPIC, agent_id=agent_id, topic_id=topic_id)
            )

        scores: dict[str, float] = {}
        for search_filter in filters:
            for memory_id, score in self._vectors.search(query_vector, k, search_filter):
                scores[memory_id] = max(score, scores.get(memory_id, score))

        records = await self._memories.get_many(list(scores))
        candidates = [
            (records[memory_id], score)
            for memory_id, score in scores.items()
            if memory_id in records and records[memory_id].active
        ]
        candidates.sort(key=self._rank_key)
        return candidates

    @staticmethod
    def _rank_key(item: tuple[Memory, float]) -> tuple:
        memory, score = item
        recency: datetime = memory.last_used_at or memory.created_at
        return (-score, -memory.retrieval_count, -recency.timestamp(), memory.id)

    async def _fill(
        self, candidates: list[tuple[Memory, float]], remaining: int
    ) -> list[RetrievedMemory]:
        selected: list[RetrievedMemory] = []
        for memory, score in candidates:
            tokens = self._accountant.count(memory.content)
            if tokens > remaining:
                break
            try:
                await self._memories.record_use(memory.id)
            except NotFoundError:
                logger.debug(f"Memory {memory.id} deleted during retrieval, skipping")
                continue
            remaining -= tokens
            selected.append(
                RetrievedMemory(
                    id=memory.id,
                    scope=memory.scope,
                    memory_type=memory.memory_type,
                    content=memory.content,
                    score=score,
                    tokens=tokens,
                )
            )
        return selected
