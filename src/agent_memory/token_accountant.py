"""Token accounting against each agent's context limit."""

from __future__ import annotations

from loguru import logger

from .config import TokenConfig
from .exceptions import NotFoundError, ValidationError
from .models import Agent, Role, Topic, TokenBudget, TokenUsage
from .storage.sqlite_store import SQLiteStore
from .token_counter import TokenCounter


class TokenAccountant:
    """Counts tokens and reports how much of a topic's budget is used.

    History tokens come from the topic's message index. Memory tokens are
    whatever the retrieval engine last injected for the topic.
    """

    def __init__(
        self,
        store: SQLiteStore,
        counter: TokenCounter,
        config: TokenConfig | None = None,
    ):
        self._store = store
        self._counter = counter
        self._config = config or TokenConfig()
        self._injected: dict[tuple[str, str], int] = {}

    @property
    def counter(self) -> TokenCounter:
        return self._counter

    def count(self, text: str) -> int:
        return self._counter.count(text)

    def record_injection(self, agent_id: str, topic_id: str, tokens: int) -> None:
        """Replace the injected-memory token total for a topic."""
        self._injected[(agent_id, topic_id)] = max(0, tokens)

    def injected_tokens(self, agent_id: str, topic_id: str) -> int:
        return self._injected.get((agent_id, topic_id), 0)

    def forget(self, agent_id: str, topic_id: str | None = None) -> None:
        """Drop injection records for a topic, or for every topic of an agent."""
        if topic_id is not None:
            self._injected.pop((agent_id, topic_id), None)
            return
        for key in [k for k in self._injected if k[0] == agent_id]:
            del self._injected[key]

    async def _resolve(self, agent_id: str, topic_id: str) -> tuple[Agent, Topic]:
        agent = await self._store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("agent", agent_id)
        topic = await self._store.get_topic(topic_id)
        if topic is None:
            raise NotFoundError("topic", topic_id)
        if topic.agent_id != agent_id:
            raise ValidationError(
                "topic_id", f"topic {topic_id} does not belong to agent {agent_id}"
            )
        return agent, topic

    async def budget_for(self, agent_id: str, topic_id: str) -> TokenBudget:
        """Current usage of a topic against its agent's context limit.

        Raises:
            NotFoundError: if the agent or topic is unknown
            ValidationError: if the topic belongs to another agent
        """
        agent, topic = await self._resolve(agent_id, topic_id)
        memory_tokens = self.injected_tokens(agent_id, topic_id)
        used = topic.token_count + memory_tokens
        limit = agent.context_limit
        utilization = used / limit

        if utilization >= self._config.critical_threshold:
            status = "critical"
        elif utilization >= self._config.near_limit_threshold:
            status = "warning"
        else:
            status = "ok"

        if status != "ok":
            logger.debug(
                f"Topic {agent_id}/{topic_id} at {utilization:.1%} of context "
                f"limit ({used}/{limit})"
            )

        return TokenBudget(
            agent_id=agent_id,
            topic_id=topic_id,
            history_tokens=topic.token_count,
            memory_tokens=memory_tokens,
            used=used,
            limit=limit,
            remaining=max(0, limit - used),
            utilization=utilization,
            near_limit=utilization >= self._config.near_limit_threshold,
            status=status,
        )

    async def usage_for(self, agent_id: str, topic_id: str) -> TokenUsage:
        """Per-role history token totals for a topic."""
        agent, _ = await self._resolve(agent_id, topic_id)
        totals = await self._store.token_totals_by_role(topic_id)

        usage = TokenUsage(limit=agent.context_limit)
        for role in Role:
            usage.add(role, totals.get(role.value, 0))
        return usage
