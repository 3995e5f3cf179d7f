"""Tests for TokenCounter and TokenAccountant."""

from datetime import datetime, timezone

import pytest
import tiktoken

from agent_memory.config import TokenConfig
from agent_memory.exceptions import NotFoundError, ValidationError
from agent_memory.models import Agent, MessageIndexEntry, Role, Topic
from agent_memory.token_accountant import TokenAccountant
from agent_memory.token_counter import TokenCounter, estimate_tokens


@pytest.fixture
def counter():
    return TokenCounter(model="offline-estimate")


@pytest.fixture
def accountant(store, counter):
    return TokenAccountant(store, counter, TokenConfig())


async def _setup_topic(store, history_tokens: int, limit: int = 1000) -> None:
    await store.upsert_agent(Agent(id="a1", name="A1", context_limit=limit))
    await store.insert_topic(Topic(id="t1", agent_id="a1", name="T1"))
    if history_tokens:
        await store.insert_index_entry(
            MessageIndexEntry(
                id="m1",
                agent_id="a1",
                topic_id="t1",
                role=Role.USER,
                tokens=history_tokens,
                timestamp=datetime.now(timezone.utc),
                file_offset=0,
            )
        )


# ---------------------------------------------------------------------------
# TokenCounter
# ---------------------------------------------------------------------------


class TestTokenCounter:
    def test_empty_text_is_zero(self, counter):
        assert counter.count("") == 0

    def test_estimate_scheme_for_unknown_model(self, counter):
        assert counter.scheme == "estimate"

    def test_estimate_english(self, counter):
        assert counter.count("a" * 40) == 10

    def test_estimate_cjk_counts_denser(self, counter):
        korean = "안녕하세요"  # five Hangul syllables
        assert counter.count(korean) == 2
        assert counter.count("x") == 1

    def test_deterministic(self, counter):
        text = "The same text always counts the same."
        assert counter.count(text) == counter.count(text)

    def test_unloadable_encoding_falls_back_to_estimate(self, monkeypatch):
        def offline(model):
            raise OSError("network unreachable")

        monkeypatch.setattr(tiktoken, "encoding_for_model", offline)
        counter = TokenCounter(model="gpt-4")
        assert counter.scheme == "estimate"
        assert counter.count("a" * 40) == estimate_tokens("a" * 40) == 10


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------


class TestBudget:
    @pytest.mark.asyncio
    async def test_near_limit_true_at_exactly_ninety_percent(self, store, accountant):
        await _setup_topic(store, history_tokens=900)
        budget = await accountant.budget_for("a1", "t1")
        assert budget.used == 900
        assert budget.limit == 1000
        assert budget.remaining == 100
        assert budget.near_limit is True
        assert budget.status == "warning"

    @pytest.mark.asyncio
    async def test_near_limit_false_at_eighty_nine_percent(self, store, accountant):
        await _setup_topic(store, history_tokens=890)
        budget = await accountant.budget_for("a1", "t1")
        assert budget.near_limit is False
        assert budget.status == "ok"

    @pytest.mark.asyncio
    async def test_critical_status(self, store, accountant):
        await _setup_topic(store, history_tokens=960)
        budget = await accountant.budget_for("a1", "t1")
        assert budget.status == "critical"

    @pytest.mark.asyncio
    async def test_injected_memories_count_toward_used(self, store, accountant):
        await _setup_topic(store, history_tokens=800)
        accountant.record_injection("a1", "t1", 100)
        budget = await accountant.budget_for("a1", "t1")
        assert budget.history_tokens == 800
        assert budget.memory_tokens == 100
        assert budget.used == 900
        assert budget.near_limit is True

    @pytest.mark.asyncio
    async def test_injection_is_replaced_not_accumulated(self, store, accountant):
        await _setup_topic(store, history_tokens=0)
        accountant.record_injection("a1", "t1", 100)
        accountant.record_injection("a1", "t1", 40)
        budget = await accountant.budget_for("a1", "t1")
        assert budget.memory_tokens == 40

    @pytest.mark.asyncio
    async def test_remaining_never_negative(self, store, accountant):
        await _setup_topic(store, history_tokens=1500)
        budget = await accountant.budget_for("a1", "t1")
        assert budget.remaining == 0
        assert budget.utilization == 1.5

    @pytest.mark.asyncio
    async def test_configurable_threshold(self, store, counter):
        await _setup_topic(store, history_tokens=750)
        accountant = TokenAccountant(
            store, counter, TokenConfig(near_limit_threshold=0.75, critical_threshold=0.9)
        )
        assert (await accountant.budget_for("a1", "t1")).near_limit is True

    @pytest.mark.asyncio
    async def test_unknown_agent(self, accountant):
        with pytest.raises(NotFoundError):
            await accountant.budget_for("ghost", "t1")

    @pytest.mark.asyncio
    async def test_topic_of_another_agent(self, store, accountant):
        await _setup_topic(store, history_tokens=0)
        await store.upsert_agent(Agent(id="a2", name="A2"))
        with pytest.raises(ValidationError):
            await accountant.budget_for("a2", "t1")


class TestUsage:
    @pytest.mark.asyncio
    async def test_usage_by_role(self, store, accountant):
        await _setup_topic(store, history_tokens=100)
        await store.insert_index_entry(
            MessageIndexEntry(
                id="m2",
                agent_id="a1",
                topic_id="t1",
                role=Role.ASSISTANT,
                tokens=150,
                timestamp=datetime.now(timezone.utc),
                file_offset=50,
            )
        )
        usage = await accountant.usage_for("a1", "t1")
        assert usage.user == 100
        assert usage.assistant == 150
        assert usage.total == 250
        assert usage.limit == 1000
        assert usage.utilization == 0.25
