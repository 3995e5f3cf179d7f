"""Tests for the file-backed vector index."""

from datetime import datetime, timedelta, timezone

import pytest

from agent_memory.embedding import EmbeddingService
from agent_memory.exceptions import ProviderError
from agent_memory.models import MemoryScope
from agent_memory.storage.vector_index import SearchFilter, VectorIndex, VectorMeta

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _meta(scope=MemoryScope.GLOBAL, agent_id=None, topic_id=None, offset_minutes=0):
    return VectorMeta(
        scope=scope,
        agent_id=agent_id,
        topic_id=topic_id,
        created_at=T0 + timedelta(minutes=offset_minutes),
    )


class TestSearch:
    @pytest.mark.asyncio
    async def test_descending_similarity(self, vector_index):
        await vector_index.upsert("far", [0.0, 1.0], _meta())
        await vector_index.upsert("near", [1.0, 0.1], _meta())
        await vector_index.upsert("mid", [1.0, 1.0], _meta())

        results = vector_index.search([1.0, 0.0], k=3)
        assert [mid for mid, _ in results] == ["near", "mid", "far"]
        scores = [score for _, score in results]
        assert scores == sorted(scores, reverse=True)
        assert scores[0] == pytest.approx(0.995, abs=1e-3)

    @pytest.mark.asyncio
    async def test_k_limits_results(self, vector_index):
        for i in range(5):
            await vector_index.upsert(f"m{i}", [1.0, float(i)], _meta())
        assert len(vector_index.search([1.0, 0.0], k=2)) == 2
        assert vector_index.search([1.0, 0.0], k=0) == []

    @pytest.mark.asyncio
    async def test_ties_broken_by_newer_created_at(self, vector_index):
        await vector_index.upsert("older", [1.0, 0.0], _meta(offset_minutes=0))
        await vector_index.upsert("newer", [2.0, 0.0], _meta(offset_minutes=5))
        results = vector_index.search([1.0, 0.0], k=2)
        assert [mid for mid, _ in results] == ["newer", "older"]

    @pytest.mark.asyncio
    async def test_filter_by_scope_and_owner(self, vector_index):
        await vector_index.upsert("g", [1.0, 0.0], _meta())
        await vector_index.upsert("a", [1.0, 0.0], _meta(MemoryScope.AGENT, "asimov"))
        await vector_index.upsert("b", [1.0, 0.0], _meta(MemoryScope.AGENT, "other"))
        await vector_index.upsert(
            "t", [1.0, 0.0], _meta(MemoryScope.TOPIC, "asimov", "project-setup")
        )

        agent_hits = vector_index.search(
            [1.0, 0.0], k=10, search_filter=SearchFilter(MemoryScope.AGENT, "asimov")
        )
        assert [mid for mid, _ in agent_hits] == ["a"]

        topic_hits = vector_index.search(
            [1.0, 0.0],
            k=10,
            search_filter=SearchFilter(MemoryScope.TOPIC, "asimov", "project-setup"),
        )
        assert [mid for mid, _ in topic_hits] == ["t"]
        assert len(vector_index.search([1.0, 0.0], k=10)) == 4

    @pytest.mark.asyncio
    async def test_min_similarity(self, tmp_path, provider):
        index = VectorIndex(tmp_path / "v", EmbeddingService(provider), min_similarity=0.5)
        await index.upsert("orthogonal", [0.0, 1.0], _meta())
        await index.upsert("aligned", [1.0, 0.0], _meta())
        assert [mid for mid, _ in index.search([1.0, 0.0], k=5)] == ["aligned"]

    @pytest.mark.asyncio
    async def test_mismatched_dimensions_are_skipped(self, vector_index):
        await vector_index.upsert("two", [1.0, 0.0], _meta())
        await vector_index.upsert("three", [1.0, 0.0, 0.0], _meta())
        assert [mid for mid, _ in vector_index.search([1.0, 0.0], k=5)] == ["two"]


class TestPersistence:
    @pytest.mark.asyncio
    async def test_upsert_overwrites(self, vector_index):
        await vector_index.upsert("m", [1.0, 0.0], _meta())
        await vector_index.upsert("m", [0.0, 1.0], _meta())
        assert len(vector_index) == 1
        (_, score), = vector_index.search([0.0, 1.0], k=1)
        assert score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_one_file_per_memory_without_content(self, tmp_path, vector_index):
        await vector_index.upsert("m1", [1.0, 0.0], _meta())
        path = tmp_path / "vectors" / "m1.json"
        assert path.exists()
        assert "content" not in path.read_text()

    @pytest.mark.asyncio
    async def test_reload_from_disk(self, tmp_path, provider, vector_index):
        await vector_index.upsert("m1", [1.0, 0.0], _meta(MemoryScope.AGENT, "asimov"))
        reopened = VectorIndex(tmp_path / "vectors", EmbeddingService(provider))
        assert await reopened.load() == 1
        assert "m1" in reopened
        hits = reopened.search(
            [1.0, 0.0], k=1, search_filter=SearchFilter(MemoryScope.AGENT, "asimov")
        )
        assert hits[0][0] == "m1"

    @pytest.mark.asyncio
    async def test_unreadable_file_skipped_on_load(self, tmp_path, provider):
        vector_dir = tmp_path / "vectors"
        vector_dir.mkdir()
        (vector_dir / "broken.json").write_text("{not json")
        index = VectorIndex(vector_dir, EmbeddingService(provider))
        assert await index.load() == 0

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path, vector_index):
        await vector_index.upsert("m1", [1.0, 0.0], _meta())
        assert await vector_index.delete("m1") is True
        assert await vector_index.delete("m1") is False
        assert vector_index.search([1.0, 0.0], k=5) == []
        assert not (tmp_path / "vectors" / "m1.json").exists()


class TestEmbed:
    @pytest.mark.asyncio
    async def test_embed_uses_provider(self, vector_index, provider):
        vector = await vector_index.embed("hello world")
        assert len(vector) == provider.dim
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_provider_failure_propagates(self, vector_index, provider):
        provider.failing = True
        with pytest.raises(ProviderError):
            await vector_index.embed("hello")
