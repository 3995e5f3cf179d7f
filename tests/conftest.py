"""
Agent memory test fixtures.

Shared fixtures and stub embedding providers. Every fixture writes under
pytest's ``tmp_path`` and counts tokens with the character estimate, so no
test touches the network.
"""

from __future__ import annotations

import asyncio
import zlib

import pytest

from agent_memory.config import (
    LearningConfig,
    MemoryConfig,
    StorageConfig,
    TokenConfig,
)
from agent_memory.embedding import EmbeddingService
from agent_memory.memory_service import MemoryService
from agent_memory.memory_store import MemoryStore
from agent_memory.models import Agent, Topic
from agent_memory.storage.conversation_log import ConversationLog
from agent_memory.storage.sqlite_store import SQLiteStore
from agent_memory.storage.vector_index import VectorIndex

# An unknown model name makes TokenCounter fall back to its estimate
OFFLINE_TOKEN_MODEL = "offline-estimate"
STUB_DIM = 16


class StubEmbeddingProvider:
    """Deterministic provider: hashed bag of words, with exact-text overrides.

    Set ``failing = True`` to make every call raise.
    """

    def __init__(self, overrides: dict[str, list[float]] | None = None, dim: int = STUB_DIM):
        self.dim = dim
        self.overrides: dict[str, list[float]] = {}
        for text, vec in (overrides or {}).items():
            self.override(text, vec)
        self.failing = False
        self.calls = 0

    def override(self, text: str, vector: list[float]) -> None:
        self.overrides[text] = list(vector) + [0.0] * (self.dim - len(vector))

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        if self.failing:
            raise RuntimeError("embedding provider unavailable")
        return [self._vector(t) for t in texts]

    def _vector(self, text: str) -> list[float]:
        if text in self.overrides:
            return self.overrides[text]
        vec = [0.0] * self.dim
        for word in text.lower().split():
            vec[zlib.crc32(word.encode("utf-8")) % self.dim] += 1.0
        vec[0] += 0.01
        return vec


class GatedEmbeddingProvider:
    """Async provider whose calls block until ``release()``.

    ``started`` is set once a call is waiting on the gate.
    """

    def __init__(self, dim: int = STUB_DIM):
        self.dim = dim
        self.started = asyncio.Event()
        self._gate = asyncio.Event()

    def release(self) -> None:
        self._gate.set()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.started.set()
        await self._gate.wait()
        return [[1.0] + [0.0] * (self.dim - 1) for _ in texts]


@pytest.fixture
def provider():
    return StubEmbeddingProvider()


@pytest.fixture
def config(tmp_path):
    """MemoryConfig rooted in tmp_path with the reconcile loop disabled."""
    return MemoryConfig(
        storage=StorageConfig(data_dir=str(tmp_path / "data")),
        tokens=TokenConfig(encoding_model=OFFLINE_TOKEN_MODEL),
        learning=LearningConfig(reconcile_interval_seconds=0),
    )


@pytest.fixture
async def service(config, provider):
    svc = MemoryService(config=config, embedding_provider=provider)
    await svc.initialize()
    yield svc
    await svc.close()


@pytest.fixture
async def store(tmp_path):
    s = SQLiteStore(db_path=tmp_path / "metadata.db")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def vector_index(tmp_path, provider):
    return VectorIndex(tmp_path / "vectors", EmbeddingService(provider, max_concurrency=2))


@pytest.fixture
def memory_store(store, vector_index):
    return MemoryStore(store, vector_index)


@pytest.fixture
def conversation_log(tmp_path, store):
    return ConversationLog(tmp_path / "conversations", store)


@pytest.fixture
async def asimov(store):
    """Agent "asimov" owning topic "project-setup"."""
    await store.upsert_agent(Agent(id="asimov", name="Asimov", model="test-model"))
    await store.insert_topic(Topic(id="project-setup", agent_id="asimov", name="Project setup"))
    return "asimov", "project-setup"


@pytest.fixture
def gated_provider():
    return GatedEmbeddingProvider()


@pytest.fixture
async def gated_service(config, gated_provider):
    """MemoryService whose embeddings wait for ``gated_provider.release()``."""
    svc = MemoryService(config=config, embedding_provider=gated_provider)
    await svc.initialize()
    yield svc
    gated_provider.release()
    await svc.close()
