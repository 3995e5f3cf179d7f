"""Embedding providers and the bounded embedding service.

Providers turn text into vectors. ``LocalEmbeddingProvider`` lazy-loads a
sentence-transformers model on first use; ``HttpEmbeddingProvider`` calls an
OpenAI-compatible ``/embeddings`` endpoint. ``EmbeddingService`` wraps either
one with a concurrency cap, runs blocking providers off the event loop and
converts every provider failure into :class:`ProviderError`.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Protocol

import httpx
from loguru import logger

from .config import EmbeddingConfig
from .exceptions import ProviderError

if TYPE_CHECKING:
    import numpy as np


class EmbeddingProvider(Protocol):
    """Text-to-vector provider. ``embed`` may be sync or async."""

    def embed(self, texts: list[str]): ...


class LocalEmbeddingProvider:
    """Embedding provider using sentence-transformers.

    Features:
    - Lazy model loading (only when first embedding is requested)
    - Batch encoding with normalized output
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        self._config = config or EmbeddingConfig()
        self._model = None
        self._dimension = self._config.dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _ensure_model(self) -> None:
        """Lazy-load the sentence-transformers model."""
        if self._model is not None:
            return

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers is required for the local embedding provider. "
                "Install with: pip install 'agent-memory[local]'"
            )

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        self._ensure_model()

        embeddings: np.ndarray = self._model.encode(
            texts, batch_size=32, show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()


class HttpEmbeddingProvider:
    """Embedding provider backed by an OpenAI-compatible HTTP endpoint."""

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config or EmbeddingConfig(provider="api")
        self._client = client

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        headers = {}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        payload = {"model": self._config.model, "input": texts}

        if self._client is not None:
            response = await self._client.post(
                self._config.api_url, json=payload, headers=headers,
                timeout=self._config.timeout_seconds,
            )
        else:
            async with httpx.AsyncClient(timeout=self._config.timeout_seconds) as client:
                response = await client.post(
                    self._config.api_url, json=payload, headers=headers,
                )
        response.raise_for_status()

        data = response.json().get("data", [])
        data.sort(key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in data]


def create_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Build the provider named by ``config.provider``."""
    if config.provider == "local":
        return LocalEmbeddingProvider(config)
    if config.provider == "api":
        return HttpEmbeddingProvider(config)
    raise ValueError(f"Unknown embedding provider: {config.provider!r}")


class EmbeddingService:
    """Bounded access to an embedding provider.

    At most ``max_concurrency`` provider calls are outstanding at once;
    further callers wait on the semaphore instead of piling onto the
    provider. Synchronous providers run in a worker thread so a slow model
    never blocks the event loop.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        max_concurrency: int = 4,
    ):
        self._provider = provider
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._max_concurrency = max_concurrency

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    async def encode(self, texts: list[str]) -> list[list[float]]:
        """Encode texts into embedding vectors.

        Raises:
            ProviderError: if the provider fails or returns a malformed result
        """
        if not texts:
            return []

        async with self._semaphore:
            try:
                if inspect.iscoroutinefunction(self._provider.embed):
                    vectors = await self._provider.embed(texts)
                else:
                    vectors = await asyncio.to_thread(self._provider.embed, texts)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Embedding provider call failed: {e}")
                raise ProviderError(f"Embedding failed: {e}") from e

        if len(vectors) != len(texts) or any(not v for v in vectors):
            raise ProviderError(
                f"Embedding provider returned {len(vectors)} vectors "
                f"for {len(texts)} texts"
            )
        return [list(map(float, v)) for v in vectors]

    async def encode_single(self, text: str) -> list[float]:
        """Encode a single text into an embedding vector."""
        results = await self.encode([text])
        return results[0]
