"""Vector similarity index over memory embeddings.

One JSON file per memory id under the vector directory, holding the vector
and the few attributes search filters on (scope, owner ids, created_at).
Content is never stored here; the structured store stays authoritative.
All vectors are mirrored in memory for search.
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import numpy as np
from loguru import logger

from ..embedding import EmbeddingService
from ..exceptions import StorageError, ValidationError
from ..models import Memory, MemoryScope


@dataclass(frozen=True, slots=True)
class VectorMeta:
    """Filterable attributes stored alongside a vector."""

    scope: MemoryScope
    agent_id: str | None
    topic_id: str | None
    created_at: datetime

    @classmethod
    def from_memory(cls, memory: Memory) -> "VectorMeta":
        return cls(
            scope=memory.scope,
            agent_id=memory.agent_id,
            topic_id=memory.topic_id,
            created_at=memory.created_at,
        )


@dataclass(frozen=True, slots=True)
class SearchFilter:
    """Restrict a search to one scope and/or owner."""

    scope: MemoryScope | None = None
    agent_id: str | None = None
    topic_id: str | None = None

    def matches(self, meta: VectorMeta) -> bool:
        if self.scope is not None and meta.scope != self.scope:
            return False
        if self.agent_id is not None and meta.agent_id != self.agent_id:
            return False
        if self.topic_id is not None and meta.topic_id != self.topic_id:
            return False
        return True


@dataclass(slots=True)
class _Entry:
    vector: np.ndarray  # unit length, float32
    meta: VectorMeta


class VectorIndex:
    """Embedding-keyed similarity search over memory ids.

    Similarity is cosine similarity; vectors are normalized on upsert so a
    search is a single matrix-vector product.
    """

    def __init__(
        self,
        vector_dir: str | Path,
        embedding_service: EmbeddingService,
        min_similarity: float = 0.0,
    ):
        """
        Args:
            vector_dir: Directory holding one file per memory id
            embedding_service: Bounded access to the embedding provider
            min_similarity: Results scoring below this are dropped
        """
        self._dir = Path(vector_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._embedding = embedding_service
        self._min_similarity = min_similarity
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, memory_id: str) -> bool:
        return memory_id in self._entries

    async def load(self) -> int:
        """Load every stored vector into memory; unreadable files are skipped."""
        loaded = await asyncio.to_thread(self._load_all)
        self._entries.update(loaded)
        logger.info(f"VectorIndex loaded {len(loaded)} vectors from {self._dir}")
        return len(loaded)

    def _load_all(self) -> dict[str, _Entry]:
        entries: dict[str, _Entry] = {}
        for path in sorted(self._dir.glob("*.json")):
            try:
                with open(path, encoding="utf-8") as f:
                    raw = json.load(f)
                entries[raw["id"]] = _Entry(
                    vector=self._normalize(raw["vector"]),
                    meta=VectorMeta(
                        scope=MemoryScope(raw["scope"]),
                        agent_id=raw.get("agent_id"),
                        topic_id=raw.get("topic_id"),
                        created_at=datetime.fromisoformat(raw["created_at"]),
                    ),
                )
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable vector file {path}: {e}")
        return entries

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        """Embed text through the provider.

        Raises:
            ProviderError: propagated from the embedding service
        """
        return await self._embedding.encode_single(text)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, memory_id: str, vector: list[float], meta: VectorMeta) -> None:
        """Store the vector for ``memory_id``, replacing any previous one."""
        normalized = self._normalize(vector)
        record = {
            "id": memory_id,
            "scope": meta.scope.value,
            "agent_id": meta.agent_id,
            "topic_id": meta.topic_id,
            "created_at": meta.created_at.isoformat(),
            "vector": normalized.tolist(),
        }
        path = self._path(memory_id)
        try:
            await asyncio.to_thread(self._write_atomic, path, record)
        except OSError as e:
            raise StorageError(f"Vector write failed: {e}", str(path)) from e

        self._entries[memory_id] = _Entry(vector=normalized, meta=meta)
        logger.debug(f"Vector upserted: {memory_id} (dim={normalized.shape[0]})")

    async def delete(self, memory_id: str) -> bool:
        """Remove the vector for ``memory_id``; returns whether one existed."""
        existed = self._entries.pop(memory_id, None) is not None
        path = self._path(memory_id)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            raise StorageError(f"Vector delete failed: {e}", str(path)) from e
        if existed:
            logger.debug(f"Vector deleted: {memory_id}")
        return existed

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query_vector: list[float],
        k: int,
        search_filter: SearchFilter | None = None,
    ) -> list[tuple[str, float]]:
        """Top-``k`` memory ids by descending cosine similarity.

        Ties are broken by more recent ``created_at``, then by id.
        """
        if k <= 0 or not self._entries:
            return []

        search_filter = search_filter or SearchFilter()
        candidates = [
            (memory_id, entry)
            for memory_id, entry in self._entries.items()
            if search_filter.matches(entry.meta)
        ]
        if not candidates:
            return []

        query = self._normalize(query_vector)
        dims = {entry.vector.shape[0] for _, entry in candidates}
        if dims != {query.shape[0]}:
            candidates = [
                (mid, entry) for mid, entry in candidates
                if entry.vector.shape[0] == query.shape[0]
            ]
            if not candidates:
                logger.warning(
                    f"No stored vectors match query dimension {query.shape[0]}"
                )
                return []

        matrix = np.stack([entry.vector for _, entry in candidates])
        scores = matrix @ query

        ranked = sorted(
            (
                (memory_id, float(score), entry.meta.created_at)
                for (memory_id, entry), score in zip(candidates, scores)
                if score >= self._min_similarity
            ),
            key=lambda item: (-item[1], -item[2].timestamp(), item[0]),
        )
        return [(memory_id, score) for memory_id, score, _ in ranked[:k]]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _path(self, memory_id: str) -> Path:
        if not memory_id or "/" in memory_id or "\\" in memory_id or memory_id in (".", ".."):
            raise ValidationError("memory_id", f"invalid id {memory_id!r}")
        return self._dir / f"{memory_id}.json"

    @staticmethod
    def _normalize(vector: list[float] | np.ndarray) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32)
        if arr.ndim != 1 or arr.size == 0:
            raise ValidationError("vector", "must be a non-empty 1-D sequence")
        norm = float(np.linalg.norm(arr))
        return arr / norm if norm > 0 else arr

    @staticmethod
    def _write_atomic(path: Path, record: dict) -> None:
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(record, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
