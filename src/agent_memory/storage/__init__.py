"""Storage backends for agent memory.

Three stores evolve independently: the structured SQLite store, the
append-only conversation logs and the vector index.
"""

from __future__ import annotations

from .conversation_log import ConversationLog, LogRange
from .sqlite_store import SQLiteStore
from .vector_index import SearchFilter, VectorIndex, VectorMeta

__all__ = [
    "ConversationLog",
    "LogRange",
    "SQLiteStore",
    "SearchFilter",
    "VectorIndex",
    "VectorMeta",
]
