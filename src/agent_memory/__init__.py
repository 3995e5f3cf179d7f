"""
Agent Memory - durable, budget-aware memory for conversational agents.

Persists conversation history in append-only per-topic logs, learns
corrections and preferences from user messages, and assembles a
token-bounded context bundle before every agent turn.
"""

__version__ = "0.1.0"

from .config import MemoryConfig
from .embedding import EmbeddingService, HttpEmbeddingProvider, LocalEmbeddingProvider
from .exceptions import (
    MemorySystemError,
    NotFoundError,
    ProviderError,
    StorageError,
    ValidationError,
)
from .memory_service import AppendResult, MemoryService
from .memory_store import MemoryStore
from .models import (
    Agent,
    Memory,
    MemoryScope,
    MemoryType,
    Message,
    RetrievedContext,
    RetrievedMemory,
    Role,
    TokenBudget,
    Topic,
)
from .retrieval import RetrievalEngine
from .self_learning import DraftMemory, LearningPipeline, MemoryClassifier, PatternLearningDetector
from .token_accountant import TokenAccountant
from .token_counter import TokenCounter

__all__ = [
    "__version__",
    "MemoryConfig",
    "EmbeddingService",
    "HttpEmbeddingProvider",
    "LocalEmbeddingProvider",
    "MemorySystemError",
    "NotFoundError",
    "ProviderError",
    "StorageError",
    "ValidationError",
    "AppendResult",
    "MemoryService",
    "MemoryStore",
    "Agent",
    "Memory",
    "MemoryScope",
    "MemoryType",
    "Message",
    "RetrievedContext",
    "RetrievedMemory",
    "Role",
    "TokenBudget",
    "Topic",
    "RetrievalEngine",
    "DraftMemory",
    "LearningPipeline",
    "MemoryClassifier",
    "PatternLearningDetector",
    "TokenAccountant",
    "TokenCounter",
]
