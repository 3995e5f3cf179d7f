"""Agent memory core data models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class MemoryScope(str, Enum):
    GLOBAL = "global"
    AGENT = "agent"
    TOPIC = "topic"
    PERSONAL = "personal"


class MemoryType(str, Enum):
    CORRECTION = "correction"
    PREFERENCE = "preference"
    FACT = "fact"
    WORKFLOW = "workflow"
    CONSTRAINT = "constraint"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class IndexStatus(str, Enum):
    INDEXED = "indexed"
    PENDING = "pending"  # stored but not yet searchable


class Agent(BaseModel):
    """An agent identity; owns its topics."""

    id: str
    name: str
    model: str = "unknown"
    context_limit: int = Field(default=128000, gt=0)
    color: str = "#6366F1"
    created_at: datetime = Field(default_factory=_utcnow)


class Topic(BaseModel):
    """A conversation thread belonging to one agent."""

    id: str
    agent_id: str
    name: str
    created_at: datetime = Field(default_factory=_utcnow)
    last_message_at: datetime | None = None
    message_count: int = 0
    token_count: int = 0


class Memory(BaseModel):
    """A learned memory that persists across conversations."""

    id: str = Field(default_factory=_uuid)
    scope: MemoryScope
    memory_type: MemoryType
    agent_id: str | None = None
    topic_id: str | None = None
    content: str
    context: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    last_used_at: datetime | None = None
    retrieval_count: int = Field(default=0, ge=0)
    active: bool = True
    index_status: IndexStatus = IndexStatus.PENDING

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, tags: list[str]) -> list[str]:
        # Tags behave as a set; keep a stable order for storage
        return sorted({t.strip() for t in tags if t and t.strip()})


class Message(BaseModel):
    """A single conversation message; one record in a topic log."""

    id: str = Field(default_factory=_uuid)
    agent_id: str
    topic_id: str
    role: Role
    content: str
    tokens: int = 0
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] | None = None


class MessageIndexEntry(BaseModel):
    """Pointer into a topic log, enabling seek without a full scan."""

    id: str
    agent_id: str
    topic_id: str
    role: Role
    tokens: int
    timestamp: datetime
    file_offset: int


class RecoveryReport(BaseModel):
    """Outcome of validating a topic log's tail on open."""

    agent_id: str
    topic_id: str
    truncated_bytes: int = 0
    reindexed: int = 0
    dropped_index_entries: int = 0

    @property
    def clean(self) -> bool:
        return (
            self.truncated_bytes == 0
            and self.reindexed == 0
            and self.dropped_index_entries == 0
        )


class RetrievedMemory(BaseModel):
    """A memory selected for injection, with its similarity score."""

    id: str
    scope: MemoryScope
    memory_type: MemoryType
    content: str
    score: float
    tokens: int


class RetrievedContext(BaseModel):
    """Token-bounded context bundle handed to the caller before a turn."""

    memories: list[RetrievedMemory] = Field(default_factory=list)
    recent_messages: list[Message] = Field(default_factory=list)
    total_tokens: int = 0
    degraded: bool = False

    def is_empty(self) -> bool:
        return not self.memories and not self.recent_messages

    def render(self) -> str:
        """Deterministic text form: memories by rank, then messages in order."""
        parts: list[str] = []
        if self.memories:
            parts.append("## Relevant Memories\n")
            for memory in self.memories:
                parts.append(f"- [{memory.memory_type.value}] {memory.content}\n")
        if self.recent_messages:
            if parts:
                parts.append("\n")
            parts.append("## Recent Conversation Context\n")
            for msg in self.recent_messages:
                parts.append(f"{msg.role.value}: {msg.content}\n")
        return "".join(parts)


class TokenBudget(BaseModel):
    """Token usage of a topic against its agent's context limit."""

    agent_id: str
    topic_id: str
    history_tokens: int
    memory_tokens: int
    used: int
    limit: int
    remaining: int
    utilization: float
    near_limit: bool
    status: str  # "ok", "warning", "critical"


class TokenUsage(BaseModel):
    """Per-role token totals for a topic."""

    total: int = 0
    system: int = 0
    user: int = 0
    assistant: int = 0
    tool: int = 0
    limit: int = 0
    utilization: float = 0.0

    def add(self, role: Role, tokens: int) -> None:
        self.total += tokens
        setattr(self, role.value, getattr(self, role.value) + tokens)
        self.utilization = self.total / self.limit if self.limit else 0.0
