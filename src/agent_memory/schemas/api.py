"""
API request/response schemas.

Pydantic models for the OpenAPI documentation of every endpoint. Domain
models from :mod:`agent_memory.models` are returned directly where they
already have the right shape.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from ..models import Memory, MemoryScope, MemoryType, Message, RetrievedContext, Role


# =============================================================================
# Common responses
# =============================================================================

class ErrorResponse(BaseModel):
    """API error response schema."""

    error: str = Field(
        ...,
        description="Error message",
        json_schema_extra={"example": "memory not found: 7c9e6679"}
    )


class SuccessResponse(BaseModel):
    """API success response schema."""

    success: bool = Field(..., description="Whether the operation succeeded")
    message: Optional[str] = Field(None, description="Additional detail")


class HealthResponse(BaseModel):
    """Service health snapshot."""

    status: str = Field(..., json_schema_extra={"example": "ok"})
    vectors: int = Field(..., description="Vectors loaded in the index")
    pending_index: int = Field(..., description="Active memories awaiting indexing")
    token_scheme: str = Field(
        ..., description="Tokenization scheme", json_schema_extra={"example": "tiktoken:cl100k_base"}
    )


# =============================================================================
# Agents
# =============================================================================

class AgentCreateRequest(BaseModel):
    """Register or update an agent."""

    id: str = Field(..., min_length=1, json_schema_extra={"example": "asimov"})
    name: str = Field(..., min_length=1, json_schema_extra={"example": "Asimov"})
    model: str = Field("unknown", json_schema_extra={"example": "claude-sonnet"})
    context_limit: int = Field(128000, gt=0, description="Token ceiling of the agent's model")
    color: str = Field("#6366F1", description="Display color")


# =============================================================================
# Memories
# =============================================================================

class MemoryCreateRequest(BaseModel):
    """Create a memory directly."""

    scope: MemoryScope = Field(..., json_schema_extra={"example": "topic"})
    memory_type: MemoryType = Field(..., json_schema_extra={"example": "correction"})
    agent_id: Optional[str] = Field(None, json_schema_extra={"example": "asimov"})
    topic_id: Optional[str] = Field(None, json_schema_extra={"example": "project-setup"})
    content: str = Field(..., json_schema_extra={"example": "use v2 API not v1"})
    context: Optional[str] = Field(None, description="What prompted the memory")
    tags: list[str] = Field(default_factory=list)

    def to_memory(self) -> Memory:
        return Memory(**self.model_dump())


# =============================================================================
# Messages
# =============================================================================

class MessageAppendRequest(BaseModel):
    """Append one message to a topic log."""

    agent_id: str = Field(..., min_length=1, json_schema_extra={"example": "asimov"})
    topic_id: str = Field(..., min_length=1, json_schema_extra={"example": "project-setup"})
    role: Role = Field(..., json_schema_extra={"example": "user"})
    content: str = Field(..., json_schema_extra={"example": "Actually, use the v2 API."})
    metadata: Optional[dict[str, Any]] = None


class MessageAppendResponse(BaseModel):
    """Stored message, its log offset and memories learned from it."""

    message: Message
    offset: int = Field(..., ge=0, description="Byte offset of the record in the topic log")
    learned_memory_ids: list[str] = Field(default_factory=list)


class MessageListResponse(BaseModel):
    messages: list[Message]
    count: int
    next_offset: Optional[int] = Field(
        None,
        ge=0,
        description="Pass as from_offset to read the next page; an empty page marks the end",
    )


# =============================================================================
# Retrieval
# =============================================================================

class RetrieveRequest(BaseModel):
    """Assemble context for the next agent turn."""

    query: str = Field(..., json_schema_extra={"example": "How do I configure the database?"})
    agent_id: Optional[str] = Field(None, json_schema_extra={"example": "asimov"})
    topic_id: Optional[str] = Field(None, json_schema_extra={"example": "project-setup"})
    max_recent_messages: int = Field(10, ge=0)
    token_budget: Optional[int] = Field(None, ge=0, json_schema_extra={"example": 2000})


class RetrieveResponse(RetrievedContext):
    """Retrieved context plus its deterministic text rendering."""

    formatted_context: str = ""


# =============================================================================
# Tokens
# =============================================================================

class TokenCountRequest(BaseModel):
    text: str = Field(..., json_schema_extra={"example": "Hello, world"})


class TokenCountResponse(BaseModel):
    tokens: int = Field(..., ge=0)
    scheme: str = Field(..., description="Tokenization scheme used")
