"""
API schema module.

Pydantic request/response schemas for the HTTP API.
"""

from .api import (
    # Agents
    AgentCreateRequest,
    # Memories
    MemoryCreateRequest,
    # Messages
    MessageAppendRequest,
    MessageAppendResponse,
    MessageListResponse,
    # Retrieval
    RetrieveRequest,
    RetrieveResponse,
    # Tokens
    TokenCountRequest,
    TokenCountResponse,
    # Common
    ErrorResponse,
    HealthResponse,
    SuccessResponse,
)

__all__ = [
    "AgentCreateRequest",
    "MemoryCreateRequest",
    "MessageAppendRequest",
    "MessageAppendResponse",
    "MessageListResponse",
    "RetrieveRequest",
    "RetrieveResponse",
    "TokenCountRequest",
    "TokenCountResponse",
    "ErrorResponse",
    "HealthResponse",
    "SuccessResponse",
]
