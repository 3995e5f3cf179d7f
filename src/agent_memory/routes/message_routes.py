"""Conversation log routes."""

from typing import Optional

from fastapi import APIRouter, Query

from ..memory_service import MemoryService
from ..schemas.api import (
    ErrorResponse,
    MessageAppendRequest,
    MessageAppendResponse,
    MessageListResponse,
)


def init_message_routes(service: MemoryService) -> APIRouter:
    """
    Create routes for appending to and paging through topic logs.

    Args:
        service: MemoryService backing the endpoints.

    Returns:
        APIRouter: Router with /messages endpoints.
    """
    router = APIRouter(prefix="/messages", tags=["messages"])

    @router.post(
        "",
        response_model=MessageAppendResponse,
        status_code=201,
        responses={400: {"model": ErrorResponse}},
    )
    async def append_message(request: MessageAppendRequest):
        """
        Append a message to its topic log.

        The topic (and its agent) are created on first use. User messages
        are scanned for corrections and preferences; memories learned from
        the message are listed in ``learned_memory_ids``.
        """
        result = await service.append_message(
            request.agent_id,
            request.topic_id,
            request.role,
            request.content,
            metadata=request.metadata,
        )
        return MessageAppendResponse(
            message=result.message,
            offset=result.offset,
            learned_memory_ids=[m.id for m in result.learned],
        )

    @router.get(
        "/{agent_id}/{topic_id}",
        response_model=MessageListResponse,
        responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    )
    async def read_messages(
        agent_id: str,
        topic_id: str,
        from_offset: Optional[int] = Query(None, ge=0),
        limit: Optional[int] = Query(None, ge=0),
        last: Optional[int] = Query(None, ge=0),
    ):
        """
        Page through a topic's history in file order.

        Args:
            from_offset: Start at this record offset (a record boundary or the
                end of the log); use the previous page's ``next_offset``
            limit: Maximum number of messages
            last: Return only the last N messages (overrides the other two)
        """
        messages, next_offset = await service.read_page(
            agent_id, topic_id, from_offset=from_offset, limit=limit, last=last
        )
        return MessageListResponse(
            messages=messages, count=len(messages), next_offset=next_offset
        )

    @router.get(
        "/{agent_id}/{topic_id}/search",
        response_model=MessageListResponse,
        responses={404: {"model": ErrorResponse}},
    )
    async def search_messages(agent_id: str, topic_id: str, q: str = Query(..., min_length=1)):
        """Case-insensitive substring search over a topic's messages."""
        messages = await service.search_messages(agent_id, topic_id, q)
        return MessageListResponse(messages=messages, count=len(messages))

    return router
