"""Token counting and budget routes."""

from fastapi import APIRouter

from ..memory_service import MemoryService
from ..models import TokenBudget, TokenUsage
from ..schemas.api import ErrorResponse, TokenCountRequest, TokenCountResponse


def init_token_routes(service: MemoryService) -> APIRouter:
    """
    Create routes for token accounting.

    Args:
        service: MemoryService backing the endpoints.

    Returns:
        APIRouter: Router with /tokens endpoints.
    """
    router = APIRouter(prefix="/tokens", tags=["tokens"])

    @router.post("/count", response_model=TokenCountResponse)
    async def count_tokens(request: TokenCountRequest):
        return TokenCountResponse(
            tokens=service.count_tokens(request.text),
            scheme=service.accountant.counter.scheme,
        )

    @router.get(
        "/budget/{agent_id}/{topic_id}",
        response_model=TokenBudget,
        responses={404: {"model": ErrorResponse}},
    )
    async def get_budget(agent_id: str, topic_id: str):
        """
        Token usage of a topic against its agent's context limit.

        ``near_limit`` signals the caller to summarize the conversation.
        """
        return await service.budget_for(agent_id, topic_id)

    @router.get(
        "/usage/{agent_id}/{topic_id}",
        response_model=TokenUsage,
        responses={404: {"model": ErrorResponse}},
    )
    async def get_usage(agent_id: str, topic_id: str):
        """Per-role history token totals for a topic."""
        return await service.usage_for(agent_id, topic_id)

    return router
