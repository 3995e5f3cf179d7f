"""Context retrieval route."""

from fastapi import APIRouter

from ..memory_service import MemoryService
from ..schemas.api import ErrorResponse, RetrieveRequest, RetrieveResponse


def init_retrieval_routes(service: MemoryService) -> APIRouter:
    """
    Create the /retrieve route.

    Args:
        service: MemoryService backing the endpoint.

    Returns:
        APIRouter: Router with the retrieval endpoint.
    """
    router = APIRouter(tags=["retrieval"])

    @router.post(
        "/retrieve",
        response_model=RetrieveResponse,
        responses={400: {"model": ErrorResponse}},
    )
    async def retrieve(request: RetrieveRequest):
        """
        Assemble memories and recent messages for the next agent turn.

        ``total_tokens`` never exceeds ``token_budget``. When the embedding
        provider is unavailable the response carries ``degraded=true`` and
        recent messages only.
        """
        context = await service.retrieve(
            request.query,
            agent_id=request.agent_id,
            topic_id=request.topic_id,
            max_recent_messages=request.max_recent_messages,
            token_budget=request.token_budget,
        )
        return RetrieveResponse(
            **context.model_dump(),
            formatted_context=context.render(),
        )

    return router
