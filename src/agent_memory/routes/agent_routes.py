"""Agent and topic routes."""

from fastapi import APIRouter
from starlette.responses import JSONResponse

from ..memory_service import MemoryService
from ..models import Agent, Topic
from ..schemas.api import AgentCreateRequest, ErrorResponse, SuccessResponse


def init_agent_routes(service: MemoryService) -> APIRouter:
    """
    Create routes for agent management.

    Args:
        service: MemoryService backing the endpoints.

    Returns:
        APIRouter: Router with /agents endpoints.
    """
    router = APIRouter(prefix="/agents", tags=["agents"])

    @router.get("", response_model=list[Agent])
    async def list_agents():
        return await service.list_agents()

    @router.post("", response_model=Agent, status_code=201)
    async def register_agent(request: AgentCreateRequest):
        """Create an agent, or update the one with the same id."""
        return await service.register_agent(Agent(**request.model_dump()))

    @router.delete(
        "/{agent_id}",
        response_model=SuccessResponse,
        responses={404: {"model": ErrorResponse}},
    )
    async def delete_agent(agent_id: str):
        """Delete an agent with its topics, logs and scoped memories."""
        await service.delete_agent(agent_id)
        return JSONResponse(
            {"success": True, "message": f"Deleted agent {agent_id}"},
            status_code=200,
        )

    @router.get(
        "/{agent_id}/topics",
        response_model=list[Topic],
        responses={404: {"model": ErrorResponse}},
    )
    async def list_topics(agent_id: str):
        return await service.list_topics(agent_id)

    return router
