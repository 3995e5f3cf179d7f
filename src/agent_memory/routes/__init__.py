"""
Route modules for the agent memory HTTP API.

Routers are split by concern:

- **agent_routes**: `/agents`, `/agents/{agent_id}/topics`
- **memory_routes**: `/memories` CRUD and `/memories/{id}/reactivate`
- **message_routes**: `/messages` append, paging and search
- **retrieval_routes**: `/retrieve`
- **token_routes**: `/tokens/count`, `/tokens/budget/...`, `/tokens/usage/...`

Every router is tagged for the OpenAPI docs at `/docs`.
"""

from fastapi import APIRouter

from ..memory_service import MemoryService
from ..schemas.api import HealthResponse
from .agent_routes import init_agent_routes
from .memory_routes import init_memory_routes
from .message_routes import init_message_routes
from .retrieval_routes import init_retrieval_routes
from .token_routes import init_token_routes


def init_api_routes(service: MemoryService) -> APIRouter:
    """
    Create and return the combined API router.

    Args:
        service: MemoryService shared by every endpoint.

    Returns:
        APIRouter: Router with all endpoints.
    """
    router = APIRouter()

    @router.get("/health", response_model=HealthResponse, tags=["health"])
    async def health():
        return await service.health()

    router.include_router(init_agent_routes(service))
    router.include_router(init_memory_routes(service))
    router.include_router(init_message_routes(service))
    router.include_router(init_retrieval_routes(service))
    router.include_router(init_token_routes(service))

    return router
