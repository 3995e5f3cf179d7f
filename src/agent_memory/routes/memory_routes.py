"""Memory CRUD routes."""

from typing import Optional

from fastapi import APIRouter
from starlette.responses import JSONResponse

from ..memory_service import MemoryService
from ..models import Memory, MemoryScope
from ..schemas.api import ErrorResponse, MemoryCreateRequest, SuccessResponse


def init_memory_routes(service: MemoryService) -> APIRouter:
    """
    Create routes for memory management.

    Args:
        service: MemoryService backing the endpoints.

    Returns:
        APIRouter: Router with /memories endpoints.
    """
    router = APIRouter(prefix="/memories", tags=["memories"])

    @router.get("", response_model=list[Memory])
    async def list_memories(
        scope: Optional[MemoryScope] = None,
        agent_id: Optional[str] = None,
        topic_id: Optional[str] = None,
        active: Optional[bool] = None,
    ):
        """List memories matching every given filter, oldest first."""
        return await service.list_memories(
            scope=scope, agent_id=agent_id, topic_id=topic_id, active=active
        )

    @router.post(
        "",
        response_model=Memory,
        status_code=201,
        responses={400: {"model": ErrorResponse}},
    )
    async def create_memory(request: MemoryCreateRequest):
        """
        Create and index a memory.

        The memory is stored even if the embedding provider is down; it is
        then reported with ``index_status="pending"`` and indexed later.
        """
        return await service.create_memory(request.to_memory())

    @router.get(
        "/{memory_id}",
        response_model=Memory,
        responses={404: {"model": ErrorResponse}},
    )
    async def get_memory(memory_id: str):
        return await service.get_memory(memory_id)

    @router.delete(
        "/{memory_id}",
        response_model=SuccessResponse,
        responses={404: {"model": ErrorResponse}},
    )
    async def delete_memory(memory_id: str, hard: bool = False):
        """
        Delete a memory.

        Args:
            memory_id: Memory to delete
            hard: Remove the record instead of deactivating it
        """
        await service.delete_memory(memory_id, hard=hard)
        return JSONResponse(
            {
                "success": True,
                "message": f"{'Hard' if hard else 'Soft'}-deleted {memory_id}",
            },
            status_code=200,
        )

    @router.post(
        "/{memory_id}/reactivate",
        response_model=Memory,
        responses={404: {"model": ErrorResponse}},
    )
    async def reactivate_memory(memory_id: str):
        """Undo a soft delete."""
        return await service.reactivate_memory(memory_id)

    return router
