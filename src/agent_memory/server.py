"""HTTP server for the agent memory service.

Environment variables (all optional, see :meth:`MemoryConfig.from_env`):
    AGENT_MEMORY_DATA_DIR           Data root (default: ./memory_data)
    AGENT_MEMORY_EMBEDDING_PROVIDER "local" or "api"
    AGENT_MEMORY_HOST / _PORT       Bind address (default: 127.0.0.1:8420)
    AGENT_MEMORY_LOG_LEVEL          Log level (default: INFO)
"""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from loguru import logger
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from . import __version__
from .config import MemoryConfig
from .exceptions import NotFoundError, ProviderError, StorageError, ValidationError
from .memory_service import MemoryService
from .routes import init_api_routes

_STATUS_BY_ERROR: dict[type[Exception], int] = {
    ValidationError: 400,
    NotFoundError: 404,
    ProviderError: 503,
    StorageError: 500,
}


def _install_error_handlers(app: FastAPI) -> None:
    for exc_type, status in _STATUS_BY_ERROR.items():

        async def handler(request: Request, exc: Exception, status: int = status):
            if status >= 500:
                logger.error(f"{request.method} {request.url.path} failed: {exc}")
            else:
                logger.debug(f"{request.method} {request.url.path} -> {status}: {exc}")
            return JSONResponse({"error": str(exc)}, status_code=status)

        app.add_exception_handler(exc_type, handler)


def create_app(
    service: MemoryService | None = None,
    config: MemoryConfig | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        service: Service to expose; built from ``config`` when omitted
        config: Configuration used when ``service`` is omitted

    Returns:
        FastAPI app whose lifespan initializes and closes the service
    """
    service = service or MemoryService(config or MemoryConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.initialize()
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(
        title="Agent Memory",
        version=__version__,
        description="Durable, token-budgeted memory and context retrieval for agents",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)
    app.include_router(init_api_routes(service))
    app.state.memory_service = service
    return app


def main() -> None:
    """Start the HTTP server."""
    config = MemoryConfig.from_env()
    level = config.server.log_level.upper()

    logger.remove()
    logger.add(sys.stderr, level=level)

    logger.info(
        f"Agent Memory v{__version__} starting on "
        f"{config.server.host}:{config.server.port}"
    )
    uvicorn.run(
        create_app(config=config),
        host=config.server.host,
        port=config.server.port,
        log_level=level.lower(),
    )


if __name__ == "__main__":
    main()
