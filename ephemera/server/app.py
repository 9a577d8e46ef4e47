"""
FastAPI application factory.

Usage:
    from ephemera.server.app import create_app

    app = create_app()

Or run directly:
    uvicorn ephemera.server:app
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ephemera import __version__
from ephemera.core import SandboxCore
from ephemera.server.config import get_settings
from ephemera.server.exceptions import APIError
from ephemera.server.middleware import RequestTrackingMiddleware
from ephemera.server.routers import files, health, sandboxes
from ephemera.server.schemas import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)


def create_app(core: Optional[SandboxCore] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        core: Pre-built SandboxCore (tests inject one over a fake runtime).
            When omitted, one is built from Settings at startup.

    Returns:
        Configured FastAPI application instance.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # Startup
        if app.state.core is None:
            app.state.core = SandboxCore(get_settings().sandbox_config())
        logger.info("Sandbox server ready")

        yield

        # Shutdown
        await app.state.core.shutdown()

    app = FastAPI(
        title="Ephemera API",
        description="Disposable, resource-capped sandboxes for running shell commands",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.core = core

    app.add_middleware(RequestTrackingMiddleware)

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
        """Handle custom API errors."""
        request_id = exc.request_id or getattr(request.state, "request_id", None)
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=ErrorDetail(
                    code=exc.code,
                    message=exc.message,
                    request_id=request_id,
                )
            ).model_dump(),
            headers={"X-Request-ID": request_id or "unknown"},
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected errors."""
        request_id = getattr(request.state, "request_id", "unknown")
        logger.exception("Unhandled error [%s]", request_id)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error=ErrorDetail(
                    code="internal_error",
                    message="An internal error occurred",
                    request_id=request_id,
                )
            ).model_dump(),
            headers={"X-Request-ID": request_id},
        )

    app.include_router(health.router)
    app.include_router(sandboxes.router)
    app.include_router(files.router)

    return app


# Default app instance for uvicorn
app = create_app()
