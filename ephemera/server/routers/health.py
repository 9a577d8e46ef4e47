"""
Health check endpoint.

Provides basic health status for load balancers and monitoring.
"""
from fastapi import APIRouter, Request

from ephemera import __version__
from ephemera.server.schemas import HealthResponse


router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """
    Health check endpoint.

    Does not require authentication.
    """
    core = request.app.state.core
    return HealthResponse(
        status="healthy",
        version=__version__,
        active_sandboxes=len(core.list_sandboxes()) if core is not None else 0,
    )
