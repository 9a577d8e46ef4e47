"""
Pydantic models for API request/response schemas.

Operation results (CreateSandboxResult, CommandResult, ...) are returned
as-is from ephemera.models; only request bodies and HTTP-only payloads
live here.
"""
from typing import List, Optional
from pydantic import BaseModel, Field


# =============================================================================
# Sandbox Endpoint Schemas
# =============================================================================


class ExecRequest(BaseModel):
    """Request body for POST /v1/sandboxes/{id}/exec."""

    command: str = Field(..., min_length=1, description="Shell command, run with sh -c")


class FileUrlRequest(BaseModel):
    """Request body for POST /v1/sandboxes/{id}/files."""

    path: str = Field(..., min_length=1, description="Absolute file path inside the sandbox")


class SandboxSummary(BaseModel):
    """One tracked sandbox."""

    sandbox_id: str
    status: str
    created_at: str = Field(..., description="ISO timestamp of creation")
    expires_at: str = Field(..., description="ISO timestamp of automatic destruction")


class SandboxListResponse(BaseModel):
    """Response body for GET /v1/sandboxes."""

    sandboxes: List[SandboxSummary]


# =============================================================================
# Health Schemas
# =============================================================================


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str = Field(..., description="Health status")
    version: str = Field(..., description="API version")
    active_sandboxes: int = Field(0, description="Sandboxes currently tracked")


# =============================================================================
# Error Schemas
# =============================================================================


class ErrorDetail(BaseModel):
    """Error detail."""

    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")
    request_id: Optional[str] = Field(None, description="Request ID for tracing")


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: ErrorDetail
