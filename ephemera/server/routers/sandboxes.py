"""
Sandbox endpoints.

POST   /v1/sandboxes                   - Create a sandbox
GET    /v1/sandboxes                   - List tracked sandboxes
GET    /v1/sandboxes/{id}              - Check sandbox status
DELETE /v1/sandboxes/{id}              - Destroy a sandbox
POST   /v1/sandboxes/{id}/exec         - Execute a shell command
GET    /v1/sandboxes/{id}/exec/status  - Last background command's status
POST   /v1/sandboxes/{id}/files        - Extract a file and get its URL

Operations answer 200 with the structured result; `success` and
`error_code` carry the outcome.
"""
from fastapi import APIRouter, Depends, Request

from ephemera.core import SandboxCore
from ephemera.models import (
    CommandResult,
    CommandStatusResult,
    CreateSandboxResult,
    DestroySandboxResult,
    ExtractArtifactResult,
    SandboxStatusResult,
)
from ephemera.server.auth import get_api_key
from ephemera.server.schemas import (
    ExecRequest,
    FileUrlRequest,
    SandboxListResponse,
    SandboxSummary,
)


router = APIRouter(
    prefix="/v1/sandboxes",
    tags=["sandboxes"],
    dependencies=[Depends(get_api_key)],
)


def get_core(request: Request) -> SandboxCore:
    return request.app.state.core


@router.post("", response_model=CreateSandboxResult)
async def create_sandbox(core: SandboxCore = Depends(get_core)) -> CreateSandboxResult:
    """
    Create a new sandbox.

    The sandbox is destroyed automatically when its TTL elapses.
    """
    return await core.create_sandbox()


@router.get("", response_model=SandboxListResponse)
async def list_sandboxes(core: SandboxCore = Depends(get_core)) -> SandboxListResponse:
    return SandboxListResponse(
        sandboxes=[
            SandboxSummary(
                sandbox_id=instance.sandbox_id,
                status=instance.status.value,
                created_at=instance.created_at.isoformat(),
                expires_at=instance.expires_at.isoformat(),
            )
            for instance in core.list_sandboxes()
        ]
    )


@router.get("/{sandbox_id}", response_model=SandboxStatusResult)
async def check_sandbox(
    sandbox_id: str, core: SandboxCore = Depends(get_core)
) -> SandboxStatusResult:
    return await core.check_sandbox(sandbox_id)


@router.delete("/{sandbox_id}", response_model=DestroySandboxResult)
async def destroy_sandbox(
    sandbox_id: str, core: SandboxCore = Depends(get_core)
) -> DestroySandboxResult:
    """Destroy a sandbox and every file URL it issued. Idempotent."""
    return await core.destroy_sandbox(sandbox_id)


@router.post("/{sandbox_id}/exec", response_model=CommandResult)
async def execute_command(
    sandbox_id: str,
    request_body: ExecRequest,
    core: SandboxCore = Depends(get_core),
) -> CommandResult:
    """
    Run a shell command in the sandbox.

    Answers within the command timeout. Longer commands keep running and
    answer with is_async=true; poll /exec/status for the result.
    """
    return await core.execute_command(sandbox_id, request_body.command)


@router.get("/{sandbox_id}/exec/status", response_model=CommandStatusResult)
async def check_command_status(
    sandbox_id: str, core: SandboxCore = Depends(get_core)
) -> CommandStatusResult:
    return core.check_command_status(sandbox_id)


@router.post("/{sandbox_id}/files", response_model=ExtractArtifactResult)
async def get_file_url(
    sandbox_id: str,
    request_body: FileUrlRequest,
    core: SandboxCore = Depends(get_core),
) -> ExtractArtifactResult:
    """Copy a file out of the sandbox and return its download URL."""
    return await core.get_file_url(sandbox_id, request_body.path)
