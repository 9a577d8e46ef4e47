"""
File-serving endpoint for extracted artifacts.

GET /files/{artifact_id} - Download an artifact

Artifact ids are unguessable and the URL is handed out by the sandbox API,
so this route does not require the API key.
"""
import os

from fastapi import APIRouter, Request
from fastapi.responses import FileResponse

from ephemera.server.exceptions import ArtifactNotFoundError


router = APIRouter(tags=["files"])


@router.get("/files/{artifact_id}")
async def download_file(artifact_id: str, request: Request) -> FileResponse:
    """
    Stream an artifact with its content type and original file name.

    404 when the artifact is unknown or its host file is already gone.
    """
    artifact = request.app.state.core.lookup_artifact(artifact_id)
    if artifact is None or not os.path.isfile(artifact.local_path):
        raise ArtifactNotFoundError(f"File not found: {artifact_id}")

    return FileResponse(
        artifact.local_path,
        media_type=artifact.content_type,
        filename=artifact.file_name,
    )
