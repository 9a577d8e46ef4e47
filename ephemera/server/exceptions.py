"""
HTTP exception types for the API server.
"""

from typing import Optional


class APIError(Exception):
    """Base exception for API errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, request_id: Optional[str] = None) -> None:
        self.message = message
        self.request_id = request_id
        super().__init__(message)


class AuthenticationError(APIError):
    """Invalid or missing authentication credentials."""

    status_code = 401
    code = "authentication_error"


class ArtifactNotFoundError(APIError):
    """Artifact is unknown, or its sandbox (and file) is gone."""

    status_code = 404
    code = "artifact_not_found"
