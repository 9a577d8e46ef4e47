"""
Typed exceptions for ephemera.

Provides structured error handling with:
- EphemeraError: Base exception for all ephemera errors
- ProvisioningError: A sandbox could not be created
- NotFoundError: A referenced sandbox or artifact does not exist
- InspectionError: A status query failed ambiguously
- InvalidPathError: An artifact source path failed validation
- SourceNotFoundError: The source path is valid but absent in the sandbox
- ExtractionError: Copying a file out of a sandbox failed
- ExecutionError: A command subprocess could not be spawned
- TeardownError: Removing a sandbox failed for a reason other than absence

These are raised inside the runtime client and caught by the core
operations, which turn them into unsuccessful results. Callers of the core
never need to catch them.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EphemeraError(Exception):
    """Base exception for all ephemera errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context as key-value pairs
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging or API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class SandboxError(EphemeraError):
    """Error tied to one sandbox.

    Attributes:
        sandbox_id: Identifier of the sandbox involved
        stderr: Raw runtime stderr, if the runtime produced any
    """

    def __init__(
        self,
        message: str,
        *,
        sandbox_id: Optional[str] = None,
        stderr: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if sandbox_id:
            details["sandbox_id"] = sandbox_id
        if stderr:
            details["stderr"] = stderr[:1000]  # Truncate for safety

        self.sandbox_id = sandbox_id
        self.stderr = stderr

        super().__init__(message, code=code, details=details)


class ProvisioningError(SandboxError):
    """Sandbox could not be created.

    Raised when the runtime `run` invocation exits non-zero, times out,
    or the runtime binary cannot be executed.
    """

    pass


class NotFoundError(SandboxError):
    """Referenced sandbox or artifact does not exist."""

    pass


class InspectionError(SandboxError):
    """Status query failed in a way that does not prove absence.

    Distinguished from NotFoundError by the runtime's error signature:
    only a recognised "no such container" message means the sandbox is gone.
    """

    pass


class InvalidPathError(SandboxError):
    """Artifact source path is not absolute or contains a `..` segment."""

    def __init__(self, message: str, *, path: Optional[str] = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", None) or {}
        if path is not None:
            details["path"] = path
        self.path = path
        super().__init__(message, details=details, **kwargs)


class SourceNotFoundError(SandboxError):
    """Source path passed validation but does not exist inside the sandbox."""

    pass


class ExtractionError(SandboxError):
    """Copying a file out of the sandbox failed for any other reason."""

    pass


class ExecutionError(SandboxError):
    """Command subprocess could not be spawned (e.g. runtime binary missing)."""

    pass


class TeardownError(SandboxError):
    """Force-removing a sandbox failed for a reason other than absence."""

    pass


__all__ = [
    "EphemeraError",
    "SandboxError",
    "ProvisioningError",
    "NotFoundError",
    "InspectionError",
    "InvalidPathError",
    "SourceNotFoundError",
    "ExtractionError",
    "ExecutionError",
    "TeardownError",
]
