"""
Records and result payloads shared by the sandbox core and the HTTP layer.

- SandboxInstance, ExtractedArtifact: in-memory records owned by the core
- *Result models: what every core operation returns, serialized as-is
  by the server
- format_file_size, format_duration: human-readable strings for messages
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class SandboxStatus(str, Enum):
    """
    Lifecycle status of a tracked sandbox.

    creating -> running -> stopped. There is no transition back to running.
    create() registers instances at RUNNING once provisioning succeeds.
    """

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SandboxInstance:
    """In-memory record of one sandbox. Only SandboxManager mutates it."""

    sandbox_id: str
    created_at: datetime
    expires_at: datetime
    status: SandboxStatus = SandboxStatus.CREATING

    def seconds_until_expiry(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        return max(0.0, (self.expires_at - now).total_seconds())


@dataclass
class ExtractedArtifact:
    """
    A file copied out of a sandbox into host storage.

    Owned by exactly one sandbox; removed when that sandbox is destroyed.
    The file-serving layer uses local_path, file_name, content_type and size.
    """

    artifact_id: str
    sandbox_id: str
    original_path: str
    local_path: str
    file_name: str
    content_type: str
    size: int
    created_at: datetime


# =============================================================================
# Operation results
# =============================================================================


class CoreResult(BaseModel):
    """
    Structured outcome of a core operation.

    success is False for any failure; error_code names the exception class
    the failure was translated from (e.g. "NotFoundError").
    """

    model_config = ConfigDict(extra="forbid")

    success: bool
    message: str
    error_code: Optional[str] = None


class CreateSandboxResult(CoreResult):
    sandbox_id: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class SandboxStatusResult(CoreResult):
    """
    Tri-state inspection result.

    success and exists: the runtime reports the sandbox with status.
    success and not exists: the runtime says it does not exist.
    not success: the status query failed ambiguously.
    """

    exists: bool = False
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class DestroySandboxResult(CoreResult):
    existed: bool = False


class CommandResult(BaseModel):
    """
    Result of execute().

    is_async=True means "no definitive result yet", not that the command
    succeeded. success=False with is_async=False means the command is known
    to have failed or could not be started.
    """

    model_config = ConfigDict(extra="forbid")

    success: bool
    output: str
    is_async: bool = False
    exit_code: Optional[int] = None
    error_code: Optional[str] = None

    @property
    def message(self) -> str:
        return self.output


class CommandStatusResult(CoreResult):
    state: Literal["none", "running", "completed"] = "none"
    command: Optional[str] = None
    output: Optional[str] = None
    exit_code: Optional[int] = None


class ExtractArtifactResult(CoreResult):
    artifact_id: Optional[str] = None
    url: Optional[str] = None
    file_name: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None


def format_file_size(size: int) -> str:
    """Human-readable byte count (B, KB, MB, GB)."""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    return f"{size / (1024 * 1024 * 1024):.1f} GB"


def format_duration(seconds: float) -> str:
    """Coarse human-readable duration: "2 hours", "30 minutes", "45 seconds"."""
    if seconds >= 3600 and seconds % 3600 == 0:
        hours = int(seconds // 3600)
        return f"{hours} hour{'s' if hours != 1 else ''}"
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g} seconds"


__all__ = [
    "SandboxStatus",
    "SandboxInstance",
    "ExtractedArtifact",
    "CoreResult",
    "CreateSandboxResult",
    "SandboxStatusResult",
    "DestroySandboxResult",
    "CommandResult",
    "CommandStatusResult",
    "ExtractArtifactResult",
    "format_duration",
    "format_file_size",
    "utc_now",
]
