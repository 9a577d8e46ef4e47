"""
ephemera - Disposable, resource-capped sandboxes for running shell commands.

Core API:
    from ephemera import SandboxCore, SandboxConfig

    core = SandboxCore(SandboxConfig(ttl_seconds=600))

    created = await core.create_sandbox()
    result = await core.execute_command(created.sandbox_id, "python3 --version")
    if result.is_async:
        status = core.check_command_status(created.sandbox_id)

    link = await core.get_file_url(created.sandbox_id, "/root/report.csv")
    await core.destroy_sandbox(created.sandbox_id)

    await core.shutdown()

HTTP server:
    ephemera serve --port 3000
"""

__version__ = "0.1.0"

from ephemera.config import SandboxConfig  # noqa: E402
from ephemera.core import SandboxCore  # noqa: E402
from ephemera.exceptions import (  # noqa: E402
    EphemeraError,
    ExecutionError,
    ExtractionError,
    InspectionError,
    InvalidPathError,
    NotFoundError,
    ProvisioningError,
    SandboxError,
    SourceNotFoundError,
    TeardownError,
)
from ephemera.hints import detect_missing_package  # noqa: E402
from ephemera.models import (  # noqa: E402
    CommandResult,
    CommandStatusResult,
    CreateSandboxResult,
    DestroySandboxResult,
    ExtractArtifactResult,
    ExtractedArtifact,
    SandboxInstance,
    SandboxStatus,
    SandboxStatusResult,
)

__all__ = [
    "__version__",
    "SandboxConfig",
    "SandboxCore",
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
    "detect_missing_package",
    "CommandResult",
    "CommandStatusResult",
    "CreateSandboxResult",
    "DestroySandboxResult",
    "ExtractArtifactResult",
    "ExtractedArtifact",
    "SandboxInstance",
    "SandboxStatus",
    "SandboxStatusResult",
]
