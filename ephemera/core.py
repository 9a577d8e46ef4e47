"""
SandboxCore: the operations exposed to the protocol layer.

Wires the components from one static SandboxConfig:

    runtime (ContainerRuntimeClient unless injected)
      -> ArtifactStore(runtime)
      -> SandboxManager(runtime, artifacts)
      -> CommandExecutor(runtime, manager)

Usage:
    core = SandboxCore(SandboxConfig())

    created = await core.create_sandbox()
    result = await core.execute_command(created.sandbox_id, "echo hi")
    url = await core.get_file_url(created.sandbox_id, "/tmp/out.txt")

    await core.shutdown()
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ephemera.artifacts import ArtifactStore
from ephemera.config import SandboxConfig
from ephemera.executor import CommandExecutor
from ephemera.lifecycle import SandboxManager
from ephemera.models import (
    CommandResult,
    CommandStatusResult,
    CreateSandboxResult,
    DestroySandboxResult,
    ExtractArtifactResult,
    ExtractedArtifact,
    SandboxInstance,
    SandboxStatusResult,
)
from ephemera.runtime import ContainerRuntimeClient, SandboxRuntime

logger = logging.getLogger(__name__)


class SandboxCore:
    """
    Facade over the lifecycle manager, executor and artifact store.

    Every operation returns a structured result; runtime failures never
    escape as exceptions.
    """

    def __init__(
        self,
        config: Optional[SandboxConfig] = None,
        runtime: Optional[SandboxRuntime] = None,
    ) -> None:
        self.config = config or SandboxConfig()
        self.runtime: SandboxRuntime = runtime or ContainerRuntimeClient(self.config)
        self.artifacts = ArtifactStore(self.config, self.runtime)
        self.sandboxes = SandboxManager(self.config, self.runtime, self.artifacts)
        self.executor = CommandExecutor(self.config, self.runtime, self.sandboxes)
        self.sandboxes.add_destroy_listener(self.executor.forget)
        self._closed = False

    async def create_sandbox(self) -> CreateSandboxResult:
        return await self.sandboxes.create()

    async def check_sandbox(self, sandbox_id: str) -> SandboxStatusResult:
        return await self.sandboxes.inspect(sandbox_id)

    async def execute_command(self, sandbox_id: str, command: str) -> CommandResult:
        return await self.executor.execute(sandbox_id, command)

    def check_command_status(self, sandbox_id: str) -> CommandStatusResult:
        return self.executor.check_command_status(sandbox_id)

    async def destroy_sandbox(self, sandbox_id: str) -> DestroySandboxResult:
        return await self.sandboxes.destroy(sandbox_id)

    async def get_file_url(
        self, sandbox_id: str, path: str, base_url: Optional[str] = None
    ) -> ExtractArtifactResult:
        """Extract path from the sandbox and return a download URL for it."""
        return await self.artifacts.extract(sandbox_id, path, base_url=base_url)

    def lookup_artifact(self, artifact_id: str) -> Optional[ExtractedArtifact]:
        """File-serving lookup. Callers must still check the host file exists."""
        return self.artifacts.lookup(artifact_id)

    def list_sandboxes(self) -> List[SandboxInstance]:
        return self.sandboxes.list_active()

    def stats(self) -> Dict[str, Any]:
        return {
            **self.sandboxes.stats(),
            "artifact_count": len(self.artifacts),
            "running_commands": self.executor.running_count,
        }

    async def shutdown(self) -> None:
        """
        Release everything: artifacts, then sandboxes, then detached commands.

        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down sandbox core...")
        await self.artifacts.remove_all()
        await self.sandboxes.shutdown_all()
        await self.executor.shutdown()
        logger.info("Sandbox core shut down")


__all__ = ["SandboxCore"]
