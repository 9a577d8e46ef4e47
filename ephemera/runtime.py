"""
Container runtime detection and the subprocess-backed runtime client.

Handles detection of available container runtimes (Podman vs Docker) and
wraps the five calls the core makes against a runtime:

    provision      <runtime> run -d --name <id> <limits> <image> sleep infinity
    inspect_status <runtime> inspect --format {{.State.Status}} <id>
    spawn_exec     <runtime> exec <id> sh -c <command>
    copy_out       <runtime> cp <id>:<path> <dest>
    force_remove   <runtime> rm -f <id>

Every call is awaited with its own timeout and failures are translated into
ephemera.exceptions. "Does not exist" is recognised from the runtime's own
error text and reported as a value (None / False), not an exception.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import subprocess
from enum import Enum
from typing import Optional, Protocol, Sequence, Tuple

from ephemera.config import SandboxConfig
from ephemera.exceptions import (
    ExecutionError,
    ExtractionError,
    InspectionError,
    ProvisioningError,
    SourceNotFoundError,
    TeardownError,
)

logger = logging.getLogger(__name__)


class ContainerRuntime(Enum):
    PODMAN = "podman"
    DOCKER = "docker"


def _check_podman_works() -> bool:
    """Verify podman is actually usable."""
    try:
        subprocess.run(["podman", "info"], capture_output=True, check=True, timeout=5)
        return True
    except (subprocess.SubprocessError, OSError):
        return False


def _check_docker_works() -> bool:
    """Verify docker is actually usable."""
    try:
        subprocess.run(["docker", "info"], capture_output=True, check=True, timeout=5)
        return True
    except (subprocess.SubprocessError, OSError):
        return False


def detect_runtime() -> ContainerRuntime:
    """
    Detect available container runtime.

    Priority:
    1. Podman (preferred for rootless/daemonless security)
    2. Docker (fallback)

    Raises:
        RuntimeError: If no supported runtime is found/working.
    """
    if shutil.which("podman") and _check_podman_works():
        logger.info("Detected container runtime: Podman")
        return ContainerRuntime.PODMAN

    if shutil.which("docker") and _check_docker_works():
        logger.info("Detected container runtime: Docker")
        return ContainerRuntime.DOCKER

    raise RuntimeError(
        "No container runtime available. Please install Podman (preferred) or Docker."
    )


def get_runtime_command(runtime: ContainerRuntime) -> str:
    """Return the CLI command for the runtime."""
    return runtime.value


def resolve_runtime(name: Optional[str]) -> ContainerRuntime:
    """Runtime named by configuration, or the detected one when name is None."""
    if name is None:
        return detect_runtime()
    try:
        return ContainerRuntime(name.lower())
    except ValueError:
        raise ValueError(
            f"Unsupported container runtime: {name!r} (expected 'podman' or 'docker')"
        ) from None


# Error text both runtimes print when the named container is absent.
_NO_SUCH_CONTAINER = re.compile(
    r"no such container|no such object|no container with name or id",
    re.IGNORECASE,
)

# Error text `cp` prints when the source path is absent inside the container.
_NO_SUCH_SOURCE = re.compile(
    r"no such file|could not find|not found in container",
    re.IGNORECASE,
)


def is_missing_container_error(stderr: str) -> bool:
    return bool(_NO_SUCH_CONTAINER.search(stderr))


def is_missing_source_error(stderr: str) -> bool:
    return bool(_NO_SUCH_SOURCE.search(stderr))


class SandboxRuntime(Protocol):
    """
    Protocol for the external runtime the core depends on.

    ContainerRuntimeClient implements it over the podman/docker CLI;
    tests inject an in-memory implementation.
    """

    async def provision(self, sandbox_id: str) -> None:
        """Start the long-lived sandbox process. Raises ProvisioningError."""
        ...

    async def inspect_status(self, sandbox_id: str) -> Optional[str]:
        """Live status string, or None if the sandbox does not exist.

        Raises InspectionError when the query fails ambiguously.
        """
        ...

    async def spawn_exec(self, sandbox_id: str, command: str) -> asyncio.subprocess.Process:
        """Start `sh -c command` inside the sandbox with stdout/stderr piped.

        Raises ExecutionError when the subprocess cannot be spawned.
        """
        ...

    async def copy_out(self, sandbox_id: str, source_path: str, dest_path: str) -> None:
        """Copy a file out of the sandbox.

        Raises SourceNotFoundError or ExtractionError.
        """
        ...

    async def force_remove(self, sandbox_id: str) -> bool:
        """Stop and remove the sandbox. False if it did not exist.

        Raises TeardownError on any other failure.
        """
        ...


class ContainerRuntimeClient:
    """
    SandboxRuntime backed by the podman or docker CLI.

    Each call spawns one runtime subprocess via asyncio and waits for it
    with the per-call timeout from SandboxConfig. A subprocess that outlives
    its timeout is killed.
    """

    def __init__(
        self,
        config: SandboxConfig,
        runtime: Optional[ContainerRuntime] = None,
    ) -> None:
        self._config = config
        self._runtime = runtime or resolve_runtime(config.runtime)

    @property
    def command(self) -> str:
        return get_runtime_command(self._runtime)

    def provision_args(self, sandbox_id: str) -> list[str]:
        """Full `run` command line for a new sandbox."""
        config = self._config
        return [
            self.command, "run", "-d",
            "--name", sandbox_id,
            # Resource limits (cgroups)
            f"--memory={config.memory_limit}",
            f"--cpus={config.cpu_limit}",
            f"--pids-limit={config.pids_limit}",
            # Drop all capabilities
            "--cap-drop=ALL",
            # No new privileges (prevent setuid binaries)
            "--security-opt=no-new-privileges",
            config.image,
            *config.keep_alive_command,
        ]

    async def _run(
        self, args: Sequence[str], timeout: float
    ) -> Tuple[int, str, str]:
        """
        Run a runtime command to completion.

        Returns:
            (returncode, stdout, stderr) with output decoded as UTF-8.

        Raises:
            asyncio.TimeoutError: The command outlived timeout (it is killed).
            OSError: The runtime binary could not be executed.
            ValueError: An argument contains a NUL byte.
        """
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        return (
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def provision(self, sandbox_id: str) -> None:
        timeout = self._config.provision_timeout_seconds
        try:
            code, _, stderr = await self._run(self.provision_args(sandbox_id), timeout)
        except asyncio.TimeoutError:
            # The killed `run` may already have created the container.
            await self._discard_partial(sandbox_id)
            raise ProvisioningError(
                f"Timed out after {timeout:g}s starting sandbox {sandbox_id}",
                sandbox_id=sandbox_id,
            ) from None
        except (OSError, ValueError) as e:
            raise ProvisioningError(
                f"Could not run {self.command}: {e}", sandbox_id=sandbox_id
            ) from e
        if code != 0:
            await self._discard_partial(sandbox_id)
            raise ProvisioningError(
                f"{self.command} run exited with code {code}: {stderr.strip()}",
                sandbox_id=sandbox_id,
                stderr=stderr,
            )

    async def _discard_partial(self, sandbox_id: str) -> None:
        """Best-effort removal of a container left by a failed `run`."""
        try:
            await self._run(
                [self.command, "rm", "-f", "--", sandbox_id],
                self._config.remove_timeout_seconds,
            )
        except (asyncio.TimeoutError, OSError, ValueError) as e:
            logger.warning("Cleanup after failed start of %s failed: %s", sandbox_id, e)

    async def inspect_status(self, sandbox_id: str) -> Optional[str]:
        timeout = self._config.inspect_timeout_seconds
        args = [self.command, "inspect", "--format", "{{.State.Status}}", "--", sandbox_id]
        try:
            code, stdout, stderr = await self._run(args, timeout)
        except asyncio.TimeoutError:
            raise InspectionError(
                f"Timed out after {timeout:g}s inspecting sandbox {sandbox_id}",
                sandbox_id=sandbox_id,
            ) from None
        except (OSError, ValueError) as e:
            raise InspectionError(
                f"Could not run {self.command}: {e}", sandbox_id=sandbox_id
            ) from e
        if code == 0:
            return stdout.strip()
        if is_missing_container_error(stderr):
            return None
        raise InspectionError(
            f"{self.command} inspect exited with code {code}: {stderr.strip()}",
            sandbox_id=sandbox_id,
            stderr=stderr,
        )

    async def spawn_exec(self, sandbox_id: str, command: str) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                self.command, "exec", sandbox_id, "sh", "-c", command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            raise ExecutionError(
                f"Could not start {self.command} exec: {e}", sandbox_id=sandbox_id
            ) from e

    async def copy_out(self, sandbox_id: str, source_path: str, dest_path: str) -> None:
        timeout = self._config.copy_timeout_seconds
        args = [self.command, "cp", f"{sandbox_id}:{source_path}", dest_path]
        try:
            code, _, stderr = await self._run(args, timeout)
        except asyncio.TimeoutError:
            raise ExtractionError(
                f"Timed out after {timeout:g}s copying {source_path}",
                sandbox_id=sandbox_id,
            ) from None
        except (OSError, ValueError) as e:
            raise ExtractionError(
                f"Could not run {self.command}: {e}", sandbox_id=sandbox_id
            ) from e
        if code == 0:
            return
        if is_missing_source_error(stderr):
            raise SourceNotFoundError(
                f"File not found: {source_path}", sandbox_id=sandbox_id, stderr=stderr
            )
        raise ExtractionError(
            f"{self.command} cp exited with code {code}: {stderr.strip()}",
            sandbox_id=sandbox_id,
            stderr=stderr,
        )

    async def force_remove(self, sandbox_id: str) -> bool:
        timeout = self._config.remove_timeout_seconds
        try:
            code, _, stderr = await self._run(
                [self.command, "rm", "-f", "--", sandbox_id], timeout
            )
        except asyncio.TimeoutError:
            raise TeardownError(
                f"Timed out after {timeout:g}s removing sandbox {sandbox_id}",
                sandbox_id=sandbox_id,
            ) from None
        except (OSError, ValueError) as e:
            raise TeardownError(
                f"Could not run {self.command}: {e}", sandbox_id=sandbox_id
            ) from e
        if code == 0:
            # Some runtime versions exit 0 on an absent container but still
            # print the error.
            return not is_missing_container_error(stderr)
        if is_missing_container_error(stderr):
            return False
        raise TeardownError(
            f"{self.command} rm exited with code {code}: {stderr.strip()}",
            sandbox_id=sandbox_id,
            stderr=stderr,
        )


__all__ = [
    "ContainerRuntime",
    "ContainerRuntimeClient",
    "SandboxRuntime",
    "detect_runtime",
    "get_runtime_command",
    "resolve_runtime",
    "is_missing_container_error",
    "is_missing_source_error",
]
