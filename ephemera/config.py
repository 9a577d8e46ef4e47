"""
Static configuration consumed by the sandbox core.

The host builds one SandboxConfig at startup (see
ephemera.server.config.Settings.sandbox_config) and hands it to
SandboxCore. Components read it but never re-read the environment.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SandboxConfig:
    """
    Configuration for sandbox lifecycle, execution and artifacts.

    All durations are in seconds.
    """

    # Lifetime of a sandbox before automatic destruction (default: 2 hours)
    ttl_seconds: float = 2 * 60 * 60

    # Wait before execute() switches to the asynchronous response
    command_timeout_seconds: float = 3.0

    # Resource limits passed to the runtime
    memory_limit: str = "256m"
    cpu_limit: str = "0.5"
    pids_limit: int = 100

    # Image and keep-alive command for the long-lived sandbox process
    image: str = "docker.io/library/alpine:latest"
    keep_alive_command: tuple = ("sleep", "infinity")

    # Runtime CLI to use ("podman" or "docker"); None = auto-detect
    runtime: Optional[str] = None

    # Per-call timeouts for runtime invocations
    provision_timeout_seconds: float = 30.0
    inspect_timeout_seconds: float = 10.0
    copy_timeout_seconds: float = 30.0
    remove_timeout_seconds: float = 30.0

    # Base URL used when building artifact references
    base_url: str = "http://localhost:3000"

    # Host scratch directory for extracted artifacts
    files_dir: str = "/tmp/ephemera-files"

    # Max bytes of command output kept per execution
    output_limit_bytes: int = 1024 * 1024

    # Wait for detached commands to exit after being killed at shutdown
    kill_grace_seconds: float = 5.0

    # Prefix for generated sandbox identifiers
    id_prefix: str = "eph"

    def is_sandbox_id(self, value: str) -> bool:
        """True if value has the shape of an id this process issues.

        Anything else is never passed to the runtime CLI.
        """
        pattern = rf"{re.escape(self.id_prefix)}-[0-9a-f]{{12}}"
        return re.fullmatch(pattern, value) is not None
