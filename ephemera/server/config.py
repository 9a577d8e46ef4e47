"""
Server configuration from environment variables.

Usage:
    from ephemera.server.config import get_settings

    settings = get_settings()
    print(settings.host, settings.port)
    core = SandboxCore(settings.sandbox_config())
"""

from functools import lru_cache
from typing import Optional
import os

from ephemera.config import SandboxConfig


class Settings:
    """Server configuration loaded from environment variables."""

    def __init__(self) -> None:
        # Server
        self.host: str = os.getenv("EPHEMERA_HOST", "0.0.0.0")
        self.port: int = int(os.getenv("EPHEMERA_PORT", "3000"))
        self.base_url: str = os.getenv(
            "EPHEMERA_BASE_URL", f"http://localhost:{self.port}"
        )

        # Authentication
        self.api_key: Optional[str] = os.getenv("EPHEMERA_API_KEY")

        # Sandbox lifetime
        self.ttl_seconds: float = float(os.getenv("EPHEMERA_TTL_SECONDS", "7200"))
        self.command_timeout_seconds: float = float(
            os.getenv("EPHEMERA_COMMAND_TIMEOUT_SECONDS", "3")
        )

        # Resource limits
        self.memory_limit: str = os.getenv("EPHEMERA_MEMORY", "256m")
        self.cpu_limit: str = os.getenv("EPHEMERA_CPUS", "0.5")
        self.pids_limit: int = int(os.getenv("EPHEMERA_PIDS", "100"))

        # Runtime
        self.image: str = os.getenv("EPHEMERA_IMAGE", "docker.io/library/alpine:latest")
        self.runtime: Optional[str] = os.getenv("EPHEMERA_RUNTIME") or None

        # Artifacts
        self.files_dir: str = os.getenv("EPHEMERA_FILES_DIR", "/tmp/ephemera-files")

    @property
    def auth_required(self) -> bool:
        """Authentication is required if EPHEMERA_API_KEY is set."""
        return self.api_key is not None

    def sandbox_config(self) -> SandboxConfig:
        """Static core configuration, built once at startup."""
        return SandboxConfig(
            ttl_seconds=self.ttl_seconds,
            command_timeout_seconds=self.command_timeout_seconds,
            memory_limit=self.memory_limit,
            cpu_limit=self.cpu_limit,
            pids_limit=self.pids_limit,
            image=self.image,
            runtime=self.runtime,
            base_url=self.base_url,
            files_dir=self.files_dir,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear settings cache. For testing only."""
    get_settings.cache_clear()
