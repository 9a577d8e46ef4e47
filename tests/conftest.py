"""Shared fixtures for ephemera tests."""

import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Ensure the project root is in sys.path so `tests.fakes` imports resolve
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from ephemera.config import SandboxConfig  # noqa: E402
from ephemera.core import SandboxCore  # noqa: E402
from tests.fakes import FakeRuntime  # noqa: E402


@pytest.fixture
def config(tmp_path: Path) -> SandboxConfig:
    """Short timeouts and a per-test scratch directory."""
    return SandboxConfig(
        ttl_seconds=60,
        command_timeout_seconds=0.5,
        base_url="http://files.test",
        files_dir=str(tmp_path / "files"),
        kill_grace_seconds=0.5,
    )


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest_asyncio.fixture
async def core(config: SandboxConfig, runtime: FakeRuntime):
    core = SandboxCore(config, runtime=runtime)
    yield core
    await core.shutdown()
    await runtime.kill_all()
