"""
ArtifactStore: files copied out of sandboxes and served until their owner dies.

Each artifact belongs to exactly one sandbox. Records are indexed by
artifact id (for serving) and by sandbox id (for cascade cleanup when the
sandbox is destroyed). Host copies live under SandboxConfig.files_dir and are
named <artifact_id><original extension> so the content type survives.

Usage:
    store = ArtifactStore(config, runtime)

    result = await store.extract("eph-1a2b3c4d5e6f", "/root/report.pdf")
    artifact = store.lookup(result.artifact_id)

    # Cascade hook, called by SandboxManager.destroy()
    await store.remove_all_for_sandbox("eph-1a2b3c4d5e6f")
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import shutil
import stat
import uuid
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional, Set, TypeVar

from ephemera.config import SandboxConfig
from ephemera.exceptions import (
    ExtractionError,
    InspectionError,
    InvalidPathError,
    NotFoundError,
    SourceNotFoundError,
)
from ephemera.models import (
    ExtractArtifactResult,
    ExtractedArtifact,
    format_duration,
    format_file_size,
    utc_now,
)
from ephemera.runtime import SandboxRuntime

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Types mimetypes gets wrong or leaves out on minimal hosts.
_CONTENT_TYPE_OVERRIDES: Dict[str, str] = {
    ".md": "text/markdown",
    ".py": "text/x-python",
    ".sh": "text/x-shellscript",
    ".csv": "text/csv",
    ".json": "application/json",
    ".js": "application/javascript",
    ".webp": "image/webp",
    ".gz": "application/gzip",
}


def guess_content_type(file_name: str) -> str:
    """Content type from the file extension, application/octet-stream if unknown."""
    extension = PurePosixPath(file_name).suffix.lower()
    if extension in _CONTENT_TYPE_OVERRIDES:
        return _CONTENT_TYPE_OVERRIDES[extension]
    guessed, _ = mimetypes.guess_type(f"file{extension}") if extension else (None, None)
    return guessed or "application/octet-stream"


def validate_source_path(source_path: str) -> PurePosixPath:
    """
    Check an in-sandbox path before any runtime or filesystem access.

    Raises:
        InvalidPathError: path is not absolute, has a `..` segment,
            contains a NUL byte or does not name a file.
    """
    if "\x00" in source_path:
        raise InvalidPathError(
            "Invalid file path: NUL bytes are not allowed.",
            path=source_path.replace("\x00", "\\x00"),
        )
    path = PurePosixPath(source_path)
    if not source_path.startswith("/"):
        raise InvalidPathError(
            "Invalid file path: use an absolute path (starting with '/').",
            path=source_path,
        )
    if ".." in path.parts:
        raise InvalidPathError(
            "Invalid file path: '..' segments are not allowed.",
            path=source_path,
        )
    if not path.name:
        raise InvalidPathError(
            "Invalid file path: the path does not name a file.",
            path=source_path,
        )
    return path


class ArtifactStore:
    """
    Extracts files from sandboxes and tracks them for serving and cleanup.

    All state is owned by this instance and touched only from the event loop.
    Blocking filesystem calls run in the loop's default executor.
    """

    def __init__(self, config: SandboxConfig, runtime: SandboxRuntime) -> None:
        self._config = config
        self._runtime = runtime
        self._root = Path(config.files_dir)
        self._artifacts: Dict[str, ExtractedArtifact] = {}
        self._by_sandbox: Dict[str, Set[str]] = {}
        # Copies in flight per sandbox, and the subset of those sandboxes
        # swept meanwhile; late results for the latter are discarded.
        self._in_flight: Dict[str, int] = {}
        self._retired: Set[str] = set()

    @property
    def root(self) -> Path:
        return self._root

    async def extract(
        self,
        sandbox_id: str,
        source_path: str,
        base_url: Optional[str] = None,
    ) -> ExtractArtifactResult:
        """
        Copy source_path out of the sandbox and register it as an artifact.

        Args:
            sandbox_id: Owning sandbox
            source_path: Absolute path inside the sandbox
            base_url: Overrides SandboxConfig.base_url for the returned URL

        Returns:
            ExtractArtifactResult; success=False with error_code set to
            InvalidPathError, NotFoundError, InspectionError,
            SourceNotFoundError or ExtractionError on failure.
        """
        try:
            path = validate_source_path(source_path)
        except InvalidPathError as e:
            return ExtractArtifactResult(success=False, message=e.message, error_code=e.code)

        if not self._config.is_sandbox_id(sandbox_id):
            return self._sandbox_missing(sandbox_id)

        # Direct runtime inspection; the lifecycle manager depends on this
        # store, not the other way round.
        try:
            status = await self._runtime.inspect_status(sandbox_id)
        except InspectionError as e:
            return ExtractArtifactResult(
                success=False,
                message=f"Could not check sandbox {sandbox_id}: {e.message}",
                error_code=e.code,
            )
        if status is None:
            return self._sandbox_missing(sandbox_id)

        artifact_id = uuid.uuid4().hex[:12]
        file_name = path.name
        local_path = self._root / f"{artifact_id}{path.suffix}"

        self._in_flight[sandbox_id] = self._in_flight.get(sandbox_id, 0) + 1
        try:
            await self._in_executor(lambda: self._root.mkdir(parents=True, exist_ok=True))
            await self._runtime.copy_out(sandbox_id, source_path, str(local_path))
            st = await self._in_executor(lambda: os.stat(local_path))
            if not stat.S_ISREG(st.st_mode):
                raise ExtractionError(
                    f"{source_path} is not a regular file", sandbox_id=sandbox_id
                )
        except SourceNotFoundError as e:
            await self._discard(local_path)
            return ExtractArtifactResult(
                success=False,
                message=f"File not found: {source_path}",
                error_code=e.code,
            )
        except ExtractionError as e:
            await self._discard(local_path)
            logger.error("Extraction of %s from %s failed: %s", source_path, sandbox_id, e.message)
            return ExtractArtifactResult(
                success=False,
                message=f"Failed to create file URL: {e.message}",
                error_code=e.code,
            )
        except OSError as e:
            await self._discard(local_path)
            logger.error("Extraction of %s from %s failed: %s", source_path, sandbox_id, e)
            return ExtractArtifactResult(
                success=False,
                message=f"Failed to create file URL: {e}",
                error_code=ExtractionError.__name__,
            )
        finally:
            retired = self._end_copy(sandbox_id)

        if retired:
            # Sandbox was destroyed while the copy was in flight.
            await self._discard(local_path)
            return self._sandbox_missing(sandbox_id)

        artifact = ExtractedArtifact(
            artifact_id=artifact_id,
            sandbox_id=sandbox_id,
            original_path=source_path,
            local_path=str(local_path),
            file_name=file_name,
            content_type=guess_content_type(file_name),
            size=st.st_size,
            created_at=utc_now(),
        )
        self._artifacts[artifact_id] = artifact
        self._by_sandbox.setdefault(sandbox_id, set()).add(artifact_id)

        url = f"{(base_url or self._config.base_url).rstrip('/')}/files/{artifact_id}"
        logger.info("Artifact created: %s (%s) from %s", artifact_id, file_name, sandbox_id)

        return ExtractArtifactResult(
            success=True,
            message=(
                f"File URL created: {url}\n"
                f"File name: {file_name}\n"
                f"Size: {format_file_size(artifact.size)}\n\n"
                "⚠️ This URL stops working once the sandbox is destroyed "
                f"(at most {format_duration(self._config.ttl_seconds)} after creation)."
            ),
            artifact_id=artifact_id,
            url=url,
            file_name=file_name,
            content_type=artifact.content_type,
            size=artifact.size,
        )

    def lookup(self, artifact_id: str) -> Optional[ExtractedArtifact]:
        """Record for artifact_id, or None. The host file may already be gone."""
        return self._artifacts.get(artifact_id)

    def list_for_sandbox(self, sandbox_id: str) -> List[ExtractedArtifact]:
        return [
            self._artifacts[artifact_id]
            for artifact_id in self._by_sandbox.get(sandbox_id, ())
            if artifact_id in self._artifacts
        ]

    def __len__(self) -> int:
        return len(self._artifacts)

    async def remove(self, artifact_id: str) -> bool:
        """
        Delete one artifact and its host file.

        Returns:
            False if no such artifact was tracked. Already-deleted host
            files are not an error.
        """
        artifact = self._artifacts.pop(artifact_id, None)
        if artifact is None:
            return False

        owned = self._by_sandbox.get(artifact.sandbox_id)
        if owned is not None:
            owned.discard(artifact_id)
            if not owned:
                del self._by_sandbox[artifact.sandbox_id]

        await self._discard(Path(artifact.local_path))
        logger.info("Artifact deleted: %s", artifact_id)
        return True

    async def remove_all_for_sandbox(self, sandbox_id: str) -> int:
        """Cascade hook: delete every artifact owned by sandbox_id."""
        if sandbox_id in self._in_flight:
            self._retired.add(sandbox_id)
        artifact_ids = self._by_sandbox.pop(sandbox_id, set())
        removed = 0
        for artifact_id in list(artifact_ids):
            if await self.remove(artifact_id):
                removed += 1
        if removed:
            logger.info("Removed %d artifact(s) of sandbox %s", removed, sandbox_id)
        return removed

    async def remove_all(self) -> None:
        """Shutdown sweep: delete every artifact and the scratch root."""
        logger.info("Removing all artifacts...")
        for artifact_id in list(self._artifacts):
            await self.remove(artifact_id)
        self._retired.update(self._in_flight)
        self._by_sandbox.clear()
        await self._in_executor(lambda: shutil.rmtree(self._root, ignore_errors=True))
        logger.info("All artifacts removed")

    def _end_copy(self, sandbox_id: str) -> bool:
        """Close one in-flight copy. True if the sandbox was swept meanwhile."""
        retired = sandbox_id in self._retired
        remaining = self._in_flight[sandbox_id] - 1
        if remaining:
            self._in_flight[sandbox_id] = remaining
        else:
            del self._in_flight[sandbox_id]
            self._retired.discard(sandbox_id)
        return retired

    def _sandbox_missing(self, sandbox_id: str) -> ExtractArtifactResult:
        return ExtractArtifactResult(
            success=False,
            message=f"Sandbox {sandbox_id} does not exist.",
            error_code=NotFoundError.__name__,
        )

    async def _discard(self, path: Path) -> None:
        """Remove a host file or directory, ignoring absence."""

        def _remove() -> None:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path, ignore_errors=True)
                return
            try:
                path.unlink()
            except FileNotFoundError:
                pass

        try:
            await self._in_executor(_remove)
        except OSError as e:
            logger.warning("Could not delete %s: %s", path, e)

    async def _in_executor(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)


__all__ = [
    "ArtifactStore",
    "guess_content_type",
    "validate_source_path",
]
