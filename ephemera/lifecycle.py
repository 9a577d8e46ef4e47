"""
SandboxManager: creation, inspection, TTL expiry and teardown of sandboxes.

Manages sandbox lifecycle:
- Create: provision a resource-capped runtime process and register it
- Max lifetime: destroy automatically once the TTL elapses
- Inspect: live status from the runtime, timestamps from the registry
- Destroy: cancel the expiry timer, cascade artifact cleanup, remove the
  runtime process, drop the registry entry (idempotent)
- Shutdown: destroy everything still tracked

Integration points:
- The runtime (SandboxRuntime) owns the actual processes
- ArtifactStore.remove_all_for_sandbox is the destroy cascade
- Destroy listeners (e.g. CommandExecutor.forget) are told (sandbox_id, reason)

Usage:
    manager = SandboxManager(config, runtime, artifacts)

    created = await manager.create()
    status = await manager.inspect(created.sandbox_id)
    await manager.destroy(created.sandbox_id)

    # Process shutdown
    await manager.shutdown_all()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from ephemera.artifacts import ArtifactStore
from ephemera.config import SandboxConfig
from ephemera.exceptions import (
    InspectionError,
    NotFoundError,
    ProvisioningError,
    TeardownError,
)
from ephemera.models import (
    CreateSandboxResult,
    DestroySandboxResult,
    SandboxInstance,
    SandboxStatus,
    SandboxStatusResult,
    format_duration,
    utc_now,
)
from ephemera.runtime import SandboxRuntime

logger = logging.getLogger(__name__)

# Reasons passed to destroy listeners
REASON_REQUESTED = "requested"
REASON_TTL_EXPIRED = "ttl_expired"
REASON_SHUTDOWN = "shutdown"
REASON_VANISHED = "vanished"

DestroyListener = Callable[[str, str], None]


class SandboxManager:
    """
    Owns the registry of live sandboxes and their expiry timers.

    Single-threaded cooperative: all state is touched only from the event
    loop. Expiry uses loop.call_later handles keyed by sandbox id; every
    destroy path pops the handle before its first await, so a firing timer
    and an explicit destroy never both hold it.

    Usage:
        manager = SandboxManager(config, runtime, artifacts)
        manager.add_destroy_listener(lambda sid, reason: print(sid, reason))

        result = await manager.create()
        await manager.destroy(result.sandbox_id)
    """

    def __init__(
        self,
        config: SandboxConfig,
        runtime: SandboxRuntime,
        artifacts: ArtifactStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._artifacts = artifacts
        self._clock = clock
        self._sandboxes: Dict[str, SandboxInstance] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._expiry_tasks: Set[asyncio.Task] = set()
        self._issued_ids: Set[str] = set()
        self._listeners: List[DestroyListener] = []

    def add_destroy_listener(self, listener: DestroyListener) -> None:
        """
        Register listener(sandbox_id, reason), called once per tracked sandbox
        when it leaves the registry.

        reason is one of requested, ttl_expired, shutdown, vanished.
        """
        self._listeners.append(listener)

    async def create(self) -> CreateSandboxResult:
        """
        Provision a new sandbox and schedule its automatic destruction.

        Returns:
            CreateSandboxResult; on ProvisioningError nothing is registered
            and no timer is scheduled.
        """
        sandbox_id = self._new_sandbox_id()

        try:
            await self._runtime.provision(sandbox_id)
        except ProvisioningError as e:
            logger.error("Sandbox creation failed: %s", e.message)
            return CreateSandboxResult(
                success=False,
                message=f"Failed to create sandbox: {e.message}",
                error_code=e.code,
            )

        now = self._clock()
        instance = SandboxInstance(
            sandbox_id=sandbox_id,
            created_at=now,
            expires_at=now + timedelta(seconds=self._config.ttl_seconds),
            status=SandboxStatus.RUNNING,
        )
        self._sandboxes[sandbox_id] = instance
        self._schedule_expiry(sandbox_id)

        logger.info(
            "Sandbox created: %s, expires at %s",
            sandbox_id,
            instance.expires_at.isoformat(),
        )
        return CreateSandboxResult(
            success=True,
            message=(
                f"Sandbox created. ID: {sandbox_id}. "
                f"It will be destroyed automatically at {instance.expires_at.isoformat()} "
                f"({format_duration(self._config.ttl_seconds)} from now)."
            ),
            sandbox_id=sandbox_id,
            created_at=instance.created_at,
            expires_at=instance.expires_at,
        )

    async def inspect(self, sandbox_id: str) -> SandboxStatusResult:
        """
        Query the runtime for the sandbox's live status.

        Returns:
            exists=True with the runtime status; exists=False when the
            runtime says it does not exist; success=False on an ambiguous
            failure (error_code="InspectionError").
        """
        if not self._config.is_sandbox_id(sandbox_id):
            return SandboxStatusResult(
                success=True,
                exists=False,
                message=f"Sandbox {sandbox_id} does not exist.",
            )

        try:
            status = await self._runtime.inspect_status(sandbox_id)
        except InspectionError as e:
            return SandboxStatusResult(
                success=False,
                exists=False,
                message=f"Failed to check sandbox status: {e.message}",
                error_code=e.code,
            )

        instance = self._sandboxes.get(sandbox_id)

        if status is None:
            if instance is not None:
                logger.warning("Sandbox %s is gone from the runtime, dropping it", sandbox_id)
                self._cancel_timer(sandbox_id)
                await self._artifacts.remove_all_for_sandbox(sandbox_id)
                self._drop(sandbox_id, REASON_VANISHED)
            return SandboxStatusResult(
                success=True,
                exists=False,
                message=f"Sandbox {sandbox_id} does not exist.",
            )

        message = f"Sandbox {sandbox_id} status: {status}"
        if instance is not None:
            message += f"\nCreated at: {instance.created_at.isoformat()}"
            message += f"\nExpires at: {instance.expires_at.isoformat()}"

        return SandboxStatusResult(
            success=True,
            exists=True,
            status=status,
            created_at=instance.created_at if instance else None,
            expires_at=instance.expires_at if instance else None,
            message=message,
        )

    async def destroy(
        self, sandbox_id: str, reason: str = REASON_REQUESTED
    ) -> DestroySandboxResult:
        """
        Destroy a sandbox and everything it owns.

        Order: cancel timer, remove artifacts, force-remove the runtime
        process, drop the registry entry. A sandbox the runtime does not
        know counts as success; an id this process could not have issued
        is refused (NotFoundError) without calling the runtime. On any
        other runtime failure the result is unsuccessful but the timer and
        registry entry are still cleared.
        """
        if not self._config.is_sandbox_id(sandbox_id):
            return DestroySandboxResult(
                success=False,
                message=f"Invalid sandbox ID: {sandbox_id!r}",
                error_code=NotFoundError.__name__,
            )

        self._cancel_timer(sandbox_id)
        await self._artifacts.remove_all_for_sandbox(sandbox_id)

        try:
            existed = await self._runtime.force_remove(sandbox_id)
        except TeardownError as e:
            logger.error("Failed to destroy sandbox %s: %s", sandbox_id, e.message)
            return DestroySandboxResult(
                success=False,
                message=f"Failed to destroy sandbox: {e.message}",
                error_code=e.code,
            )
        finally:
            self._drop(sandbox_id, reason)

        if not existed:
            return DestroySandboxResult(
                success=True,
                existed=False,
                message=f"Sandbox {sandbox_id} does not exist (already destroyed).",
            )

        logger.info("Sandbox destroyed: %s (%s)", sandbox_id, reason)
        return DestroySandboxResult(
            success=True,
            existed=True,
            message=f"Sandbox {sandbox_id} was destroyed.",
        )

    async def shutdown_all(self) -> None:
        """
        Destroy every tracked sandbox, one after another.

        Best-effort: failures are logged and the sweep continues.
        """
        logger.info("Destroying all sandboxes...")

        for sandbox_id in list(self._sandboxes):
            try:
                result = await self.destroy(sandbox_id, reason=REASON_SHUTDOWN)
            except Exception as e:
                logger.error("Failed to destroy %s during shutdown: %s", sandbox_id, e)
                continue
            if not result.success:
                logger.warning("Sandbox %s not cleanly destroyed: %s", sandbox_id, result.message)

        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        if self._expiry_tasks:
            await asyncio.gather(*list(self._expiry_tasks), return_exceptions=True)

        logger.info("All sandboxes destroyed")

    def get(self, sandbox_id: str) -> Optional[SandboxInstance]:
        """Tracked instance by id, or None."""
        return self._sandboxes.get(sandbox_id)

    def list_active(self) -> List[SandboxInstance]:
        return list(self._sandboxes.values())

    def has_timer(self, sandbox_id: str) -> bool:
        return sandbox_id in self._timers

    def __contains__(self, sandbox_id: object) -> bool:
        return sandbox_id in self._sandboxes

    def __len__(self) -> int:
        return len(self._sandboxes)

    def stats(self) -> Dict[str, Any]:
        """
        Get lifecycle statistics.

        Returns:
            Dict with active_count, oldest_seconds, next_expiry_seconds
        """
        if not self._sandboxes:
            return {
                "active_count": 0,
                "oldest_seconds": 0,
                "next_expiry_seconds": None,
            }

        now = self._clock()
        instances = self._sandboxes.values()
        return {
            "active_count": len(self._sandboxes),
            "oldest_seconds": max((now - i.created_at).total_seconds() for i in instances),
            "next_expiry_seconds": min(i.seconds_until_expiry(now) for i in instances),
        }

    def _new_sandbox_id(self) -> str:
        while True:
            candidate = f"{self._config.id_prefix}-{uuid.uuid4().hex[:12]}"
            if candidate not in self._issued_ids:
                self._issued_ids.add(candidate)
                return candidate

    def _schedule_expiry(self, sandbox_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._timers[sandbox_id] = loop.call_later(
            self._config.ttl_seconds, self._on_expired, sandbox_id
        )

    def _cancel_timer(self, sandbox_id: str) -> None:
        handle = self._timers.pop(sandbox_id, None)
        if handle is not None:
            handle.cancel()

    def _on_expired(self, sandbox_id: str) -> None:
        """Timer callback: hand the sandbox to a destroy task."""
        if self._timers.pop(sandbox_id, None) is None:
            return
        logger.info("Sandbox %s reached its TTL", sandbox_id)
        task = asyncio.get_running_loop().create_task(self._expire(sandbox_id))
        self._expiry_tasks.add(task)
        task.add_done_callback(self._expiry_tasks.discard)

    async def _expire(self, sandbox_id: str) -> None:
        # No caller waits on auto-destroy: failures are only logged.
        try:
            result = await self.destroy(sandbox_id, reason=REASON_TTL_EXPIRED)
        except Exception as e:
            logger.error("Auto-destroy of %s failed: %s", sandbox_id, e)
            return
        if not result.success:
            logger.error("Auto-destroy of %s failed: %s", sandbox_id, result.message)

    def _drop(self, sandbox_id: str, reason: str) -> None:
        instance = self._sandboxes.pop(sandbox_id, None)
        if instance is None:
            return
        instance.status = SandboxStatus.STOPPED

        for listener in self._listeners:
            try:
                listener(sandbox_id, reason)
            except Exception as e:
                logger.warning("Destroy listener failed for %s: %s", sandbox_id, e)


__all__ = [
    "SandboxManager",
    "DestroyListener",
    "REASON_REQUESTED",
    "REASON_TTL_EXPIRED",
    "REASON_SHUTDOWN",
    "REASON_VANISHED",
]
