"""
Tests for SandboxManager: creation, inspection, TTL expiry and teardown.
"""

import asyncio
import dataclasses
import re
from pathlib import Path

import pytest

from ephemera.artifacts import ArtifactStore
from ephemera.lifecycle import (
    REASON_REQUESTED,
    REASON_SHUTDOWN,
    REASON_TTL_EXPIRED,
    REASON_VANISHED,
    SandboxManager,
)
from ephemera.models import SandboxStatus


def build(config, runtime):
    artifacts = ArtifactStore(config, runtime)
    manager = SandboxManager(config, runtime, artifacts)
    events = []
    manager.add_destroy_listener(lambda sandbox_id, reason: events.append((sandbox_id, reason)))
    return manager, artifacts, events


@pytest.mark.asyncio
async def test_create_registers_running_sandbox(config, runtime):
    manager, _, _ = build(config, runtime)

    result = await manager.create()

    assert result.success
    assert re.fullmatch(r"eph-[0-9a-f]{12}", result.sandbox_id)
    assert (result.expires_at - result.created_at).total_seconds() == config.ttl_seconds
    assert result.sandbox_id in manager
    assert manager.get(result.sandbox_id).status == SandboxStatus.RUNNING
    assert manager.has_timer(result.sandbox_id)
    assert runtime.containers[result.sandbox_id] == "running"

    await manager.shutdown_all()


@pytest.mark.asyncio
async def test_create_failure_registers_nothing(config, runtime):
    manager, _, _ = build(config, runtime)
    runtime.fail_provision = True

    result = await manager.create()

    assert not result.success
    assert result.error_code == "ProvisioningError"
    assert "image not known" in result.message
    assert result.sandbox_id is None
    assert len(manager) == 0
    assert manager.stats()["active_count"] == 0


@pytest.mark.asyncio
async def test_ids_are_never_reused(config, runtime):
    manager, _, _ = build(config, runtime)

    ids = set()
    for _ in range(20):
        result = await manager.create()
        ids.add(result.sandbox_id)
        await manager.destroy(result.sandbox_id)

    assert len(ids) == 20


@pytest.mark.asyncio
async def test_inspect_tri_state(config, runtime):
    manager, _, _ = build(config, runtime)
    created = await manager.create()

    status = await manager.inspect(created.sandbox_id)
    assert status.success and status.exists
    assert status.status == "running"
    assert status.created_at == created.created_at
    assert status.expires_at == created.expires_at

    missing = await manager.inspect("eph-000000000000")
    assert missing.success and not missing.exists
    assert missing.error_code is None

    runtime.fail_inspect = True
    failed = await manager.inspect(created.sandbox_id)
    assert not failed.success
    assert failed.error_code == "InspectionError"
    # An ambiguous failure does not drop the sandbox
    assert created.sandbox_id in manager

    runtime.fail_inspect = False
    await manager.shutdown_all()


@pytest.mark.asyncio
async def test_inspect_reconciles_vanished_sandbox(config, runtime):
    manager, _, events = build(config, runtime)
    created = await manager.create()
    runtime.vanish(created.sandbox_id)

    status = await manager.inspect(created.sandbox_id)

    assert status.success and not status.exists
    assert created.sandbox_id not in manager
    assert not manager.has_timer(created.sandbox_id)
    assert events == [(created.sandbox_id, REASON_VANISHED)]


@pytest.mark.asyncio
async def test_destroy_is_idempotent(config, runtime):
    manager, _, events = build(config, runtime)
    created = await manager.create()
    instance = manager.get(created.sandbox_id)

    first = await manager.destroy(created.sandbox_id)
    second = await manager.destroy(created.sandbox_id)

    assert first.success and first.existed
    assert second.success and not second.existed
    assert instance.status == SandboxStatus.STOPPED
    assert created.sandbox_id not in manager
    assert events == [(created.sandbox_id, REASON_REQUESTED)]


@pytest.mark.asyncio
async def test_destroy_unknown_sandbox_succeeds(config, runtime):
    manager, _, _ = build(config, runtime)

    result = await manager.destroy("eph-ffffffffffff")

    assert result.success
    assert not result.existed
    assert "does not exist" in result.message


@pytest.mark.asyncio
@pytest.mark.parametrize("sandbox_id", ["--all", "postgres", "eph-\x00", "eph-0123456789ab --all"])
async def test_destroy_refuses_foreign_ids(config, runtime, sandbox_id):
    manager, _, events = build(config, runtime)
    runtime.containers["postgres"] = "running"

    result = await manager.destroy(sandbox_id)

    assert not result.success
    assert result.error_code == "NotFoundError"
    assert runtime.count("remove") == 0
    assert runtime.containers["postgres"] == "running"
    assert events == []


@pytest.mark.asyncio
async def test_inspect_foreign_id_never_reaches_runtime(config, runtime):
    manager, _, _ = build(config, runtime)
    runtime.containers["postgres"] = "running"

    result = await manager.inspect("postgres")

    assert result.success
    assert not result.exists
    assert runtime.count("inspect") == 0


@pytest.mark.asyncio
async def test_concurrent_destroys_notify_once(config, runtime):
    manager, _, events = build(config, runtime)
    created = await manager.create()
    runtime.remove_delay = 0.1

    first, second = await asyncio.gather(
        manager.destroy(created.sandbox_id),
        manager.destroy(created.sandbox_id),
    )

    assert first.success and second.success
    assert sorted([first.existed, second.existed]) == [False, True]
    assert events == [(created.sandbox_id, REASON_REQUESTED)]
    assert created.sandbox_id not in manager
    assert not manager.has_timer(created.sandbox_id)
    assert created.sandbox_id not in runtime.containers


@pytest.mark.asyncio
async def test_destroy_racing_ttl_expiry_notifies_once(config, runtime):
    config = dataclasses.replace(config, ttl_seconds=0.1)
    manager, _, events = build(config, runtime)
    created = await manager.create()
    runtime.remove_delay = 0.3

    # Let the timer fire; its destroy is now waiting on the runtime.
    await asyncio.sleep(0.2)
    result = await manager.destroy(created.sandbox_id)
    await asyncio.sleep(0.4)

    assert result.success
    assert events == [(created.sandbox_id, REASON_TTL_EXPIRED)]
    assert runtime.count("remove") == 2
    assert created.sandbox_id not in manager
    assert not manager.has_timer(created.sandbox_id)
    assert created.sandbox_id not in runtime.containers
    assert len(manager) == 0


@pytest.mark.asyncio
async def test_destroy_cancels_expiry_timer(config, runtime):
    config = dataclasses.replace(config, ttl_seconds=0.3)
    manager, _, _ = build(config, runtime)
    created = await manager.create()

    await manager.destroy(created.sandbox_id)
    await asyncio.sleep(0.5)

    assert runtime.count("remove") == 1


@pytest.mark.asyncio
async def test_destroy_cascades_artifacts(config, runtime):
    manager, artifacts, _ = build(config, runtime)
    created = await manager.create()
    runtime.put_file(created.sandbox_id, "/root/out.txt", b"hello")
    extracted = await artifacts.extract(created.sandbox_id, "/root/out.txt")
    local_path = Path(artifacts.lookup(extracted.artifact_id).local_path)
    assert local_path.exists()

    await manager.destroy(created.sandbox_id)

    assert artifacts.lookup(extracted.artifact_id) is None
    assert not local_path.exists()
    assert len(artifacts) == 0


@pytest.mark.asyncio
async def test_teardown_failure_still_clears_bookkeeping(config, runtime):
    manager, _, events = build(config, runtime)
    created = await manager.create()
    runtime.fail_remove = True

    result = await manager.destroy(created.sandbox_id)

    assert not result.success
    assert result.error_code == "TeardownError"
    assert created.sandbox_id not in manager
    assert not manager.has_timer(created.sandbox_id)
    assert len(events) == 1


@pytest.mark.asyncio
async def test_ttl_expiry_destroys_sandbox(config, runtime):
    config = dataclasses.replace(config, ttl_seconds=0.2)
    manager, _, events = build(config, runtime)
    created = await manager.create()

    await asyncio.sleep(0.5)

    assert created.sandbox_id not in manager
    assert created.sandbox_id not in runtime.containers
    assert not manager.has_timer(created.sandbox_id)
    assert events == [(created.sandbox_id, REASON_TTL_EXPIRED)]
    assert runtime.count("remove") == 1


@pytest.mark.asyncio
async def test_ttl_expiry_failure_is_only_logged(config, runtime, caplog):
    config = dataclasses.replace(config, ttl_seconds=0.2)
    manager, _, _ = build(config, runtime)
    created = await manager.create()
    runtime.fail_remove = True

    await asyncio.sleep(0.5)

    assert created.sandbox_id not in manager
    assert "Auto-destroy" in caplog.text


@pytest.mark.asyncio
async def test_shutdown_all_destroys_everything(config, runtime):
    manager, _, events = build(config, runtime)
    ids = [(await manager.create()).sandbox_id for _ in range(3)]

    await manager.shutdown_all()

    assert len(manager) == 0
    assert runtime.containers == {}
    assert not any(manager.has_timer(sandbox_id) for sandbox_id in ids)
    assert sorted(events) == sorted((sandbox_id, REASON_SHUTDOWN) for sandbox_id in ids)


@pytest.mark.asyncio
async def test_shutdown_all_continues_past_failures(config, runtime):
    manager, _, _ = build(config, runtime)
    for _ in range(2):
        await manager.create()
    runtime.fail_remove = True

    await manager.shutdown_all()

    assert len(manager) == 0
    assert runtime.count("remove") == 2


@pytest.mark.asyncio
async def test_stats(config, runtime):
    manager, _, _ = build(config, runtime)
    await manager.create()
    await manager.create()

    stats = manager.stats()

    assert stats["active_count"] == 2
    assert 0 < stats["next_expiry_seconds"] <= config.ttl_seconds

    await manager.shutdown_all()


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_destroy(config, runtime):
    manager, _, _ = build(config, runtime)

    def broken(sandbox_id, reason):
        raise RuntimeError("boom")

    manager.add_destroy_listener(broken)
    created = await manager.create()

    result = await manager.destroy(created.sandbox_id)

    assert result.success
