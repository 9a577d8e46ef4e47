"""
Tests for CommandExecutor: the exit/timeout race, async slots and hints.

Commands run through FakeRuntime, which uses the host's `sh`.
"""

import asyncio
import dataclasses
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from ephemera.core import SandboxCore
from ephemera.executor import ASYNC_NOTICE, PendingExecution
from ephemera.models import CommandResult


async def wait_for_completion(core, sandbox_id, timeout=10.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        status = core.check_command_status(sandbox_id)
        if status.state == "completed":
            return status
        await asyncio.sleep(0.05)
    raise AssertionError("background command did not complete")


@pytest_asyncio.fixture
async def sandbox_id(core):
    return (await core.create_sandbox()).sandbox_id


@pytest.mark.asyncio
async def test_fast_command_returns_output(core, sandbox_id):
    result = await core.execute_command(sandbox_id, "echo hello")

    assert result.success
    assert not result.is_async
    assert result.exit_code == 0
    assert result.output == "hello\n"
    assert result.message == result.output


@pytest.mark.asyncio
async def test_nonzero_exit_is_failure(core, sandbox_id):
    result = await core.execute_command(sandbox_id, "echo oops >&2; exit 3")

    assert not result.success
    assert not result.is_async
    assert result.exit_code == 3
    assert "oops" in result.output


@pytest.mark.asyncio
async def test_empty_output_placeholder(core, sandbox_id):
    result = await core.execute_command(sandbox_id, "true")
    assert result.output == "(no output)"


@pytest.mark.asyncio
async def test_stdout_and_stderr_share_one_buffer(core, sandbox_id):
    result = await core.execute_command(sandbox_id, "echo one; echo two >&2; echo three")

    for line in ("one", "two", "three"):
        assert line in result.output


@pytest.mark.asyncio
async def test_missing_command_gets_package_hint(core, sandbox_id):
    result = await core.execute_command(sandbox_id, "nonexistent_tool_xyz --version")

    assert not result.success
    assert result.exit_code == 127
    assert "Missing package detected" in result.output
    assert "apk add nonexistent_tool_xyz" in result.output


@pytest.mark.asyncio
async def test_missing_sandbox_spawns_nothing(core, runtime):
    result = await core.execute_command("eph-000000000000", "echo hi")

    assert not result.success
    assert not result.is_async
    assert result.error_code == "NotFoundError"
    assert "does not exist" in result.output
    assert runtime.count("exec") == 0


@pytest.mark.asyncio
async def test_inspection_failure_spawns_nothing(core, runtime, sandbox_id):
    runtime.fail_inspect = True

    result = await core.execute_command(sandbox_id, "echo hi")

    runtime.fail_inspect = False
    assert not result.success
    assert result.error_code == "InspectionError"
    assert runtime.count("exec") == 0


@pytest.mark.asyncio
async def test_spawn_failure_is_reported(core, runtime, sandbox_id):
    runtime.fail_spawn = True

    result = await core.execute_command(sandbox_id, "echo hi")

    assert not result.success
    assert not result.is_async
    assert result.error_code == "ExecutionError"
    assert result.output.startswith("Command execution error:")


@pytest.mark.asyncio
async def test_slow_command_switches_to_async(core, sandbox_id):
    loop = asyncio.get_running_loop()
    started = loop.time()

    result = await core.execute_command(sandbox_id, "echo start; sleep 1.5; echo done")

    assert loop.time() - started < 1.2
    assert result.success
    assert result.is_async
    assert result.exit_code is None
    assert result.output == ASYNC_NOTICE
    assert "check_command_status" in result.output

    running = core.check_command_status(sandbox_id)
    assert running.state == "running"
    assert running.command == "echo start; sleep 1.5; echo done"

    completed = await wait_for_completion(core, sandbox_id)
    assert completed.success
    assert completed.exit_code == 0
    assert "start" in completed.output
    assert "done" in completed.output


@pytest.mark.asyncio
async def test_async_failure_reports_hint(core, sandbox_id):
    result = await core.execute_command(sandbox_id, "sleep 1; nonexistent_tool_xyz")
    assert result.is_async

    completed = await wait_for_completion(core, sandbox_id)

    assert not completed.success
    assert completed.exit_code == 127
    assert "apk add nonexistent_tool_xyz" in completed.output


@pytest.mark.asyncio
async def test_status_none_without_async_command(core, sandbox_id):
    await core.execute_command(sandbox_id, "echo quick")

    status = core.check_command_status(sandbox_id)

    assert status.success
    assert status.state == "none"


@pytest.mark.asyncio
async def test_destroy_drops_async_slot(core, sandbox_id):
    result = await core.execute_command(sandbox_id, "sleep 30")
    assert result.is_async

    await core.destroy_sandbox(sandbox_id)

    assert core.check_command_status(sandbox_id).state == "none"


@pytest.mark.asyncio
async def test_output_is_capped(config, runtime):
    core = SandboxCore(dataclasses.replace(config, output_limit_bytes=100), runtime=runtime)
    sandbox_id = (await core.create_sandbox()).sandbox_id

    result = await core.execute_command(sandbox_id, "head -c 1000 /dev/zero | tr '\\0' a")

    assert result.success
    assert result.output.startswith("a" * 100)
    assert "a" * 101 not in result.output
    assert "[output truncated: 900 bytes omitted]" in result.output

    await core.shutdown()


@pytest.mark.asyncio
async def test_shutdown_kills_detached_commands(core, sandbox_id):
    result = await core.execute_command(sandbox_id, "sleep 30")
    assert result.is_async
    assert core.executor.running_count == 1

    await asyncio.wait_for(core.executor.shutdown(), timeout=5)

    assert core.executor.running_count == 0
    assert core.check_command_status(sandbox_id).state == "none"


@pytest.mark.asyncio
async def test_pending_execution_resolves_once():
    loop = asyncio.get_running_loop()
    execution = PendingExecution(sandbox_id="eph-1", command="true", outcome=loop.create_future())
    first = CommandResult(success=True, output="first")
    second = CommandResult(success=False, output="second")

    assert execution.resolve(first)
    assert not execution.resolve(second)
    assert execution.outcome.result() is first


@pytest.mark.asyncio
async def test_concurrent_commands_each_get_one_result(core, sandbox_id):
    results = await asyncio.gather(
        *(core.execute_command(sandbox_id, f"echo {i}") for i in range(5))
    )

    assert [r.output.strip() for r in results] == [str(i) for i in range(5)]
    assert all(r.success and not r.is_async for r in results)


@pytest.mark.asyncio
async def test_shutdown_does_not_wait_for_orphaned_children(core, sandbox_id):
    # `sh` stays the parent here, so killing it leaves `sleep` holding the pipes.
    result = await core.execute_command(sandbox_id, "sleep 30; echo never")
    assert result.is_async
    loop = asyncio.get_running_loop()
    started = loop.time()

    await asyncio.wait_for(core.executor.shutdown(), timeout=5)

    assert loop.time() - started < 3
    assert core.executor.running_count == 0


@pytest.mark.asyncio
async def test_nul_in_command_is_an_execution_error(core, sandbox_id, config):
    result = await core.execute_command(sandbox_id, "echo a\x00b")

    assert not result.success
    assert not result.is_async
    assert result.error_code == "ExecutionError"

    await asyncio.sleep(config.command_timeout_seconds + 0.2)
    assert core.check_command_status(sandbox_id).state == "none"
    assert core.executor.running_count == 0


@pytest.mark.asyncio
async def test_unexpected_spawn_error_leaves_no_async_slot(core, runtime, sandbox_id, config):
    runtime.spawn_exec = AsyncMock(side_effect=RuntimeError("boom"))

    with pytest.raises(RuntimeError):
        await core.execute_command(sandbox_id, "echo hi")

    await asyncio.sleep(config.command_timeout_seconds + 0.2)
    assert core.check_command_status(sandbox_id).state == "none"


@pytest.mark.asyncio
async def test_destroy_during_countdown_leaves_no_async_slot(core, sandbox_id):
    async def destroy_soon():
        await asyncio.sleep(0.1)
        return await core.destroy_sandbox(sandbox_id)

    result, destroyed = await asyncio.gather(
        core.execute_command(sandbox_id, "sleep 30"),
        destroy_soon(),
    )

    assert destroyed.success
    assert result.is_async
    assert core.check_command_status(sandbox_id).state == "none"


@pytest.mark.asyncio
async def test_foreign_sandbox_name_is_not_executed_in(core, runtime):
    runtime.containers["postgres"] = "running"

    result = await core.execute_command("postgres", "echo hi")

    assert not result.success
    assert result.error_code == "NotFoundError"
    assert runtime.count("inspect") == 0
    assert runtime.count("exec") == 0
