"""
CommandExecutor: run shell commands inside sandboxes with bounded latency.

execute() races the command's exit against a short countdown:

    countdown fires first  -> "running in the background" notice (is_async=True);
                              the process keeps running and its output keeps
                              accumulating in the sandbox's async slot
    process exits first    -> full output, exit code, package hint on failure
    spawn fails            -> failure carrying the spawn error

A PendingExecution holds a result cell that is settled at most once; the
losing side of the race finds it settled and its result is dropped.
check_command_status() reports on the last command that went async.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from ephemera.config import SandboxConfig
from ephemera.exceptions import ExecutionError, NotFoundError
from ephemera.hints import detect_missing_package
from ephemera.lifecycle import SandboxManager
from ephemera.models import CommandResult, CommandStatusResult, utc_now
from ephemera.runtime import SandboxRuntime

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096

NO_OUTPUT = "(no output)"

ASYNC_NOTICE = """⏳ The command is still running in the background.

It is taking a long time, so execution switched to asynchronous mode.

Tell the user:
"This task takes a while to run and has switched to asynchronous mode.
Please wait a moment, then ask me to **check the result**."

When the user asks for the result, call check_command_status for this sandbox."""


@dataclass(eq=False)
class PendingExecution:
    """
    One command run: its accumulated output and a single-resolution cell.

    output receives stdout and stderr chunks in arrival order. The cell
    (outcome) is settled by resolve(); later resolve() calls are no-ops.
    """

    sandbox_id: str
    command: str
    outcome: asyncio.Future
    output: bytearray = field(default_factory=bytearray)
    dropped_bytes: int = 0
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    went_async: bool = False

    @property
    def settled(self) -> bool:
        return self.outcome.done()

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    def resolve(self, result: CommandResult) -> bool:
        """Settle the cell. Returns False (dropping result) if already settled."""
        if self.outcome.done():
            return False
        self.outcome.set_result(result)
        return True

    def append(self, chunk: bytes, limit: int) -> None:
        room = max(0, limit - len(self.output))
        if room:
            self.output.extend(chunk[:room])
        self.dropped_bytes += max(0, len(chunk) - room)

    def finish(self, exit_code: Optional[int]) -> None:
        self.exit_code = exit_code
        self.finished_at = utc_now()

    def text(self) -> str:
        text = self.output.decode("utf-8", errors="replace")
        if self.dropped_bytes:
            text += f"\n[output truncated: {self.dropped_bytes} bytes omitted]"
        return text

    def elapsed_seconds(self) -> float:
        end = self.finished_at or utc_now()
        return (end - self.started_at).total_seconds()


class CommandExecutor:
    """
    Runs one shell command per execute() call inside a named sandbox.

    Commands that outlive SandboxConfig.command_timeout_seconds are not
    killed: they are detached from the call and tracked as the sandbox's
    last async execution until the sandbox is destroyed.
    """

    def __init__(
        self,
        config: SandboxConfig,
        runtime: SandboxRuntime,
        sandboxes: SandboxManager,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._sandboxes = sandboxes
        self._async_slots: Dict[str, PendingExecution] = {}
        self._collectors: Dict[asyncio.Task, asyncio.subprocess.Process] = {}

    async def execute(self, sandbox_id: str, command: str) -> CommandResult:
        """
        Run command through `sh -c` inside the sandbox.

        Returns:
            Exactly one CommandResult: the real outcome if the command exits
            within the countdown, otherwise the asynchronous notice.
        """
        status = await self._sandboxes.inspect(sandbox_id)
        if not status.exists:
            if status.success:
                return CommandResult(
                    success=False,
                    output=f"Sandbox {sandbox_id} does not exist.",
                    error_code=NotFoundError.__name__,
                )
            return CommandResult(
                success=False,
                output=status.message,
                error_code=status.error_code,
            )

        loop = asyncio.get_running_loop()
        execution = PendingExecution(
            sandbox_id=sandbox_id,
            command=command,
            outcome=loop.create_future(),
        )
        countdown = loop.call_later(
            self._config.command_timeout_seconds, self._on_timeout, execution
        )

        try:
            proc = await self._runtime.spawn_exec(sandbox_id, command)
        except ExecutionError as e:
            countdown.cancel()
            logger.error("Could not start command in %s: %s", sandbox_id, e.message)
            execution.finish(None)
            execution.output.extend(f"Command execution error: {e.message}".encode("utf-8"))
            execution.resolve(
                CommandResult(
                    success=False,
                    output=f"Command execution error: {e.message}",
                    error_code=e.code,
                )
            )
        except BaseException:
            countdown.cancel()
            raise
        else:
            task = loop.create_task(self._collect(execution, proc, countdown))
            self._collectors[task] = proc
            task.add_done_callback(self._collector_done)

        # Shielded: a cancelled caller must not cancel the cell itself.
        return await asyncio.shield(execution.outcome)

    def check_command_status(self, sandbox_id: str) -> CommandStatusResult:
        """Report on the last command in sandbox_id that went asynchronous."""
        execution = self._async_slots.get(sandbox_id)
        if execution is None:
            return CommandStatusResult(
                success=True,
                state="none",
                message=f"No background command has run in sandbox {sandbox_id}.",
            )

        if not execution.finished:
            output = execution.text()
            return CommandStatusResult(
                success=True,
                state="running",
                command=execution.command,
                output=output,
                message=(
                    f"The command is still running "
                    f"({execution.elapsed_seconds():.0f}s elapsed).\n\n"
                    f"Output so far:\n{output or '(no output yet)'}"
                ),
            )

        result = self._final_result(execution)
        return CommandStatusResult(
            success=result.success,
            state="completed",
            command=execution.command,
            output=result.output,
            exit_code=execution.exit_code,
            message=(
                f"The command finished with exit code {execution.exit_code} "
                f"after {execution.elapsed_seconds():.0f}s.\n\n{result.output}"
            ),
        )

    def forget(self, sandbox_id: str, reason: str = "") -> None:
        """Destroy listener: drop the sandbox's async slot."""
        if self._async_slots.pop(sandbox_id, None) is not None:
            logger.debug("Dropped async execution of %s (%s)", sandbox_id, reason)

    async def shutdown(self) -> None:
        """
        Kill still-running commands and wait for their collectors.

        A killed `sh` can leave children holding its pipes open, so collectors
        get kill_grace_seconds to finish and are cancelled after that.
        """
        for proc in list(self._collectors.values()):
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
        if not self._collectors:
            self._async_slots.clear()
            return

        _, pending = await asyncio.wait(
            set(self._collectors), timeout=self._config.kill_grace_seconds
        )
        if pending:
            logger.warning(
                "%d killed command(s) did not close their output, abandoning them",
                len(pending),
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._async_slots.clear()

    @property
    def running_count(self) -> int:
        return len(self._collectors)

    def _on_timeout(self, execution: PendingExecution) -> None:
        notice = CommandResult(success=True, output=ASYNC_NOTICE, is_async=True)
        if not execution.resolve(notice):
            return
        execution.went_async = True
        # A sandbox destroyed mid-countdown gets no slot; forget() already ran.
        if execution.sandbox_id in self._sandboxes:
            self._async_slots[execution.sandbox_id] = execution
            logger.info(
                "Command in %s still running after %gs, switched to async mode",
                execution.sandbox_id,
                self._config.command_timeout_seconds,
            )

    async def _collect(
        self,
        execution: PendingExecution,
        proc: asyncio.subprocess.Process,
        countdown: asyncio.TimerHandle,
    ) -> None:
        """Drain both streams, wait for exit, settle the cell."""
        exit_code: Optional[int] = None
        failure: Optional[str] = None
        try:
            await asyncio.gather(
                self._drain(proc.stdout, execution),
                self._drain(proc.stderr, execution),
            )
            exit_code = await proc.wait()
        except Exception as e:
            failure = f"Command execution error: {e}"
            logger.error("Collecting output in %s failed: %s", execution.sandbox_id, e)
        finally:
            countdown.cancel()
            execution.finish(exit_code)
            if exit_code is not None:
                result = self._final_result(execution)
            else:
                result = CommandResult(
                    success=False,
                    output=failure or "Command execution error: interrupted",
                    error_code=ExecutionError.__name__,
                )
            execution.resolve(result)

        if execution.went_async:
            logger.info(
                "Background command in %s finished with exit code %s",
                execution.sandbox_id,
                exit_code,
            )

    async def _drain(
        self, stream: Optional[asyncio.StreamReader], execution: PendingExecution
    ) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            execution.append(chunk, self._config.output_limit_bytes)

    def _final_result(self, execution: PendingExecution) -> CommandResult:
        exit_code = execution.exit_code
        output = execution.text()
        final_output = output or NO_OUTPUT
        hint = detect_missing_package(output, exit_code)
        if hint:
            final_output += hint
        return CommandResult(
            success=exit_code == 0,
            output=final_output,
            is_async=False,
            exit_code=exit_code,
        )

    def _collector_done(self, task: asyncio.Task) -> None:
        self._collectors.pop(task, None)


__all__ = [
    "ASYNC_NOTICE",
    "CommandExecutor",
    "PendingExecution",
]
