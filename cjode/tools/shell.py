"""Shell tool for executing commands."""

import asyncio
import os
import signal
from typing import Any

from pydantic import Field

from cjode.config import get_config
from cjode.exceptions import (
    CommandFailedError,
    CommandOutputTooLargeError,
    CommandTimeoutError,
    ToolExecutionError,
    UnsafeCommandError,
)
from cjode.logging import get_logger
from cjode.path_guard import ensure_contained
from cjode.safety import CommandClassifier, CommandVerdict, build_command_classifier
from cjode.tools.registry import Tool, ToolInput, ToolOutput

log = get_logger(__name__)

_READ_CHUNK = 64 * 1024
# Headroom on top of the command timeout for the safety review call.
_REVIEW_GRACE_SECONDS = 30.0


class ShellInput(ToolInput):
    cmd: str = Field(min_length=1, description="The shell command to execute")
    cwd: str | None = Field(
        default=None,
        description="Working directory for command execution (defaults to the workspace root)",
    )


class ShellOutput(ToolOutput):
    cmd: str
    cwd: str
    stdout: str


class _OutputLimitExceeded(Exception):
    pass


class _CappedReader:
    """Drains process pipes while enforcing one combined byte budget."""

    def __init__(self, limit: int):
        self.limit = limit
        self.total = 0

    async def drain(self, stream: asyncio.StreamReader | None) -> bytes:
        if stream is None:
            return b""
        data = bytearray()
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return bytes(data)
            self.total += len(chunk)
            if self.total > self.limit:
                raise _OutputLimitExceeded()
            data.extend(chunk)

    async def collect(self, process: asyncio.subprocess.Process) -> tuple[bytes, bytes]:
        tasks = [
            asyncio.create_task(self.drain(process.stdout)),
            asyncio.create_task(self.drain(process.stderr)),
        ]
        try:
            stdout, stderr = await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        return stdout, stderr

    async def run(self, process: asyncio.subprocess.Process) -> tuple[bytes, bytes]:
        """Drain both pipes, then wait for the process to exit."""
        stdout, stderr = await self.collect(process)
        await process.wait()
        return stdout, stderr


class ShellTool(Tool):
    """Execute shell commands after a safety review."""

    name = "bash"
    description = "Execute shell commands and return the output."
    input_model = ShellInput
    output_model = ShellOutput

    def __init__(
        self,
        classifier: CommandClassifier | None = None,
        timeout: float | None = None,
        max_output_bytes: int | None = None,
    ):
        shell_cfg = get_config().tools.shell
        self._classifier = classifier
        self.command_timeout = float(timeout or shell_cfg.timeout or 30)
        self.max_output_bytes = int(max_output_bytes or shell_cfg.max_output_bytes)
        self.timeout_seconds = self.command_timeout + _REVIEW_GRACE_SECONDS

    @property
    def classifier(self) -> CommandClassifier:
        if self._classifier is None:
            self._classifier = build_command_classifier()
        return self._classifier

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        """Kill the command's whole process group and reap it."""
        if process.returncode is None:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except OSError:
                process.kill()
        await process.wait()

    async def execute(self, params: ShellInput, **kwargs: Any) -> ShellOutput:
        """Review, then run a command with ``sh -c``.

        Raises:
            UnsafeCommandError: The reviewer classified the command destructive
            PathEscapeError: ``cwd`` resolves outside the workspace
            CommandTimeoutError: Wall-clock timeout hit
            CommandOutputTooLargeError: Combined output exceeded the cap
            CommandFailedError: Non-zero exit status
        """
        command = params.cmd

        verdict = await self.classifier.classify(command)
        if verdict is CommandVerdict.DESTRUCTIVE:
            log.warning("Blocked unsafe command", command=command)
            raise UnsafeCommandError(command)

        cwd = ensure_contained(params.cwd or ".", self.workspace_root(kwargs))

        abort_event = kwargs.get("_abort_event")
        if isinstance(abort_event, asyncio.Event) and abort_event.is_set():
            raise ToolExecutionError(self.name, "Command aborted")

        log.info("Executing shell command", command=command, cwd=str(cwd), timeout=self.command_timeout)
        try:
            process = await asyncio.create_subprocess_exec(
                "sh",
                "-c",
                command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise ToolExecutionError(self.name, f"Command execution failed: {e}")

        reader = _CappedReader(self.max_output_bytes)
        collect_task = asyncio.create_task(reader.run(process))
        abort_wait_task: asyncio.Task[bool] | None = None
        if isinstance(abort_event, asyncio.Event):
            abort_wait_task = asyncio.create_task(abort_event.wait())
        try:
            wait_tasks: set[asyncio.Task[Any]] = {collect_task}
            if abort_wait_task is not None:
                wait_tasks.add(abort_wait_task)
            done, _ = await asyncio.wait(
                wait_tasks,
                timeout=self.command_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if collect_task in done:
                try:
                    stdout, stderr = collect_task.result()
                except _OutputLimitExceeded:
                    await self._kill(process)
                    raise CommandOutputTooLargeError(command, self.max_output_bytes)
            elif abort_wait_task is not None and abort_wait_task in done:
                collect_task.cancel()
                await self._kill(process)
                raise ToolExecutionError(self.name, "Command aborted")
            else:
                collect_task.cancel()
                await self._kill(process)
                raise CommandTimeoutError(command, self.command_timeout)
        except asyncio.CancelledError:
            collect_task.cancel()
            await self._kill(process)
            raise
        finally:
            if abort_wait_task is not None and not abort_wait_task.done():
                abort_wait_task.cancel()
                try:
                    await abort_wait_task
                except asyncio.CancelledError:
                    pass

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace").strip()

        if process.returncode != 0:
            log.info("Shell command failed", command=command, exit_code=process.returncode)
            raise CommandFailedError(command, process.returncode, stderr_text)

        return ShellOutput(cmd=command, cwd=str(cwd), stdout=stdout_text)
