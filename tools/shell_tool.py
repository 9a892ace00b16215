"""
Shell tool for aterm-agent.

Runs a command with the workspace as working directory, streams output
lines to the caller as they arrive, and kills the whole process group on
timeout or cancellation.
"""

import asyncio
import contextlib
import logging
import os
import signal
from pathlib import Path
from typing import List, Optional, Union

from pydantic import Field

from tools.base import (
    CancellationToken,
    ExecutionError,
    OperationCancelled,
    OutputCallback,
    Tool,
    ToolError,
    ToolErrorKind,
    ToolInvocation,
    ToolInvocationResult,
    ToolParams,
    check_cancelled,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
MAX_TIMEOUT = 600.0
READ_CHUNK_SIZE = 64 * 1024


class ShellParams(ToolParams):
    command: str = Field(min_length=1, description="The shell command to execute")
    timeout: Optional[float] = Field(
        default=None, gt=0, le=MAX_TIMEOUT, description="Seconds before the command is killed"
    )


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        with contextlib.suppress(ProcessLookupError):
            process.kill()
    await process.wait()


class ShellInvocation(ToolInvocation):
    params: ShellParams

    def __init__(self, tool: "ShellTool", params: ShellParams):
        super().__init__(params)
        self.tool = tool

    def describe(self) -> str:
        return f"Run `{self.params.command}` in {self.tool.working_dir}"

    def locations(self) -> List[str]:
        return [str(self.tool.working_dir)]

    async def execute(
        self,
        cancel: Optional[CancellationToken] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ToolInvocationResult:
        check_cancelled(cancel)
        timeout = self.params.timeout or self.tool.timeout

        try:
            process = await asyncio.create_subprocess_shell(
                self.params.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(self.tool.working_dir),
                start_new_session=True,
            )
        except OSError as e:
            raise ExecutionError(f"Failed to execute command: {e}") from e

        chunks: List[str] = []

        def emit(raw: bytes) -> None:
            text = raw.decode("utf-8", errors="replace")
            chunks.append(text)
            if on_output is not None:
                on_output(text.rstrip("\n"))

        async def pump() -> int:
            # readline() raises on lines longer than the stream buffer limit
            pending = b""
            while True:
                data = await process.stdout.read(READ_CHUNK_SIZE)
                if not data:
                    break
                *lines, pending = (pending + data).split(b"\n")
                for line in lines:
                    emit(line + b"\n")
            if pending:
                emit(pending)
            return await process.wait()

        try:
            pump_task = asyncio.ensure_future(pump())
            cancel_task = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
            waiters = {pump_task} | ({cancel_task} if cancel_task else set())
            try:
                done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if cancel_task is not None:
                    cancel_task.cancel()

            if pump_task not in done:
                await _kill(process)
                pump_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await pump_task
                if cancel is not None and cancel.cancelled:
                    logger.info("Shell command cancelled: %s", self.params.command)
                    raise OperationCancelled(cancel.reason or "cancelled")
                raise ExecutionError(f"Command timed out after {timeout}s")

            exit_code = pump_task.result()
        finally:
            await _kill(process)

        output = "".join(chunks).strip()
        if len(output) > self.tool.max_output_size:
            output = output[: self.tool.max_output_size] + "\n... (output truncated)"

        error = None
        if exit_code != 0:
            error = ToolError(kind=ToolErrorKind.EXECUTION_ERROR, message=f"Exit code: {exit_code}")
        return ToolInvocationResult(
            content=output or f"(no output, exit code {exit_code})",
            display=f"$ {self.params.command} -> exit {exit_code}",
            error=error,
            metadata={"exit_code": exit_code},
        )


class ShellTool(Tool):
    """Execute shell commands in the workspace."""

    name = "shell"
    display_name = "Shell"
    description = (
        "Execute a shell command in the workspace and return combined stdout/stderr. "
        "Use for running scripts, tests, builds or other system operations."
    )
    params_model = ShellParams

    def __init__(
        self,
        workspace_root: Union[str, Path, None] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_output_size: int = 10000,
    ):
        self.working_dir = Path(workspace_root or os.getcwd()).resolve()
        self.timeout = timeout
        self.max_output_size = max_output_size

    def build(self, params: ShellParams) -> ShellInvocation:
        return ShellInvocation(self, params)
