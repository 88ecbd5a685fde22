"""Subprocess invocation utilities.

- run_command: argv in, exit status + captured streams out (never a shell)
- stream_command: same contract, output logged line by line while the child runs
- drain_subprocess_output: concurrent stdout/stderr draining for long-lived children
- log_task_exception: done-callback for background tasks
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from vmx._logging import get_logger
from vmx.exceptions import InvocationError

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished subprocess."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    argv: Sequence[str],
    *,
    cwd: Path | str | None = None,
    input: bytes | None = None,
) -> CommandResult:
    """Run argv to completion and capture its output.

    A non-zero exit is returned, not raised; callers decide what it means.

    Raises:
        InvocationError: The binary could not be spawned (missing, not executable)
    """
    logger.debug(f"Running {argv[0]}", extra={"argv": list(argv), "cwd": str(cwd) if cwd else None})
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate(input)
    except OSError as e:
        raise InvocationError(
            f"Failed to run {argv[0]}: {e}",
            context={"argv": list(argv), "errno": e.errno},
        ) from e

    result = CommandResult(
        argv=tuple(argv),
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
    if not result.ok:
        logger.debug(
            f"{argv[0]} exited with {result.returncode}",
            extra={"argv": list(argv), "returncode": result.returncode, "stderr": result.stderr[:500]},
        )
    return result


async def stream_command(
    argv: Sequence[str],
    *,
    process_name: str,
    context_id: str,
    cwd: Path | str | None = None,
) -> CommandResult:
    """Run a long transfer (e.g. oras push/pull), logging output line by line as it arrives.

    Transfer tools write progress to stderr, so both streams are logged at
    DEBUG and kept for the result.

    Raises:
        InvocationError: The binary could not be spawned
    """
    out_lines: list[str] = []
    err_lines: list[str] = []

    def on_stdout(line: str) -> None:
        out_lines.append(line)
        logger.debug(f"[{process_name}] {line}", extra={"context_id": context_id})

    def on_stderr(line: str) -> None:
        err_lines.append(line)
        logger.debug(f"[{process_name} stderr] {line}", extra={"context_id": context_id})

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise InvocationError(
            f"Failed to run {argv[0]}: {e}",
            context={"argv": list(argv), "errno": e.errno},
        ) from e

    await drain_subprocess_output(
        proc,
        process_name=process_name,
        context_id=context_id,
        stdout_handler=on_stdout,
        stderr_handler=on_stderr,
    )
    returncode = await proc.wait()
    return CommandResult(
        argv=tuple(argv),
        returncode=returncode,
        stdout="\n".join(out_lines),
        stderr="\n".join(err_lines),
    )


async def drain_subprocess_output(
    process: asyncio.subprocess.Process,
    *,
    process_name: str,
    context_id: str,
    stdout_handler: Callable[[str], None] | None = None,
    stderr_handler: Callable[[str], None] | None = None,
) -> None:
    """Drain subprocess stdout/stderr concurrently so neither pipe fills and blocks the child.

    Args:
        process: Child started with stdout/stderr pipes
        process_name: Process identifier for logging (e.g., "oras")
        context_id: Context identifier (e.g., image ref) for log correlation
        stdout_handler: Optional callback for stdout lines (default: debug log)
        stderr_handler: Optional callback for stderr lines (default: warning log)
    """
    if stdout_handler is None:

        def default_stdout_handler(line: str) -> None:
            logger.debug(f"[{process_name} stdout] {line}", extra={"context_id": context_id, "output": line})

        stdout_handler = default_stdout_handler

    if stderr_handler is None:

        def default_stderr_handler(line: str) -> None:
            logger.warning(f"[{process_name} stderr] {line}", extra={"context_id": context_id, "output": line})

        stderr_handler = default_stderr_handler

    async def read(stream: asyncio.StreamReader, handler: Callable[[str], None]) -> None:
        async for line in stream:
            decoded = line.decode(errors="replace").rstrip()
            if decoded:
                handler(decoded)

    async with asyncio.TaskGroup() as tg:
        if process.stdout:
            tg.create_task(read(process.stdout, stdout_handler))
        if process.stderr:
            tg.create_task(read(process.stderr, stderr_handler))


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Usage:
        task = asyncio.create_task(some_coroutine())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
