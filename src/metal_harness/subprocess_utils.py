"""Subprocess and background-task utilities.

- run_tool: run an external binary to completion, raising ExternalToolError
- log_task_exception: done-callback that logs failures of background tasks
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shlex

from metal_harness import constants
from metal_harness._logging import get_logger
from metal_harness.exceptions import ExternalToolError
from metal_harness.platform_utils import ToolProcess

logger = get_logger(__name__)


async def run_tool(*cmd: str | os.PathLike[str], operation: str | None = None) -> str:
    """Run an external tool and wait for it to exit.

    stdout is captured and returned; stderr is captured for the error and
    logged at debug level.  The tool is killed if the awaiting task is
    cancelled.

    Args:
        cmd: argv (binary first)
        operation: Prefix for the error message; defaults to "running <binary>"

    Returns:
        Decoded stdout

    Raises:
        ExternalToolError: Binary missing or exited non-zero
    """
    argv = [os.fspath(c) for c in cmd]
    operation = operation or f"running {argv[0]}"
    logger.debug("Running external tool", extra={"cmd": shlex.join(argv)})

    try:
        proc = ToolProcess(
            await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        )
    except OSError as e:
        raise ExternalToolError(f"{operation}: {e}", cmd=argv) from e

    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        await proc.kill()
        with contextlib.suppress(ProcessLookupError):
            await proc.wait()
        raise

    stderr_text = stderr.decode(errors="replace")
    if stderr_text:
        logger.debug("External tool stderr", extra={"cmd": argv[0], "stderr": stderr_text})
    if proc.returncode != 0:
        tail = stderr_text.strip()[-constants.TOOL_STDERR_MAX_BYTES :]
        raise ExternalToolError(
            f"{operation}: exit status {proc.returncode}" + (f": {tail}" if tail else ""),
            cmd=argv,
            returncode=proc.returncode,
            stderr=tail,
        )
    return stdout.decode(errors="replace")


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Callback for asyncio.Task.add_done_callback() that logs any unhandled
    exception from a background task instead of letting it vanish.
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
