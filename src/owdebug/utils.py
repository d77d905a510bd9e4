"""Shared utility functions.

Small helpers used across modules: shell commands run in their own
process group, background tasks that log their failures, and parsing of
JSON parameters.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import signal
from asyncio.subprocess import PIPE
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

from owdebug.logger import logger


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    A drop-in replacement for ``asyncio.create_task`` for fire-and-forget
    work (remote triggers, self-initiated stops) where we don't await the
    result but still want failures to appear in logs.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks; logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work here because we're in a
        # done-callback, not an except handler.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )


@dataclass(frozen=True)
class ShellResult:
    """Outcome of one shell command. ``returncode`` is None if it never finished."""

    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    elapsed: float = 0.0
    timed_out: bool = False
    start_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _decode(data: bytes | None) -> str:
    return (data or b"").decode(errors="replace").strip()


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    # the shell runs in its own session, so this also reaches tools it spawned
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)


async def run_shell_command(
    command: str,
    *,
    cwd: str,
    timeout_seconds: float = 600,
) -> ShellResult:
    """Run *command* through the shell without blocking the event loop.

    The command gets its own process group.  On timeout or cancellation the
    whole group is killed, so background jobs and watchers started by a
    build script do not outlive it.  Output written before a timeout is
    kept in the result.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdout=PIPE,
            stderr=PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        return ShellResult(returncode=None, start_error=str(exc))

    communicate = asyncio.ensure_future(process.communicate())
    try:
        stdout, stderr = await asyncio.wait_for(asyncio.shield(communicate), timeout_seconds)
    except TimeoutError:
        _kill_process_group(process)
        stdout, stderr = await communicate
        return ShellResult(
            returncode=None,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
            elapsed=loop.time() - started,
            timed_out=True,
        )
    except asyncio.CancelledError:
        _kill_process_group(process)
        communicate.cancel()
        raise

    return ShellResult(
        returncode=process.returncode,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
        elapsed=loop.time() - started,
    )


def parse_json_object(raw: str | None, *, what: str = "parameters") -> dict[str, Any] | None:
    """Parse a JSON object given on the command line. Empty input gives None."""
    if raw is None or not raw.strip():
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON for {what}: {exc}") from exc
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be a JSON object")
    return value
