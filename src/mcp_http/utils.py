"""Shared async helpers: one-shot command execution and background tasks."""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from asyncio.subprocess import PIPE
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mcp_http.logger import logger

_REAP_SECONDS = 5.0


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # exc_info must be passed explicitly: this runs in a done-callback,
        # not inside an except block.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )


@dataclass
class CommandResult:
    """Result of a one-shot command run to completion."""

    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    start_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and self.start_error is None and not self.timed_out

    def describe_failure(self) -> str:
        if self.start_error:
            return self.start_error
        if self.timed_out:
            return "timed out"
        return self.stderr or f"exit code {self.returncode}"


async def run_command(
    *argv: str,
    cwd: Path | None = None,
    timeout_seconds: float | None = None,
) -> CommandResult:
    """Run ``argv`` directly (no shell) and capture its output."""
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=PIPE,
            stderr=PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        return CommandResult(returncode=None, stdout="", stderr="", start_error=str(exc))
    return await _collect(process, timeout_seconds)


async def run_shell_command(
    command: str,
    *,
    cwd: Path | None = None,
    timeout_seconds: float | None = None,
) -> CommandResult:
    """Run ``command`` through ``/bin/sh -c`` and capture its output."""
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=PIPE,
            stderr=PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        return CommandResult(returncode=None, stdout="", stderr="", start_error=str(exc))
    return await _collect(process, timeout_seconds)


async def _collect(
    process: asyncio.subprocess.Process,
    timeout_seconds: float | None,
) -> CommandResult:
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        _kill_group(process)
        with contextlib.suppress(Exception):
            await process.communicate()
        return CommandResult(returncode=None, stdout="", stderr="", timed_out=True)
    except asyncio.CancelledError:
        # Shutdown mid-install: take the whole command tree down with us
        _kill_group(process)
        with contextlib.suppress(Exception):
            await asyncio.wait_for(process.wait(), timeout=_REAP_SECONDS)
        raise

    return CommandResult(
        returncode=process.returncode,
        stdout=stdout.decode(errors="replace").strip(),
        stderr=stderr.decode(errors="replace").strip(),
    )


def _kill_group(process: asyncio.subprocess.Process) -> None:
    # Spawned with start_new_session=True: pid is the group id
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)
