"""Build the runtime invocation and spawn the server.

:func:`launch_server` either returns a running process with all three pipes
taken, or raises a :class:`~mcp_http.errors.LaunchError` after releasing
whatever it spawned. :func:`launched_server` wraps it so the process is torn
down on every exit path.
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

from mcp_http.config import RuntimeConfig
from mcp_http.errors import (
    ImmediateExitError,
    SpawnFailedError,
    StreamUnavailableError,
    UnsupportedLanguageError,
)
from mcp_http.logger import logger
from mcp_http.monitor import ProcessHandle
from mcp_http.servers import ServerDescriptor

SPAWN_GRACE_SECONDS = 0.1
_EXIT_STDERR_WAIT_SECONDS = 1.0

# First candidate found on PATH wins
_INTERPRETERS: dict[str, tuple[str, ...]] = {
    "node": ("node",),
    "python": ("python3", "python"),
}


def resolve_interpreter(language: str) -> str | None:
    """Return the interpreter binary for ``language``, or None if it has no mapping."""
    candidates = _INTERPRETERS.get(language)
    if candidates is None:
        return None
    for candidate in candidates:
        if shutil.which(candidate):
            return candidate
    # Nothing on PATH: keep the canonical name so spawn/probe errors mention it
    return candidates[0]


def entrypoint_path(name: str, descriptor: ServerDescriptor, runtime: RuntimeConfig) -> Path:
    return (runtime.server_dir(name) / descriptor.entrypoint).resolve()


def build_command(
    name: str,
    descriptor: ServerDescriptor,
    runtime: RuntimeConfig,
) -> tuple[str, list[str]]:
    """Return ``(interpreter, [absolute entrypoint])`` for the descriptor."""
    if descriptor.language not in runtime.supported_languages:
        raise UnsupportedLanguageError(
            descriptor.language,
            f"supported: {sorted(runtime.supported_languages)}",
        )
    interpreter = resolve_interpreter(descriptor.language)
    if interpreter is None:
        raise UnsupportedLanguageError(descriptor.language, "supported but not implemented")
    return interpreter, [str(entrypoint_path(name, descriptor, runtime))]


@dataclass
class LaunchedProcess:
    """A spawned server process whose three pipes belong to the caller."""

    handle: ProcessHandle
    stdin: asyncio.StreamWriter
    stdout: asyncio.StreamReader
    stderr: asyncio.StreamReader

    @property
    def pid(self) -> int | None:
        return self.handle.pid

    async def release(self) -> int | None:
        """Terminate the process if it is still running. Returns its exit status."""
        with contextlib.suppress(Exception):
            self.stdin.close()
        return await self.handle.release()


async def launch_server(
    name: str,
    descriptor: ServerDescriptor,
    runtime: RuntimeConfig,
) -> LaunchedProcess:
    """Spawn the server, confirm it survived the grace interval, take its pipes."""
    command, args = build_command(name, descriptor, runtime)
    cwd = runtime.server_dir(name)
    logger.info("Starting process", server=name, command=command, args=args)

    spawn_start = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=str(cwd),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=runtime.max_line_bytes,
            start_new_session=True,  # own process group for clean shutdown
        )
    except OSError as exc:
        logger.error("Failed to spawn process", server=name, command=command, err=str(exc))
        raise SpawnFailedError(f"Failed to spawn {command}: {exc}") from exc

    handle = ProcessHandle(proc, name=name, process_group=True)
    logger.info("Process spawned", server=name, pid=proc.pid)

    try:
        await asyncio.sleep(SPAWN_GRACE_SECONDS)

        async with handle.lock:
            status = proc.returncode
        if status is not None:
            stderr_text = await _read_exit_stderr(proc.stderr)
            logger.error(
                "Process exited immediately",
                server=name,
                status=status,
                stderr=stderr_text[-500:],
            )
            raise ImmediateExitError(status, stderr_text)

        if proc.stdin is None:
            raise StreamUnavailableError("stdin")
        if proc.stdout is None:
            raise StreamUnavailableError("stdout")
        if proc.stderr is None:
            raise StreamUnavailableError("stderr")
    except BaseException:
        await handle.release()
        raise

    logger.info(
        "Process is running",
        server=name,
        pid=proc.pid,
        startup_ms=round((time.monotonic() - spawn_start) * 1000),
    )
    return LaunchedProcess(
        handle=handle,
        stdin=proc.stdin,
        stdout=proc.stdout,
        stderr=proc.stderr,
    )


@contextlib.asynccontextmanager
async def launched_server(
    name: str,
    descriptor: ServerDescriptor,
    runtime: RuntimeConfig,
) -> AsyncIterator[LaunchedProcess]:
    """Launch the server for the duration of the block; always release it on exit."""
    launched = await launch_server(name, descriptor, runtime)
    try:
        yield launched
    finally:
        status = await launched.release()
        logger.info("Server process released", server=name, pid=launched.pid, status=status)


async def _read_exit_stderr(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    try:
        data = await asyncio.wait_for(stream.read(), timeout=_EXIT_STDERR_WAIT_SECONDS)
    except (TimeoutError, OSError, ValueError):
        return ""
    return data.decode(errors="replace").strip()
