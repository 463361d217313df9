"""Liveness monitoring for the managed server process.

Provides:
  - ProcessHandle: shared, independently locked handle used for liveness
    probes and teardown. Never held across a query.
  - drain_stderr(): long-lived task consuming stderr so the process never
    blocks on a full pipe, and classifying stream closure.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import os
import signal

from mcp_http.logger import logger

_TERM_GRACE_SECONDS = 5.0
_KILL_GRACE_SECONDS = 2.0
_STDERR_TAIL_LINES = 20


class ProcessHandle:
    """Single source of truth for whether the server process is alive.

    The lock guards the handle itself (probe-and-classify, release). The
    session's stdin/stdout are owned elsewhere, so a probe never waits behind
    an in-flight query.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        *,
        name: str,
        process_group: bool = False,
    ) -> None:
        self.name = name
        self.pid: int | None = proc.pid
        self.lock = asyncio.Lock()
        self.stderr_lines = 0
        self.stderr_tail: collections.deque[str] = collections.deque(maxlen=_STDERR_TAIL_LINES)
        self._proc: asyncio.subprocess.Process | None = proc
        self._process_group = process_group
        self._exit_status: int | None = None

    @property
    def exit_status(self) -> int | None:
        """Exit status if known: the event loop's reaper first, else the last recorded one."""
        if self._proc is not None and self._proc.returncode is not None:
            return self._proc.returncode
        return self._exit_status

    @property
    def released(self) -> bool:
        return self._proc is None

    @property
    def running(self) -> bool:
        """Quiet variant of :meth:`is_alive` for stats and health reporting."""
        return self._proc is not None and self.exit_status is None

    def is_alive(self) -> bool:
        """Non-blocking liveness probe."""
        if self.lock.locked():
            # Busy (teardown or drain classification in progress): answer from
            # the recorded exit status instead of assuming the process is up.
            alive = self._proc is not None and self.exit_status is None
            logger.debug("Process handle busy, using recorded status", server=self.name, alive=alive)
            return alive
        return self._probe()

    def _probe(self) -> bool:
        if self._proc is None:
            logger.warning("No process handle available", server=self.name)
            return False
        status = self.exit_status
        if status is not None:
            self._exit_status = status
            logger.warning("Process has exited", server=self.name, pid=self.pid, status=status)
            return False
        return True

    async def classify_stream_close(self) -> int | None:
        """Probe under the lock after stderr closed. Returns the exit status if exited."""
        async with self.lock:
            if self._proc is None:
                return self._exit_status
            status = self.exit_status
            if status is not None:
                self._exit_status = status
                logger.error("Process exited", server=self.name, pid=self.pid, status=status)
            else:
                logger.warning(
                    "Process stderr closed but process still running",
                    server=self.name,
                    pid=self.pid,
                )
            return status

    async def release(self) -> int | None:
        """Terminate the process if still running and drop the handle.

        SIGTERM first, SIGKILL after a grace period. Safe to call repeatedly.
        """
        async with self.lock:
            proc = self._proc
            if proc is None:
                return self._exit_status
            self._proc = None

            if proc.returncode is None:
                logger.info("Terminating server process", server=self.name, pid=self.pid)
                self._signal(proc, signal.SIGTERM)
                try:
                    await asyncio.wait_for(proc.wait(), timeout=_TERM_GRACE_SECONDS)
                except TimeoutError:
                    logger.warning("Process ignored SIGTERM, killing", server=self.name, pid=self.pid)
                    self._signal(proc, signal.SIGKILL)
                    try:
                        await asyncio.wait_for(proc.wait(), timeout=_KILL_GRACE_SECONDS)
                    except TimeoutError:
                        logger.error("Process did not exit after SIGKILL", server=self.name, pid=self.pid)

            self._exit_status = proc.returncode
            return self._exit_status

    def _signal(self, proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        with contextlib.suppress(ProcessLookupError, OSError):
            if self._process_group:
                # Spawned with start_new_session=True: pid is the group id
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGKILL:
                proc.kill()
            else:
                proc.terminate()


async def drain_stderr(stream: asyncio.StreamReader, handle: ProcessHandle) -> int:
    """Consume stderr line by line until EOF. Returns the number of lines read."""
    logger.debug("Starting stderr monitoring", server=handle.name)

    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            # Line exceeded the stream limit; the reader discarded it
            logger.warning("Oversized stderr line dropped", server=handle.name)
            continue

        if not raw:
            logger.warning("Process terminated (stderr closed)", server=handle.name)
            await handle.classify_stream_close()
            break

        handle.stderr_lines += 1
        line = raw.decode(errors="replace").strip()
        if line:
            handle.stderr_tail.append(line)
            logger.debug(line, server=handle.name, line_no=handle.stderr_lines)

    logger.info("Stderr monitoring ended", server=handle.name, lines=handle.stderr_lines)
    return handle.stderr_lines
