"""Protocol session: one line out, one line back, one query at a time.

A ProcessSession owns the server process's stdin and stdout. It runs as a
small actor:

- a worker task takes queries off a request queue and performs the exchange,
  so only one query is ever on the wire;
- a reader task turns stdout into a queue of lines for the whole process
  lifetime, so a timed-out read is never left half-consumed.

Per query::

    Idle → Sending → AwaitingResponse → Idle
                  ↘                   ↘
                   Failed              Failed

``Failed`` only describes the last query; the next one starts from ``Idle``.
There is no retry and no restart. If the process dies, every later query
fails with :class:`~mcp_http.errors.ProcessTerminatedError`.

Stdout is only queued while a query is being sent or awaits its reply.
Output that arrives between queries (late replies to timed-out callers,
unsolicited notifications) is dropped as it is read, and the queue is
bounded, so a chatty server cannot grow memory. A late reply arriving after
the next write has gone out cannot be told apart from the real one: the line
protocol has no request ids.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import time
from dataclasses import dataclass, field
from typing import Any

from mcp_http.errors import (
    ConnectionClosedError,
    EmptyResponseError,
    FlushFailedError,
    InvalidCommandError,
    ProcessTerminatedError,
    ProtocolError,
    ReadFailedError,
    ResponseTimeoutError,
    WriteFailedError,
)
from mcp_http.launcher import LaunchedProcess
from mcp_http.logger import logger
from mcp_http.monitor import ProcessHandle
from mcp_http.utils import create_background_task

_EOF = object()
_LOG_PREVIEW_CHARS = 200
# Replies are one line; anything past this while a query waits is noise
_MAX_QUEUED_LINES = 64


class QueryState(enum.StrEnum):
    IDLE = "idle"
    SENDING = "sending"
    AWAITING_RESPONSE = "awaiting_response"
    FAILED = "failed"


_ACCEPTING_STATES = frozenset({QueryState.SENDING, QueryState.AWAITING_RESPONSE})


@dataclass
class _PendingQuery:
    command: str
    future: asyncio.Future[str]
    enqueued_at: float = field(default_factory=time.monotonic)


class ProcessSession:
    """Serializes queries onto a single server process.

    Attributes:
        request_count: Query attempts so far, successful or not.
        last_activity: Monotonic time the last query finished.
        abandoned_responses: Queries that timed out waiting for their reply.
        discarded_lines: Stdout lines dropped because no query was waiting
            for them (unsolicited output, late replies).
    """

    def __init__(
        self,
        *,
        stdin: asyncio.StreamWriter,
        stdout: asyncio.StreamReader,
        handle: ProcessHandle,
        response_timeout: float,
        name: str = "server",
    ) -> None:
        self.name = name
        self.handle = handle
        self.response_timeout = response_timeout
        self.started_at = time.monotonic()
        self.last_activity = self.started_at
        self.request_count = 0
        self.abandoned_responses = 0
        self.discarded_lines = 0
        self.state = QueryState.IDLE

        self._stdin = stdin
        self._stdout = stdout
        self._requests: asyncio.Queue[_PendingQuery] = asyncio.Queue()
        self._lines: asyncio.Queue[Any] = asyncio.Queue(maxsize=_MAX_QUEUED_LINES)
        self._dropping = False
        self._stdout_closed = False
        self._current: _PendingQuery | None = None
        self._worker_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    def from_launched(
        cls,
        launched: LaunchedProcess,
        *,
        response_timeout: float,
    ) -> ProcessSession:
        return cls(
            stdin=launched.stdin,
            stdout=launched.stdout,
            handle=launched.handle,
            response_timeout=response_timeout,
            name=launched.handle.name,
        )

    @property
    def pid(self) -> int | None:
        return self.handle.pid

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the stdout reader and the query worker."""
        if self._worker_task is not None:
            return
        self._reader_task = create_background_task(
            self._read_stdout(), name=f"{self.name}-stdout-reader"
        )
        self._worker_task = create_background_task(self._run(), name=f"{self.name}-session")

    async def close(self) -> None:
        """Stop the session. Queued and in-flight callers get ProcessTerminatedError."""
        if self._closed:
            return
        self._closed = True
        # The worker clears _current when cancelled, so capture it first
        current = self._current

        for task in (self._worker_task, self._reader_task):
            if task and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        abandoned = [current] if current else []
        while not self._requests.empty():
            abandoned.append(self._requests.get_nowait())
        for pending in abandoned:
            if not pending.future.done():
                pending.future.set_exception(ProcessTerminatedError("Session closed"))
        self._current = None
        logger.info("Session closed", server=self.name, **self.stats())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def query(self, command: str) -> str:
        """Send one command line and return the server's one-line reply."""
        if "\n" in command:
            raise InvalidCommandError("Command must not contain a newline")
        if self._closed:
            raise ProcessTerminatedError("Session closed")
        if self._worker_task is None:
            self.start()

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        await self._requests.put(_PendingQuery(command=command, future=future))
        return await future

    def stats(self) -> dict[str, Any]:
        now = time.monotonic()
        return {
            "pid": self.pid,
            "alive": self.handle.running,
            "exit_status": self.handle.exit_status,
            "state": self.state.value,
            "uptime_s": round(now - self.started_at, 3),
            "requests": self.request_count,
            "queued": self._requests.qsize(),
            "idle_s": round(now - self.last_activity, 3),
            "abandoned_responses": self.abandoned_responses,
            "discarded_lines": self.discarded_lines,
            "stderr_lines": self.handle.stderr_lines,
        }

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            pending = await self._requests.get()
            if pending.future.done():
                # Caller went away while queued
                continue

            self._current = pending
            try:
                result = await self._exchange(pending)
            except ProtocolError as exc:
                if not pending.future.done():
                    pending.future.set_exception(exc)
            except Exception as exc:
                logger.exception("Unexpected error during query", server=self.name)
                if not pending.future.done():
                    pending.future.set_exception(exc)
            else:
                if not pending.future.done():
                    pending.future.set_result(result)
            finally:
                self._current = None

    async def _exchange(self, pending: _PendingQuery) -> str:
        self.request_count += 1
        request_no = self.request_count
        start = time.monotonic()
        log = logger.bind(server=self.name, request=request_no, pid=self.pid)
        log.debug(
            "Query started",
            queued_ms=round((start - pending.enqueued_at) * 1000),
            idle_s=round(start - self.last_activity, 3),
            command=pending.command[:_LOG_PREVIEW_CHARS],
        )
        self.state = QueryState.IDLE

        try:
            if not self.handle.is_alive():
                raise ProcessTerminatedError("Server process has terminated")

            self._discard_stale_lines()

            self.state = QueryState.SENDING
            self._dropping = False
            await self._send(pending.command)

            self.state = QueryState.AWAITING_RESPONSE
            log.debug("Request sent, waiting for response", timeout=self.response_timeout)
            result = await self._receive()
        except ProtocolError as exc:
            self.state = QueryState.FAILED
            log.error(
                "Query failed",
                error=type(exc).__name__,
                reason=str(exc),
                elapsed_ms=round((time.monotonic() - start) * 1000),
                stderr_tail=list(self.handle.stderr_tail)[-5:],
                **self._failure_context(),
            )
            raise
        finally:
            self.last_activity = time.monotonic()

        self.state = QueryState.IDLE
        log.info(
            "Query completed",
            elapsed_ms=round((time.monotonic() - start) * 1000),
            response_chars=len(result),
        )
        log.debug("Response content", response=result[:_LOG_PREVIEW_CHARS])
        return result

    async def _send(self, command: str) -> None:
        data = (command + "\n").encode()
        try:
            self._stdin.write(data)
        except (OSError, RuntimeError) as exc:
            raise WriteFailedError(f"Failed to write to server stdin: {exc}") from exc
        try:
            await self._stdin.drain()
        except (OSError, RuntimeError) as exc:
            raise FlushFailedError(f"Failed to flush server stdin: {exc}") from exc

    async def _receive(self) -> str:
        if self._stdout_closed and self._lines.empty():
            raise ConnectionClosedError("Server closed its stdout")
        try:
            item = await asyncio.wait_for(self._lines.get(), timeout=self.response_timeout)
        except TimeoutError:
            self.abandoned_responses += 1
            raise ResponseTimeoutError(self.response_timeout) from None

        if item is _EOF:
            raise ConnectionClosedError("Server closed connection (read 0 bytes)")
        if isinstance(item, BaseException):
            raise ReadFailedError(f"Failed to read response: {item}") from item

        response = item.decode(errors="replace").strip()
        if not response:
            raise EmptyResponseError("Empty response from server")
        return response

    def _discard_stale_lines(self) -> None:
        stale = 0
        while not self._lines.empty():
            item = self._lines.get_nowait()
            if item is _EOF:
                # _stdout_closed stays set, so the read phase still reports it
                continue
            stale += 1
        if stale:
            self.discarded_lines += stale
            logger.warning(
                "Discarded stale output before sending",
                server=self.name,
                lines=stale,
                abandoned_responses=self.abandoned_responses,
            )

    def _failure_context(self) -> dict[str, Any]:
        context = self.stats()
        context.pop("pid", None)
        return context

    # ------------------------------------------------------------------
    # Reader
    # ------------------------------------------------------------------

    async def _read_stdout(self) -> None:
        while True:
            try:
                raw = await self._stdout.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                # EOF; an unterminated last line still counts as a line
                if exc.partial:
                    self._offer(exc.partial)
                logger.warning("Server stdout closed", server=self.name)
                self._stdout_closed = True
                self._offer(_EOF)
                return
            except asyncio.LimitOverrunError as exc:
                logger.warning("Oversized response line dropped", server=self.name, err=str(exc))
                self._offer(exc)
                await self._skip_line(exc.consumed)
                continue
            except OSError as exc:
                logger.error("Server stdout read failed", server=self.name, err=str(exc))
                self._stdout_closed = True
                self._offer(exc)
                return
            self._offer(raw)

    async def _skip_line(self, consumed: int) -> None:
        """Drop the rest of an oversized line, through its newline.

        The tail of the line may still be in flight, so keep reading rather
        than let it surface later as a reply. EOF is left for the next read.
        """
        with contextlib.suppress(asyncio.IncompleteReadError):
            while True:
                await self._stdout.readexactly(consumed)
                try:
                    await self._stdout.readuntil(b"\n")
                    return
                except asyncio.LimitOverrunError as exc:
                    consumed = exc.consumed

    def _offer(self, item: Any) -> None:
        """Queue a stdout item for the in-flight query, or drop it."""
        if item is not _EOF and self.state not in _ACCEPTING_STATES:
            self.discarded_lines += 1
            if not self._dropping:
                self._dropping = True
                logger.warning("Dropping unsolicited server output", server=self.name)
            return
        try:
            self._lines.put_nowait(item)
        except asyncio.QueueFull:
            # _stdout_closed already records EOF, so only output is lost here
            if item is not _EOF:
                self.discarded_lines += 1
