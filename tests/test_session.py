"""Tests for ProcessSession: serialized line exchange over a fake process."""

from __future__ import annotations

import asyncio
import time

import pytest
from conftest import FakeProcess, make_session

from mcp_http.errors import (
    ConnectionClosedError,
    EmptyResponseError,
    FlushFailedError,
    InvalidCommandError,
    ProcessTerminatedError,
    ReadFailedError,
    ResponseTimeoutError,
    WriteFailedError,
)
from mcp_http.session import QueryState


async def _settle() -> None:
    """Let the reader and worker tasks run."""
    await asyncio.sleep(0.05)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestQuery:
    async def test_returns_reply_line(self, session, fake_proc):
        assert await session.query("ping") == "PING"
        assert fake_proc.stdin.written == [b"ping\n"]

    async def test_reply_is_trimmed(self, fake_proc):
        fake_proc.responder = lambda line: f"  {line}\r"
        s = make_session(fake_proc)
        try:
            assert await s.query("hello") == "hello"
        finally:
            await s.close()

    async def test_empty_command_is_sent_as_bare_newline(self, fake_proc):
        fake_proc.responder = lambda line: "ok"
        s = make_session(fake_proc)
        try:
            assert await s.query("") == "ok"
            assert fake_proc.stdin.written == [b"\n"]
        finally:
            await s.close()

    async def test_query_auto_starts_session(self, fake_proc):
        s = make_session(fake_proc)
        try:
            assert await s.query("a") == "A"
        finally:
            await s.close()

    async def test_counts_every_attempt(self, session, fake_proc):
        await session.query("one")
        fake_proc.responder = lambda line: "   "
        with pytest.raises(EmptyResponseError):
            await session.query("two")
        fake_proc.responder = str.upper
        await session.query("three")
        assert session.request_count == 3

    async def test_updates_last_activity(self, session):
        before = session.last_activity
        await asyncio.sleep(0.01)
        await session.query("x")
        assert session.last_activity > before
        assert session.state == QueryState.IDLE


class TestSerialization:
    async def test_second_query_waits_for_first_reply(self):
        proc = FakeProcess()
        s = make_session(proc)
        try:
            first = asyncio.create_task(s.query("a"))
            second = asyncio.create_task(s.query("b"))
            await _settle()
            assert proc.stdin.written == [b"a\n"]
            assert s.state == QueryState.AWAITING_RESPONSE

            proc.emit_stdout(b"reply-a\n")
            await _settle()
            assert proc.stdin.written == [b"a\n", b"b\n"]

            proc.emit_stdout(b"reply-b\n")
            assert await first == "reply-a"
            assert await second == "reply-b"
        finally:
            await s.close()

    async def test_concurrent_queries_get_their_own_replies(self, session):
        commands = [f"cmd-{i}" for i in range(10)]
        results = await asyncio.gather(*(session.query(c) for c in commands))
        assert results == [c.upper() for c in commands]
        assert session.request_count == 10


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_newline_in_command_is_rejected_before_write(self, session, fake_proc):
        with pytest.raises(InvalidCommandError):
            await session.query("a\nb")
        assert fake_proc.stdin.written == []
        assert session.request_count == 0

    async def test_dead_process_fails_without_writing(self, session, fake_proc):
        fake_proc.close(1)
        with pytest.raises(ProcessTerminatedError):
            await session.query("ping")
        assert fake_proc.stdin.written == []
        assert session.request_count == 1
        assert session.state == QueryState.FAILED

    async def test_every_query_fails_after_process_death(self, session, fake_proc):
        assert await session.query("ping") == "PING"
        fake_proc.close(0)
        for _ in range(3):
            with pytest.raises(ProcessTerminatedError):
                await session.query("ping")
        assert session.request_count == 4

    async def test_stdout_closed_while_process_alive(self, session, fake_proc):
        fake_proc.responder = None
        fake_proc.stdout.feed_eof()
        with pytest.raises(ConnectionClosedError):
            await session.query("ping")
        # Still reported as closed on later queries
        with pytest.raises(ConnectionClosedError):
            await session.query("ping")

    async def test_blank_reply(self, session, fake_proc):
        fake_proc.responder = lambda line: ""
        with pytest.raises(EmptyResponseError):
            await session.query("ping")

    async def test_session_usable_after_failed_query(self, session, fake_proc):
        fake_proc.responder = lambda line: " "
        with pytest.raises(EmptyResponseError):
            await session.query("ping")
        fake_proc.responder = str.upper
        assert await session.query("ping") == "PING"
        assert session.state == QueryState.IDLE

    async def test_write_failure(self, session, fake_proc):
        fake_proc.stdin.write_error = BrokenPipeError("pipe closed")
        with pytest.raises(WriteFailedError, match="pipe closed"):
            await session.query("ping")

    async def test_flush_failure(self, session, fake_proc):
        fake_proc.stdin.drain_error = ConnectionResetError("reset")
        with pytest.raises(FlushFailedError, match="reset"):
            await session.query("ping")

    async def test_oversized_reply_line(self):
        proc = FakeProcess(lambda line: "x" * 500, limit=64)
        s = make_session(proc)
        try:
            with pytest.raises(ReadFailedError):
                await s.query("big")
            # The stream skipped past the oversized line
            proc.responder = str.upper
            assert await s.query("small") == "SMALL"
        finally:
            await s.close()

    async def test_oversized_line_tail_arriving_later_is_skipped(self):
        proc = FakeProcess(limit=64)
        s = make_session(proc)
        try:
            big = asyncio.create_task(s.query("big"))
            await _settle()
            # Unterminated so far: the rest of the line is still in flight
            proc.emit_stdout(b"x" * 200)
            with pytest.raises(ReadFailedError):
                await big

            following = asyncio.create_task(s.query("next"))
            await _settle()
            proc.emit_stdout(b"y" * 20 + b"\n")
            await _settle()
            assert not following.done()

            proc.emit_stdout(b"real\n")
            assert await following == "real"
        finally:
            await s.close()


class TestTimeout:
    async def test_reply_within_timeout_completes(self):
        proc = FakeProcess()
        s = make_session(proc, response_timeout=1.0)
        try:
            task = asyncio.create_task(s.query("ping"))
            await asyncio.sleep(0.01)
            proc.emit_stdout(b"pong\n")
            assert await task == "pong"
            assert s.abandoned_responses == 0
        finally:
            await s.close()

    async def test_timeout_is_bounded_by_response_timeout(self):
        proc = FakeProcess()
        s = make_session(proc, response_timeout=0.3)
        try:
            start = time.monotonic()
            with pytest.raises(ResponseTimeoutError, match="0.3s"):
                await s.query("slow")
            elapsed = time.monotonic() - start
            assert 0.25 <= elapsed < 0.6
            assert s.abandoned_responses == 1
        finally:
            await s.close()

    async def test_late_reply_is_discarded_before_next_write(self):
        proc = FakeProcess()
        s = make_session(proc, response_timeout=0.2)
        try:
            with pytest.raises(ResponseTimeoutError):
                await s.query("slow")

            proc.emit_stdout(b"late reply\n")
            await _settle()

            proc.responder = str.upper
            assert await s.query("next") == "NEXT"
            assert s.discarded_lines == 1
        finally:
            await s.close()


class TestUnsolicitedOutput:
    async def test_output_while_idle_is_dropped_not_queued(self, session, fake_proc):
        for i in range(20_000):
            fake_proc.emit_stdout(f"notification {i}\n".encode())
        await _settle()

        assert session._lines.qsize() == 0
        assert session.discarded_lines == 20_000
        assert await session.query("ping") == "PING"

    async def test_burst_during_query_is_bounded(self):
        proc = FakeProcess()
        s = make_session(proc)
        try:
            task = asyncio.create_task(s.query("ping"))
            await _settle()
            proc.emit_stdout(b"".join(f"line {i}\n".encode() for i in range(1000)))
            assert await task == "line 0"
            await _settle()
            assert s._lines.qsize() <= 64
            assert s.discarded_lines > 0
        finally:
            await s.close()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestClose:
    async def test_close_fails_in_flight_and_queued(self):
        proc = FakeProcess()
        s = make_session(proc, response_timeout=10)
        in_flight = asyncio.create_task(s.query("a"))
        queued = asyncio.create_task(s.query("b"))
        await _settle()

        await s.close()
        with pytest.raises(ProcessTerminatedError):
            await in_flight
        with pytest.raises(ProcessTerminatedError):
            await queued

    async def test_query_after_close(self, fake_proc):
        s = make_session(fake_proc)
        await s.close()
        with pytest.raises(ProcessTerminatedError):
            await s.query("ping")
        assert fake_proc.stdin.written == []

    async def test_close_is_idempotent(self, fake_proc):
        s = make_session(fake_proc)
        s.start()
        await s.close()
        await s.close()
        assert s.closed


class TestStats:
    async def test_reports_counters_and_liveness(self, session, fake_proc):
        await session.query("a")
        stats = session.stats()
        assert stats["pid"] == fake_proc.pid
        assert stats["alive"] is True
        assert stats["exit_status"] is None
        assert stats["requests"] == 1
        assert stats["state"] == "idle"

        fake_proc.close(2)
        stats = session.stats()
        assert stats["alive"] is False
        assert stats["exit_status"] == 2
