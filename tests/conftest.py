"""Shared test fixtures for mcp_http."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from mcp_http.config import RuntimeConfig, reset_settings
from mcp_http.monitor import ProcessHandle
from mcp_http.session import ProcessSession

# Env vars read by Settings; cleared so the host environment can't leak in.
_SETTINGS_ENV = (
    "MCP_SERVERS_DIR",
    "RESPONSE_TIMEOUT_SECS",
    "PROCESS_INIT_WAIT_SECS",
    "SUPPORTED_LANGUAGES",
    "SUPPORTED_SERVER_TYPES",
    "MAX_LINE_BYTES",
    "MCP_CONFIG_FILE",
    "MCP_SERVER_NAME",
    "HOST",
    "PORT",
    "HTTP_API_KEY",
    "DISABLE_AUTH",
)


@pytest.fixture(autouse=True)
def _clean_settings(monkeypatch):
    for name in _SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------


def make_runtime(tmp_path: Path, **overrides) -> RuntimeConfig:
    """RuntimeConfig rooted in tmp_path with short timeouts."""
    values = {
        "install_root": tmp_path / "servers",
        "response_timeout": 1.0,
        "init_wait": 0.0,
        "supported_languages": frozenset({"node", "python"}),
        "supported_server_types": frozenset({"github"}),
    }
    values.update(overrides)
    return RuntimeConfig(**values)


def make_session(proc: FakeProcess, *, response_timeout: float = 1.0) -> ProcessSession:
    handle = ProcessHandle(proc, name="test")  # type: ignore[arg-type]
    return ProcessSession(
        stdin=proc.stdin,  # type: ignore[arg-type]
        stdout=proc.stdout,
        handle=handle,
        response_timeout=response_timeout,
        name="test",
    )


class FakeStdin:
    """Stands in for the StreamWriter on the server's stdin."""

    def __init__(self, on_write: Callable[[bytes], None] | None = None) -> None:
        self.written: list[bytes] = []
        self.closed = False
        self.write_error: Exception | None = None
        self.drain_error: Exception | None = None
        self._on_write = on_write

    def write(self, data: bytes) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.written.append(data)
        if self._on_write is not None:
            self._on_write(data)

    async def drain(self) -> None:
        if self.drain_error is not None:
            raise self.drain_error

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Simulates asyncio.subprocess.Process for a line-protocol server.

    ``responder`` maps each command line written to stdin to a reply line
    (without the newline), or None for no reply. Must be created inside a
    running event loop.
    """

    def __init__(
        self,
        responder: Callable[[str], str | None] | None = None,
        *,
        pid: int = 4242,
        limit: int = 2**16,
    ) -> None:
        self.pid = pid
        self.stdout = asyncio.StreamReader(limit=limit)
        self.stderr = asyncio.StreamReader(limit=limit)
        self.stdin = FakeStdin(on_write=self._handle_input)
        self.responder = responder
        self.signals: list[str] = []
        self.ignore_term = False
        self._returncode: int | None = None
        self._wait_event = asyncio.Event()

    def _handle_input(self, data: bytes) -> None:
        if self.responder is None:
            return
        for line in data.decode().splitlines():
            reply = self.responder(line)
            if reply is not None:
                self.stdout.feed_data(reply.encode() + b"\n")

    def emit_stdout(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def emit_stderr(self, data: bytes) -> None:
        self.stderr.feed_data(data)

    def close(self, code: int = 0) -> None:
        """Simulate process exit."""
        if self._returncode is None:
            self._returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._wait_event.set()

    async def wait(self) -> int:
        await self._wait_event.wait()
        return self._returncode  # type: ignore[return-value]

    def terminate(self) -> None:
        self.signals.append("TERM")
        if not self.ignore_term:
            self.close(-15)

    def kill(self) -> None:
        self.signals.append("KILL")
        self.close(-9)

    @property
    def returncode(self) -> int | None:
        return self._returncode


def echo_upper(line: str) -> str:
    return line.upper()


def pid_running(pid: int) -> bool:
    """True while pid exists and is not a zombie. Needs /proc."""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return False
    # State follows the parenthesised command name
    return stat.rpartition(")")[2].split()[0] != "Z"


async def wait_for_pid_file(path: Path, timeout: float = 5.0) -> int:
    """Poll until a child process has written its pid to path."""
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if path.exists() and path.read_text().strip():
            return int(path.read_text())
        await asyncio.sleep(0.02)
    raise AssertionError(f"{path} was never written")


@pytest.fixture
async def fake_proc():
    """FakeProcess that answers every line with its upper-cased copy."""
    return FakeProcess(echo_upper)


@pytest.fixture
async def session(fake_proc):
    s = make_session(fake_proc)
    s.start()
    yield s
    await s.close()
