"""Error taxonomy.

Three families matter operationally:

- :class:`SetupError` and :class:`LaunchError` abort startup before the HTTP
  listener binds. The operator has to intervene.
- :class:`ProtocolError` is raised per query. The gateway maps it to a 500
  and keeps serving; a dead process makes every later query fail the same way.
- :class:`ConfigError` covers the server config file and descriptor lookup.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for every error raised by mcp_http."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigError(GatewayError):
    """The server config file is unreadable or invalid."""


class ServerNotFoundError(ConfigError):
    def __init__(self, name: str, available: list[str]) -> None:
        self.name = name
        self.available = available
        super().__init__(f"Server '{name}' not found in config (available: {available})")


# ---------------------------------------------------------------------------
# Setup (bootstrap)
# ---------------------------------------------------------------------------


class SetupError(GatewayError):
    """Fatal error while preparing a server's source and runtime."""


class UnsupportedTypeError(SetupError):
    def __init__(self, server_type: str, supported: frozenset[str]) -> None:
        self.server_type = server_type
        self.supported = supported
        super().__init__(
            f"Unsupported server type: {server_type} (supported: {sorted(supported)})"
        )


class MissingSourceError(SetupError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Repository not specified for server '{name}'")


class FetchFailedError(SetupError):
    def __init__(self, repository: str, output: str) -> None:
        self.repository = repository
        self.output = output
        super().__init__(f"Fetching {repository} failed: {output}")


class InstallFailedError(SetupError):
    def __init__(self, command: str, stdout: str = "", stderr: str = "") -> None:
        self.command = command
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"Install command failed: {command}\nstderr: {stderr}\nstdout: {stdout}")


class EntrypointMissingError(SetupError):
    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Entrypoint not found: {path}")


class RuntimeUnavailableError(SetupError):
    def __init__(self, interpreter: str, reason: str) -> None:
        self.interpreter = interpreter
        self.reason = reason
        super().__init__(f"Runtime {interpreter} is not usable: {reason}")


# ---------------------------------------------------------------------------
# Launch
# ---------------------------------------------------------------------------


class LaunchError(GatewayError):
    """Fatal error while spawning the server process."""


class UnsupportedLanguageError(LaunchError):
    def __init__(self, language: str, detail: str) -> None:
        self.language = language
        super().__init__(f"Unsupported language: {language} ({detail})")


class SpawnFailedError(LaunchError):
    pass


class ImmediateExitError(LaunchError):
    def __init__(self, returncode: int, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        msg = f"Process exited immediately with status: {returncode}"
        if stderr:
            msg += f"\nstderr: {stderr}"
        super().__init__(msg)


class StreamUnavailableError(LaunchError):
    def __init__(self, stream: str) -> None:
        self.stream = stream
        super().__init__(f"Failed to get {stream} of spawned process")


# ---------------------------------------------------------------------------
# Protocol (per query)
# ---------------------------------------------------------------------------


class ProtocolError(GatewayError):
    """A single query failed. The session stays usable for the next one."""


class InvalidCommandError(ProtocolError):
    pass


class ProcessTerminatedError(ProtocolError):
    pass


class WriteFailedError(ProtocolError):
    pass


class FlushFailedError(ProtocolError):
    pass


class ConnectionClosedError(ProtocolError):
    pass


class EmptyResponseError(ProtocolError):
    pass


class ReadFailedError(ProtocolError):
    pass


class ResponseTimeoutError(ProtocolError):
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"No response within {timeout:g}s")
