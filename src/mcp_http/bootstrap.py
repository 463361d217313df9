"""Make sure a server's code and runtime are ready to launch.

:func:`ensure_server_ready` guarantees that on return the entrypoint exists and
the interpreter answers ``--version``; otherwise it raises a
:class:`~mcp_http.errors.SetupError` and nothing is spawned. Once a server is
installed, later calls only re-verify.

Install commands run in one of two ways:

- ``sh -c <command>`` when the command chains steps with ``&&`` or ``||``;
- otherwise the command is split on whitespace and executed directly.
  There is no quoting support in this mode.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path

from mcp_http.config import RuntimeConfig
from mcp_http.errors import (
    EntrypointMissingError,
    FetchFailedError,
    InstallFailedError,
    MissingSourceError,
    RuntimeUnavailableError,
    UnsupportedTypeError,
)
from mcp_http.launcher import entrypoint_path, resolve_interpreter
from mcp_http.logger import logger
from mcp_http.servers import ServerDescriptor
from mcp_http.utils import CommandResult, run_command, run_shell_command

_SHELL_OPERATORS = ("&&", "||")


@dataclass(frozen=True)
class InstallInvocation:
    """How an install command will be executed."""

    command: str
    shell: bool
    argv: tuple[str, ...] = ()


def plan_install(command: str) -> InstallInvocation:
    """Pick shell or argument-vector execution for ``command``."""
    if any(op in command for op in _SHELL_OPERATORS):
        return InstallInvocation(command=command, shell=True)
    argv = tuple(command.split())
    if not argv:
        raise InstallFailedError(command, stderr="Empty install command")
    return InstallInvocation(command=command, shell=False, argv=argv)


async def run_install(invocation: InstallInvocation, cwd: Path) -> CommandResult:
    if invocation.shell:
        return await run_shell_command(invocation.command, cwd=cwd)
    return await run_command(*invocation.argv, cwd=cwd)


def clone_url(repository: str) -> str:
    """Full URLs, scp-style addresses and absolute paths pass through; slugs go to GitHub."""
    if "://" in repository or repository.startswith("git@") or Path(repository).is_absolute():
        return repository
    return f"https://github.com/{repository}"


async def fetch_source(repository: str, server_dir: Path) -> None:
    url = clone_url(repository)
    logger.info("Cloning repository", repository=url, target=str(server_dir))
    server_dir.parent.mkdir(parents=True, exist_ok=True)

    start = time.monotonic()
    result = await run_command("git", "clone", url, str(server_dir))
    if not result.ok:
        logger.error("Git clone failed", repository=url, err=result.describe_failure())
        raise FetchFailedError(url, result.describe_failure())
    logger.info(
        "Repository cloned",
        repository=url,
        elapsed_ms=round((time.monotonic() - start) * 1000),
    )


async def install_dependencies(command: str, server_dir: Path) -> None:
    invocation = plan_install(command)
    logger.info("Installing dependencies", command=command, shell=invocation.shell)

    start = time.monotonic()
    result = await run_install(invocation, server_dir)
    if not result.ok:
        logger.error(
            "Install command failed",
            command=command,
            exit_code=result.returncode,
            err=result.start_error,
            stdout_tail=result.stdout[-500:],
            stderr_tail=result.stderr[-500:],
        )
        raise InstallFailedError(
            command,
            stdout=result.stdout,
            stderr=result.stderr or result.describe_failure(),
        )
    logger.info(
        "Dependencies installed",
        command=command,
        elapsed_ms=round((time.monotonic() - start) * 1000),
    )


async def probe_runtime(language: str) -> str | None:
    """Check the language's interpreter starts. Returns its version string."""
    interpreter = resolve_interpreter(language)
    if interpreter is None:
        # No interpreter mapping; the launcher rejects the language
        return None

    result = await run_command(interpreter, "--version", timeout_seconds=30)
    if not result.ok:
        logger.error("Runtime is not usable", interpreter=interpreter, err=result.describe_failure())
        raise RuntimeUnavailableError(interpreter, result.describe_failure())

    # Python 2 printed its version on stderr
    version = result.stdout or result.stderr
    logger.info("Runtime available", interpreter=interpreter, version=version)
    return version


async def ensure_server_ready(
    name: str,
    descriptor: ServerDescriptor,
    runtime: RuntimeConfig,
) -> Path:
    """Fetch, install and verify the server. Returns its install directory."""
    logger.debug("Setting up server", server=name, type=descriptor.type)

    if descriptor.type not in runtime.supported_server_types:
        logger.error(
            "Unsupported server type",
            server=name,
            type=descriptor.type,
            supported=sorted(runtime.supported_server_types),
        )
        raise UnsupportedTypeError(descriptor.type, runtime.supported_server_types)

    server_dir = runtime.server_dir(name)
    need_install = False

    if not server_dir.exists():
        if descriptor.repository is None:
            logger.error("Repository not specified", server=name, target=str(server_dir))
            raise MissingSourceError(name)
        await fetch_source(descriptor.repository, server_dir)
        need_install = True
    else:
        logger.debug("Server directory exists, skipping clone", target=str(server_dir))

    entrypoint = entrypoint_path(name, descriptor, runtime)
    if not entrypoint.exists():
        logger.warning("Entrypoint not found, install needed", entrypoint=str(entrypoint))
        need_install = True

    if need_install:
        if descriptor.install_command:
            await install_dependencies(descriptor.install_command, server_dir)
        else:
            logger.warning("Install needed but no install command configured", server=name)

    if not entrypoint.exists():
        logger.error("Entrypoint not found", entrypoint=str(entrypoint))
        raise EntrypointMissingError(str(entrypoint))
    logger.debug("Entrypoint verified", entrypoint=str(entrypoint))

    await probe_runtime(descriptor.language)

    logger.info("Server ready", server=name, path=str(server_dir))
    return server_dir
