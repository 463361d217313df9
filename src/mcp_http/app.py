"""Startup sequence and graceful shutdown.

Order: load server config → bootstrap → launch → stderr drain → init wait →
session → HTTP listener. Any setup or launch error aborts before the listener
binds, so a half-started gateway is never exposed.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import time
from collections.abc import Coroutine
from typing import Any, TypeVar

from mcp_http.bootstrap import ensure_server_ready
from mcp_http.config import Settings
from mcp_http.http_server import create_app, start_http_server
from mcp_http.launcher import launched_server
from mcp_http.logger import logger
from mcp_http.monitor import drain_stderr
from mcp_http.servers import ServerDescriptor, ServerRegistry
from mcp_http.session import ProcessSession
from mcp_http.utils import create_background_task

_DRAIN_FINISH_SECONDS = 2.0
_FORCE_EXIT_SECONDS = 15.0

T = TypeVar("T")


class GatewayApp:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.runtime = settings.runtime
        self.session: ProcessSession | None = None
        self._stop: asyncio.Event | None = None
        self._shutting_down = False

    async def prepare(self) -> tuple[str, ServerDescriptor]:
        """Resolve the selected server and make sure it is installed."""
        registry = ServerRegistry.from_file(self.settings.config_path)
        name = self.settings.mcp_server_name
        descriptor = registry.get(name)
        await ensure_server_ready(name, descriptor, self.runtime)
        return name, descriptor

    def _request_shutdown(self, sig_name: str) -> None:
        """Signal handler. A second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        # Hard-exit watchdog in case teardown hangs
        asyncio.get_running_loop().call_later(_FORCE_EXIT_SECONDS, lambda: os._exit(1))
        if self._stop is not None:
            self._stop.set()

    def _install_signal_handlers(self) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self._request_shutdown, sig.name)
                installed.append(sig)
        return installed

    async def run(self) -> None:
        """Main entry point. Returns after a shutdown signal."""
        app_start = time.monotonic()
        s = self.settings
        auth = s.auth
        logger.info(
            "Starting MCP HTTP server",
            config_file=s.mcp_config_file,
            server=s.mcp_server_name,
            auth_enabled=auth.enabled,
            api_key_present=auth.api_key is not None,
            disable_auth=s.disable_auth,
        )
        logger.debug("Runtime configuration", runtime=self.runtime)

        self._stop = asyncio.Event()
        installed = self._install_signal_handlers()
        try:
            prepared = await self._unless_stopped(self.prepare())
            if prepared is None:
                logger.info("Shutdown requested during setup")
            else:
                await self._serve(*prepared, app_start)
        finally:
            loop = asyncio.get_running_loop()
            for sig in installed:
                loop.remove_signal_handler(sig)
        logger.info("Shutdown complete")

    async def _unless_stopped(self, coro: Coroutine[Any, Any, T]) -> T | None:
        """Run coro until it finishes or a stop is requested. None means stopped."""
        assert self._stop is not None
        task = asyncio.create_task(coro)
        stop_wait = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({task, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
            if task.done():
                return task.result()
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            return None
        finally:
            stop_wait.cancel()
            if not task.done():
                task.cancel()

    async def _serve(self, name: str, descriptor: ServerDescriptor, app_start: float) -> None:
        assert self._stop is not None
        if self._stop.is_set():
            return

        drain_task: asyncio.Task[int] | None = None
        try:
            async with launched_server(name, descriptor, self.runtime) as launched:
                drain_task = create_background_task(
                    drain_stderr(launched.stderr, launched.handle),
                    name=f"{name}-stderr-drain",
                )

                logger.debug("Waiting for process initialization", seconds=self.runtime.init_wait)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stop.wait(), timeout=self.runtime.init_wait)
                if self._stop.is_set():
                    return

                session = ProcessSession.from_launched(
                    launched,
                    response_timeout=self.runtime.response_timeout,
                )
                session.start()
                self.session = session
                logger.info(
                    "MCP server started",
                    server=name,
                    pid=launched.pid,
                    setup_ms=round((time.monotonic() - app_start) * 1000),
                )

                runner = None
                try:
                    app = create_app(
                        session,
                        self.settings.auth,
                        max_body_bytes=self.runtime.max_line_bytes,
                    )
                    runner = await start_http_server(app, self.settings.host, self.settings.port)
                    logger.info(
                        "Server is now accepting connections",
                        startup_ms=round((time.monotonic() - app_start) * 1000),
                    )
                    await self._stop.wait()
                finally:
                    if runner is not None:
                        await runner.cleanup()
                    await session.close()
        finally:
            # The process is released by now; stderr reaches EOF shortly after
            if drain_task is not None:
                _, pending = await asyncio.wait({drain_task}, timeout=_DRAIN_FINISH_SECONDS)
                for task in pending:
                    task.cancel()
