"""Process-wide structlog logger for the gateway.

Configured on import from LOG_LEVEL in os.environ, because ``mcp_http.config``
logs too and cannot be imported first. Once Settings are loaded the CLI calls
:func:`set_level` so a LOG_LEVEL that only appears in ``.env`` takes effect.

Child-process output is logged through the same logger with a ``server`` key,
so gateway and server lines interleave in one stream.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

_QUIET_LIBRARIES = ("asyncio", "aiohttp.access")


def _level_from_name(name: str) -> int:
    return logging.getLevelNamesMapping().get(name.strip().upper(), logging.INFO)


def set_level(name: str) -> None:
    """Change the effective log level. Cached structlog loggers follow it."""
    level = _level_from_name(name)
    logging.getLogger().setLevel(level)
    for lib in _QUIET_LIBRARIES:
        logging.getLogger(lib).setLevel(max(level, logging.WARNING))


def _configure() -> structlog.stdlib.BoundLogger:
    logging.basicConfig(format="%(message)s", stream=sys.stderr)
    set_level(os.environ.get("LOG_LEVEL", "INFO"))

    if sys.stderr.isatty():
        renderers: list[structlog.types.Processor] = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(
                key_order=["timestamp", "level", "event", "server"],
                drop_missing=True,
            ),
        ]
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            *renderers,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("mcp_http")


logger = _configure()


def _log_uncaught(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Unhandled exception in gateway", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _log_uncaught
