"""Entry point for `python -m mcp_http` / `mcp-http-server`.

Subcommands:
    mcp-http-server            Run the gateway (default)
    mcp-http-server setup      Fetch, install and verify the selected server, then exit
    mcp-http-server servers    List the servers in the config file
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from pydantic import ValidationError


def _load_settings():
    from mcp_http.config import get_settings
    from mcp_http.logger import logger, set_level

    try:
        settings = get_settings()
    except ValidationError as exc:
        logger.error("Invalid configuration", err=str(exc))
        sys.exit(1)
    set_level(settings.log_level)
    return settings


def _serve() -> int:
    from mcp_http.app import GatewayApp
    from mcp_http.errors import GatewayError
    from mcp_http.logger import logger

    app = GatewayApp(_load_settings())
    try:
        asyncio.run(app.run())
    except GatewayError as exc:
        logger.error("Failed to start MCP server", error=type(exc).__name__, err=str(exc))
        return 1
    except OSError as exc:
        logger.error("Failed to bind HTTP listener", err=str(exc))
        return 1
    return 0


def _setup() -> int:
    from mcp_http.app import GatewayApp
    from mcp_http.errors import GatewayError
    from mcp_http.logger import logger

    app = GatewayApp(_load_settings())
    try:
        name, _ = asyncio.run(app.prepare())
    except GatewayError as exc:
        logger.error("Setup failed", error=type(exc).__name__, err=str(exc))
        return 1
    print(f"{name} is ready in {app.runtime.server_dir(name)}")
    return 0


def _servers() -> int:
    from mcp_http.errors import ConfigError
    from mcp_http.servers import ServerRegistry

    settings = _load_settings()
    try:
        registry = ServerRegistry.from_file(settings.config_path)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    for name, descriptor in registry:
        marker = "*" if name == settings.mcp_server_name else " "
        line = f"{marker} {name} ({descriptor.language}, {descriptor.type})"
        if descriptor.description:
            line += f" - {descriptor.description}"
        print(line)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="mcp-http-server",
        description="Expose a line-oriented agent server over HTTP",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the HTTP gateway (default)")
    sub.add_parser("setup", help="Fetch, install and verify the selected server")
    sub.add_parser("servers", help="List configured servers")

    args = parser.parse_args()

    match args.command:
        case "setup":
            sys.exit(_setup())
        case "servers":
            sys.exit(_servers())
        case _:
            sys.exit(_serve())


if __name__ == "__main__":
    main()
