"""HTTP gateway in front of the process session.

Endpoints:
  - POST /api/v1: ``{"command": "..."}`` → ``{"result": "..."}``
  - GET /health: session stats; 503 once the server process is gone

When an API key is configured (and DISABLE_AUTH is not set) every route
requires ``Authorization: Bearer <key>``.
"""

from __future__ import annotations

import secrets
import time

from aiohttp import web
from aiohttp.typedefs import Handler
from pydantic import BaseModel, ValidationError, field_validator

from mcp_http.config import AuthConfig
from mcp_http.errors import ProtocolError
from mcp_http.logger import logger
from mcp_http.session import ProcessSession

_DEFAULT_MAX_BODY = 1024**2


class CommandRequest(BaseModel):
    command: str

    @field_validator("command")
    @classmethod
    def _single_line(cls, v: str) -> str:
        if "\n" in v:
            raise ValueError("command must not contain a newline")
        return v


class CommandResponse(BaseModel):
    result: str


# Typed app keys, set once in create_app(), never reassigned.
session_key: web.AppKey[ProcessSession] = web.AppKey("session", t=ProcessSession)
auth_key: web.AppKey[AuthConfig] = web.AppKey("auth", t=AuthConfig)


def _error_body(error: str, message: str) -> dict[str, str]:
    return {"error": error, "message": message}


def _bearer_token(request: web.Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header[len("Bearer ") :]


@web.middleware
async def auth_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    auth = request.app[auth_key]
    if not auth.enabled:
        return await handler(request)

    provided = _bearer_token(request)
    if (
        provided is not None
        and auth.api_key is not None
        and secrets.compare_digest(provided.encode(), auth.api_key.encode())
    ):
        return await handler(request)

    logger.warning("Rejected request with invalid or missing API key", path=request.path)
    return web.json_response(
        _error_body("Unauthorized", "Invalid or missing API key"),
        status=401,
    )


async def _handle_command(request: web.Request) -> web.Response:
    start = time.monotonic()
    session = request.app[session_key]

    try:
        payload = CommandRequest.model_validate_json(await request.read())
    except ValidationError as exc:
        message = "; ".join(err["msg"] for err in exc.errors(include_url=False))
        logger.warning("Rejected malformed request", reason=message)
        return web.json_response(_error_body("Bad Request", message), status=400)

    logger.info("Received HTTP request", command_chars=len(payload.command))
    logger.debug("Process stats", **session.stats())

    try:
        result = await session.query(payload.command)
    except ProtocolError as exc:
        logger.error(
            "Request failed",
            error=type(exc).__name__,
            reason=str(exc),
            elapsed_ms=round((time.monotonic() - start) * 1000),
        )
        logger.error("Process stats at failure", **session.stats())
        raise web.HTTPInternalServerError() from exc

    logger.info(
        "Request completed",
        elapsed_ms=round((time.monotonic() - start) * 1000),
        response_chars=len(result),
    )
    return web.json_response(CommandResponse(result=result).model_dump())


async def _handle_health(request: web.Request) -> web.Response:
    session = request.app[session_key]
    stats = session.stats()
    healthy = stats["alive"] and not session.closed
    return web.json_response(
        {"status": "ok" if healthy else "unavailable", "server": session.name, **stats},
        status=200 if healthy else 503,
    )


def create_app(
    session: ProcessSession,
    auth: AuthConfig,
    *,
    max_body_bytes: int = _DEFAULT_MAX_BODY,
) -> web.Application:
    app = web.Application(middlewares=[auth_middleware], client_max_size=max_body_bytes)
    app[session_key] = session
    app[auth_key] = auth
    app.router.add_post("/api/v1", _handle_command)
    app.router.add_get("/health", _handle_health)
    return app


async def start_http_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Set up, bind and start the server. Returns the runner for cleanup."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    try:
        await site.start()
    except OSError:
        await runner.cleanup()
        raise
    logger.info("HTTP server listening", host=host, port=port, endpoint="POST /api/v1")
    return runner
