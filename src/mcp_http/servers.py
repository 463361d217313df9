"""Server descriptors loaded from the JSON server config file.

Example ``mcp_servers.config.json``::

    {
      "github": {
        "type": "github",
        "repository": "github/github-mcp-server",
        "language": "node",
        "entrypoint": "dist/index.js",
        "description": "GitHub MCP server",
        "install_command": "npm install && npm run build"
      }
    }

The file is read once at startup. Descriptors are frozen afterwards.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path, PurePath

from pydantic import BaseModel, TypeAdapter, ValidationError, field_validator

from mcp_http.errors import ConfigError, ServerNotFoundError
from mcp_http.logger import logger


class ServerDescriptor(BaseModel):
    """Configuration record for one named agent server."""

    model_config = {"extra": "forbid", "frozen": True}

    type: str
    repository: str | None = None
    language: str
    entrypoint: str
    description: str | None = None
    install_command: str | None = None

    @field_validator("entrypoint")
    @classmethod
    def _relative_entrypoint(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("entrypoint must not be empty")
        if PurePath(v).is_absolute():
            raise ValueError("entrypoint must be relative to the server directory")
        return v

    @field_validator("repository", "install_command", mode="before")
    @classmethod
    def _blank_is_unset(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v


_DescriptorMap = TypeAdapter(dict[str, ServerDescriptor])


class ServerRegistry:
    """Immutable name → :class:`ServerDescriptor` mapping."""

    def __init__(self, servers: dict[str, ServerDescriptor]) -> None:
        self._servers = dict(servers)

    @classmethod
    def from_mapping(cls, data: object) -> ServerRegistry:
        try:
            return cls(_DescriptorMap.validate_python(data))
        except ValidationError as exc:
            raise ConfigError(f"Invalid server config: {exc}") from exc

    @classmethod
    def from_file(cls, path: Path) -> ServerRegistry:
        logger.debug("Loading server config", path=str(path))
        try:
            content = path.read_text()
        except OSError as exc:
            raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
        registry = cls.from_mapping(data)
        logger.info("Server config loaded", path=str(path), servers=registry.names())
        return registry

    def get(self, name: str) -> ServerDescriptor:
        try:
            return self._servers[name]
        except KeyError:
            raise ServerNotFoundError(name, self.names()) from None

    def names(self) -> list[str]:
        return sorted(self._servers)

    def __iter__(self) -> Iterator[tuple[str, ServerDescriptor]]:
        return iter(sorted(self._servers.items()))
