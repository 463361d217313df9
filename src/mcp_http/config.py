"""Centralized configuration: pydantic BaseSettings read from env and ``.env``.

Every setting maps to a flat environment variable of the same name
(``RESPONSE_TIMEOUT_SECS``, ``MCP_SERVER_NAME``, ...). ``.env`` in the working
directory is read too; real environment variables win over it.

Core modules never read Settings themselves. Startup turns it into the
immutable :class:`RuntimeConfig` and :class:`AuthConfig` values and passes
those down explicitly.

Usage::

    from mcp_http.config import get_settings

    s = get_settings()
    runtime = s.runtime
    print(runtime.response_timeout)
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from pathlib import Path

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def split_csv(value: str) -> frozenset[str]:
    """Split a comma-separated setting, trimming entries and dropping empties."""
    return frozenset(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class RuntimeConfig:
    """Read-only runtime parameters shared by bootstrap, launcher and session."""

    install_root: Path
    response_timeout: float  # seconds
    init_wait: float  # seconds
    supported_languages: frozenset[str]
    supported_server_types: frozenset[str]
    max_line_bytes: int = 16 * 1024 * 1024

    def server_dir(self, name: str) -> Path:
        return self.install_root / name


@dataclass(frozen=True)
class AuthConfig:
    api_key: str | None
    enabled: bool


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    mcp_servers_dir: str = "/app/mcp-servers"
    response_timeout_secs: float = 30
    process_init_wait_secs: float = 2
    supported_languages: str = "node,python"
    supported_server_types: str = "github"
    max_line_bytes: int = 16 * 1024 * 1024

    mcp_config_file: str = "mcp_servers.config.json"
    mcp_server_name: str = "readability"

    host: str = "0.0.0.0"
    port: int = 3000
    http_api_key: SecretStr | None = None
    disable_auth: bool = False

    log_level: str = "INFO"

    @field_validator("response_timeout_secs")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("RESPONSE_TIMEOUT_SECS must be positive")
        return v

    @field_validator("process_init_wait_secs")
    @classmethod
    def _non_negative_wait(cls, v: float) -> float:
        if v < 0:
            raise ValueError("PROCESS_INIT_WAIT_SECS must not be negative")
        return v

    @field_validator("max_line_bytes")
    @classmethod
    def _sane_line_limit(cls, v: int) -> int:
        if v < 1024:
            raise ValueError("MAX_LINE_BYTES must be at least 1024")
        return v

    @field_validator("port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError(f"Invalid port: {v}")
        return v

    @field_validator("http_api_key", mode="before")
    @classmethod
    def _blank_key_is_unset(cls, v: object) -> object:
        # HTTP_API_KEY= in .env would otherwise enable auth with an empty key
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, v: str) -> str:
        return v.upper()

    # --- Computed properties ---

    @cached_property
    def runtime(self) -> RuntimeConfig:
        return RuntimeConfig(
            install_root=Path(self.mcp_servers_dir),
            response_timeout=self.response_timeout_secs,
            init_wait=self.process_init_wait_secs,
            supported_languages=split_csv(self.supported_languages),
            supported_server_types=split_csv(self.supported_server_types),
            max_line_bytes=self.max_line_bytes,
        )

    @cached_property
    def auth(self) -> AuthConfig:
        key = self.http_api_key.get_secret_value() if self.http_api_key else None
        return AuthConfig(api_key=key, enabled=key is not None and not self.disable_auth)

    @cached_property
    def config_path(self) -> Path:
        return Path(self.mcp_config_file)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
