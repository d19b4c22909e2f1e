"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Tunables live in dockreach.toml. Environment variables override it using the
``DOCKREACH_`` prefix and ``__`` as the nested delimiter (e.g.
``DOCKREACH_TUNNEL__READY_TIMEOUT_S=20``).

Priority (highest wins): init args > env vars > .env > dockreach.toml

Connection profiles themselves are not part of Settings; only the location of
their source is (see :mod:`dockreach.profiles`).

Usage::

    from dockreach.config import get_settings

    s = get_settings()
    print(s.retry.max_attempts)
    print(s.tunnel.socket_dir)
"""

from __future__ import annotations

import tempfile
from pathlib import Path

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in dockreach.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Rejects unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class RetryConfig(_StrictModel):
    max_attempts: int = 3
    timeout_ms: int = 30000
    initial_delay_ms: int = 1000
    backoff_multiplier: float = 2.0

    @field_validator("max_attempts")
    @classmethod
    def clamp_max_attempts(cls, v: int) -> int:
        return max(1, v)

    @field_validator("timeout_ms")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("timeout_ms must be positive")
        return v


class TunnelConfig(_StrictModel):
    socket_dir: Path = Path(tempfile.gettempdir())
    remote_socket: str = "/var/run/docker.sock"
    ready_timeout_s: float = 10.0  # ceiling for the forwarded socket to appear
    poll_interval_s: float = 0.1
    health_check_interval_s: float = 30.0
    probe_timeout_s: float = 5.0
    server_alive_interval_s: int = 30
    connect_timeout_s: int = 10


class DiscoveryConfig(_StrictModel):
    default_base_path: str = "/var/www"
    list_timeout_ms: int = 60000
    project_timeout_ms: int = 30000


class AdhocSshConfig(_StrictModel):
    """Single remote host from env vars, used when no profile file is configured."""

    host: str | None = None
    user: str | None = None
    port: int = 22
    key: str | None = None

    @property
    def is_set(self) -> bool:
        return bool(self.host or self.user)


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="dockreach.toml",
        env_file=".env",
        env_prefix="DOCKREACH_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    profiles_file: Path | None = None  # DOCKREACH_PROFILES_FILE
    profiles_json: str | None = None  # DOCKREACH_PROFILES_JSON (inline document)
    ssh: AdhocSshConfig = AdhocSshConfig()
    retry: RetryConfig = RetryConfig()
    tunnel: TunnelConfig = TunnelConfig()
    discovery: DiscoveryConfig = DiscoveryConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > dockreach.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


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
