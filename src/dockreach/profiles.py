"""Connection profiles: named, independently credentialed engine targets.

Profiles come from exactly one source, chosen in this order:

1. ``DOCKREACH_PROFILES_FILE``: path to a JSON profiles document
2. ``DOCKREACH_PROFILES_JSON``: the same document inline
3. ``DOCKREACH_SSH__HOST`` / ``DOCKREACH_SSH__USER`` (+ ``PORT``, ``KEY``):
   a single remote profile named ``default``

No source at all is valid (local-only operation). A source that is set but
missing or malformed raises :class:`ConfigurationError`; there is no quiet
fall-through to the next source and never a fallback to the local engine.

Document shape::

    {
      "default": "production",
      "profiles": {
        "local": {"mode": "local"},
        "production": {
          "host": "prod.example.com",
          "username": "deployer",
          "port": 22,
          "privateKeyPath": "~/.ssh/id_ed25519",
          "projectsPath": "/var/www"
        }
      }
    }
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator, model_validator

from dockreach.errors import ConfigurationError
from dockreach.logger import logger

if TYPE_CHECKING:
    from dockreach.config import Settings

DEFAULT_SSH_PORT = 22
ADHOC_PROFILE_NAME = "default"

_ENV_HINT = (
    "set DOCKREACH_PROFILES_FILE (or DOCKREACH_PROFILES_JSON, or "
    "DOCKREACH_SSH__HOST and DOCKREACH_SSH__USER)"
)
_NO_FALLBACK = "No fallback to the local engine was attempted."


# ---------------------------------------------------------------------------
# File schema
# ---------------------------------------------------------------------------


class ProfileConfig(BaseModel):
    """One entry under ``profiles`` in the profiles document."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    mode: Literal["local", "remote"] = "remote"
    host: str | None = None
    username: str | None = None
    port: int = Field(DEFAULT_SSH_PORT, ge=1, le=65535)
    private_key_path: str | None = Field(None, alias="privateKeyPath")
    password: SecretStr | None = None
    passphrase: SecretStr | None = None
    projects_path: str | None = Field(None, alias="projectsPath")

    @field_validator("mode", mode="before")
    @classmethod
    def _accept_ssh_mode(cls, v: Any) -> Any:
        # Older profile files spell remote profiles as "ssh".
        return "remote" if v == "ssh" else v

    @field_validator("host", "username", "private_key_path", "projects_path")
    @classmethod
    def _strip(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None

    @model_validator(mode="after")
    def _require_remote_target(self) -> ProfileConfig:
        if self.mode == "remote" and not (self.host and self.username):
            raise ValueError('remote profiles must have "host" and "username"')
        return self

    @property
    def is_local(self) -> bool:
        return self.mode == "local"


class ProfilesDocument(BaseModel):
    model_config = {"extra": "forbid"}

    default: str | None = None
    profiles: dict[str, ProfileConfig]

    @model_validator(mode="after")
    def _check_default(self) -> ProfilesDocument:
        if not self.profiles:
            raise ValueError("no profiles defined")
        if self.default is not None and self.default not in self.profiles:
            raise ValueError(f'default profile "{self.default}" is not defined')
        return self


# ---------------------------------------------------------------------------
# Runtime profile
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConnectionProfile:
    """Identity plus network target of one remote engine. Immutable once loaded."""

    name: str
    host: str
    username: str
    port: int = DEFAULT_SSH_PORT
    identity_file: str | None = None
    passphrase: str | None = field(default=None, repr=False)
    password: str | None = field(default=None, repr=False)
    remote_base_path: str | None = None

    @property
    def destination(self) -> str:
        return f"{self.username}@{self.host}"

    @classmethod
    def from_config(cls, name: str, config: ProfileConfig) -> ConnectionProfile:
        if config.is_local or not config.host or not config.username:
            raise ConfigurationError(f'Profile "{name}" is not a remote profile')
        return cls(
            name=name,
            host=config.host,
            username=config.username,
            port=config.port,
            identity_file=expand_home(config.private_key_path),
            passphrase=config.passphrase.get_secret_value() if config.passphrase else None,
            password=config.password.get_secret_value() if config.password else None,
            remote_base_path=config.projects_path,
        )


def expand_home(path: str | None) -> str | None:
    if path is None:
        return None
    return os.path.expanduser(path)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def parse_profiles_json(text: str, source: str) -> ProfilesDocument:
    """Validate a profiles document. ``source`` names where it came from."""
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {source}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{source} must contain a JSON object")
    try:
        return ProfilesDocument.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid profiles in {source}: {exc}") from exc


def load_profiles_file(path: Path | str) -> ProfilesDocument:
    resolved = Path(expand_home(str(path)) or path).resolve()
    if not resolved.is_file():
        raise ConfigurationError(f"Profiles file not found: {resolved}")
    try:
        text = resolved.read_text()
    except OSError as exc:
        raise ConfigurationError(f"Cannot read profiles file {resolved}: {exc}") from exc
    document = parse_profiles_json(text, f"profiles file {resolved}")
    logger.info(
        "Loaded profiles file",
        path=str(resolved),
        profiles=sorted(document.profiles),
        default=document.default,
    )
    return document


def _adhoc_document(settings: Settings) -> ProfilesDocument:
    ssh = settings.ssh
    if not (ssh.host and ssh.user):
        raise ConfigurationError(
            "DOCKREACH_SSH__HOST and DOCKREACH_SSH__USER must both be set "
            "for an ad-hoc remote profile"
        )
    try:
        profile = ProfileConfig(
            mode="remote",
            host=ssh.host,
            username=ssh.user,
            port=ssh.port,
            private_key_path=ssh.key,
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid DOCKREACH_SSH__* settings: {exc}") from exc
    return ProfilesDocument(default=ADHOC_PROFILE_NAME, profiles={ADHOC_PROFILE_NAME: profile})


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProfileCatalog:
    """Resolved view of whichever profile source is configured."""

    profiles: Mapping[str, ProfileConfig] = field(default_factory=dict)
    default: str | None = None
    source: str | None = None  # human-readable origin, None when unconfigured

    @classmethod
    def from_settings(cls, settings: Settings) -> ProfileCatalog:
        if settings.profiles_file is not None:
            document = load_profiles_file(settings.profiles_file)
            source = f"profiles file {settings.profiles_file}"
        elif settings.profiles_json:
            document = parse_profiles_json(settings.profiles_json, "DOCKREACH_PROFILES_JSON")
            source = "DOCKREACH_PROFILES_JSON"
        elif settings.ssh.is_set:
            document = _adhoc_document(settings)
            source = "DOCKREACH_SSH__* environment variables"
        else:
            logger.debug("No profile configuration found, local engine only")
            return cls()
        return cls(profiles=dict(document.profiles), default=document.default, source=source)

    @property
    def is_configured(self) -> bool:
        return self.source is not None

    @property
    def names(self) -> list[str]:
        return sorted(self.profiles)

    def resolve(self, name: str) -> ProfileConfig:
        if not self.is_configured:
            raise ConfigurationError(
                f'Profile "{name}" was requested but no profile configuration is '
                f"present: {_ENV_HINT}. {_NO_FALLBACK}"
            )
        config = self.profiles.get(name)
        if config is None:
            available = ", ".join(self.names) or "(none)"
            raise ConfigurationError(
                f'Profile "{name}" not found in {self.source}. '
                f"Available profiles: {available}. {_NO_FALLBACK}"
            )
        return config
