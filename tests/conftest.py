"""Shared test fixtures for dockreach."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from dockreach.commands import CommandResult
from dockreach.profiles import ConnectionProfile

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures; importable by test files)
# ---------------------------------------------------------------------------


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Usage::

        s = make_settings(tunnel=TunnelConfig(socket_dir=tmp_path))
        s = make_settings(retry=RetryConfig(initial_delay_ms=1))
    """
    from dockreach.config import (
        AdhocSshConfig,
        DiscoveryConfig,
        LoggingConfig,
        RetryConfig,
        Settings,
        TunnelConfig,
    )

    defaults = {
        "profiles_file": None,
        "profiles_json": None,
        "ssh": AdhocSshConfig(),
        "retry": RetryConfig(initial_delay_ms=1),
        "tunnel": TunnelConfig(),
        "discovery": DiscoveryConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    return Settings.model_construct(**defaults)


def make_profile(name: str = "prod", **overrides) -> ConnectionProfile:
    fields = {"name": name, "host": f"{name}.example.com", "username": "deployer"}
    fields.update(overrides)
    return ConnectionProfile(**fields)


class FakeProcess:
    """Stand-in for a spawned ssh process."""

    _next_pid = 4000

    def __init__(self, *, exit_code: int | None = None, output: str = "") -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self._returncode = exit_code
        self.output = output
        self.terminated = False

    @property
    def returncode(self) -> int | None:
        return self._returncode

    async def read_output(self, timeout: float = 1.0) -> str:
        return self.output

    def terminate(self) -> None:
        self.terminated = True
        self._returncode = -15


class FakeSpawner:
    """Records spawns; creates the forwarded socket file like a working ssh -L."""

    def __init__(
        self,
        *,
        create_socket: bool = True,
        exit_code: int | None = None,
        output: str = "",
    ) -> None:
        self.create_socket = create_socket
        self.exit_code = exit_code
        self.output = output
        self.calls: list[list[str]] = []
        self.envs: list[dict[str, str] | None] = []
        self.processes: list[FakeProcess] = []

    async def spawn(self, argv, *, env=None):
        self.calls.append(list(argv))
        self.envs.append(dict(env) if env else None)
        await asyncio.sleep(0)
        if self.create_socket:
            forward = argv[argv.index("-L") + 1]
            Path(forward.rsplit(":", 1)[0]).touch()
        process = FakeProcess(exit_code=self.exit_code, output=self.output)
        self.processes.append(process)
        return process


class FakeEngineClient:
    def __init__(self, factory: FakeClientFactory, socket_path: str | None) -> None:
        self._factory = factory
        self.socket_path = socket_path

    async def ping(self) -> None:
        if not self._factory.alive:
            raise ConnectionRefusedError(111, "Connection refused")

    async def is_alive(self) -> bool:
        self._factory.probes.append(self.socket_path)
        return self._factory.alive


class FakeClientFactory:
    """Callable client factory; flip ``alive`` to simulate a dead engine."""

    def __init__(self, *, alive: bool = True) -> None:
        self.alive = alive
        self.probes: list[str | None] = []
        self.created: list[FakeEngineClient] = []

    def __call__(self, socket_path: str | None) -> FakeEngineClient:
        client = FakeEngineClient(self, socket_path)
        self.created.append(client)
        return client


class FakeRunner:
    """Command runner answering from a prefix → result table."""

    def __init__(self, responses: dict[str, CommandResult] | None = None) -> None:
        self.responses = responses or {}
        self.commands: list[str] = []

    async def execute(self, command, *, cwd=None, timeout_ms=30000):
        self.commands.append(command)
        for prefix, result in self.responses.items():
            if command.startswith(prefix):
                return result
        return CommandResult(stdout="", stderr="not found", exit_code=1)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults: no dockreach.toml,
    no .env, no environment. Tests are isolated from the developer's config.
    """
    for var in (
        "DOCKREACH_PROFILES_FILE",
        "DOCKREACH_PROFILES_JSON",
        "DOCKREACH_SSH__HOST",
        "DOCKREACH_SSH__USER",
        "DOCKREACH_SSH__PORT",
        "DOCKREACH_SSH__KEY",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("dockreach.config._settings", make_settings())


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tunnel_settings(tmp_path):
    """Settings with sockets under tmp_path and a health loop that never fires."""
    from dockreach.config import TunnelConfig

    return make_settings(
        tunnel=TunnelConfig(
            socket_dir=tmp_path,
            ready_timeout_s=1.0,
            poll_interval_s=0.01,
            health_check_interval_s=3600,
        )
    )
