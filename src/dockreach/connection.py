"""Connection manager: lifecycle of one engine connection, local or tunneled.

A remote connection forwards the remote daemon's Unix socket to a local
socket with ``ssh -L``. Lifecycle::

    UNINITIALIZED → CONNECTING → CONNECTED → DEGRADED → CONNECTING → CONNECTED
                                     └──────────── any ────────────→ CLOSED

Tunnel acquisition is single-flight: concurrent ``ensure_connected()`` calls
and the periodic health check all join the same in-progress acquisition, so
the ssh process is spawned at most once per cycle. Recreation after a failed
health check swaps the socket and process underneath the manager; the
manager object itself (and therefore the pool's view of it) stays the same.
"""

from __future__ import annotations

import asyncio
import hashlib
import socket
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from dockreach.commands import (
    DEFAULT_COMMAND_TIMEOUT_MS,
    CommandResult,
    LocalCommandRunner,
    RemoteCommandRunner,
    SshCommandRunner,
    build_ssh_argv,
)
from dockreach.engine import ClientFactory, EngineClient, make_engine_client
from dockreach.errors import RemoteCommandError, TunnelError, UnsupportedPlatformError
from dockreach.logger import logger
from dockreach.process import AsyncioProcessSpawner, ProcessSpawner, SpawnedProcess
from dockreach.retry import RetryPolicy, retry_with_timeout
from dockreach.single_flight import SingleFlight

if TYPE_CHECKING:
    from dockreach.config import Settings
    from dockreach.profiles import ConnectionProfile

T = TypeVar("T")

LOCAL_CONNECTION_NAME = "local"
_SSH_CONNECTION_FAILURE = 255  # ssh's own exit code for connection errors
_COMMAND_TIMEOUT_GRACE_MS = 2000


class ConnectionState(StrEnum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    CLOSED = "closed"


@dataclass
class ConnectionHandle:
    """Mutable runtime state, owned exclusively by one :class:`ConnectionManager`."""

    is_remote: bool
    active_endpoint_id: str | None = None  # local socket path of the live tunnel
    owner_pid: int | None = None
    owned_process: SpawnedProcess | None = None
    creation: SingleFlight[str] = field(default_factory=lambda: SingleFlight("tunnel-acquire"))
    health_task: asyncio.Task[None] | None = None


def tunnel_supported() -> bool:
    """Unix-socket forwarding needs AF_UNIX; Windows ssh cannot bind one."""
    return hasattr(socket, "AF_UNIX") and sys.platform != "win32"


def tunnel_socket_path(socket_dir: Path, profile: ConnectionProfile) -> Path:
    """Deterministic local socket path for a profile's target.

    Derived from ``(username, host, port)`` so a live tunnel left by an
    earlier process is found again, while two credentials for the same
    address never share a socket. Hashed to stay under the ~104 byte
    ``sun_path`` limit.
    """
    key = f"{profile.username}@{profile.host}:{profile.port}"
    digest = hashlib.sha256(key.encode()).hexdigest()[:16]
    return socket_dir / f"dockreach-{digest}.sock"


class ConnectionManager:
    def __init__(
        self,
        name: str,
        profile: ConnectionProfile | None,
        *,
        settings: Settings,
        spawner: ProcessSpawner | None = None,
        client_factory: ClientFactory | None = None,
        command_runner: RemoteCommandRunner | None = None,
    ) -> None:
        self.name = name
        self.profile = profile
        self.settings = settings
        self._tunnel = settings.tunnel
        self._policy = RetryPolicy.from_config(settings.retry)
        self._spawner = spawner or AsyncioProcessSpawner()
        self._client_factory = client_factory or partial(
            make_engine_client, timeout=settings.tunnel.probe_timeout_s
        )
        if command_runner is None:
            command_runner = (
                SshCommandRunner(profile, connect_timeout=settings.tunnel.connect_timeout_s)
                if profile is not None
                else LocalCommandRunner()
            )
        self.command_runner = command_runner
        self.handle = ConnectionHandle(is_remote=profile is not None)
        self.state = ConnectionState.UNINITIALIZED
        self._client: EngineClient | None = None
        self._ever_connected = False

    @classmethod
    def local(cls, name: str = LOCAL_CONNECTION_NAME, **kwargs: Any) -> ConnectionManager:
        return cls(name, None, **kwargs)

    @classmethod
    def remote(cls, profile: ConnectionProfile, **kwargs: Any) -> ConnectionManager:
        return cls(profile.name, profile, **kwargs)

    def __repr__(self) -> str:
        mode = "remote" if self.is_remote else "local"
        return f"<ConnectionManager {self.name!r} {mode} {self.state.value}>"

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_remote(self) -> bool:
        return self.handle.is_remote

    @property
    def socket_path(self) -> str | None:
        return self.handle.active_endpoint_id

    @property
    def client(self) -> EngineClient:
        """Engine client bound to the current socket (rebinds after recreation)."""
        if self.is_remote and self.handle.active_endpoint_id is None:
            raise TunnelError(f"Connection {self.name!r} has no active tunnel")
        if self._client is None or (
            self.is_remote and self._client.socket_path != self.handle.active_endpoint_id
        ):
            self._client = self._client_factory(self.handle.active_endpoint_id)
        return self._client

    @property
    def commands(self) -> RemoteCommandRunner:
        """This connection's command runner, routed through :meth:`run_command`."""
        return _ConnectionCommandRunner(self)

    def _is_usable(self) -> bool:
        if self.state is not ConnectionState.CONNECTED:
            return False
        if not self.is_remote:
            return True
        endpoint = self.handle.active_endpoint_id
        return endpoint is not None and Path(endpoint).exists()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def ensure_connected(self) -> None:
        """Make the connection usable, joining any acquisition already running."""
        if self.state is ConnectionState.CLOSED:
            raise TunnelError(f"Connection {self.name!r} is closed")
        if not self.handle.creation.in_flight and self._is_usable():
            return
        if not self.is_remote:
            self.state = ConnectionState.CONNECTED
            return
        await self.handle.creation.run(self._acquire)

    async def execute(
        self,
        call: Callable[[EngineClient], Awaitable[T]],
        *,
        timeout_ms: int | None = None,
    ) -> T:
        """Run an engine call. Remote calls go through the retry executor."""
        await self.ensure_connected()
        if not self.is_remote:
            return await call(self.client)
        policy = self._policy
        if timeout_ms is not None:
            policy = replace(policy, timeout_ms=timeout_ms)
        return await retry_with_timeout(lambda: call(self.client), policy)

    async def run_command(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
    ) -> CommandResult:
        """Run a shell command on the engine host through :meth:`execute`."""

        async def _call(_client: EngineClient) -> CommandResult:
            result = await self.command_runner.execute(command, cwd=cwd, timeout_ms=timeout_ms)
            if self.is_remote and result.exit_code == _SSH_CONNECTION_FAILURE:
                raise RemoteCommandError(
                    f"ssh connection to {self.name!r} failed: {result.stderr or 'no output'}",
                    result,
                )
            return result

        return await self.execute(_call, timeout_ms=timeout_ms + _COMMAND_TIMEOUT_GRACE_MS)

    async def health_check(self) -> bool:
        """Probe the tunnel once; rebuild it in place if the probe fails.

        Returns whether the connection is healthy afterwards. Never raises:
        recreation failures are logged and retried on the next tick.
        """
        if not self.is_remote or self.state is ConnectionState.CLOSED:
            return True
        if self.handle.creation.in_flight:
            return True  # an acquisition is already fixing things

        endpoint = self.handle.active_endpoint_id
        if endpoint is not None and Path(endpoint).exists():
            if await self._client_factory(endpoint).is_alive():
                return True

        logger.warning("Tunnel health check failed, recreating", connection=self.name)
        self.state = ConnectionState.DEGRADED
        try:
            await self.handle.creation.run(self._acquire)
        except Exception as exc:
            logger.error("Tunnel recreation failed", connection=self.name, err=str(exc))
            return False
        logger.info("Tunnel recreated", connection=self.name, socket=self.socket_path)
        return True

    async def cleanup(self) -> None:
        """Tear down the health loop, the socket and the ssh process.

        The socket is always removed. Only a process this manager spawned is
        terminated: when the socket was adopted from an earlier run, that
        run's ssh forward is orphaned and keeps running without a socket.
        Idempotent; never raises.
        """
        handle = self.handle
        previous = self.state
        self.state = ConnectionState.CLOSED

        task, handle.health_task = handle.health_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if not handle.is_remote:
            return

        if handle.active_endpoint_id is not None:
            try:
                Path(handle.active_endpoint_id).unlink(missing_ok=True)
            except OSError as exc:
                logger.warning(
                    "Failed to remove tunnel socket",
                    connection=self.name,
                    socket=handle.active_endpoint_id,
                    err=str(exc),
                )
        self._terminate_owner()
        handle.active_endpoint_id = None
        self._client = None
        if previous is not ConnectionState.CLOSED:
            logger.info("Connection closed", connection=self.name, previous_state=previous.value)

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "mode": "remote" if self.is_remote else "local",
            "state": self.state.value,
            "host": self.profile.host if self.profile else None,
            "socket": self.handle.active_endpoint_id,
            "pid": self.handle.owner_pid,
            "health_check_running": bool(
                self.handle.health_task and not self.handle.health_task.done()
            ),
        }

    # ------------------------------------------------------------------
    # Tunnel acquisition
    # ------------------------------------------------------------------

    async def _acquire(self) -> str:
        profile = self.profile
        if profile is None:
            raise TunnelError("Local connections have no tunnel")
        if not tunnel_supported():
            raise UnsupportedPlatformError(
                f"SSH socket forwarding is not supported on {sys.platform}"
            )
        if self.state is ConnectionState.CLOSED:
            raise TunnelError(f"Connection {self.name!r} is closed")

        self.state = ConnectionState.CONNECTING
        try:
            path = await self._reuse_or_create(profile)
        except BaseException:
            if self.state is not ConnectionState.CLOSED:
                self.state = (
                    ConnectionState.DEGRADED
                    if self._ever_connected
                    else ConnectionState.UNINITIALIZED
                )
            raise

        if self.state is ConnectionState.CLOSED:
            # cleanup() ran while we were connecting; don't leak the new tunnel.
            path.unlink(missing_ok=True)
            self._terminate_owner()
            self.handle.active_endpoint_id = None
            raise TunnelError(f"Connection {self.name!r} was closed during tunnel setup")

        self.handle.active_endpoint_id = str(path)
        self._client = None
        self._ever_connected = True
        self.state = ConnectionState.CONNECTED
        self._start_health_loop()
        return str(path)

    async def _reuse_or_create(self, profile: ConnectionProfile) -> Path:
        path = tunnel_socket_path(self._tunnel.socket_dir, profile)

        if path.exists():
            if await self._client_factory(str(path)).is_alive():
                logger.info("Reusing live tunnel socket", connection=self.name, socket=str(path))
                if self.handle.active_endpoint_id != str(path):
                    self._terminate_owner()
                return path
            logger.warning("Removing stale tunnel socket", connection=self.name, socket=str(path))
            path.unlink(missing_ok=True)

        # Whatever process served the dead socket is of no further use.
        self._terminate_owner()

        path.parent.mkdir(parents=True, exist_ok=True)
        process = await self._spawn_tunnel(profile, path)
        self.handle.owned_process = process
        self.handle.owner_pid = process.pid
        await self._wait_for_socket(process, path)
        logger.info(
            "Tunnel established",
            connection=self.name,
            host=profile.host,
            port=profile.port,
            socket=str(path),
            pid=process.pid,
        )
        return path

    async def _spawn_tunnel(self, profile: ConnectionProfile, path: Path) -> SpawnedProcess:
        forward = [
            "-nNT",
            "-o", "ExitOnForwardFailure=yes",
            "-o", f"ServerAliveInterval={self._tunnel.server_alive_interval_s}",
            "-o", "ServerAliveCountMax=3",
            "-o", "StreamLocalBindUnlink=yes",
            "-L", f"{path}:{self._tunnel.remote_socket}",
        ]  # fmt: skip
        argv, env = build_ssh_argv(
            profile,
            extra_options=forward,
            connect_timeout=self._tunnel.connect_timeout_s,
        )
        logger.info("Opening SSH tunnel", connection=self.name, host=profile.host, socket=str(path))
        try:
            return await self._spawner.spawn(argv, env=env)
        except OSError as exc:
            raise TunnelError(f"Failed to start {argv[0]}: {exc}") from exc

    async def _wait_for_socket(self, process: SpawnedProcess, path: Path) -> None:
        loop = asyncio.get_running_loop()
        ceiling = self._tunnel.ready_timeout_s
        deadline = loop.time() + ceiling
        while loop.time() < deadline:
            if path.exists():
                return
            if process.returncode is not None:
                output = await process.read_output()
                self.handle.owned_process = None
                self.handle.owner_pid = None
                raise TunnelError(
                    f"ssh exited with code {process.returncode} before the tunnel to "
                    f"{self.name!r} was ready: {output or '(no output)'}"
                )
            await asyncio.sleep(self._tunnel.poll_interval_s)

        if path.exists():
            return
        self._terminate_owner()
        output = await process.read_output()
        raise TunnelError(
            f"Tunnel socket {path} for {self.name!r} did not appear within {ceiling}s: "
            f"{output or '(no output)'}"
        )

    def _terminate_owner(self) -> None:
        """SIGTERM the ssh process this manager spawned, if any."""
        handle = self.handle
        process, pid = handle.owned_process, handle.owner_pid
        handle.owned_process = None
        handle.owner_pid = None
        if process is None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        except Exception as exc:
            logger.warning(
                "Failed to stop tunnel process", connection=self.name, pid=pid, err=str(exc)
            )

    # ------------------------------------------------------------------
    # Health loop
    # ------------------------------------------------------------------

    def _start_health_loop(self) -> None:
        task = self.handle.health_task
        if task is not None and not task.done():
            return
        self.handle.health_task = asyncio.get_running_loop().create_task(
            self._health_loop(), name=f"dockreach-health-{self.name}"
        )

    async def _health_loop(self) -> None:
        interval = self._tunnel.health_check_interval_s
        while True:
            await asyncio.sleep(interval)
            try:
                await self.health_check()
            except Exception:
                logger.exception("Health check crashed", connection=self.name)


class _ConnectionCommandRunner:
    def __init__(self, connection: ConnectionManager) -> None:
        self._connection = connection

    async def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
    ) -> CommandResult:
        return await self._connection.run_command(command, cwd=cwd, timeout_ms=timeout_ms)
