"""Docker Engine API client bound to one Unix socket.

The socket is either the local daemon's or the local end of an SSH tunnel;
the client cannot tell the difference, which is the point of the tunnel.
Each request opens a short-lived aiohttp session over ``UnixConnector``.
"""

from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from typing import Any

import aiohttp

from dockreach.logger import logger

DEFAULT_LOCAL_SOCKET = "/var/run/docker.sock"
_API_BASE = "http://docker"


def default_local_socket() -> str:
    """Socket path of the local daemon, honouring ``DOCKER_HOST=unix://...``."""
    docker_host = os.environ.get("DOCKER_HOST", "")
    if docker_host.startswith("unix://"):
        return docker_host.removeprefix("unix://")
    return DEFAULT_LOCAL_SOCKET


class EngineClient:
    def __init__(self, socket_path: str | None = None, *, timeout: float = 5.0) -> None:
        self.socket_path = socket_path or default_local_socket()
        self._timeout = timeout

    def __repr__(self) -> str:
        return f"EngineClient(socket_path={self.socket_path!r})"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
    ) -> Any:
        connector = aiohttp.UnixConnector(path=self.socket_path)
        async with aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self._timeout),
        ) as session:
            async with session.request(method, f"{_API_BASE}{path}", params=params) as resp:
                resp.raise_for_status()
                if resp.content_type == "application/json":
                    return await resp.json()
                return await resp.text()

    async def ping(self) -> None:
        """``GET /_ping``. Raises when the engine is unreachable."""
        start = time.monotonic()
        body = await self._request("GET", "/_ping")
        elapsed_ms = (time.monotonic() - start) * 1000
        if elapsed_ms > 500:
            logger.warning(
                "Slow engine ping", socket=self.socket_path, elapsed_ms=round(elapsed_ms)
            )
        if str(body).strip() != "OK":
            raise aiohttp.ClientConnectionError(f"Unexpected ping response: {body!r}")

    async def is_alive(self) -> bool:
        """Liveness probe: ping with every failure mapped to ``False``."""
        try:
            await self.ping()
        except (aiohttp.ClientError, OSError, TimeoutError) as exc:
            logger.debug("Engine probe failed", socket=self.socket_path, err=str(exc))
            return False
        return True

    async def version(self) -> dict[str, Any]:
        return await self._request("GET", "/version")

    async def list_containers(
        self,
        *,
        all: bool = True,
        filters: dict[str, list[str]] | None = None,
    ) -> list[dict[str, Any]]:
        params = {"all": "1" if all else "0"}
        if filters:
            params["filters"] = json.dumps(filters)
        return await self._request("GET", "/containers/json", params=params)


ClientFactory = Callable[[str | None], EngineClient]


def make_engine_client(socket_path: str | None, timeout: float = 5.0) -> EngineClient:
    return EngineClient(socket_path, timeout=timeout)
