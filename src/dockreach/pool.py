"""Connection pool: one :class:`ConnectionManager` per profile name.

The pool is an explicit object owned by whoever drives the process (CLI,
server, test) rather than a module-level registry. Lookups are synchronous;
managers connect lazily on first use.

Profile names never fall back to the local engine: an unknown name, or a
name with no profile configuration at all, raises ConfigurationError.
"""

from __future__ import annotations

from typing import Any

from dockreach.config import Settings, get_settings
from dockreach.connection import LOCAL_CONNECTION_NAME, ConnectionManager
from dockreach.engine import ClientFactory
from dockreach.logger import logger
from dockreach.process import ProcessSpawner
from dockreach.profiles import ConnectionProfile, ProfileCatalog


class ConnectionPool:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        catalog: ProfileCatalog | None = None,
        spawner: ProcessSpawner | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._catalog = catalog
        self._manager_kwargs: dict[str, Any] = {
            "settings": self.settings,
            "spawner": spawner,
            "client_factory": client_factory,
        }
        self._local: ConnectionManager | None = None
        self._remotes: dict[str, ConnectionManager] = {}

    async def __aenter__(self) -> ConnectionPool:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.clear()

    @property
    def catalog(self) -> ProfileCatalog:
        """Profile catalog, loaded on first access."""
        if self._catalog is None:
            self._catalog = ProfileCatalog.from_settings(self.settings)
        return self._catalog

    @property
    def cached_names(self) -> list[str]:
        names = sorted(self._remotes)
        if self._local is not None:
            names.insert(0, LOCAL_CONNECTION_NAME)
        return names

    def connections(self) -> list[ConnectionManager]:
        managers = list(self._remotes.values())
        if self._local is not None:
            managers.insert(0, self._local)
        return managers

    def get(self, profile_name: str | None = None) -> ConnectionManager:
        """Return the manager for ``profile_name`` (local engine when omitted)."""
        if profile_name is None:
            if self._local is None:
                self._local = ConnectionManager.local(**self._manager_kwargs)
            return self._local

        cached = self._remotes.get(profile_name)
        if cached is not None:
            return cached

        config = self.catalog.resolve(profile_name)
        if config.is_local:
            manager = ConnectionManager.local(profile_name, **self._manager_kwargs)
        else:
            profile = ConnectionProfile.from_config(profile_name, config)
            manager = ConnectionManager.remote(profile, **self._manager_kwargs)
        self._remotes[profile_name] = manager
        logger.debug(
            "Created connection manager",
            profile=profile_name,
            mode="remote" if manager.is_remote else "local",
        )
        return manager

    async def clear(self) -> None:
        """Clean up every manager; one failure does not stop the rest."""
        managers = self.connections()
        self._local = None
        self._remotes = {}
        for manager in managers:
            try:
                await manager.cleanup()
            except Exception:
                logger.exception("Connection cleanup failed", connection=manager.name)
        if managers:
            logger.info("Connection pool cleared", closed=len(managers))
