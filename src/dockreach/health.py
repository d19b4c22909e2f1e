"""Self-diagnostics: local engine reachability, profile setup, connection states."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from dockreach.connection import ConnectionState
from dockreach.errors import ConfigurationError
from dockreach.logger import logger
from dockreach.pool import ConnectionPool

HealthStatus = Literal["healthy", "degraded", "unhealthy"]


@dataclass
class HealthReport:
    status: HealthStatus
    timestamp: str
    checks: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


async def _check_engine(pool: ConnectionPool) -> dict[str, Any]:
    local = pool.get()
    start = time.monotonic()
    try:
        await local.execute(lambda client: client.ping())
    except Exception as exc:
        logger.warning("Local engine ping failed", err=str(exc))
        return {"status": "failed", "mode": "local", "message": str(exc) or type(exc).__name__}
    latency_ms = round((time.monotonic() - start) * 1000)
    return {"status": "ok", "mode": "local", "latency_ms": latency_ms}


def _check_profiles(pool: ConnectionPool) -> dict[str, Any]:
    try:
        catalog = pool.catalog
    except ConfigurationError as exc:
        return {"status": "failed", "message": str(exc)}
    if not catalog.is_configured:
        return {"status": "not_configured"}
    return {
        "status": "ok",
        "source": catalog.source,
        "default": catalog.default,
        "profiles": catalog.names,
    }


def _check_connections(pool: ConnectionPool) -> dict[str, Any]:
    connections = [manager.status() for manager in pool.connections()]
    degraded = [c["name"] for c in connections if c["state"] == ConnectionState.DEGRADED]
    return {
        "status": "warning" if degraded else "ok",
        "connections": connections,
        "degraded": degraded,
    }


async def check_health(pool: ConnectionPool) -> HealthReport:
    checks = {
        "engine": await _check_engine(pool),
        "profiles": _check_profiles(pool),
        "connections": _check_connections(pool),
    }
    statuses = {check["status"] for check in checks.values()}
    if "failed" in statuses:
        status: HealthStatus = "unhealthy"
    elif "warning" in statuses:
        status = "degraded"
    else:
        status = "healthy"
    return HealthReport(
        status=status,
        timestamp=datetime.now(UTC).isoformat(),
        checks=checks,
    )
