"""Compose workload discovery on an engine host.

Fast path (:meth:`RemoteDiscovery.list_all`): one ``docker ps | xargs docker
inspect`` round trip over every container, aggregated by compose project
label. No manifest is read, so totals count observed containers.

Detail path (:meth:`RemoteDiscovery.get_one`): the same query filtered to one
project, plus a read of that project's compose file to compare declared
services against running containers.
"""

from __future__ import annotations

import posixpath
import shlex
from typing import TYPE_CHECKING, Any

import yaml

from dockreach.commands import RemoteCommandRunner, read_remote_file
from dockreach.discovery.aggregate import (
    MANIFEST_NAMES,
    aggregate_project,
    collect_issues,
    compute_status,
    group_by_project,
    project_path,
    summarize,
)
from dockreach.discovery.models import ContainerRecord, DiscoveredWorkload, DiscoveryResult
from dockreach.discovery.parser import INSPECT_FORMAT, PROJECT_LABEL, parse_inspect_output
from dockreach.errors import RemoteCommandError
from dockreach.logger import logger

if TYPE_CHECKING:
    from dockreach.connection import ConnectionManager


def bulk_inspect_command(project: str | None = None) -> str:
    ps = "docker ps -a -q"
    if project is not None:
        ps += f" --filter {shlex.quote(f'label={PROJECT_LABEL}={project}')}"
    return f"{ps} | xargs -r docker inspect --format '{INSPECT_FORMAT}'"


def declared_services(text: str) -> list[str] | None:
    """Service names from a compose file, or None if it has no services mapping."""
    try:
        document: Any = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logger.debug("Unparsable compose file", err=str(exc))
        return None
    if not isinstance(document, dict):
        return None
    services = document.get("services")
    if not isinstance(services, dict):
        return None
    return [str(name) for name in services]


class RemoteDiscovery:
    """Enumerate compose workloads through one connection.

    Commands go through ``connection.commands`` by default, so remote calls
    get the connection's retry policy. Pass ``runner`` to substitute another
    command runner.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        runner: RemoteCommandRunner | None = None,
    ) -> None:
        self._connection = connection
        self._runner = runner or connection.commands
        self._config = connection.settings.discovery

    def resolve_base_path(self, base_path: str | None = None) -> str:
        if base_path:
            return base_path
        profile = self._connection.profile
        if profile is not None and profile.remote_base_path:
            return profile.remote_base_path
        return self._config.default_base_path

    async def list_all(self, base_path: str | None = None) -> DiscoveryResult:
        base = self.resolve_base_path(base_path)
        logger.info("Discovering workloads", connection=self._connection.name, base_path=base)

        result = await self._runner.execute(
            bulk_inspect_command(), timeout_ms=self._config.list_timeout_ms
        )
        if not result.ok or not result.stdout:
            logger.warning(
                "Container listing returned nothing",
                connection=self._connection.name,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
            return DiscoveryResult()

        groups = group_by_project(parse_inspect_output(result.stdout))
        workloads = [aggregate_project(name, records, base) for name, records in groups.items()]
        summary = summarize(workloads)
        logger.info(
            "Discovered workloads",
            connection=self._connection.name,
            total=summary.total,
            running=summary.running,
            partial=summary.partial,
            stopped=summary.stopped,
        )
        return DiscoveryResult(workloads=workloads, summary=summary)

    async def get_one(
        self, project_name: str, base_path: str | None = None
    ) -> DiscoveredWorkload | None:
        base = self.resolve_base_path(base_path)
        timeout_ms = self._config.project_timeout_ms

        result = await self._runner.execute(
            bulk_inspect_command(project_name), timeout_ms=timeout_ms
        )
        records: list[ContainerRecord] = []
        if result.ok:
            records = [r for r in parse_inspect_output(result.stdout) if r.project == project_name]
        if not records:
            logger.debug("No containers for project", project=project_name)
            return None

        path = project_path(project_name, records, base)
        for filename in MANIFEST_NAMES:
            manifest_path = posixpath.join(path, filename)
            try:
                text = await read_remote_file(self._runner, manifest_path, timeout_ms=timeout_ms)
            except RemoteCommandError:
                continue
            services = declared_services(text)
            if services is None:
                logger.warning("Compose file has no services mapping", path=manifest_path)
                break
            return self._from_manifest(project_name, path, manifest_path, services, records)

        logger.warning("Compose file not found, using labels only", project=project_name, path=path)
        return aggregate_project(project_name, records, base)

    @staticmethod
    def _from_manifest(
        name: str,
        path: str,
        manifest_path: str,
        services: list[str],
        records: list[ContainerRecord],
    ) -> DiscoveredWorkload:
        """Counts are per declared service; replicas of one service count once."""
        up = {r.service for r in records if r.state == "running"}
        running = sum(1 for service in services if service in up)
        return DiscoveredWorkload(
            name=name,
            path=path,
            manifest_path=manifest_path,
            services=services,
            status=compute_status(running, len(services)),
            running_count=running,
            total_count=len(services),
            issues=collect_issues(records),
            manifest_read=True,
        )
