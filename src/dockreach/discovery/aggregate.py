"""Label-only aggregation of container records into workloads.

Total counts here are observed containers, which approximates declared
services: a service scaled to three replicas counts three times, and a
declared service that never got a container does not count at all.
"""

from __future__ import annotations

import posixpath
from collections.abc import Iterable, Sequence

from dockreach.discovery.models import (
    ContainerRecord,
    DiscoveredWorkload,
    DiscoverySummary,
    WorkloadStatus,
)
from dockreach.discovery.parser import extract_exit_code

MANIFEST_NAMES = ("docker-compose.yml", "compose.yml")


def compute_status(running: int, total: int) -> WorkloadStatus:
    if total > 0 and running == total:
        return "running"
    if running > 0:
        return "partial"
    return "stopped"


def collect_issues(records: Iterable[ContainerRecord]) -> list[str]:
    issues = []
    for record in records:
        if record.state == "restarting":
            issues.append(f"{record.name}: restarting")
        elif record.state == "exited":
            code = extract_exit_code(record.status_text)
            if code is None:
                issues.append(f"{record.name}: exited")
            else:
                issues.append(f"{record.name}: exited with code {code}")
    return issues


def group_by_project(records: Iterable[ContainerRecord]) -> dict[str, list[ContainerRecord]]:
    """Group by project label, preserving first-seen order."""
    groups: dict[str, list[ContainerRecord]] = {}
    for record in records:
        groups.setdefault(record.project, []).append(record)
    return groups


def project_path(name: str, records: Sequence[ContainerRecord], base_path: str) -> str:
    """Working-dir label of the first record, else ``<base_path>/<name>``."""
    for record in records[:1]:
        if record.working_dir:
            return record.working_dir
    return posixpath.join(base_path, name)


def aggregate_project(
    name: str,
    records: Sequence[ContainerRecord],
    base_path: str,
) -> DiscoveredWorkload:
    path = project_path(name, records, base_path)
    running = sum(1 for r in records if r.state == "running")
    services = list(dict.fromkeys(r.service for r in records if r.service))
    return DiscoveredWorkload(
        name=name,
        path=path,
        manifest_path=posixpath.join(path, MANIFEST_NAMES[0]),
        services=services,
        status=compute_status(running, len(records)),
        running_count=running,
        total_count=len(records),
        issues=collect_issues(records),
    )


def summarize(workloads: Iterable[DiscoveredWorkload]) -> DiscoverySummary:
    summary = DiscoverySummary()
    for workload in workloads:
        summary.total += 1
        match workload.status:
            case "running":
                summary.running += 1
            case "partial":
                summary.partial += 1
            case _:
                summary.stopped += 1
    return summary
