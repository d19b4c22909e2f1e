"""Discovery result types. Recomputed on every call, never cached."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

WorkloadStatus = Literal["running", "partial", "stopped"]


@dataclass(frozen=True)
class ContainerRecord:
    """One line of bulk ``docker inspect`` output."""

    name: str
    state: str
    project: str
    service: str = ""
    working_dir: str = ""
    status_text: str = ""  # e.g. "Exited (137)"; only filled for exited containers


@dataclass
class DiscoveredWorkload:
    name: str
    path: str
    manifest_path: str  # estimated unless manifest_read
    services: list[str] = field(default_factory=list)
    status: WorkloadStatus = "stopped"
    running_count: int = 0
    total_count: int = 0
    issues: list[str] = field(default_factory=list)
    manifest_read: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DiscoverySummary:
    total: int = 0
    running: int = 0
    partial: int = 0
    stopped: int = 0


@dataclass
class DiscoveryResult:
    workloads: list[DiscoveredWorkload] = field(default_factory=list)
    summary: DiscoverySummary = field(default_factory=DiscoverySummary)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
