"""Compose workload discovery from engine labels."""

from dockreach.discovery.models import (
    ContainerRecord,
    DiscoveredWorkload,
    DiscoveryResult,
    DiscoverySummary,
)
from dockreach.discovery.remote import RemoteDiscovery

__all__ = [
    "ContainerRecord",
    "DiscoveredWorkload",
    "DiscoveryResult",
    "DiscoverySummary",
    "RemoteDiscovery",
]
