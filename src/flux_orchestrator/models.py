"""Core data models for flux-orchestrator.

Defines the schemas for:
- Normalized resource status (what a remote object looks like to us)
- Managed resources (what the store keeps per cluster)
- Resource tree nodes (ownership forest, built per request)
- Sync outcomes (what one tick did to one cluster)
- Cluster records (what the store knows about a registered cluster)
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class OrchestratorError(Exception):
    """Base class for every error raised by flux-orchestrator."""


# --- Enums ---


class ResourceStatus(enum.StrEnum):
    READY = "Ready"
    NOT_READY = "NotReady"
    UNKNOWN = "Unknown"


class HealthState(enum.StrEnum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    PROGRESSING = "Progressing"
    UNKNOWN = "Unknown"


class ClusterHealth(enum.StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class ClusterSource(enum.StrEnum):
    MANUAL = "manual"
    IN_CLUSTER = "in-cluster"
    CONFIG = "config"


# --- Status ---


class NormalizedStatus(BaseModel):
    """Uniform ``{status, health, message}`` triple for any remote object.

    ``status`` is usually a :class:`ResourceStatus` value, but workload
    kinds report a kind-specific phrase (a Pod phase, ``Completed``, ...).
    """

    status: str = ResourceStatus.UNKNOWN
    health: HealthState = HealthState.UNKNOWN
    message: str = ""


# --- Store rows ---


class ManagedResource(BaseModel):
    """One remote object as persisted in the local store.

    Identity is ``(cluster_id, kind, namespace, name)``.
    """

    cluster_id: str
    kind: str
    namespace: str = ""
    name: str
    status: str = ResourceStatus.UNKNOWN
    health: HealthState = HealthState.UNKNOWN
    message: str = ""
    last_reconcile: datetime | None = None
    suspended: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.cluster_id, self.kind, self.namespace, self.name)


class ClusterRecord(BaseModel):
    """A registered cluster as persisted in the local store."""

    cluster_id: str
    name: str
    status: ClusterHealth = ClusterHealth.UNKNOWN
    source: ClusterSource = ClusterSource.MANUAL
    last_health_check: datetime | None = None
    resource_count: int = 0
    created_at: datetime
    updated_at: datetime


# --- Graph ---


class ResourceNode(BaseModel):
    """A node of the ownership forest returned by ``get_resource_tree``."""

    id: str
    kind: str
    name: str
    namespace: str = ""
    status: str = ResourceStatus.UNKNOWN
    health: HealthState = HealthState.UNKNOWN
    message: str = ""
    created_at: datetime | None = None
    children: list[ResourceNode] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def walk(self):
        """Yield this node and every descendant, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()


class InventoryEntry(BaseModel):
    """One entry of a Flux object's ``status.inventory``."""

    id: str
    version: str = ""
    namespace: str = ""
    name: str = ""
    group: str = ""
    kind: str = ""


# --- Sync ---


class SyncOutcome(BaseModel):
    """Result of one sync pass over one cluster."""

    cluster_id: str
    health_status: ClusterHealth
    resources_synced: int = 0
    error: str | None = None
    kind_errors: dict[str, str] = Field(default_factory=dict)
    started_at: datetime
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and not self.kind_errors
