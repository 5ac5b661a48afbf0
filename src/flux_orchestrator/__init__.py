"""flux-orchestrator: multi-cluster Flux synchronization and resource graph engine."""

__version__ = "0.1.0"

from flux_orchestrator.clusters.registry import (
    ClusterHandle,
    ClusterNotFoundError,
    ClusterRegistry,
    ConnectionSetupError,
    CredentialInvalidError,
)
from flux_orchestrator.config import OrchestratorConfig, find_config, load_config
from flux_orchestrator.engine import Orchestrator
from flux_orchestrator.fetch.fetcher import (
    ClusterUnreachableError,
    KindNotInstalledError,
    RemoteAPIError,
    ResourceFetcher,
)
from flux_orchestrator.kinds import UnknownKindError, UnsupportedKindError
from flux_orchestrator.models import (
    ClusterHealth,
    ClusterRecord,
    HealthState,
    ManagedResource,
    OrchestratorError,
    ResourceNode,
    ResourceStatus,
    SyncOutcome,
)
from flux_orchestrator.store.resource_store import StoreError

__all__ = [
    "ClusterHandle",
    "ClusterHealth",
    "ClusterNotFoundError",
    "ClusterRecord",
    "ClusterRegistry",
    "ClusterUnreachableError",
    "ConnectionSetupError",
    "CredentialInvalidError",
    "HealthState",
    "KindNotInstalledError",
    "ManagedResource",
    "Orchestrator",
    "OrchestratorConfig",
    "OrchestratorError",
    "RemoteAPIError",
    "ResourceFetcher",
    "ResourceNode",
    "ResourceStatus",
    "StoreError",
    "SyncOutcome",
    "UnknownKindError",
    "UnsupportedKindError",
    "find_config",
    "load_config",
]
