"""Registry of live cluster handles.

One :class:`ClusterHandle` per cluster id, created from a kubeconfig blob
(or the in-cluster service account) and replaced atomically when the
credentials rotate.  Readers never take a lock: writers build a new
mapping and swap the reference, so a handle returned by :meth:`lookup`
stays usable even if it is replaced or removed afterwards.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import yaml

from flux_orchestrator.clusters.client import KubernetesResourceClient, ResourceClient
from flux_orchestrator.models import OrchestratorError

logger = logging.getLogger(__name__)


class CredentialInvalidError(OrchestratorError):
    """Raised when a credential blob cannot be parsed as a kubeconfig."""


class ConnectionSetupError(OrchestratorError):
    """Raised when an API client cannot be built from valid credentials."""


class ClusterNotFoundError(OrchestratorError):
    """Raised when no handle is registered for a cluster id."""

    def __init__(self, cluster_id: str) -> None:
        super().__init__(f"Cluster '{cluster_id}' is not registered")
        self.cluster_id = cluster_id


ClientFactory = Callable[[dict[str, Any]], ResourceClient]


@dataclass(frozen=True)
class ClusterHandle:
    """A live, authenticated client for one cluster's API server."""

    cluster_id: str
    client: ResourceClient
    registered_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    in_cluster: bool = False


def parse_kubeconfig(blob: str | bytes) -> dict[str, Any]:
    """Parse a kubeconfig document (YAML or JSON) into a mapping."""
    if isinstance(blob, bytes):
        try:
            blob = blob.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CredentialInvalidError(f"Kubeconfig is not valid UTF-8: {exc}") from exc

    try:
        data = yaml.safe_load(blob)
    except yaml.YAMLError as exc:
        raise CredentialInvalidError(f"Kubeconfig is not valid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise CredentialInvalidError(
            f"Expected a kubeconfig mapping, got {type(data).__name__}"
        )
    if not data.get("clusters"):
        raise CredentialInvalidError("Kubeconfig defines no clusters")
    return data


def _default_client_factory(kubeconfig: dict[str, Any]) -> ResourceClient:
    return KubernetesResourceClient.from_kubeconfig(kubeconfig)


def _default_in_cluster_factory() -> ResourceClient:
    return KubernetesResourceClient.in_cluster()


class ClusterRegistry:
    """Owns every :class:`ClusterHandle`, keyed by cluster id."""

    def __init__(
        self,
        client_factory: ClientFactory | None = None,
        in_cluster_factory: Callable[[], ResourceClient] | None = None,
    ) -> None:
        self._client_factory = client_factory or _default_client_factory
        self._in_cluster_factory = in_cluster_factory or _default_in_cluster_factory
        self._handles: dict[str, ClusterHandle] = {}
        self._write_lock = threading.Lock()

    def register(self, cluster_id: str, credential_blob: str | bytes) -> ClusterHandle:
        """Build a handle from a kubeconfig blob and install it.

        Raises:
            CredentialInvalidError: If the blob is not a usable kubeconfig.
            ConnectionSetupError: If the API client cannot be constructed.
        """
        kubeconfig = parse_kubeconfig(credential_blob)
        try:
            resource_client = self._client_factory(kubeconfig)
        except Exception as exc:
            raise ConnectionSetupError(
                f"Failed to create client for cluster '{cluster_id}': {exc}"
            ) from exc
        return self._install(ClusterHandle(cluster_id=cluster_id, client=resource_client))

    def register_in_cluster(self, cluster_id: str) -> ClusterHandle:
        """Build a handle from the pod's service account and install it."""
        try:
            resource_client = self._in_cluster_factory()
        except Exception as exc:
            raise ConnectionSetupError(
                f"Failed to load in-cluster config for '{cluster_id}': {exc}"
            ) from exc
        return self._install(
            ClusterHandle(cluster_id=cluster_id, client=resource_client, in_cluster=True),
        )

    def deregister(self, cluster_id: str) -> bool:
        """Remove a handle. Returns ``False`` if none was registered."""
        with self._write_lock:
            if cluster_id not in self._handles:
                return False
            handles = dict(self._handles)
            del handles[cluster_id]
            self._handles = handles
        logger.info("Deregistered cluster %s", cluster_id)
        return True

    def lookup(self, cluster_id: str) -> ClusterHandle:
        handle = self._handles.get(cluster_id)
        if handle is None:
            raise ClusterNotFoundError(cluster_id)
        return handle

    def get(self, cluster_id: str) -> ClusterHandle | None:
        return self._handles.get(cluster_id)

    def cluster_ids(self) -> list[str]:
        return sorted(self._handles)

    def __contains__(self, cluster_id: object) -> bool:
        return cluster_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def _install(self, handle: ClusterHandle) -> ClusterHandle:
        with self._write_lock:
            replaced = handle.cluster_id in self._handles
            handles = dict(self._handles)
            handles[handle.cluster_id] = handle
            self._handles = handles
        logger.info(
            "%s cluster %s", "Replaced" if replaced else "Registered", handle.cluster_id,
        )
        return handle
