"""Orchestrator: the operations callers use.

Wires the registry, fetcher, store, scheduler and sinks together and exposes
cluster management, health, stored-resource queries, live resource trees and
operator actions on Flux objects and workloads.  One instance per process;
start and stop it explicitly (or use it as a context manager).

Errors from operator actions propagate unchanged; only the background sync
isolates failures.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from flux_orchestrator.clusters.client import ResourceClient
from flux_orchestrator.clusters.registry import (
    ClientFactory,
    ClusterNotFoundError,
    ClusterRegistry,
)
from flux_orchestrator.config import OrchestratorConfig
from flux_orchestrator.credentials.source import CredentialSource, build_credential_sources
from flux_orchestrator.fetch.fetcher import RemoteAPIError, ResourceFetcher, translate_error
from flux_orchestrator.graph.builder import ResourceGraphBuilder
from flux_orchestrator.kinds import (
    ALL_KINDS,
    DELETE,
    FLUX_KINDS,
    RESTART,
    SCALE,
    UPDATE,
    KindSpec,
    action_kind_spec,
    flux_kind_spec,
    kind_spec,
)
from flux_orchestrator.models import (
    ClusterHealth,
    ClusterRecord,
    ClusterSource,
    InventoryEntry,
    ManagedResource,
    OrchestratorError,
    ResourceNode,
    SyncOutcome,
)
from flux_orchestrator.notify.notifier import EventNotifier, build_notifiers
from flux_orchestrator.observability.metrics import SyncMetrics, SyncObserver
from flux_orchestrator.status.normalizer import flux_stats, inventory_of
from flux_orchestrator.store.database import Database
from flux_orchestrator.store.migrations import run_migrations
from flux_orchestrator.store.resource_store import ResourceStore
from flux_orchestrator.sync.scheduler import AUTO_SYNC_SETTING, SyncScheduler

logger = logging.getLogger(__name__)

RECONCILE_ANNOTATION = "reconcile.fluxcd.io/requestedAt"
RESTART_ANNOTATION = "kubectl.kubernetes.io/restartedAt"
MAX_CONFLICT_RETRIES = 3


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def rfc3339(moment: datetime) -> str:
    return moment.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


class Orchestrator:
    """Process-scoped facade over the sync engine.

    Usage::

        cfg = load_config()
        with Orchestrator.from_config(cfg) as orch:
            orch.load_clusters()
            orch.start()
            ...
    """

    def __init__(
        self,
        store: ResourceStore,
        registry: ClusterRegistry | None = None,
        fetcher: ResourceFetcher | None = None,
        observer: SyncObserver | None = None,
        notifiers: Iterable[EventNotifier] = (),
        credential_sources: Iterable[CredentialSource] = (),
        interval: float = 300.0,
        stale_after_ticks: int = 3,
        max_cluster_workers: int = 8,
        prune_missing: bool = False,
        recover_unhealthy: bool = True,
        now: Callable[[], datetime] = _utcnow,
        database: Database | None = None,
    ) -> None:
        self._store = store
        self._registry = registry or ClusterRegistry()
        self._fetcher = fetcher or ResourceFetcher()
        self._observer = observer if observer is not None else SyncMetrics()
        self._credential_sources = list(credential_sources)
        self._stale_after_ticks = stale_after_ticks
        self._now = now
        self._database = database
        self._scheduler = SyncScheduler(
            self._registry,
            self._fetcher,
            self._store,
            observer=self._observer,
            notifiers=notifiers,
            interval=interval,
            max_workers=max_cluster_workers,
            prune_missing=prune_missing,
            recover_unhealthy=recover_unhealthy,
            now=now,
        )

    @classmethod
    def from_config(
        cls,
        cfg: OrchestratorConfig,
        *,
        client_factory: ClientFactory | None = None,
        in_cluster_factory: Callable[[], ResourceClient] | None = None,
    ) -> Orchestrator:
        """Build a fully wired orchestrator (database migrated, sinks built)."""
        db = Database(cfg.database)
        run_migrations(db)
        return cls(
            ResourceStore(db),
            registry=ClusterRegistry(client_factory, in_cluster_factory),
            fetcher=ResourceFetcher(
                health_timeout=cfg.health_timeout_seconds,
                request_timeout=cfg.request_timeout_seconds,
                pass_timeout=cfg.fetch_timeout_seconds,
                max_workers=cfg.max_kind_workers,
            ),
            notifiers=build_notifiers(cfg.notifier_config()),
            credential_sources=build_credential_sources(cfg.credential_config()),
            interval=cfg.sync_interval_seconds,
            stale_after_ticks=cfg.stale_after_ticks,
            max_cluster_workers=cfg.max_cluster_workers,
            prune_missing=cfg.prune_missing,
            recover_unhealthy=cfg.recover_unhealthy,
            database=db,
        )

    @property
    def store(self) -> ResourceStore:
        return self._store

    @property
    def registry(self) -> ClusterRegistry:
        return self._registry

    @property
    def scheduler(self) -> SyncScheduler:
        return self._scheduler

    @property
    def observer(self) -> SyncObserver:
        return self._observer

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._scheduler.start()

    def stop(self, timeout: float | None = None) -> None:
        self._scheduler.stop(timeout)

    def close(self) -> None:
        self.stop()
        if self._database is not None:
            self._database.close()

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    def add_cluster(
        self,
        cluster_id: str,
        credential_blob: str | bytes,
        name: str | None = None,
        source: ClusterSource | None = ClusterSource.MANUAL,
    ) -> ClusterRecord:
        """Register (or rotate credentials of) a cluster and check its health.

        For a cluster already on record, ``name=None`` keeps the stored name
        and ``source=None`` keeps the stored source.

        Raises:
            CredentialInvalidError: If the kubeconfig cannot be parsed.
            ConnectionSetupError: If no API client can be built from it.
        """
        self._registry.register(cluster_id, credential_blob)
        return self._record_cluster(cluster_id, name, source)

    def add_in_cluster(
        self, cluster_id: str = "in-cluster", name: str | None = None,
    ) -> ClusterRecord:
        """Register the cluster this process runs in, via its service account."""
        self._registry.register_in_cluster(cluster_id)
        return self._record_cluster(cluster_id, name or "In-Cluster", ClusterSource.IN_CLUSTER)

    def remove_cluster(self, cluster_id: str) -> bool:
        """Drop the handle, the stored rows and the metrics of a cluster."""
        had_handle = self._registry.deregister(cluster_id)
        had_row = self._store.remove_cluster(cluster_id)
        forget = getattr(self._observer, "forget", None)
        if callable(forget):
            forget(cluster_id)
        return had_handle or had_row

    def list_clusters(self) -> list[ClusterRecord]:
        return self._store.list_clusters()

    def get_cluster(self, cluster_id: str) -> ClusterRecord:
        record = self._store.get_cluster(cluster_id)
        if record is None:
            raise ClusterNotFoundError(cluster_id)
        return record

    def load_clusters(self, in_cluster_id: str | None = None) -> list[str]:
        """Register every cluster the credential sources know about.

        A cluster whose credentials fail to load is logged and skipped.
        Returns the ids that were registered.
        """
        loaded: list[str] = []
        if in_cluster_id is not None:
            try:
                self.add_in_cluster(in_cluster_id)
                loaded.append(in_cluster_id)
            except OrchestratorError:
                logger.exception("Failed to register in-cluster config as %s", in_cluster_id)

        for source in self._credential_sources:
            for cluster_id in source.cluster_ids():
                if cluster_id in loaded:
                    continue
                try:
                    blob = source.get_credential(cluster_id)
                    if blob is None:
                        continue
                    # a known cluster keeps the name and source it was added with
                    known = self._store.get_cluster(cluster_id) is not None
                    self.add_cluster(
                        cluster_id, blob, source=None if known else ClusterSource.CONFIG,
                    )
                except OrchestratorError:
                    logger.exception("Failed to register cluster %s", cluster_id)
                    continue
                loaded.append(cluster_id)

        logger.info("Loaded %d cluster(s)", len(loaded))
        return loaded

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_health(self, cluster_id: str) -> ClusterHealth:
        """Last recorded health; stale results read as unhealthy."""
        record = self.get_cluster(cluster_id)
        if record.last_health_check is None:
            return record.status
        max_age = timedelta(seconds=self._stale_after_ticks * self._scheduler.interval)
        if self._now() - record.last_health_check > max_age:
            return ClusterHealth.UNHEALTHY
        return record.status

    def check_health(self, cluster_id: str) -> ClusterHealth:
        """Check the cluster's health now and persist the result."""
        handle = self._registry.lookup(cluster_id)
        health, _ = self._fetcher.fetch_health(handle)
        self._store.update_cluster_health(cluster_id, health, self._now())
        return health

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def list_resources(
        self, cluster_id: str, kind: str | None = None,
    ) -> list[ManagedResource]:
        """Stored resources of a cluster, ordered by kind, namespace and name."""
        self.get_cluster(cluster_id)
        kind_name = kind_spec(kind).kind if kind else None
        return self._store.list_resources(cluster_id, kind_name)

    def resource_summary(self) -> list[dict[str, Any]]:
        """Stored row counts grouped by cluster, kind and status."""
        return self._store.resource_summary()

    def get_resource_tree(
        self, cluster_id: str, include_inventory: bool = False,
    ) -> list[ResourceNode]:
        """Fetch the cluster live and return its ownership forest.

        Kinds that fail are left out of the tree; if every kind fails the
        first error is raised.
        """
        handle = self._registry.lookup(cluster_id)
        result = self._fetcher.fetch_all(handle, ALL_KINDS)
        if result.errors and not result.objects:
            raise next(iter(result.errors.values()))
        for kind, error in result.errors.items():
            logger.warning("Resource tree for %s is missing %s: %s", cluster_id, kind, error)
        return ResourceGraphBuilder(include_inventory=include_inventory).build(result.items())

    def get_flux_stats(self, cluster_id: str) -> dict[str, dict[str, int]]:
        """Live total/ready/notReady/suspended counts per Flux kind."""
        handle = self._registry.lookup(cluster_id)
        result = self._fetcher.fetch_all(handle, FLUX_KINDS)
        if result.errors and not result.objects:
            raise next(iter(result.errors.values()))
        return flux_stats({kind: objs for kind, (_, objs) in result.objects.items()})

    def get_flux_inventory(
        self, cluster_id: str, kind: str, namespace: str, name: str,
    ) -> list[InventoryEntry]:
        """Objects a Kustomization or HelmRelease reports as applied."""
        spec = flux_kind_spec(kind)
        handle = self._registry.lookup(cluster_id)
        return inventory_of(self._fetcher.fetch_object(handle, spec, namespace, name))

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def trigger_reconcile(self, cluster_id: str, kind: str, namespace: str, name: str) -> None:
        """Ask Flux to reconcile an object now."""
        requested_at = rfc3339(self._now())

        def mutate(obj: dict[str, Any]) -> None:
            metadata = obj.setdefault("metadata", {})
            annotations = metadata.get("annotations") or {}
            annotations[RECONCILE_ANNOTATION] = requested_at
            metadata["annotations"] = annotations

        self._update_object(cluster_id, flux_kind_spec(kind), namespace, name, "reconcile", mutate)
        logger.info("Requested reconcile of %s %s/%s on %s", kind, namespace, name, cluster_id)

    def set_suspended(
        self, cluster_id: str, kind: str, namespace: str, name: str, suspended: bool,
    ) -> None:
        """Set ``spec.suspend`` on a Flux object."""

        def mutate(obj: dict[str, Any]) -> None:
            spec = obj.get("spec") or {}
            spec["suspend"] = suspended
            obj["spec"] = spec

        action = "suspend" if suspended else "resume"
        self._update_object(cluster_id, flux_kind_spec(kind), namespace, name, action, mutate)
        logger.info("%s %s %s/%s on %s", action.capitalize(), kind, namespace, name, cluster_id)

    def suspend(self, cluster_id: str, kind: str, namespace: str, name: str) -> None:
        self.set_suspended(cluster_id, kind, namespace, name, True)

    def resume(self, cluster_id: str, kind: str, namespace: str, name: str) -> None:
        self.set_suspended(cluster_id, kind, namespace, name, False)

    def update_spec(
        self, cluster_id: str, kind: str, namespace: str, name: str, patch: dict[str, Any],
    ) -> None:
        """Merge *patch* into an object's ``spec``; top-level keys are replaced whole.

        Works on Flux kinds and on the workload kinds that accept updates.
        """
        if not isinstance(patch, dict) or not patch:
            raise ValueError("Spec patch must be a non-empty mapping")
        spec = action_kind_spec(kind, UPDATE)

        def mutate(obj: dict[str, Any]) -> None:
            current = obj.get("spec")
            current = current if isinstance(current, dict) else {}
            current.update(copy.deepcopy(patch))
            obj["spec"] = current

        self._update_object(cluster_id, spec, namespace, name, UPDATE, mutate)
        logger.info(
            "Updated spec of %s %s/%s on %s (%s)",
            spec.kind, namespace, name, cluster_id, ", ".join(sorted(patch)),
        )

    def scale(
        self, cluster_id: str, kind: str, namespace: str, name: str, replicas: int,
    ) -> None:
        """Set ``spec.replicas`` on a Deployment, StatefulSet or ReplicaSet."""
        if isinstance(replicas, bool) or not isinstance(replicas, int) or replicas < 0:
            raise ValueError(f"Replicas must be a non-negative integer, got {replicas!r}")
        spec = action_kind_spec(kind, SCALE)

        def mutate(obj: dict[str, Any]) -> None:
            current = obj.get("spec")
            current = current if isinstance(current, dict) else {}
            current["replicas"] = replicas
            obj["spec"] = current

        self._update_object(cluster_id, spec, namespace, name, SCALE, mutate)
        logger.info("Scaled %s %s/%s on %s to %d", spec.kind, namespace, name, cluster_id, replicas)

    def restart(self, cluster_id: str, kind: str, namespace: str, name: str) -> None:
        """Roll out new pods by stamping the pod template, as ``kubectl rollout restart`` does."""
        spec = action_kind_spec(kind, RESTART)
        restarted_at = rfc3339(self._now())

        def mutate(obj: dict[str, Any]) -> None:
            template = obj.setdefault("spec", {}).setdefault("template", {})
            metadata = template.setdefault("metadata", {})
            annotations = metadata.get("annotations") or {}
            annotations[RESTART_ANNOTATION] = restarted_at
            metadata["annotations"] = annotations

        self._update_object(cluster_id, spec, namespace, name, RESTART, mutate)
        logger.info("Restarted %s %s/%s on %s", spec.kind, namespace, name, cluster_id)

    def delete_pod(self, cluster_id: str, namespace: str, name: str) -> None:
        """Delete one pod; its controller, if any, replaces it."""
        spec = action_kind_spec("Pod", DELETE)
        handle = self._registry.lookup(cluster_id)
        try:
            handle.client.delete(spec, namespace, name)
        except Exception as exc:
            self._observer.record_action(cluster_id, spec.kind, DELETE, False)
            error = translate_error(
                exc, cluster_id, f"delete Pod {namespace}/{name}", missing_ok=False,
            )
            if error is exc:
                raise
            raise error from exc
        self._observer.record_action(cluster_id, spec.kind, DELETE, True)
        logger.info("Deleted Pod %s/%s on %s", namespace, name, cluster_id)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync_cluster(self, cluster_id: str) -> SyncOutcome:
        """Sync one registered cluster now."""
        self._registry.lookup(cluster_id)
        return self._scheduler.sync_cluster(cluster_id)

    def sync_now(self) -> list[SyncOutcome]:
        """Run one full tick now (skipped if a tick is already running)."""
        return self._scheduler.run_once()

    def set_sync_interval(self, minutes: float) -> None:
        """Persist and apply a new sync interval."""
        if minutes <= 0:
            raise ValueError(f"Sync interval must be positive, got {minutes}")
        self._store.set_setting(AUTO_SYNC_SETTING, str(minutes))
        self._scheduler.set_interval(minutes * 60)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _record_cluster(
        self, cluster_id: str, name: str | None, source: ClusterSource | None,
    ) -> ClusterRecord:
        try:
            self._store.add_cluster(cluster_id, name, source)
        except OrchestratorError:
            self._registry.deregister(cluster_id)
            raise
        self.check_health(cluster_id)
        return self.get_cluster(cluster_id)

    def _update_object(
        self,
        cluster_id: str,
        spec: KindSpec,
        namespace: str,
        name: str,
        action: str,
        mutate: Callable[[dict[str, Any]], None],
    ) -> None:
        """Get, mutate and replace an object, retrying on write conflicts."""
        handle = self._registry.lookup(cluster_id)

        attempt = 0
        while True:
            try:
                obj = self._fetcher.fetch_object(handle, spec, namespace, name)
                mutate(obj)
                handle.client.replace(spec, namespace, name, obj)
            except Exception as exc:
                error = translate_error(
                    exc, cluster_id, f"{action} {spec.kind} {namespace}/{name}", missing_ok=False,
                )
                if (
                    isinstance(error, RemoteAPIError)
                    and error.status == 409
                    and attempt < MAX_CONFLICT_RETRIES
                ):
                    attempt += 1
                    logger.info(
                        "Conflict on %s %s/%s; retrying (%d/%d)",
                        spec.kind, namespace, name, attempt, MAX_CONFLICT_RETRIES,
                    )
                    continue
                self._observer.record_action(cluster_id, spec.kind, action, False)
                if error is exc:
                    raise
                raise error from exc
            self._observer.record_action(cluster_id, spec.kind, action, True)
            return
