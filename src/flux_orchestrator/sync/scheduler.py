"""Periodic multi-cluster sync.

Every tick the scheduler takes the clusters whose last recorded health is
``healthy`` or ``unknown`` and, concurrently across clusters, runs:

    health check -> persist health -> (healthy only) fetch Flux kinds
    -> normalize -> upsert each row -> report one SyncOutcome

Failures are isolated per cluster, per kind and per row; nothing escapes
the loop.  Ticks never overlap: a tick that overruns the interval makes the
scheduler skip the missed boundaries and wait for the next one.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any

from flux_orchestrator.clusters.registry import ClusterRegistry
from flux_orchestrator.fetch.fetcher import ResourceFetcher
from flux_orchestrator.kinds import FLUX_KINDS, KindSpec
from flux_orchestrator.models import ClusterHealth, ResourceStatus, SyncOutcome
from flux_orchestrator.notify.notifier import (
    EventNotifier,
    EventType,
    OrchestratorEvent,
    ResourceRef,
    Severity,
    dispatch_events,
)
from flux_orchestrator.observability.metrics import SyncObserver
from flux_orchestrator.status.normalizer import dig, to_managed_resource
from flux_orchestrator.store.resource_store import ResourceStore, StoreError

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 300.0
AUTO_SYNC_SETTING = "auto_sync_interval_minutes"
CANDIDATE_STATUSES = (ClusterHealth.HEALTHY, ClusterHealth.UNKNOWN)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class SyncScheduler:
    """Runs sync ticks on a background thread.

    Usage::

        scheduler = SyncScheduler(registry, fetcher, store, observer=metrics)
        scheduler.start()
        ...
        scheduler.stop()

    ``run_once()`` runs a single tick synchronously (CLI, tests).
    """

    def __init__(
        self,
        registry: ClusterRegistry,
        fetcher: ResourceFetcher,
        store: ResourceStore,
        observer: SyncObserver | None = None,
        notifiers: Iterable[EventNotifier] = (),
        interval: float = DEFAULT_INTERVAL,
        max_workers: int = 8,
        kinds: Sequence[KindSpec] = FLUX_KINDS,
        prune_missing: bool = False,
        recover_unhealthy: bool = True,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"Sync interval must be positive, got {interval}")
        self._registry = registry
        self._fetcher = fetcher
        self._store = store
        self._observer = observer
        self._notifiers = list(notifiers)
        self._interval = float(interval)
        self._max_workers = max(1, max_workers)
        self._kinds = tuple(kinds)
        self._prune_missing = prune_missing
        self._recover_unhealthy = recover_unhealthy
        self._clock = clock
        self._now = now

        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._skipped_ticks = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def interval(self) -> float:
        return self._interval

    def set_interval(self, seconds: float) -> None:
        """Change the tick interval; applies from the next boundary."""
        if seconds <= 0:
            raise ValueError(f"Sync interval must be positive, got {seconds}")
        self._interval = float(seconds)
        logger.info("Sync interval set to %.0fs", seconds)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def skipped_ticks(self) -> int:
        return self._skipped_ticks

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sync-scheduler", daemon=True)
        self._thread.start()
        logger.info("Sync scheduler started (interval %.0fs)", self._interval)

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop to exit and wait for the running tick to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Sync scheduler stopped")

    def _loop(self) -> None:
        next_run = self._clock()
        while not self._stop.is_set():
            delay = next_run - self._clock()
            if delay > 0 and self._stop.wait(delay):
                break
            try:
                self.run_once()
            except Exception:
                logger.exception("Sync tick failed")
            self._refresh_interval()

            next_run += self._interval
            late = self._clock() - next_run
            if late > 0:
                missed = math.ceil(late / self._interval)
                self._skipped_ticks += missed
                logger.warning(
                    "Sync tick overran the %.0fs interval; skipping %d tick(s)",
                    self._interval, missed,
                )
                next_run += missed * self._interval

    def _refresh_interval(self) -> None:
        try:
            raw = self._store.get_setting(AUTO_SYNC_SETTING)
        except StoreError:
            logger.exception("Failed to read %s", AUTO_SYNC_SETTING)
            return
        if raw is None:
            return
        try:
            seconds = float(raw) * 60
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", AUTO_SYNC_SETTING, raw)
            return
        if seconds > 0 and seconds != self._interval:
            self.set_interval(seconds)

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def run_once(self) -> list[SyncOutcome]:
        """Run one tick. Returns ``[]`` without syncing if a tick is running."""
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Sync tick already in progress; skipping")
            return []
        try:
            return self._tick()
        finally:
            self._tick_lock.release()

    def _tick(self) -> list[SyncOutcome]:
        try:
            candidates = self._store.query_cluster_ids(CANDIDATE_STATUSES)
            unhealthy = (
                self._store.query_cluster_ids([ClusterHealth.UNHEALTHY])
                if self._recover_unhealthy else []
            )
        except StoreError:
            logger.exception("Failed to query clusters for sync")
            return []

        if not candidates and not unhealthy:
            logger.debug("No clusters to sync")
            return []

        started = self._clock()
        workers = min(self._max_workers, len(candidates) + len(unhealthy))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync") as pool:
            sync_futures = [pool.submit(self._in_worker, self.sync_cluster, cid) for cid in candidates]
            recovery_futures = [pool.submit(self._in_worker, self._recheck, cid) for cid in unhealthy]
            outcomes = [f.result() for f in sync_futures]
            for f in recovery_futures:
                f.result()

        logger.info(
            "Sync tick finished: %d cluster(s), %d recovery check(s), %d resource(s) in %.2fs",
            len(outcomes),
            len(recovery_futures),
            sum(o.resources_synced for o in outcomes),
            self._clock() - started,
        )
        return outcomes

    def sync_cluster(self, cluster_id: str) -> SyncOutcome:
        """Sync one cluster; never raises."""
        started_at = self._now()
        t0 = self._clock()
        try:
            outcome = self._sync(cluster_id, started_at, t0)
        except Exception as exc:
            logger.exception("Unexpected error syncing %s", cluster_id)
            self._record_error(cluster_id, type(exc).__name__)
            outcome = SyncOutcome(
                cluster_id=cluster_id,
                health_status=ClusterHealth.UNKNOWN,
                error=str(exc),
                started_at=started_at,
                duration_seconds=self._clock() - t0,
            )
        if self._observer is not None:
            try:
                self._observer.record_outcome(outcome)
            except Exception:
                logger.exception("Observer failed to record outcome for %s", cluster_id)
        return outcome

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _sync(self, cluster_id: str, started_at: datetime, t0: float) -> SyncOutcome:
        handle = self._registry.get(cluster_id)
        if handle is None:
            logger.warning("Cluster %s has no registered handle; skipping", cluster_id)
            self._record_error(cluster_id, "ClusterNotFoundError")
            return SyncOutcome(
                cluster_id=cluster_id,
                health_status=ClusterHealth.UNKNOWN,
                error=f"Cluster '{cluster_id}' is not registered",
                started_at=started_at,
                duration_seconds=self._clock() - t0,
            )

        health, health_error = self._fetcher.fetch_health(handle)
        self._persist_health(cluster_id, health)

        if health != ClusterHealth.HEALTHY:
            self._record_error(cluster_id, type(health_error).__name__ if health_error else "health")
            outcome = SyncOutcome(
                cluster_id=cluster_id,
                health_status=health,
                error=str(health_error) if health_error else "Cluster is not healthy",
                started_at=started_at,
                duration_seconds=self._clock() - t0,
            )
            self._notify(
                EventType.SYNC_FAILED, cluster_id,
                f"Health check failed: {outcome.error}", Severity.ERROR,
            )
            return outcome

        result = self._fetcher.fetch_all(handle, self._kinds)

        synced = 0
        for spec, obj in result.items():
            try:
                resource = to_managed_resource(cluster_id, spec, obj)
            except (TypeError, ValueError, AttributeError) as exc:
                logger.warning("Skipping malformed %s object on %s: %s", spec.kind, cluster_id, exc)
                self._record_error(cluster_id, "MalformedObject", spec.kind)
                continue
            try:
                previous = self._store.upsert_resource(resource)
            except StoreError as exc:
                logger.warning("Skipping %s %s/%s: %s", spec.kind, resource.namespace, resource.name, exc)
                self._record_error(cluster_id, "StoreError", spec.kind)
                continue
            synced += 1
            if (
                resource.status == ResourceStatus.NOT_READY
                and previous is not None
                and previous != ResourceStatus.NOT_READY
                and not resource.suspended
            ):
                self._notify(
                    EventType.RECONCILIATION_FAILED,
                    cluster_id,
                    resource.message or f"{spec.kind} is not ready",
                    Severity.ERROR,
                    ResourceRef(kind=spec.kind, namespace=resource.namespace, name=resource.name),
                )

        if self._prune_missing:
            self._prune(cluster_id, result.objects)

        kind_errors: dict[str, str] = {}
        for kind, error in result.errors.items():
            kind_errors[kind] = str(error)
            self._record_error(cluster_id, type(error).__name__, kind)

        outcome = SyncOutcome(
            cluster_id=cluster_id,
            health_status=health,
            resources_synced=synced,
            kind_errors=kind_errors,
            started_at=started_at,
            duration_seconds=self._clock() - t0,
        )
        if kind_errors:
            self._notify(
                EventType.SYNC_FAILED, cluster_id,
                f"Synced {synced} resource(s); failed kinds: {', '.join(sorted(kind_errors))}",
                Severity.WARNING,
            )
        else:
            self._notify(
                EventType.SYNC_COMPLETED, cluster_id, f"Synced {synced} resource(s)",
            )
        logger.info(
            "Synced %d resource(s) from %s in %.2fs",
            synced, cluster_id, outcome.duration_seconds,
        )
        return outcome

    def _in_worker(self, fn: Callable[[str], Any], cluster_id: str) -> Any:
        # pool threads die with the tick; their connections must go with them
        try:
            return fn(cluster_id)
        finally:
            self._store.release_connection()

    def _recheck(self, cluster_id: str) -> ClusterHealth | None:
        """Health-only check so an unhealthy cluster can rejoin the next tick."""
        handle = self._registry.get(cluster_id)
        if handle is None:
            return None
        try:
            health, _ = self._fetcher.fetch_health(handle)
            self._persist_health(cluster_id, health)
        except Exception:
            logger.exception("Recovery check failed for %s", cluster_id)
            return None
        if health == ClusterHealth.HEALTHY:
            logger.info("Cluster %s recovered", cluster_id)
        return health

    def _persist_health(self, cluster_id: str, health: ClusterHealth) -> None:
        try:
            previous = self._store.update_cluster_health(cluster_id, health, self._now())
        except StoreError:
            logger.exception("Failed to persist health for %s", cluster_id)
            return
        if previous is not None and previous != health:
            severity = Severity.INFO if health == ClusterHealth.HEALTHY else Severity.WARNING
            self._notify(
                EventType.CLUSTER_HEALTH_CHANGED, cluster_id,
                f"Cluster health changed from {previous} to {health}", severity,
            )

    def _prune(
        self, cluster_id: str, objects: dict[str, tuple[KindSpec, list[dict[str, Any]]]],
    ) -> None:
        for kind, (_, objs) in objects.items():
            keep = {(dig(o, "metadata", "namespace") or "", dig(o, "metadata", "name")) for o in objs}
            try:
                self._store.prune_resources(cluster_id, kind, keep)
            except StoreError:
                logger.exception("Failed to prune %s on %s", kind, cluster_id)

    def _record_error(self, cluster_id: str, error_type: str, kind: str | None = None) -> None:
        if self._observer is None:
            return
        try:
            self._observer.record_sync_error(cluster_id, error_type, kind)
        except Exception:
            logger.exception("Observer failed to record error for %s", cluster_id)

    def _notify(
        self,
        event_type: EventType,
        cluster_id: str,
        message: str,
        severity: Severity = Severity.INFO,
        resource: ResourceRef | None = None,
    ) -> None:
        if not self._notifiers:
            return
        dispatch_events(
            self._notifiers,
            OrchestratorEvent(
                type=event_type,
                timestamp=self._now(),
                cluster_id=cluster_id,
                resource=resource,
                message=message,
                severity=severity,
            ),
        )
