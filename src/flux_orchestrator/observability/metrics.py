"""Sync observability: counters and durations per cluster.

The scheduler reports to any object satisfying :class:`SyncObserver`.
:class:`SyncMetrics` is the built-in in-memory implementation; all state
is guarded by a single lock so sync workers can report concurrently.
"""

from __future__ import annotations

import threading
from collections import Counter
from typing import Any, Protocol, runtime_checkable

from flux_orchestrator.models import ClusterHealth, SyncOutcome


@runtime_checkable
class SyncObserver(Protocol):
    """Protocol for sync observability sinks."""

    def record_outcome(self, outcome: SyncOutcome) -> None:
        """Called once per cluster per sync pass."""
        ...

    def record_sync_error(
        self, cluster_id: str, error_type: str, kind: str | None = None,
    ) -> None:
        """Called for every isolated failure inside a pass."""
        ...

    def record_action(self, cluster_id: str, kind: str, action: str, ok: bool) -> None:
        """Called after every operator action (reconcile, suspend, scale, ...)."""
        ...


class SyncMetrics:
    """Thread-safe in-memory :class:`SyncObserver`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_outcome: dict[str, SyncOutcome] = {}
        self._syncs: Counter[tuple[str, bool]] = Counter()
        self._errors: Counter[tuple[str, str]] = Counter()
        self._actions: Counter[tuple[str, str, str, str]] = Counter()
        self._durations: dict[str, tuple[int, float, float]] = {}

    def record_outcome(self, outcome: SyncOutcome) -> None:
        with self._lock:
            self._last_outcome[outcome.cluster_id] = outcome
            self._syncs[(outcome.cluster_id, outcome.ok)] += 1
            count, total, peak = self._durations.get(outcome.cluster_id, (0, 0.0, 0.0))
            self._durations[outcome.cluster_id] = (
                count + 1,
                total + outcome.duration_seconds,
                max(peak, outcome.duration_seconds),
            )

    def record_sync_error(
        self, cluster_id: str, error_type: str, kind: str | None = None,
    ) -> None:
        with self._lock:
            self._errors[(cluster_id, error_type)] += 1

    def record_action(self, cluster_id: str, kind: str, action: str, ok: bool) -> None:
        with self._lock:
            self._actions[(cluster_id, kind, action, "success" if ok else "error")] += 1

    def last_outcome(self, cluster_id: str) -> SyncOutcome | None:
        with self._lock:
            return self._last_outcome.get(cluster_id)

    def sync_errors(self, cluster_id: str) -> dict[str, int]:
        with self._lock:
            return {et: n for (cid, et), n in self._errors.items() if cid == cluster_id}

    def forget(self, cluster_id: str) -> None:
        """Drop all series of a removed cluster."""
        with self._lock:
            self._last_outcome.pop(cluster_id, None)
            self._durations.pop(cluster_id, None)
            for key in [k for k in self._syncs if k[0] == cluster_id]:
                del self._syncs[key]
            for key in [k for k in self._errors if k[0] == cluster_id]:
                del self._errors[key]
            for key in [k for k in self._actions if k[0] == cluster_id]:
                del self._actions[key]

    def snapshot(self) -> dict[str, Any]:
        """Point-in-time copy of every series, JSON-friendly."""
        with self._lock:
            healthy = sum(
                1 for o in self._last_outcome.values()
                if o.health_status == ClusterHealth.HEALTHY
            )
            return {
                "clusters_total": len(self._last_outcome),
                "clusters_healthy": healthy,
                "syncs": [
                    {"cluster_id": cid, "ok": ok, "count": n}
                    for (cid, ok), n in sorted(self._syncs.items())
                ],
                "sync_errors": [
                    {"cluster_id": cid, "error_type": et, "count": n}
                    for (cid, et), n in sorted(self._errors.items())
                ],
                "reconciliations": [
                    {"cluster_id": cid, "kind": kind, "action": action, "status": st, "count": n}
                    for (cid, kind, action, st), n in sorted(self._actions.items())
                ],
                "sync_duration_seconds": {
                    cid: {"count": count, "sum": total, "max": peak}
                    for cid, (count, total, peak) in sorted(self._durations.items())
                },
                "resources_synced": {
                    cid: o.resources_synced for cid, o in sorted(self._last_outcome.items())
                },
            }
