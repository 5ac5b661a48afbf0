"""Tests for in-memory sync metrics."""

from __future__ import annotations

from datetime import UTC, datetime

from flux_orchestrator.models import ClusterHealth, SyncOutcome
from flux_orchestrator.observability.metrics import SyncMetrics, SyncObserver


def _outcome(cluster_id: str = "c1", **overrides) -> SyncOutcome:
    fields = {
        "cluster_id": cluster_id,
        "health_status": ClusterHealth.HEALTHY,
        "resources_synced": 5,
        "started_at": datetime(2024, 5, 1, tzinfo=UTC),
        "duration_seconds": 1.5,
    }
    fields.update(overrides)
    return SyncOutcome(**fields)


class TestSyncMetrics:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(SyncMetrics(), SyncObserver)

    def test_outcomes(self) -> None:
        m = SyncMetrics()
        m.record_outcome(_outcome(duration_seconds=1.0))
        m.record_outcome(_outcome(duration_seconds=3.0, error="boom"))
        m.record_outcome(_outcome("c2", health_status=ClusterHealth.UNHEALTHY, resources_synced=0))

        snap = m.snapshot()
        assert snap["clusters_total"] == 2
        assert snap["clusters_healthy"] == 1
        assert {"cluster_id": "c1", "ok": True, "count": 1} in snap["syncs"]
        assert {"cluster_id": "c1", "ok": False, "count": 1} in snap["syncs"]
        assert snap["sync_duration_seconds"]["c1"] == {"count": 2, "sum": 4.0, "max": 3.0}
        assert snap["resources_synced"] == {"c1": 5, "c2": 0}
        assert m.last_outcome("c1").error == "boom"
        assert m.last_outcome("nope") is None

    def test_errors_and_actions(self) -> None:
        m = SyncMetrics()
        m.record_sync_error("c1", "RemoteAPIError", "HelmRelease")
        m.record_sync_error("c1", "RemoteAPIError", "Bucket")
        m.record_sync_error("c1", "StoreError")
        m.record_action("c1", "Kustomization", "reconcile", ok=True)
        m.record_action("c1", "Kustomization", "suspend", ok=False)

        assert m.sync_errors("c1") == {"RemoteAPIError": 2, "StoreError": 1}
        actions = m.snapshot()["reconciliations"]
        assert {
            "cluster_id": "c1", "kind": "Kustomization", "action": "suspend",
            "status": "error", "count": 1,
        } in actions

    def test_forget(self) -> None:
        m = SyncMetrics()
        m.record_outcome(_outcome())
        m.record_sync_error("c1", "StoreError")
        m.record_action("c1", "Kustomization", "reconcile", ok=True)
        m.record_outcome(_outcome("c2"))
        m.forget("c1")

        snap = m.snapshot()
        assert snap["clusters_total"] == 1
        assert snap["sync_errors"] == []
        assert snap["reconciliations"] == []
        assert "c1" not in snap["sync_duration_seconds"]
