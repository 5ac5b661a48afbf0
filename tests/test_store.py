"""Tests for the SQLite database, migrations and resource store."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from pathlib import Path

import pytest

from flux_orchestrator.models import (
    ClusterHealth,
    ClusterSource,
    HealthState,
    ManagedResource,
    ResourceStatus,
)
from flux_orchestrator.store.database import Database
from flux_orchestrator.store.migrations import get_schema_version, run_migrations
from flux_orchestrator.store.resource_store import ResourceStore, StoreError


def _resource(name: str = "apps", **overrides) -> ManagedResource:
    fields = {
        "cluster_id": "c1",
        "kind": "Kustomization",
        "namespace": "flux-system",
        "name": name,
        "status": ResourceStatus.READY,
        "health": HealthState.HEALTHY,
        "message": "ok",
        "metadata": {"metadata": {"name": name}},
    }
    fields.update(overrides)
    return ManagedResource(**fields)


class TestDatabase:
    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "nested" / "dir" / "x.db")
        try:
            run_migrations(db)
            assert (tmp_path / "nested" / "dir" / "x.db").exists()
        finally:
            db.close()

    def test_wal_and_foreign_keys(self, db: Database) -> None:
        assert db.fetchone("PRAGMA journal_mode")[0] == "wal"
        assert db.fetchone("PRAGMA foreign_keys")[0] == 1

    def test_transaction_rolls_back(self, db: Database) -> None:
        with pytest.raises(RuntimeError), db.transaction() as conn:
            conn.execute(
                "INSERT INTO settings (key, value, updated_at) VALUES ('k', 'v', 'now')",
            )
            raise RuntimeError("boom")
        assert db.fetchone("SELECT * FROM settings WHERE key = 'k'") is None

    def test_connection_per_thread(self, db: Database) -> None:
        seen = []

        def worker() -> None:
            seen.append(db.fetchone("SELECT 1")[0])

        t = threading.Thread(target=worker)
        t.start()
        t.join()
        assert seen == [1]

    def test_release_closes_thread_connection(self, db: Database) -> None:
        before = db.open_connections

        def worker() -> None:
            db.fetchone("SELECT 1")
            assert db.open_connections == before + 1
            db.release()

        t = threading.Thread(target=worker)
        t.start()
        t.join()
        assert db.open_connections == before

    def test_release_without_connection(self, db: Database) -> None:
        t = threading.Thread(target=db.release)
        t.start()
        t.join()
        db.release()
        db.release()
        assert db.fetchone("SELECT 1")[0] == 1

    def test_exited_thread_connections_are_reaped(self, db: Database) -> None:
        db.fetchone("SELECT 1")
        for _ in range(25):
            t = threading.Thread(target=db.fetchone, args=("SELECT 1",))
            t.start()
            t.join()
        assert db.open_connections <= 2


class TestMigrations:
    def test_fresh_database(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "fresh.db")
        try:
            assert get_schema_version(db) == 0
            assert run_migrations(db) == 2
        finally:
            db.close()

    def test_idempotent(self, db: Database) -> None:
        assert run_migrations(db) == 2
        assert len(db.fetchall("SELECT * FROM schema_version")) == 1

    def test_tables_exist(self, db: Database) -> None:
        names = {r["name"] for r in db.fetchall("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"clusters", "managed_resources", "settings", "schema_version"} <= names


class TestClusters:
    def test_add_and_get(self, store: ResourceStore) -> None:
        record = store.add_cluster("c1", name="Production")
        assert record.cluster_id == "c1"
        assert record.name == "Production"
        assert record.status == ClusterHealth.UNKNOWN
        assert record.source == ClusterSource.MANUAL
        assert record.resource_count == 0
        assert store.get_cluster("c1") == record

    def test_name_defaults_to_id(self, store: ResourceStore) -> None:
        assert store.add_cluster("c1").name == "c1"

    def test_re_add_resets_health_keeps_created_at(self, store: ResourceStore) -> None:
        first = store.add_cluster("c1")
        store.update_cluster_health("c1", ClusterHealth.HEALTHY)
        again = store.add_cluster("c1", name="renamed", source=ClusterSource.CONFIG)
        assert again.status == ClusterHealth.UNKNOWN
        assert again.name == "renamed"
        assert again.source == ClusterSource.CONFIG
        assert again.created_at == first.created_at

    def test_re_add_without_name_keeps_stored_name_and_source(self, store: ResourceStore) -> None:
        store.add_cluster("c1", name="Production EU")
        again = store.add_cluster("c1", source=None)
        assert again.name == "Production EU"
        assert again.source == ClusterSource.MANUAL

    def test_list_sorted(self, store: ResourceStore) -> None:
        store.add_cluster("b")
        store.add_cluster("a")
        assert [c.cluster_id for c in store.list_clusters()] == ["a", "b"]

    def test_get_missing(self, store: ResourceStore) -> None:
        assert store.get_cluster("nope") is None

    def test_remove_cascades(self, store: ResourceStore) -> None:
        store.add_cluster("c1")
        store.upsert_resource(_resource())
        assert store.remove_cluster("c1") is True
        assert store.list_resources("c1") == []
        assert store.remove_cluster("c1") is False

    def test_update_health_returns_previous(self, store: ResourceStore) -> None:
        store.add_cluster("c1")
        checked = datetime(2024, 5, 1, 12, tzinfo=UTC)
        assert store.update_cluster_health("c1", ClusterHealth.HEALTHY, checked) == ClusterHealth.UNKNOWN
        assert store.update_cluster_health("c1", ClusterHealth.UNHEALTHY) == ClusterHealth.HEALTHY
        record = store.get_cluster("c1")
        assert record.status == ClusterHealth.UNHEALTHY
        assert record.last_health_check is not None

    def test_update_health_of_removed_cluster(self, store: ResourceStore) -> None:
        assert store.update_cluster_health("gone", ClusterHealth.HEALTHY) is None

    def test_query_cluster_ids(self, store: ResourceStore) -> None:
        for cid in ("a", "b", "c"):
            store.add_cluster(cid)
        store.update_cluster_health("b", ClusterHealth.UNHEALTHY)
        store.update_cluster_health("c", ClusterHealth.HEALTHY)
        assert store.query_cluster_ids([ClusterHealth.HEALTHY, ClusterHealth.UNKNOWN]) == ["a", "c"]
        assert store.query_cluster_ids(["unhealthy"]) == ["b"]
        assert store.query_cluster_ids([]) == []


class TestResources:
    def test_insert_returns_none(self, store: ResourceStore) -> None:
        store.add_cluster("c1")
        assert store.upsert_resource(_resource()) is None

    def test_upsert_overwrites_and_keeps_created_at(self, store: ResourceStore) -> None:
        store.add_cluster("c1")
        store.upsert_resource(_resource())
        first = store.get_resource("c1", "Kustomization", "flux-system", "apps")
        previous = store.upsert_resource(_resource(
            status=ResourceStatus.NOT_READY, health=HealthState.DEGRADED, message="broken",
            suspended=True,
        ))
        assert previous == ResourceStatus.READY
        row = store.get_resource("c1", "Kustomization", "flux-system", "apps")
        assert row.status == ResourceStatus.NOT_READY
        assert row.health == HealthState.DEGRADED
        assert row.message == "broken"
        assert row.suspended is True
        assert row.created_at == first.created_at
        assert len(store.list_resources("c1")) == 1

    def test_round_trips_fields(self, store: ResourceStore) -> None:
        store.add_cluster("c1")
        reconciled = datetime(2024, 5, 1, 12, tzinfo=UTC)
        store.upsert_resource(_resource(last_reconcile=reconciled))
        row = store.get_resource("c1", "Kustomization", "flux-system", "apps")
        assert row.last_reconcile == reconciled
        assert row.metadata == {"metadata": {"name": "apps"}}

    def test_unknown_cluster_rejected(self, store: ResourceStore) -> None:
        with pytest.raises(StoreError):
            store.upsert_resource(_resource(cluster_id="ghost"))

    def test_list_filters_and_order(self, store: ResourceStore) -> None:
        store.add_cluster("c1")
        store.add_cluster("c2")
        store.upsert_resource(_resource("b"))
        store.upsert_resource(_resource("a"))
        store.upsert_resource(_resource("r", kind="HelmRelease"))
        store.upsert_resource(_resource("x", cluster_id="c2"))
        assert [r.name for r in store.list_resources("c1")] == ["r", "a", "b"]
        assert [r.name for r in store.list_resources("c1", "Kustomization")] == ["a", "b"]
        assert len(store.list_resources()) == 4

    def test_prune(self, store: ResourceStore) -> None:
        store.add_cluster("c1")
        for name in ("a", "b", "c"):
            store.upsert_resource(_resource(name))
        store.upsert_resource(_resource("r", kind="HelmRelease"))
        assert store.prune_resources("c1", "Kustomization", [("flux-system", "b")]) == 2
        assert [r.name for r in store.list_resources("c1")] == ["r", "b"]

    def test_summary(self, store: ResourceStore) -> None:
        store.add_cluster("c1")
        store.upsert_resource(_resource("a"))
        store.upsert_resource(_resource("b", status=ResourceStatus.NOT_READY))
        store.upsert_resource(_resource("c"))
        assert store.resource_summary() == [
            {"cluster_id": "c1", "kind": "Kustomization", "status": "NotReady", "count": 1},
            {"cluster_id": "c1", "kind": "Kustomization", "status": "Ready", "count": 2},
        ]

    def test_resource_count_on_cluster(self, store: ResourceStore) -> None:
        store.add_cluster("c1")
        store.upsert_resource(_resource("a"))
        store.upsert_resource(_resource("b"))
        assert store.get_cluster("c1").resource_count == 2

    def test_concurrent_upserts(self, store: ResourceStore) -> None:
        store.add_cluster("c1")

        def worker(n: int) -> None:
            for i in range(10):
                store.upsert_resource(_resource(f"r{n}-{i}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(store.list_resources("c1")) == 40


class TestSettings:
    def test_get_missing(self, store: ResourceStore) -> None:
        assert store.get_setting("x") is None

    def test_set_overwrites(self, store: ResourceStore) -> None:
        store.set_setting("x", "1")
        store.set_setting("x", "2")
        assert store.get_setting("x") == "2"
