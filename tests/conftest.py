"""Shared fixtures: a migrated SQLite store and a fake-cluster registry."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fakes import FakeResourceClient

from flux_orchestrator.clusters.registry import ClusterRegistry
from flux_orchestrator.store.database import Database
from flux_orchestrator.store.migrations import run_migrations
from flux_orchestrator.store.resource_store import ResourceStore


@pytest.fixture()
def db(tmp_path: Path) -> Generator[Database, None, None]:
    database = Database(tmp_path / "orchestrator.db")
    run_migrations(database)
    yield database
    database.close()


@pytest.fixture()
def store(db: Database) -> ResourceStore:
    return ResourceStore(db)


@pytest.fixture()
def clients() -> dict[str, FakeResourceClient]:
    """Fake clients by API server URL; registry lookups create them on demand."""
    return {}


@pytest.fixture()
def registry(clients: dict[str, FakeResourceClient]) -> ClusterRegistry:
    def factory(kubeconfig: dict) -> FakeResourceClient:
        server = kubeconfig["clusters"][0]["cluster"]["server"]
        return clients.setdefault(server, FakeResourceClient())

    return ClusterRegistry(client_factory=factory)
