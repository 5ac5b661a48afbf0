"""Persistent cluster and resource state.

Rows in ``managed_resources`` are keyed by
``(cluster_id, kind, namespace, name)`` and written with an
``INSERT ... ON CONFLICT DO UPDATE`` upsert: the first observation inserts,
every later one overwrites status fields in place and never touches
``created_at``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from flux_orchestrator.models import (
    ClusterHealth,
    ClusterRecord,
    ClusterSource,
    HealthState,
    ManagedResource,
    OrchestratorError,
)
from flux_orchestrator.store.database import Database

logger = logging.getLogger(__name__)


class StoreError(OrchestratorError):
    """Raised when a store read or write fails."""


def _now() -> str:
    return datetime.now(tz=UTC).isoformat()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@contextmanager
def _wrap(what: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise StoreError(f"Failed to {what}: {exc}") from exc


class ResourceStore:
    """Reads and writes clusters, resources and settings."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def release_connection(self) -> None:
        """Close the calling thread's database connection."""
        self._db.release()

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    def add_cluster(
        self,
        cluster_id: str,
        name: str | None = None,
        source: ClusterSource | None = ClusterSource.MANUAL,
    ) -> ClusterRecord:
        """Insert a cluster, or reset an existing one to ``unknown`` health.

        On an existing row ``name`` and ``source`` are only overwritten when
        given; pass ``None`` to keep what is stored.
        """
        now = _now()
        source_value = str(source) if source is not None else None
        with _wrap(f"add cluster '{cluster_id}'"):
            self._db.write(
                """INSERT INTO clusters
                   (cluster_id, name, status, source, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT (cluster_id) DO UPDATE SET
                       name = COALESCE(?, clusters.name),
                       status = excluded.status,
                       source = COALESCE(?, clusters.source),
                       updated_at = excluded.updated_at""",
                (
                    cluster_id,
                    name or cluster_id,
                    str(ClusterHealth.UNKNOWN),
                    source_value or str(ClusterSource.MANUAL),
                    now,
                    now,
                    name,
                    source_value,
                ),
            )
        record = self.get_cluster(cluster_id)
        if record is None:
            raise StoreError(f"Cluster '{cluster_id}' vanished after insert")
        return record

    def remove_cluster(self, cluster_id: str) -> bool:
        """Delete a cluster and, through the foreign key, all its resources."""
        with _wrap(f"remove cluster '{cluster_id}'"):
            cursor = self._db.write("DELETE FROM clusters WHERE cluster_id = ?", (cluster_id,))
        return cursor.rowcount > 0

    def get_cluster(self, cluster_id: str) -> ClusterRecord | None:
        with _wrap(f"read cluster '{cluster_id}'"):
            row = self._db.fetchone(
                """SELECT c.*,
                          (SELECT COUNT(*) FROM managed_resources r
                           WHERE r.cluster_id = c.cluster_id) AS resource_count
                   FROM clusters c WHERE c.cluster_id = ?""",
                (cluster_id,),
            )
        return self._row_to_cluster(row) if row else None

    def list_clusters(self) -> list[ClusterRecord]:
        with _wrap("list clusters"):
            rows = self._db.fetchall(
                """SELECT c.*,
                          (SELECT COUNT(*) FROM managed_resources r
                           WHERE r.cluster_id = c.cluster_id) AS resource_count
                   FROM clusters c ORDER BY c.cluster_id""",
            )
        return [self._row_to_cluster(r) for r in rows]

    def query_cluster_ids(self, statuses: Iterable[ClusterHealth | str]) -> list[str]:
        """Return ids of clusters whose last recorded health is in *statuses*."""
        wanted = [str(s) for s in statuses]
        if not wanted:
            return []
        placeholders = ", ".join("?" for _ in wanted)
        with _wrap("query clusters"):
            rows = self._db.fetchall(
                f"SELECT cluster_id FROM clusters WHERE status IN ({placeholders}) "  # noqa: S608
                "ORDER BY cluster_id",
                tuple(wanted),
            )
        return [r["cluster_id"] for r in rows]

    def update_cluster_health(
        self,
        cluster_id: str,
        status: ClusterHealth,
        checked_at: datetime | None = None,
    ) -> ClusterHealth | None:
        """Record a health check result. Returns the previous status.

        Returns ``None`` when the cluster has no row (e.g. it was removed
        while a sync pass was running).
        """
        checked = _iso(checked_at) or _now()
        with _wrap(f"update health of '{cluster_id}'"), self._db.transaction() as conn:
            row = conn.execute(
                "SELECT status FROM clusters WHERE cluster_id = ?", (cluster_id,),
            ).fetchone()
            if row is None:
                logger.debug("Health result for unknown cluster %s dropped", cluster_id)
                return None
            conn.execute(
                """UPDATE clusters
                   SET status = ?, last_health_check = ?, updated_at = ?
                   WHERE cluster_id = ?""",
                (str(status), checked, _now(), cluster_id),
            )
        return ClusterHealth(row["status"])

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def upsert_resource(self, resource: ManagedResource) -> str | None:
        """Insert or overwrite one resource row. Returns the previous status."""
        now = _now()
        with _wrap(f"upsert {resource.kind} {resource.namespace}/{resource.name}"), \
                self._db.transaction() as conn:
            row = conn.execute(
                """SELECT status FROM managed_resources
                   WHERE cluster_id = ? AND kind = ? AND namespace = ? AND name = ?""",
                resource.key,
            ).fetchone()
            conn.execute(
                """INSERT INTO managed_resources
                   (cluster_id, kind, namespace, name, status, health, message,
                    last_reconcile, suspended, metadata, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (cluster_id, kind, namespace, name) DO UPDATE SET
                       status = excluded.status,
                       health = excluded.health,
                       message = excluded.message,
                       last_reconcile = excluded.last_reconcile,
                       suspended = excluded.suspended,
                       metadata = excluded.metadata,
                       updated_at = excluded.updated_at""",
                (
                    resource.cluster_id,
                    resource.kind,
                    resource.namespace,
                    resource.name,
                    str(resource.status),
                    str(resource.health),
                    resource.message,
                    _iso(resource.last_reconcile),
                    int(resource.suspended),
                    json.dumps(resource.metadata, sort_keys=True, default=str),
                    now,
                    now,
                ),
            )
        return row["status"] if row else None

    def list_resources(
        self,
        cluster_id: str | None = None,
        kind: str | None = None,
    ) -> list[ManagedResource]:
        """Return stored resources ordered by kind, namespace and name."""
        clauses: list[str] = []
        params: list[Any] = []
        if cluster_id is not None:
            clauses.append("cluster_id = ?")
            params.append(cluster_id)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with _wrap("list resources"):
            rows = self._db.fetchall(
                f"SELECT * FROM managed_resources {where} "  # noqa: S608
                "ORDER BY cluster_id, kind, namespace, name",
                tuple(params),
            )
        return [self._row_to_resource(r) for r in rows]

    def get_resource(
        self, cluster_id: str, kind: str, namespace: str, name: str,
    ) -> ManagedResource | None:
        with _wrap(f"read {kind} {namespace}/{name}"):
            row = self._db.fetchone(
                """SELECT * FROM managed_resources
                   WHERE cluster_id = ? AND kind = ? AND namespace = ? AND name = ?""",
                (cluster_id, kind, namespace, name),
            )
        return self._row_to_resource(row) if row else None

    def prune_resources(
        self,
        cluster_id: str,
        kind: str,
        keep: Iterable[tuple[str, str]],
    ) -> int:
        """Delete rows of *kind* whose ``(namespace, name)`` is not in *keep*."""
        keep_set = set(keep)
        with _wrap(f"prune {kind} on '{cluster_id}'"), self._db.transaction() as conn:
            rows = conn.execute(
                """SELECT id, namespace, name FROM managed_resources
                   WHERE cluster_id = ? AND kind = ?""",
                (cluster_id, kind),
            ).fetchall()
            stale = [(r["id"],) for r in rows if (r["namespace"], r["name"]) not in keep_set]
            if stale:
                conn.executemany("DELETE FROM managed_resources WHERE id = ?", stale)
        if stale:
            logger.info("Pruned %d stale %s rows on %s", len(stale), kind, cluster_id)
        return len(stale)

    def resource_summary(self) -> list[dict[str, Any]]:
        """Row counts grouped by cluster, kind and status."""
        with _wrap("summarize resources"):
            rows = self._db.fetchall(
                """SELECT cluster_id, kind, status, COUNT(*) AS count
                   FROM managed_resources
                   GROUP BY cluster_id, kind, status
                   ORDER BY cluster_id, kind, status""",
            )
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> str | None:
        with _wrap(f"read setting '{key}'"):
            row = self._db.fetchone("SELECT value FROM settings WHERE key = ?", (key,))
        return row["value"] if row else None

    def set_setting(self, key: str, value: str) -> None:
        with _wrap(f"write setting '{key}'"):
            self._db.write(
                """INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT (key) DO UPDATE SET
                       value = excluded.value, updated_at = excluded.updated_at""",
                (key, value, _now()),
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_cluster(row: sqlite3.Row) -> ClusterRecord:
        return ClusterRecord(
            cluster_id=row["cluster_id"],
            name=row["name"],
            status=ClusterHealth(row["status"]),
            source=ClusterSource(row["source"]),
            last_health_check=_parse(row["last_health_check"]),
            resource_count=row["resource_count"],
            created_at=_parse(row["created_at"]),
            updated_at=_parse(row["updated_at"]),
        )

    @staticmethod
    def _row_to_resource(row: sqlite3.Row) -> ManagedResource:
        return ManagedResource(
            cluster_id=row["cluster_id"],
            kind=row["kind"],
            namespace=row["namespace"],
            name=row["name"],
            status=row["status"],
            health=HealthState(row["health"]),
            message=row["message"],
            last_reconcile=_parse(row["last_reconcile"]),
            suspended=bool(row["suspended"]),
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=_parse(row["created_at"]),
            updated_at=_parse(row["updated_at"]),
        )
