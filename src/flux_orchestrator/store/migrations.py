"""Version-tracked SQLite schema migrations."""

from __future__ import annotations

import sqlite3

from flux_orchestrator.store.database import Database

MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        );
        INSERT INTO schema_version (version) VALUES (0);

        CREATE TABLE IF NOT EXISTS clusters (
            cluster_id        TEXT PRIMARY KEY,
            name              TEXT NOT NULL,
            status            TEXT NOT NULL DEFAULT 'unknown',
            source            TEXT NOT NULL DEFAULT 'manual',
            last_health_check TEXT,
            created_at        TEXT NOT NULL,
            updated_at        TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS managed_resources (
            id             INTEGER PRIMARY KEY AUTOINCREMENT,
            cluster_id     TEXT NOT NULL REFERENCES clusters(cluster_id) ON DELETE CASCADE,
            kind           TEXT NOT NULL,
            namespace      TEXT NOT NULL DEFAULT '',
            name           TEXT NOT NULL,
            status         TEXT NOT NULL DEFAULT 'Unknown',
            health         TEXT NOT NULL DEFAULT 'Unknown',
            message        TEXT NOT NULL DEFAULT '',
            last_reconcile TEXT,
            suspended      INTEGER NOT NULL DEFAULT 0,
            metadata       TEXT NOT NULL DEFAULT '{}',
            created_at     TEXT NOT NULL,
            updated_at     TEXT NOT NULL,
            UNIQUE(cluster_id, kind, namespace, name)
        );

        CREATE INDEX IF NOT EXISTS idx_managed_resources_cluster
            ON managed_resources(cluster_id);
        CREATE INDEX IF NOT EXISTS idx_managed_resources_kind
            ON managed_resources(cluster_id, kind);
        CREATE INDEX IF NOT EXISTS idx_clusters_status
            ON clusters(status);
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS settings (
            key        TEXT PRIMARY KEY,
            value      TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """,
    ),
]


def get_schema_version(db: Database) -> int:
    """Return the current schema version, or 0 if uninitialized."""
    try:
        row = db.fetchone("SELECT version FROM schema_version")
    except sqlite3.OperationalError:
        return 0
    return int(row["version"]) if row else 0


def run_migrations(db: Database) -> int:
    """Apply pending migrations. Returns the final schema version."""
    current = get_schema_version(db)

    for version, sql in MIGRATIONS:
        if version <= current:
            continue
        db.write_script(sql)
        db.write("UPDATE schema_version SET version = ?", (version,))

    return get_schema_version(db)
