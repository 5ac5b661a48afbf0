"""SQLite connection manager shared by the sync loop and callers."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


class Database:
    """Thread-safe SQLite connection manager.

    WAL mode lets the API read while sync workers write.  Every thread gets
    its own connection; writes are serialized through one lock and each
    write statement commits on its own, so a row upsert never waits on a
    whole sync pass.

    Short-lived worker threads should call :meth:`release` when done.  A
    connection left behind by a thread that has exited is closed the next
    time any thread opens one.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._connections: dict[threading.Thread, sqlite3.Connection] = {}
        self._connections_lock = threading.Lock()
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> str:
        return self._db_path

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._connections_lock:
                self._reap_dead()
                self._connections[threading.current_thread()] = conn
        return conn

    @property
    def open_connections(self) -> int:
        with self._connections_lock:
            return len(self._connections)

    def release(self) -> None:
        """Close the calling thread's connection, if it has one."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        self._local.conn = None
        with self._connections_lock:
            self._connections.pop(threading.current_thread(), None)
        conn.close()

    def _reap_dead(self) -> None:
        dead = [t for t in self._connections if not t.is_alive()]
        for thread in dead:
            self._connections.pop(thread).close()
        if dead:
            logger.debug("Closed %d connection(s) of exited threads", len(dead))

    def fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        return self._get_conn().execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        return self._get_conn().execute(sql, params).fetchall()

    def write(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute and commit a single write statement."""
        with self._write_lock:
            conn = self._get_conn()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
            return cursor

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the write lock for several statements; commit or roll back."""
        with self._write_lock:
            conn = self._get_conn()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def write_script(self, sql: str) -> None:
        """Execute a multi-statement SQL script."""
        with self._write_lock:
            self._get_conn().executescript(sql)

    def close(self) -> None:
        """Close every connection opened by any thread."""
        with self._connections_lock:
            connections, self._connections = list(self._connections.values()), {}
        for conn in connections:
            try:
                conn.close()
            except sqlite3.ProgrammingError:
                logger.debug("Connection already closed")
        self._local = threading.local()
