from __future__ import annotations

import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)


SCHEMA_VERSION = 1


class MetadataStore(Protocol):
    def record_report(self, entity_id: str, entity_type: str, report_path: str, *, status: str = "completed") -> None:
        ...


def _utc_ts() -> float:
    return float(time.time())


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL improves concurrency for a single-host service.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.DatabaseError:
        pass
    return conn


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS reports (
          entity_id TEXT NOT NULL,
          entity_type TEXT NOT NULL,
          report_path TEXT NOT NULL,
          status TEXT NOT NULL,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL,
          PRIMARY KEY (entity_id, entity_type)
        );
        """
    )
    conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))


class SqliteMetadataStore:
    """Report metadata (entity id, entity kind, report path) in a local SQLite file."""

    def __init__(self, db_path: str) -> None:
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        self._conn = _connect(self.db_path)
        _ensure_schema_conn(self._conn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def record_report(self, entity_id: str, entity_type: str, report_path: str, *, status: str = "completed") -> None:
        now = _utc_ts()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO reports (entity_id, entity_type, report_path, status, created_at_ts, updated_at_ts)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(entity_id, entity_type) DO UPDATE SET
                  report_path=excluded.report_path,
                  status=excluded.status,
                  updated_at_ts=excluded.updated_at_ts
                """,
                (str(entity_id), str(entity_type), str(report_path), str(status), now, now),
            )
        logger.debug("Stored report metadata", entity_id=entity_id, entity_type=entity_type, report_path=report_path)

    def get_report(self, entity_id: str, entity_type: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM reports WHERE entity_id=? AND entity_type=?",
                (str(entity_id), str(entity_type)),
            ).fetchone()
        return dict(row) if row else None
