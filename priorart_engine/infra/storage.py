"""SQLite connection management and schema for runs, records and corpus."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Lock, RLock
from typing import Dict

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS runs (
        run_id TEXT PRIMARY KEY,
        bundle_id TEXT NOT NULL,
        bundle_json TEXT NOT NULL,
        fingerprint TEXT NOT NULL,
        owner TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        api_calls INTEGER NOT NULL DEFAULT 0,
        credits_charged INTEGER NOT NULL,
        cost_estimate REAL NOT NULL DEFAULT 0,
        warnings TEXT NOT NULL DEFAULT '[]',
        summary TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS query_variants (
        run_id TEXT NOT NULL,
        label TEXT NOT NULL,
        query TEXT NOT NULL,
        num INTEGER NOT NULL,
        page INTEGER NOT NULL,
        outcome TEXT NOT NULL DEFAULT 'pending',
        api_calls INTEGER NOT NULL DEFAULT 0,
        result_count INTEGER NOT NULL DEFAULT 0,
        executed_at TEXT,
        error TEXT,
        PRIMARY KEY (run_id, label)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS raw_results (
        raw_id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        label TEXT NOT NULL,
        source TEXT NOT NULL,
        engine TEXT NOT NULL,
        page INTEGER NOT NULL,
        payload TEXT NOT NULL,
        captured_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS canonical_records (
        record_id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        payload TEXT NOT NULL,
        first_seen TEXT,
        last_seen TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS run_records (
        run_id TEXT NOT NULL,
        record_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        payload TEXT NOT NULL,
        first_seen TEXT,
        last_seen TEXT,
        PRIMARY KEY (run_id, record_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS variant_hits (
        run_id TEXT NOT NULL,
        label TEXT NOT NULL,
        record_id TEXT NOT NULL,
        rank INTEGER NOT NULL,
        snippet TEXT NOT NULL DEFAULT '',
        source TEXT NOT NULL,
        PRIMARY KEY (run_id, label, record_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS unified_results (
        run_id TEXT NOT NULL,
        record_id TEXT NOT NULL,
        found_in TEXT NOT NULL,
        ranks TEXT NOT NULL,
        intersection TEXT NOT NULL,
        score REAL NOT NULL,
        breakdown TEXT NOT NULL,
        position INTEGER NOT NULL,
        shortlisted INTEGER NOT NULL DEFAULT 0,
        shortlist_origin TEXT,
        detail_status TEXT,
        PRIMARY KEY (run_id, record_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shortlist_overrides (
        run_id TEXT NOT NULL,
        record_id TEXT NOT NULL,
        include INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (run_id, record_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS detail_records (
        record_id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        fetched_at TEXT NOT NULL,
        payload TEXT NOT NULL,
        error TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS raw_details (
        raw_id INTEGER PRIMARY KEY AUTOINCREMENT,
        record_id TEXT NOT NULL,
        run_id TEXT,
        payload TEXT NOT NULL,
        captured_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS local_documents (
        record_id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        title TEXT NOT NULL,
        abstract TEXT NOT NULL DEFAULT '',
        publication_date TEXT,
        cpc_codes TEXT NOT NULL DEFAULT '[]',
        kind_code TEXT,
        source_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_variant_hits_run ON variant_hits(run_id)",
    "CREATE INDEX IF NOT EXISTS idx_raw_results_run ON raw_results(run_id, label)",
    "CREATE INDEX IF NOT EXISTS idx_unified_run_position ON unified_results(run_id, position)",
)


class SQLiteManager:
    """Manage SQLite connections with basic schema guarantees."""

    def __init__(self) -> None:
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._path_locks: Dict[Path, RLock] = {}
        self._lock = Lock()

    def connect(self, path: Path) -> sqlite3.Connection:
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                conn = sqlite3.connect(path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._connections[path] = conn
                self._ensure_schema(conn)
            return self._connections[path]

    def lock_for(self, path: Path) -> RLock:
        """Return the lock serialising every user of the connection for ``path``."""

        with self._lock:
            return self._path_locks.setdefault(path, RLock())

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)
        conn.commit()

    def reset(self, path: Path) -> None:
        with self._lock:
            if path in self._connections:
                self._connections[path].close()
                del self._connections[path]
        if path.exists():
            path.unlink()

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()


__all__ = ["SCHEMA_STATEMENTS", "SQLiteManager"]
