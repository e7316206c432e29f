"""
Run Persistence
===============
SQLite store for completed pipeline runs.

The orchestrator hands over one record per run that reaches DONE:

    {run_id, asset_id, operations, uploads, listing_status, ...}

Nested structures are stored as JSON text. All timestamps are Unix epoch
(UTC).
"""

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

from mintforge.shared.system.logging import Logger


@runtime_checkable
class PersistenceCollaborator(Protocol):
    def save_run(self, record: Dict[str, Any]) -> None:
        ...


@dataclass
class RunRecord:
    """Stored summary of one completed run."""
    run_id: str
    asset_id: str
    symbol: str = ""
    status: str = "done"
    listing_status: Optional[str] = None
    operations: str = "{}"
    uploads: str = "{}"
    created_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["operations"] = json.loads(self.operations or "{}")
        data["uploads"] = json.loads(self.uploads or "{}")
        return data


class SqliteRunStore:
    """
    Thread-safe SQLite store (one connection per thread).

    Usage:
        store = SqliteRunStore("data/mintforge.db")
        store.save_run(result_record)
        for run in store.list_runs(limit=10): ...
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "conn", None) is None:
            self._local.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._local.conn.row_factory = sqlite3.Row
        return self._local.conn

    @contextmanager
    def _transaction(self):
        """Context manager for atomic transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _init_schema(self) -> None:
        conn = self._get_connection()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                asset_id TEXT NOT NULL,
                symbol TEXT,
                status TEXT NOT NULL DEFAULT 'done',
                listing_status TEXT,
                operations TEXT DEFAULT '{}',
                uploads TEXT DEFAULT '{}',
                created_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_runs_created ON runs(created_at);
        """)
        conn.commit()

    # ═══════════════════════════════════════════════════════════════
    # RUNS
    # ═══════════════════════════════════════════════════════════════

    def save_run(self, record: Dict[str, Any]) -> None:
        """Insert or replace the record for `record['run_id']`."""
        row = RunRecord(
            run_id=record["run_id"],
            asset_id=record["asset_id"],
            symbol=record.get("symbol", ""),
            status=record.get("status", "done"),
            listing_status=record.get("listing_status"),
            operations=json.dumps(record.get("operations") or {}, default=str),
            uploads=json.dumps(record.get("uploads") or {}, default=str),
            created_at=record.get("created_at") or time.time(),
        )
        with self._transaction() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO runs (run_id, asset_id, symbol, status, listing_status,
                                             operations, uploads, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                row.run_id, row.asset_id, row.symbol, row.status, row.listing_status,
                row.operations, row.uploads, row.created_at,
            ))
        Logger.debug(f"[STORE] Saved run {row.run_id} ({row.asset_id[:8]}...)")

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        row = self._get_connection().execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
        return RunRecord(**dict(row)) if row else None

    def list_runs(self, limit: int = 20) -> List[RunRecord]:
        """Most recent runs first."""
        rows = self._get_connection().execute(
            "SELECT * FROM runs ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
        return [RunRecord(**dict(row)) for row in rows]

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
