import queue
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

import structlog

from .errors import StoreFailure

log = structlog.get_logger()

def get_conn(db_path: str, busy_timeout_seconds: float = 30.0) -> sqlite3.Connection:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    # autocommit; pooled connections are handed across worker threads
    conn = sqlite3.connect(db_path, isolation_level=None, timeout=busy_timeout_seconds, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_seconds * 1000)};")
    return conn

DDL = [
    # Dashboard snapshots; one automatic row per date, manual rows append
    """
CREATE TABLE IF NOT EXISTS dashboard_snapshots (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  periode TEXT NOT NULL,            -- 'YYYYMM'
  snapshot_date TEXT NOT NULL,      -- 'YYYY-MM-DD'
  raw_data TEXT NOT NULL,
  processed_data TEXT NOT NULL,
  payload_sha256 TEXT NOT NULL,
  created_by TEXT NOT NULL,
  is_month_end INTEGER NOT NULL DEFAULT 0,
  is_manual INTEGER NOT NULL DEFAULT 0,
  notes TEXT,
  revision INTEGER NOT NULL DEFAULT 1,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
""",
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_snapshots_auto_date ON dashboard_snapshots(snapshot_date) WHERE is_manual = 0;",
    "CREATE INDEX IF NOT EXISTS ix_snapshots_periode_date ON dashboard_snapshots(periode, snapshot_date DESC);",
    "CREATE INDEX IF NOT EXISTS ix_snapshots_manual_created ON dashboard_snapshots(is_manual, created_at DESC);",
]

def migrate(conn: sqlite3.Connection):
    cur = conn.cursor()
    for stmt in DDL:
        cur.execute(stmt)
    cols = {row[1] for row in cur.execute("PRAGMA table_info(dashboard_snapshots)").fetchall()}
    if "revision" not in cols:
        cur.execute("ALTER TABLE dashboard_snapshots ADD COLUMN revision INTEGER NOT NULL DEFAULT 1")
    if "payload_sha256" not in cols:
        cur.execute("ALTER TABLE dashboard_snapshots ADD COLUMN payload_sha256 TEXT NOT NULL DEFAULT ''")


class ConnectionPool:
    """
    Bounded pool of SQLite connections.
    - connection() hands one out for the duration of a with-block
    - close() releases every connection; later acquisitions fail
    """
    def __init__(self, db_path: str, size: int = 5, busy_timeout_seconds: float = 30.0, acquire_timeout_seconds: float = 60.0):
        self.db_path = db_path
        self.size = max(1, int(size))
        self.busy_timeout_seconds = busy_timeout_seconds
        self.acquire_timeout_seconds = acquire_timeout_seconds
        self._idle: queue.LifoQueue = queue.LifoQueue()
        self._all: list[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _acquire(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreFailure("connection pool is closed")
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            pass
        with self._lock:
            if len(self._all) < self.size:
                try:
                    conn = get_conn(self.db_path, self.busy_timeout_seconds)
                except sqlite3.Error as e:
                    raise StoreFailure(f"connect failed: {e}") from e
                self._all.append(conn)
                return conn
        try:
            return self._idle.get(timeout=self.acquire_timeout_seconds)
        except queue.Empty:
            raise StoreFailure("timed out waiting for a database connection")

    def _release(self, conn: sqlite3.Connection):
        if self._closed:
            conn.close()
            return
        if conn.in_transaction:
            conn.rollback()
        self._idle.put(conn)

    @contextmanager
    def connection(self):
        conn = self._acquire()
        try:
            yield conn
        finally:
            self._release(conn)

    def close(self):
        if self._closed:
            return
        self._closed = True
        with self._lock:
            conns, self._all = self._all, []
        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error as e:
                log.warning("db_close_failed", err=str(e))
        log.info("db_pool_closed", db_path=self.db_path, connections=len(conns))
