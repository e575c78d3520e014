"""
Database Connection Layer

SQLite storage for ledger state with automatic schema creation.
"""

import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

from ..config import LedgerSettings

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 2

SCHEMA_SQL = """
-- Per-account subscription record and reserve balance
CREATE TABLE IF NOT EXISTS subscriptions (
    account_id TEXT PRIMARY KEY,
    period_count INTEGER NOT NULL DEFAULT 0,
    period_anchor INTEGER NOT NULL DEFAULT 0,
    active INTEGER NOT NULL DEFAULT 0,
    reserve INTEGER NOT NULL DEFAULT 0
);

-- Single-row ledger terms and aggregates
CREATE TABLE IF NOT EXISTS ledger_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    fee_per_period INTEGER NOT NULL,
    period_length INTEGER NOT NULL,
    total_reserved INTEGER NOT NULL DEFAULT 0,
    subscriber_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

-- Append-only audit trail of committed operations
CREATE TABLE IF NOT EXISTS ledger_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    account_id TEXT NOT NULL,
    amount INTEGER NOT NULL,
    period_count INTEGER NOT NULL,
    timestamp INTEGER NOT NULL,
    recorded_at TEXT NOT NULL
);

-- Development token balances backing the reserves
CREATE TABLE IF NOT EXISTS token_balances (
    account_id TEXT PRIMARY KEY,
    balance INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS token_allowances (
    owner TEXT NOT NULL,
    spender TEXT NOT NULL,
    amount INTEGER NOT NULL,
    PRIMARY KEY (owner, spender)
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_active ON subscriptions(active);
CREATE INDEX IF NOT EXISTS idx_events_account ON ledger_events(account_id);
CREATE INDEX IF NOT EXISTS idx_events_kind ON ledger_events(kind);
"""


class Database:
    """
    SQLite connection manager.

    Usage:
        db = Database("sqlite:///reserve_rail.db")
        with db.connection() as conn:
            conn.execute("SELECT * FROM subscriptions")
    """

    def __init__(self, database_url: str = "sqlite:///reserve_rail.db"):
        if not database_url.startswith("sqlite:///"):
            raise ValueError(f"Unsupported database URL: {database_url}")
        self.database_url = database_url
        self._local = threading.local()
        self._lock = threading.Lock()
        self._initialized = False

    @property
    def path(self) -> str:
        return self.database_url[len("sqlite:///"):]

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Per-thread connection; commits on success, rolls back on error."""
        if getattr(self._local, "conn", None) is None:
            self._local.conn = sqlite3.connect(
                self.path,
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for concurrent readers
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")

        try:
            yield self._local.conn
            self._local.conn.commit()
        except Exception:
            self._local.conn.rollback()
            raise

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            with self.connection() as conn:
                conn.executescript(SCHEMA_SQL)
                conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, datetime.now(timezone.utc).isoformat())
                )

            self._initialized = True
            logger.info("database_initialized", path=self.path, schema_version=SCHEMA_VERSION)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.connection() as conn:
            cursor = conn.execute(query, params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

    def close(self) -> None:
        """Close this thread's connection."""
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Open and initialize a database, defaulting to the configured URL."""
    if database_url is None:
        database_url = LedgerSettings.from_env().database_url

    db = Database(database_url)
    db.initialize()
    return db
