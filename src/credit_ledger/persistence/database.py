"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema bootstrap.

Queries are written once with "?" placeholders and translated for psycopg2.
Driver exceptions never leave this module: unique violations surface as
ConflictError, everything else as StorageError.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

from ..errors import ConflictError, StorageError

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

# Amount columns hold integer counts of 1/10000 currency units.
SCHEMA_SQL = """
-- One balance per billing entity
CREATE TABLE IF NOT EXISTS balances (
    entity_id TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    current_balance INTEGER NOT NULL DEFAULT 0,
    initial_grant_applied INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- One row per metered usage occurrence
CREATE TABLE IF NOT EXISTS billable_events (
    id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    usage_seconds INTEGER NOT NULL,
    cost INTEGER NOT NULL,
    status TEXT NOT NULL,
    reference TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- One row per payment notification; provider_order_id is the dedup key
CREATE TABLE IF NOT EXISTS payment_confirmations (
    id TEXT PRIMARY KEY,
    provider_order_id TEXT NOT NULL UNIQUE,
    entity_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    requested_amount INTEGER NOT NULL,
    granted_amount INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    raw_payload TEXT,
    failure_reason TEXT,
    created_at TEXT NOT NULL,
    processed_at TEXT
);

-- Append-only ledger
CREATE TABLE IF NOT EXISTS ledger_transactions (
    id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    amount INTEGER NOT NULL,
    type TEXT NOT NULL,
    description TEXT,
    provider_reference TEXT,
    billable_event_id TEXT,
    balance_after INTEGER,
    created_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_events_entity ON billable_events(entity_id);
CREATE INDEX IF NOT EXISTS idx_events_status ON billable_events(status);
CREATE INDEX IF NOT EXISTS idx_confirmations_status ON payment_confirmations(status);
CREATE INDEX IF NOT EXISTS idx_ledger_entity ON ledger_transactions(entity_id);
CREATE INDEX IF NOT EXISTS idx_ledger_created ON ledger_transactions(created_at);
"""

POSTGRES_SCHEMA_SQL = """
-- Balances
CREATE TABLE IF NOT EXISTS balances (
    entity_id TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    current_balance BIGINT NOT NULL DEFAULT 0,
    initial_grant_applied BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Billable events
CREATE TABLE IF NOT EXISTS billable_events (
    id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    usage_seconds BIGINT NOT NULL,
    cost BIGINT NOT NULL,
    status TEXT NOT NULL,
    reference TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Payment confirmations
CREATE TABLE IF NOT EXISTS payment_confirmations (
    id TEXT PRIMARY KEY,
    provider_order_id TEXT NOT NULL UNIQUE,
    entity_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    requested_amount BIGINT NOT NULL,
    granted_amount BIGINT NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    raw_payload JSONB,
    failure_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    processed_at TIMESTAMPTZ
);

-- Ledger
CREATE TABLE IF NOT EXISTS ledger_transactions (
    id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    amount BIGINT NOT NULL,
    type TEXT NOT NULL,
    description TEXT,
    provider_reference TEXT,
    billable_event_id TEXT,
    balance_after BIGINT,
    created_at TIMESTAMPTZ NOT NULL
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_events_entity ON billable_events(entity_id);
CREATE INDEX IF NOT EXISTS idx_events_status ON billable_events(status);
CREATE INDEX IF NOT EXISTS idx_confirmations_status ON payment_confirmations(status);
CREATE INDEX IF NOT EXISTS idx_ledger_entity ON ledger_transactions(entity_id);
CREATE INDEX IF NOT EXISTS idx_ledger_created ON ledger_transactions(created_at);
"""


def _is_unique_violation(exc: Exception) -> bool:
    if isinstance(exc, sqlite3.IntegrityError):
        return "UNIQUE constraint failed" in str(exc)
    # psycopg2 UniqueViolation carries SQLSTATE 23505
    return getattr(exc, "pgcode", None) == "23505"


def _translate_error(exc: Exception) -> Exception:
    """Map a driver exception onto the ledger error taxonomy."""
    if _is_unique_violation(exc):
        return ConflictError(str(exc))
    return StorageError(str(exc))


def _driver_errors(is_postgres: bool) -> tuple:
    if is_postgres:
        import psycopg2
        return (psycopg2.Error,)
    return (sqlite3.Error,)


class Transaction:
    """
    A single unit of work on one connection.

    Everything executed through the same Transaction commits or rolls back
    together. Exposes the same execute() signature as Database so that
    repositories can be bound to either.
    """

    def __init__(self, conn: Any, is_postgres: bool):
        self._conn = conn
        self.is_postgres = is_postgres
        self._errors = _driver_errors(is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        try:
            if self.is_postgres:
                cursor = self._conn.cursor()
                cursor.execute(query.replace("?", "%s"), params)
            else:
                cursor = self._conn.execute(query, params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []
        except self._errors as e:
            raise _translate_error(e) from e


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction() as tx:
            tx.execute("SELECT * FROM balances WHERE entity_id = ?", ("org-1",))
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///credit_ledger.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        # Every thread-local SQLite connection, so close() can reach them all
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "credit_ledger.db"

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe)."""
        if self.is_postgres:
            with self._postgres_connection() as conn:
                yield conn
        else:
            with self._sqlite_connection() as conn:
                yield conn

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection with WAL mode for concurrency."""
        try:
            conn = getattr(self._local, "conn", None)
            if conn is None or conn not in self._connections:
                conn = sqlite3.connect(
                    self._get_sqlite_path(),
                    check_same_thread=False,
                    timeout=30.0,
                )
                conn.row_factory = sqlite3.Row
                # Enable WAL mode for better concurrency
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
                with self._connections_lock:
                    self._connections.append(conn)
                self._local.conn = conn
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database: {e}") from e

        conn = self._local.conn
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise _translate_error(e) from e
        except Exception:
            conn.rollback()
            raise

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, one per unit of work."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        try:
            conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        except psycopg2.Error as e:
            raise StorageError(f"Cannot connect to database: {e}") from e

        try:
            yield conn
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise _translate_error(e) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """Run several statements as one atomic unit of work."""
        with self.connection() as conn:
            yield Transaction(conn, self.is_postgres)

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL
            now = datetime.now(timezone.utc).isoformat()

            with self.connection() as conn:
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.executescript(schema)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a single statement in its own transaction."""
        with self.transaction() as tx:
            return tx.execute(query, params)

    def close(self) -> None:
        """
        Close every SQLite connection opened by any thread.

        Threads that use the database afterwards open a fresh connection.
        """
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local.conn = None
        logger.debug("database_closed", connections=len(connections))


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
