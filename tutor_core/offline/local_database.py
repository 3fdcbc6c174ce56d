# =============================================================================
# tutor_core/offline/local_database.py
# Local SQLite Database for Offline Operations
# =============================================================================
"""
LocalDatabase - SQLite-backed durable storage for tutorials, progress and
settings.

Features:
- Versioned, strictly additive schema migrations (PRAGMA user_version)
- One transaction per entity write
- Per-row write locks (same id serialized, different ids independent)
- Quarantine table for corrupt rows
- DataFrame export (pandas)
- Thread-local connections
"""

from __future__ import annotations
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import logging

import pandas as pd

from tutor_core.errors import StorageError, StorageErrorKind

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """Core tables: tutorials, progress and the settings key-value table."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS content_items (
            id TEXT PRIMARY KEY,
            category TEXT NOT NULL,
            version INTEGER NOT NULL,
            payload_json TEXT NOT NULL,
            fetched_at TEXT NOT NULL,
            last_accessed_at TEXT NOT NULL
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_content_category ON content_items (category)")
    conn.execute("""
        CREATE TABLE IF NOT EXISTS progress_records (
            content_id TEXT PRIMARY KEY,
            completed_units_json TEXT NOT NULL,
            current_unit_id TEXT,
            status TEXT NOT NULL,
            updated_at TEXT
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_progress_status ON progress_records (status)")
    conn.execute("""
        CREATE TABLE IF NOT EXISTS app_settings (
            key TEXT PRIMARY KEY,
            value TEXT,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)


def _migrate_to_v2(conn: sqlite3.Connection) -> None:
    """Quarantine for corrupt rows and index titles on tutorials."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS quarantine (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            table_name TEXT NOT NULL,
            record_id TEXT NOT NULL,
            raw_json TEXT,
            reason TEXT,
            quarantined_at TEXT NOT NULL
        )
    """)
    columns = {row[1] for row in conn.execute("PRAGMA table_info(content_items)").fetchall()}
    if "title" not in columns:
        conn.execute("ALTER TABLE content_items ADD COLUMN title TEXT NOT NULL DEFAULT ''")


# Ordered, append-only. Never edit a shipped step; add a new one.
MIGRATIONS: Dict[int, Callable[[sqlite3.Connection], None]] = {
    1: _migrate_to_v1,
    2: _migrate_to_v2,
}

# Tables reachable through the generic row API
TABLES = {
    "content_items": "id",
    "progress_records": "content_id",
}


def classify_sqlite_error(
    error: sqlite3.Error,
    entity_id: Optional[str] = None,
    operation: Optional[str] = None,
) -> Optional[StorageError]:
    """Map a sqlite3 error onto the storage taxonomy (None if unmapped)."""
    message = str(error).lower()
    if "full" in message or "quota" in message:
        kind = StorageErrorKind.QUOTA_EXCEEDED
    elif "malformed" in message or "not a database" in message or "corrupt" in message:
        kind = StorageErrorKind.CORRUPT
    elif "no such table" in message or "no such column" in message:
        kind = StorageErrorKind.SCHEMA_MISMATCH
    else:
        return None
    return StorageError(
        f"Local storage failure: {error}",
        kind=kind,
        entity_id=entity_id,
        operation=operation,
    )


class LocalDatabase:
    """
    Local SQLite database for offline data storage.

    All reads and writes wait for migrations to finish. A failed migration
    is fatal: every later call re-raises the same StorageError.
    """

    # Default database location
    DEFAULT_DB_PATH = Path(".tutor") / "tutor.db"

    _instance: Optional[LocalDatabase] = None
    _lock = threading.Lock()

    def __init__(self, db_path: Optional[Path] = None):
        """
        Initialize local database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self._ensure_directory()
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_lock = threading.Lock()
        self._initialized = False
        self._fatal_error: Optional[StorageError] = None
        # (lock, holders); an entry lives only while someone holds or waits on it
        self._row_locks: Dict[Tuple[str, str], List[Any]] = {}
        self._row_locks_guard = threading.Lock()

    @classmethod
    def get_instance(cls, db_path: Optional[Path] = None) -> LocalDatabase:
        """Get or create singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = LocalDatabase(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests, shutdown)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    def _ensure_directory(self) -> None:
        """Ensure database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "connection", None) is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    @contextmanager
    def _guard(self, entity_id: Optional[str], operation: str) -> Iterator[None]:
        """Translate sqlite3 failures into StorageError with context."""
        try:
            yield
        except sqlite3.Error as e:
            mapped = classify_sqlite_error(e, entity_id=entity_id, operation=operation)
            if mapped is None:
                raise
            logger.error(f"Storage {operation} failed for '{entity_id}': {e}")
            raise mapped from e

    # =========================================================================
    # SCHEMA
    # =========================================================================

    @property
    def schema_version(self) -> int:
        conn = self._get_connection()
        return int(conn.execute("PRAGMA user_version").fetchone()[0])

    def initialize(self) -> None:
        """Run pending migrations. Safe to call repeatedly."""
        if self._fatal_error is not None:
            raise self._fatal_error
        if self._initialized:
            return

        with self._init_lock:
            if self._fatal_error is not None:
                raise self._fatal_error
            if self._initialized:
                return
            try:
                self._apply_migrations()
            except StorageError as e:
                self._fatal_error = e
                raise
            except sqlite3.Error as e:
                mapped = classify_sqlite_error(e, operation="migrate")
                if mapped is None or mapped.kind != StorageErrorKind.CORRUPT:
                    mapped = StorageError(
                        f"Schema migration failed: {e}",
                        kind=StorageErrorKind.SCHEMA_MISMATCH,
                        operation="migrate",
                    )
                mapped.recoverable = False
                self._fatal_error = mapped
                logger.error(f"Local database unusable at {self.db_path}: {e}")
                raise mapped from e

            self._initialized = True
            logger.info(f"Local database initialized at: {self.db_path} (schema v{SCHEMA_VERSION})")

    def _apply_migrations(self) -> None:
        """Apply forward-only schema migrations to the latest version."""
        conn = self._get_connection()
        current = int(conn.execute("PRAGMA user_version").fetchone()[0])
        if current > SCHEMA_VERSION:
            raise StorageError(
                f"Database schema version {current} is newer than supported {SCHEMA_VERSION}",
                kind=StorageErrorKind.SCHEMA_MISMATCH,
                operation="migrate",
                details={"found": current, "supported": SCHEMA_VERSION},
            )

        with self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
            """)

        for version in range(current + 1, SCHEMA_VERSION + 1):
            logger.info(f"Migrating local database to schema v{version}")
            with self.transaction() as conn:
                # Explicit BEGIN so the DDL is rolled back with the rest on failure
                conn.execute("BEGIN")
                MIGRATIONS[version](conn)
                conn.execute(
                    "INSERT OR REPLACE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now().isoformat()),
                )
                conn.execute(f"PRAGMA user_version = {version}")

    def _ready(self) -> sqlite3.Connection:
        self.initialize()
        return self._get_connection()

    # =========================================================================
    # ROW LOCKS
    # =========================================================================

    @contextmanager
    def row_lock(self, table: str, key: str) -> Iterator[None]:
        """Hold the lock serializing writers of one row."""
        ident = (table, key)
        with self._row_locks_guard:
            entry = self._row_locks.get(ident)
            if entry is None:
                entry = self._row_locks[ident] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._row_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._row_locks[ident]

    def active_row_locks(self) -> int:
        """Rows currently locked or waited on."""
        with self._row_locks_guard:
            return len(self._row_locks)

    # =========================================================================
    # GENERIC ROW OPERATIONS
    # =========================================================================

    @staticmethod
    def _key_column(table: str) -> str:
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table}")
        return TABLES[table]

    def upsert(self, table: str, row: Dict[str, Any]) -> bool:
        """
        Insert or replace one row atomically.

        Returns:
            False when an identical row is already stored (nothing written)
        """
        key_column = self._key_column(table)
        key = str(row[key_column])
        columns = list(row.keys())

        with self.row_lock(table, key), self._guard(key, "put"):
            self._ready()
            with self.transaction() as conn:
                existing = conn.execute(
                    f"SELECT {', '.join(columns)} FROM {table} WHERE {key_column} = ?",
                    [key],
                ).fetchone()
                if existing is not None and dict(existing) == row:
                    return False

                placeholders = ", ".join("?" for _ in columns)
                updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != key_column)
                conn.execute(
                    f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
                    f"ON CONFLICT({key_column}) DO UPDATE SET {updates}",
                    [row[c] for c in columns],
                )
        return True

    def update_columns(self, table: str, key: str, data: Dict[str, Any]) -> bool:
        """Update some columns of an existing row."""
        key_column = self._key_column(table)
        set_clause = ", ".join(f"{k} = ?" for k in data)
        with self.row_lock(table, key), self._guard(key, "update"):
            self._ready()
            with self.transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE {table} SET {set_clause} WHERE {key_column} = ?",
                    [*data.values(), key],
                )
                return cursor.rowcount > 0

    def get_row(self, table: str, key: str) -> Optional[sqlite3.Row]:
        """Get a row by primary key."""
        key_column = self._key_column(table)
        with self._guard(key, "get"):
            conn = self._ready()
            return conn.execute(f"SELECT * FROM {table} WHERE {key_column} = ?", [key]).fetchone()

    def get_rows(
        self,
        table: str,
        where_column: Optional[str] = None,
        value: Any = None,
    ) -> List[sqlite3.Row]:
        """Get all rows, optionally filtered on one column."""
        self._key_column(table)
        query = f"SELECT * FROM {table}"
        params: List[Any] = []
        if where_column:
            query += f" WHERE {where_column} = ?"
            params.append(value)
        with self._guard(None, "query"):
            conn = self._ready()
            return conn.execute(query, params).fetchall()

    def delete_row(self, table: str, key: str) -> bool:
        """Delete a row by primary key."""
        key_column = self._key_column(table)
        with self.row_lock(table, key), self._guard(key, "delete"):
            self._ready()
            with self.transaction() as conn:
                cursor = conn.execute(f"DELETE FROM {table} WHERE {key_column} = ?", [key])
                return cursor.rowcount > 0

    # =========================================================================
    # QUARANTINE
    # =========================================================================

    def quarantine(self, table: str, row: sqlite3.Row, reason: str) -> None:
        """Move a corrupt row out of the way so other reads keep working."""
        key_column = self._key_column(table)
        key = str(row[key_column])
        raw = json.dumps({k: row[k] for k in row.keys()}, default=str)
        with self.row_lock(table, key), self._guard(key, "quarantine"):
            self._ready()
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO quarantine (table_name, record_id, raw_json, reason, quarantined_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [table, key, raw, reason, datetime.now().isoformat()],
                )
                conn.execute(f"DELETE FROM {table} WHERE {key_column} = ?", [key])
        logger.warning(f"Quarantined corrupt row {table}/{key}: {reason}")

    def list_quarantined(self) -> List[Dict[str, Any]]:
        """Rows moved to quarantine, oldest first."""
        with self._guard(None, "query"):
            conn = self._ready()
            rows = conn.execute("SELECT * FROM quarantine ORDER BY id ASC").fetchall()
        return [dict(row) for row in rows]

    # =========================================================================
    # PANDAS INTEGRATION
    # =========================================================================

    def to_dataframe(self, table: str) -> pd.DataFrame:
        """
        Load a table into a pandas DataFrame.

        Args:
            table: Table name

        Returns:
            DataFrame with table data
        """
        self._key_column(table)
        with self._guard(None, "export"):
            conn = self._ready()
            return pd.read_sql_query(f"SELECT * FROM {table}", conn)

    # =========================================================================
    # SETTINGS
    # =========================================================================

    def get_setting(self, key: str) -> Tuple[bool, Optional[str]]:
        """Return (found, raw JSON text) for a settings key."""
        with self._guard(key, "get"):
            conn = self._ready()
            row = conn.execute("SELECT value FROM app_settings WHERE key = ?", [key]).fetchone()
        if row is None:
            return (False, None)
        return (True, row["value"])

    def set_setting(self, key: str, value_json: str) -> None:
        """Store the raw JSON text for a settings key."""
        with self.row_lock("app_settings", key), self._guard(key, "put"):
            self._ready()
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO app_settings (key, value, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    [key, value_json, datetime.now().isoformat()],
                )

    def delete_setting(self, key: str) -> bool:
        with self.row_lock("app_settings", key), self._guard(key, "delete"):
            self._ready()
            with self.transaction() as conn:
                cursor = conn.execute("DELETE FROM app_settings WHERE key = ?", [key])
                return cursor.rowcount > 0

    def setting_keys(self) -> List[str]:
        with self._guard(None, "query"):
            conn = self._ready()
            rows = conn.execute("SELECT key FROM app_settings ORDER BY key").fetchall()
        return [str(row["key"]) for row in rows]

    def close(self) -> None:
        """Close every connection opened by this database."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local = threading.local()


# Singleton accessor
def get_local_database(db_path: Optional[Path] = None) -> LocalDatabase:
    """Get the global LocalDatabase instance."""
    database = LocalDatabase.get_instance(db_path)
    database.initialize()
    return database
