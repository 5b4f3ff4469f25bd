"""
SQLite connection management for the OnRamp state database.

NOT an ORM. Connection setup, a small connection pool and the
schema-inspection helpers migration authors need.

Connections are opened in autocommit mode (``isolation_level=None``): every
single statement is its own durable transaction, and multi-statement work
(migrations) opens an explicit ``BEGIN IMMEDIATE`` through
``DatabaseManager.transaction()``. This keeps DDL inside the transaction,
which the sqlite3 module's implicit transaction handling does not do.

Usage:
    from onramp.db import DatabaseManager, column_exists

    dm = DatabaseManager(db_path)
    with dm.connect() as conn:
        row = conn.execute("SELECT * FROM deployment_tasks WHERE id = ?", (task_id,)).fetchone()

    with dm.transaction() as conn:
        conn.execute("ALTER TABLE deployment_tasks ADD COLUMN started_at TEXT")
        conn.execute("INSERT INTO schema_migrations ...")
"""

import logging
import queue
import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_MS = 5000

PathLike = Union[str, Path]


def get_connection(
    db_path: PathLike = ":memory:",
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
) -> sqlite3.Connection:
    """
    Open a configured SQLite connection.

    Args:
        db_path: Database file path (":memory:" for a private in-memory DB)
        busy_timeout_ms: How long a writer waits on a locked database

    Returns:
        Autocommit connection with row_factory set for dict-like access,
        WAL journaling and foreign keys enabled.
    """
    conn = sqlite3.connect(
        str(db_path),
        check_same_thread=False,
        isolation_level=None,
        timeout=busy_timeout_ms / 1000.0,
    )
    conn.row_factory = sqlite3.Row
    if str(db_path) != ":memory:":
        # WAL lets status polling read while a worker thread writes output
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    return conn


@contextmanager
def connect(db_path: PathLike = ":memory:") -> Iterator[sqlite3.Connection]:
    """
    Context manager that yields a connection with auto commit/rollback.

    On success: commits any open transaction and closes.
    On exception: rolls back and closes.
    """
    conn = get_connection(db_path)
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


_IDENTIFIER_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')


def _validate_identifier(name: str, label: str) -> None:
    """Validate a SQL identifier (table or column name) against injection.

    Raises ValueError if the identifier contains invalid characters.
    """
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid {label} name: {name!r}")


def column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    """
    Check if a column exists in a table.

    Lets migrations guard ``ALTER TABLE ... ADD COLUMN`` so a step can be
    re-applied against a schema that already has the column.

    Raises:
        ValueError: If table or column names contain invalid characters
    """
    _validate_identifier(table, "table")
    _validate_identifier(column, "column")

    cursor = conn.execute(f"PRAGMA table_info({table})")
    columns = [row[1] for row in cursor.fetchall()]
    return column in columns


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    """Check if a table exists in the database."""
    _validate_identifier(table, "table")
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


# =============================================================================
# DatabaseManager: connection pool for one database file
# =============================================================================

class DatabaseManager:
    """
    Small connection pool for a single SQLite database file.

    Each caller checks out its own connection, so background workers and
    request threads never share a cursor. An instance is owned by whoever
    created it (normally SQLiteStore); there is no process-wide singleton.

    Usage:
        dm = DatabaseManager(Path("data/state.db"))
        with dm.connect() as conn:
            conn.execute("SELECT ...")
        dm.close()
    """

    def __init__(
        self,
        db_path: PathLike,
        pool_size: int = 5,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ):
        if str(db_path) == ":memory:":
            raise ValueError("DatabaseManager requires a database file, not :memory:")

        self._db_path = Path(db_path)
        self._pool_size = pool_size
        self._busy_timeout_ms = busy_timeout_ms
        self._pool: queue.Queue = queue.Queue(maxsize=pool_size)
        self._closed = False

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    # ----- connection acquisition / release -----------------------------------

    def get_connection(self) -> sqlite3.Connection:
        """Acquire a connection from the pool, opening a new one if empty."""
        try:
            conn = self._pool.get_nowait()
        except queue.Empty:
            return get_connection(self._db_path, self._busy_timeout_ms)

        try:
            conn.execute("SELECT 1")
            return conn
        except sqlite3.Error:
            # Stale connection, drop it and open a fresh one
            logger.debug("Discarding stale pooled connection")
            conn.close()
            return get_connection(self._db_path, self._busy_timeout_ms)

    def release_connection(self, conn: sqlite3.Connection) -> None:
        """Return a connection to the pool (closed if the pool is full)."""
        if conn.in_transaction:
            conn.rollback()
        if self._closed:
            conn.close()
            return
        try:
            self._pool.put_nowait(conn)
        except queue.Full:
            conn.close()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Context manager: acquire → yield → commit/rollback → release."""
        conn = self.get_connection()
        try:
            yield conn
            if conn.in_transaction:
                conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            self.release_connection(conn)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside one explicit write transaction.

        ``BEGIN IMMEDIATE`` takes the write lock up front, so everything in
        the block (DDL included) commits together or not at all.
        """
        conn = self.get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            self.release_connection(conn)

    def close(self) -> None:
        """Close every pooled connection. Checked-out ones close on release."""
        self._closed = True
        while True:
            try:
                conn = self._pool.get_nowait()
            except queue.Empty:
                break
            conn.close()

    @property
    def db_path(self) -> Path:
        """Return the SQLite database path."""
        return self._db_path
