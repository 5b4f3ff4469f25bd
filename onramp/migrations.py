"""
Schema migrations for the OnRamp state database.

Migrations are an ordered, append-only list of ``Migration`` entries. The
``schema_migrations`` ledger records every version that has been applied;
``run_migrations`` applies the ones above the ledger's highest version, in
ascending order, each in its own transaction together with its ledger row.

IMPORTANT: Always append new migrations at the end. Never reorder, renumber
or remove a migration once it has shipped.

Writing a migration: define its step function, then add the entry as the
last literal in ``MIGRATIONS`` with the next version number:

    def _add_retry_count(conn):
        if not column_exists(conn, "deployment_tasks", "retry_count"):
            conn.execute("ALTER TABLE deployment_tasks ADD COLUMN retry_count INTEGER")

    MIGRATIONS: List[Migration] = [
        ...
        Migration(3, "add component/task_id to operations_log", _add_oplog_task_reference),
        Migration(4, "add task retry count", _add_retry_count),
    ]

Use ``conn.execute`` for each statement. ``executescript`` issues an
implicit COMMIT and would break the all-or-nothing guarantee.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence

from onramp.db import DatabaseManager, column_exists
from onramp.errors import MigrationError
from onramp.timestamps import isonow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    """A single versioned schema change."""

    version: int
    description: str
    up: Callable[[sqlite3.Connection], None]


# =============================================================================
# Migration steps
# =============================================================================

def _create_core_tables(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS deployment_tasks (
            id TEXT PRIMARY KEY,
            operation TEXT NOT NULL,
            status TEXT NOT NULL,
            output TEXT NOT NULL DEFAULT '',
            error TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_tasks_status
            ON deployment_tasks(status)
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_tasks_created_at
            ON deployment_tasks(created_at)
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS deployment_state (
            component TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            task_id TEXT NOT NULL DEFAULT '',
            deployed_at TEXT,
            updated_at TEXT NOT NULL
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS operations_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            operation TEXT NOT NULL,
            status TEXT NOT NULL,
            error TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_oplog_created_at
            ON operations_log(created_at)
    """)


def _add_task_lifecycle_timestamps(conn: sqlite3.Connection) -> None:
    if not column_exists(conn, "deployment_tasks", "started_at"):
        conn.execute("ALTER TABLE deployment_tasks ADD COLUMN started_at TEXT")
    if not column_exists(conn, "deployment_tasks", "completed_at"):
        conn.execute("ALTER TABLE deployment_tasks ADD COLUMN completed_at TEXT")


def _add_oplog_task_reference(conn: sqlite3.Connection) -> None:
    if not column_exists(conn, "operations_log", "component"):
        conn.execute(
            "ALTER TABLE operations_log ADD COLUMN component TEXT NOT NULL DEFAULT ''"
        )
    if not column_exists(conn, "operations_log", "task_id"):
        conn.execute(
            "ALTER TABLE operations_log ADD COLUMN task_id TEXT NOT NULL DEFAULT ''"
        )


MIGRATIONS: List[Migration] = [
    Migration(1, "create task, deployment state and operations log tables",
              _create_core_tables),
    Migration(2, "add started_at/completed_at to deployment_tasks",
              _add_task_lifecycle_timestamps),
    Migration(3, "add component/task_id to operations_log",
              _add_oplog_task_reference),
]


# =============================================================================
# Runner
# =============================================================================

def validate_migrations(migrations: Sequence[Migration]) -> None:
    """
    Check that versions are positive and strictly ascending.

    Raises:
        MigrationError: on a duplicate, out-of-order or non-positive version
    """
    previous = 0
    for m in migrations:
        if m.version <= previous:
            raise MigrationError(
                f"migration versions must be positive and strictly ascending "
                f"(got {m.version} after {previous})",
                version=m.version,
                description=m.description,
            )
        previous = m.version


def ensure_migrations_table(conn: sqlite3.Connection) -> None:
    """Create the schema_migrations ledger if it does not exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL,
            description TEXT NOT NULL
        )
    """)


def get_current_version(conn: sqlite3.Connection) -> int:
    """Return the highest applied migration version (0 for a fresh database)."""
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) FROM schema_migrations"
    ).fetchone()
    return int(row[0])


def applied_migrations(conn: sqlite3.Connection) -> List[Dict[str, object]]:
    """Return the ledger rows in ascending version order."""
    rows = conn.execute(
        "SELECT version, applied_at, description FROM schema_migrations ORDER BY version"
    ).fetchall()
    return [dict(row) for row in rows]


def run_migrations(
    db: DatabaseManager,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> List[int]:
    """
    Apply all pending migrations in order.

    Each migration runs in its own ``BEGIN IMMEDIATE`` transaction together
    with the insert of its ledger row. If a migration raises, that
    transaction is rolled back (schema change and ledger row alike) and
    the run stops; later migrations are not attempted. Calling again after
    the defect is fixed resumes from the last applied version.

    Args:
        db: Database to migrate
        migrations: Ordered migration list (defaults to MIGRATIONS)

    Returns:
        Versions applied by this call, ascending (empty when at head)

    Raises:
        MigrationError: if the list is malformed or a migration fails
    """
    validate_migrations(migrations)

    with db.connect() as conn:
        ensure_migrations_table(conn)
        current_version = get_current_version(conn)

    applied: List[int] = []
    for m in migrations:
        if m.version <= current_version:
            continue

        try:
            with db.transaction() as conn:
                # Another process may have migrated while we waited for the lock
                if get_current_version(conn) >= m.version:
                    logger.info(f"Migration {m.version} already applied, skipping")
                    continue
                m.up(conn)
                conn.execute(
                    "INSERT INTO schema_migrations (version, applied_at, description) "
                    "VALUES (?, ?, ?)",
                    (m.version, isonow(), m.description),
                )
        except Exception as e:
            logger.error(f"Migration {m.version} ({m.description}) failed: {e}")
            raise MigrationError(
                f"migration {m.version} ({m.description}) failed: {e}",
                version=m.version,
                description=m.description,
            ) from e

        logger.info(f"Applied migration {m.version}: {m.description}")
        applied.append(m.version)

    return applied
