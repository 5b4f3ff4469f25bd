"""
Persistent store for deployment tasks, component state and the operations log.

``Store`` is the narrow contract the TaskManager depends on; ``SQLiteStore``
is the implementation backed by a WAL-mode SQLite file. Every method is a
synchronous round-trip and is durable once it returns. There is no
cross-call atomicity beyond a single method.

Usage:
    from onramp.store import SQLiteStore

    store = SQLiteStore(Path("data/state.db"))   # runs pending migrations
    store.create_task(DeploymentTask(id=task_id, operation="Install 5G Core"))
    store.append_task_output(task_id, "PLAY [all] ****\\n")
    store.complete_task(task_id, TaskStatus.COMPLETED, "")
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Protocol, Tuple, Union

from onramp.db import DatabaseManager
from onramp.errors import (
    DeploymentStateNotFoundError,
    StoreError,
    TaskNotFoundError,
)
from onramp.migrations import MIGRATIONS, get_current_version, run_migrations
from onramp.state import (
    ComponentDeploymentState,
    DeploymentTask,
    DeployState,
    OperationLogEntry,
    OutputChunk,
    TaskStatus,
)
from onramp.timestamps import isonow

logger = logging.getLogger(__name__)

_TERMINAL = "(" + ", ".join(f"'{s.value}'" for s in TaskStatus if s.is_terminal) + ")"

_TASK_COLUMNS = (
    "id, operation, status, output, error, created_at, updated_at, "
    "started_at, completed_at"
)


class Store(Protocol):
    """Storage operations consumed by the TaskManager.

    ``get_task`` and ``get_deployment_state`` raise a NotFoundError subclass
    when the row is missing; any other failure is a StoreError. Status
    writes never move a task out of a terminal state: they return False
    instead.
    """

    def create_task(self, task: DeploymentTask) -> None:
        ...

    def get_task(self, task_id: str) -> DeploymentTask:
        ...

    def update_task_status(self, task_id: str, status: TaskStatus) -> bool:
        ...

    def complete_task(self, task_id: str, status: TaskStatus, error_message: str = "") -> bool:
        ...

    def append_task_output(self, task_id: str, chunk: str) -> None:
        ...

    def set_deployment_state(self, component: str, status: DeployState, task_id: str) -> None:
        ...

    def get_deployment_state(self, component: str) -> ComponentDeploymentState:
        ...

    def list_deployment_states(self) -> List[ComponentDeploymentState]:
        ...

    def log_operation(self, entry: OperationLogEntry) -> None:
        ...

    def list_tasks(
        self,
        limit: int = 20,
        offset: int = 0,
        status: Optional[TaskStatus] = None,
    ) -> Tuple[List[DeploymentTask], int]:
        ...


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Re-raise sqlite3 failures as StoreError, leaving NotFound untouched."""
    try:
        yield
    except sqlite3.Error as e:
        logger.error(f"State store failed to {operation}: {e}")
        raise StoreError(f"failed to {operation}: {e}") from e


class SQLiteStore:
    """
    SQLite-backed implementation of ``Store``.

    Safe for concurrent use from multiple threads: each call checks out its
    own pooled connection and WAL mode lets readers proceed while a worker
    appends output.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        pool_size: int = 5,
        busy_timeout_ms: int = 5000,
    ):
        """
        Open (creating if needed) the state database and migrate it.

        Args:
            db_path: SQLite database file
            pool_size: Maximum idle pooled connections
            busy_timeout_ms: Lock wait for concurrent writers

        Raises:
            MigrationError: if a pending migration fails
        """
        self._db = DatabaseManager(db_path, pool_size=pool_size,
                                   busy_timeout_ms=busy_timeout_ms)
        applied = run_migrations(self._db, MIGRATIONS)
        if applied:
            logger.info(f"State database {db_path} migrated to version {applied[-1]}")

    @property
    def db_path(self) -> Path:
        return self._db.db_path

    def close(self) -> None:
        """Close pooled connections."""
        self._db.close()

    # ----- tasks --------------------------------------------------------------

    def create_task(self, task: DeploymentTask) -> None:
        """Insert a new task row; timestamps are filled in if empty."""
        ts = isonow()
        task.created_at = task.created_at or ts
        task.updated_at = task.updated_at or ts
        with _store_errors("create task"), self._db.connect() as conn:
            conn.execute(
                "INSERT INTO deployment_tasks "
                "(id, operation, status, output, error, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (task.id, task.operation, TaskStatus(task.status).value,
                 task.output, task.error, task.created_at, task.updated_at),
            )

    def get_task(self, task_id: str) -> DeploymentTask:
        """Fetch a task. Raises TaskNotFoundError if it does not exist."""
        with _store_errors("get task"), self._db.connect() as conn:
            row = conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM deployment_tasks WHERE id = ?",
                (task_id,),
            ).fetchone()
        if row is None:
            raise TaskNotFoundError(task_id)
        return DeploymentTask.from_row(row)

    def _task_exists(self, conn: sqlite3.Connection, task_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM deployment_tasks WHERE id = ?", (task_id,)
        ).fetchone()
        return row is not None

    def update_task_status(self, task_id: str, status: TaskStatus) -> bool:
        """
        Move a non-terminal task to ``status``.

        Entering ``running`` stamps started_at.

        Returns:
            True if the row changed, False if the task was already terminal

        Raises:
            TaskNotFoundError: unknown task
        """
        status = TaskStatus(status)
        ts = isonow()
        with _store_errors("update task status"), self._db.connect() as conn:
            if status == TaskStatus.RUNNING:
                cursor = conn.execute(
                    "UPDATE deployment_tasks SET status = ?, updated_at = ?, "
                    "started_at = COALESCE(started_at, ?) "
                    f"WHERE id = ? AND status NOT IN {_TERMINAL}",
                    (status.value, ts, ts, task_id),
                )
            else:
                cursor = conn.execute(
                    "UPDATE deployment_tasks SET status = ?, updated_at = ? "
                    f"WHERE id = ? AND status NOT IN {_TERMINAL}",
                    (status.value, ts, task_id),
                )
            if cursor.rowcount == 0:
                if not self._task_exists(conn, task_id):
                    raise TaskNotFoundError(task_id)
                return False
        return True

    def complete_task(self, task_id: str, status: TaskStatus, error_message: str = "") -> bool:
        """
        Move a task into a terminal state with an optional error message.

        The first terminal write wins; later ones are ignored so that a
        worker finishing after a cancel cannot overwrite ``cancelled``.

        Returns:
            True if this call finished the task, False if it was already terminal

        Raises:
            ValueError: ``status`` is not terminal
            TaskNotFoundError: unknown task
        """
        status = TaskStatus(status)
        if not status.is_terminal:
            raise ValueError(f"complete_task requires a terminal status, got {status.value}")

        ts = isonow()
        with _store_errors("complete task"), self._db.connect() as conn:
            cursor = conn.execute(
                "UPDATE deployment_tasks SET status = ?, error = ?, "
                "updated_at = ?, completed_at = ? "
                f"WHERE id = ? AND status NOT IN {_TERMINAL}",
                (status.value, error_message or "", ts, ts, task_id),
            )
            if cursor.rowcount == 0:
                if not self._task_exists(conn, task_id):
                    raise TaskNotFoundError(task_id)
                return False
        return True

    def append_task_output(self, task_id: str, chunk: str) -> None:
        """Concatenate ``chunk`` onto the task's stored output."""
        if not chunk:
            return
        with _store_errors("append task output"), self._db.connect() as conn:
            cursor = conn.execute(
                "UPDATE deployment_tasks SET output = output || ?, updated_at = ? "
                "WHERE id = ?",
                (chunk, isonow(), task_id),
            )
            if cursor.rowcount == 0:
                raise TaskNotFoundError(task_id)

    def get_task_output(self, task_id: str, offset: int = 0) -> OutputChunk:
        """
        Read task output from ``offset`` (in characters) onward.

        Pollers pass back ``next_offset`` to receive only new output.
        ``complete`` is True once the task is terminal, so the returned
        chunk is the last one.
        """
        offset = max(0, offset)
        with _store_errors("read task output"), self._db.connect() as conn:
            row = conn.execute(
                "SELECT substr(output, ?) AS data, length(output) AS total, status "
                "FROM deployment_tasks WHERE id = ?",
                (offset + 1, task_id),
            ).fetchone()
        if row is None:
            raise TaskNotFoundError(task_id)

        total = row["total"] or 0
        data = row["data"] if offset < total else ""
        return OutputChunk(
            data=data or "",
            next_offset=max(offset, total),
            complete=TaskStatus(row["status"]).is_terminal,
        )

    def list_tasks(
        self,
        limit: int = 20,
        offset: int = 0,
        status: Optional[TaskStatus] = None,
    ) -> Tuple[List[DeploymentTask], int]:
        """
        List tasks newest first.

        Returns:
            (page of tasks, total matching count)
        """
        where = ""
        params: tuple = ()
        if status is not None:
            where = "WHERE status = ?"
            params = (TaskStatus(status).value,)

        with _store_errors("list tasks"), self._db.connect() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM deployment_tasks {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM deployment_tasks {where} "
                "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                params + (limit, offset),
            ).fetchall()
        return [DeploymentTask.from_row(r) for r in rows], total

    # ----- deployment state ---------------------------------------------------

    def set_deployment_state(self, component: str, status: DeployState, task_id: str) -> None:
        """
        Upsert the component's deployment state.

        ``deployed_at`` is stamped when the component becomes ``deployed``,
        cleared when it becomes ``not_deployed`` and otherwise preserved.
        """
        status = DeployState(status)
        ts = isonow()
        deployed_at = ts if status == DeployState.DEPLOYED else None
        with _store_errors("set deployment state"), self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO deployment_state (component, status, task_id, deployed_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(component) DO UPDATE SET
                    status = excluded.status,
                    task_id = excluded.task_id,
                    updated_at = excluded.updated_at,
                    deployed_at = CASE
                        WHEN excluded.status = 'deployed' THEN excluded.deployed_at
                        WHEN excluded.status = 'not_deployed' THEN NULL
                        ELSE deployment_state.deployed_at
                    END
                """,
                (component, status.value, task_id or "", deployed_at, ts),
            )

    def get_deployment_state(self, component: str) -> ComponentDeploymentState:
        """Raises DeploymentStateNotFoundError if the component was never tracked."""
        with _store_errors("get deployment state"), self._db.connect() as conn:
            row = conn.execute(
                "SELECT component, status, task_id, deployed_at, updated_at "
                "FROM deployment_state WHERE component = ?",
                (component,),
            ).fetchone()
        if row is None:
            raise DeploymentStateNotFoundError(component)
        return ComponentDeploymentState.from_row(row)

    def list_deployment_states(self) -> List[ComponentDeploymentState]:
        with _store_errors("list deployment states"), self._db.connect() as conn:
            rows = conn.execute(
                "SELECT component, status, task_id, deployed_at, updated_at "
                "FROM deployment_state ORDER BY component"
            ).fetchall()
        return [ComponentDeploymentState.from_row(r) for r in rows]

    # ----- operations log -----------------------------------------------------

    def log_operation(self, entry: OperationLogEntry) -> None:
        """Append an audit entry; fills in ``entry.id`` and ``entry.created_at``."""
        entry.created_at = entry.created_at or isonow()
        with _store_errors("log operation"), self._db.connect() as conn:
            cursor = conn.execute(
                "INSERT INTO operations_log "
                "(operation, status, error, component, task_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (entry.operation, entry.status.value, entry.error or "",
                 entry.component or "", entry.task_id or "", entry.created_at),
            )
            entry.id = cursor.lastrowid

    def get_operations_log(
        self, limit: int = 50, offset: int = 0
    ) -> Tuple[List[OperationLogEntry], int]:
        """
        Page through the operations log, newest first.

        Returns:
            (page of entries, total entry count)
        """
        with _store_errors("read operations log"), self._db.connect() as conn:
            total = conn.execute("SELECT COUNT(*) FROM operations_log").fetchone()[0]
            rows = conn.execute(
                "SELECT id, operation, status, error, component, task_id, created_at "
                "FROM operations_log ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [OperationLogEntry.from_row(r) for r in rows], total

    # ----- schema -------------------------------------------------------------

    def get_schema_version(self) -> int:
        """Return the highest applied migration version."""
        with _store_errors("read schema version"), self._db.connect() as conn:
            return get_current_version(conn)
