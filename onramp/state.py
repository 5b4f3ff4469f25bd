"""
Deployment task and component state records.

Plain dataclasses mirroring the rows of the state database, plus the
status enums the orchestrator moves them through.

Task lifecycle:
    pending -> running -> completed | failed | cancelled

Component lifecycle:
    not_deployed -> deploying -> deployed | failed
    deployed -> undeploying -> not_deployed | failed
"""

import sqlite3
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

from onramp.timestamps import parse_timestamp


class TaskStatus(str, Enum):
    """Deployment task status values."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class DeployState(str, Enum):
    """Per-component deployment status values."""

    NOT_DEPLOYED = "not_deployed"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"
    UNDEPLOYING = "undeploying"


class OpStatus(str, Enum):
    """Outcome recorded in the operations log."""

    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class DeploymentTask:
    """
    One execution attempt of a playbook sequence.

    Attributes:
        id: Task identifier (UUID)
        operation: Human-readable sequence name
        status: Current task status
        output: Accumulated playbook output
        error: Error message if failed or cancelled
        created_at: Creation timestamp (ISO format)
        updated_at: Last modification timestamp (ISO format)
        started_at: When the worker marked the task running
        completed_at: When the task reached a terminal state
    """

    id: str
    operation: str
    status: TaskStatus = TaskStatus.PENDING
    output: str = ""
    error: str = ""
    created_at: str = ""
    updated_at: str = ""
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        data["duration_seconds"] = self.duration_seconds
        return data

    @property
    def duration_seconds(self) -> Optional[float]:
        """Seconds from start to completion, None until both are known."""
        started = parse_timestamp(self.started_at)
        completed = parse_timestamp(self.completed_at)
        if started is None or completed is None:
            return None
        return (completed - started).total_seconds()

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DeploymentTask":
        return cls(
            id=row["id"],
            operation=row["operation"],
            status=TaskStatus(row["status"]),
            output=row["output"] or "",
            error=row["error"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )


@dataclass
class ComponentDeploymentState:
    """What is currently deployed for one component (e.g. "5gc")."""

    component: str
    status: DeployState
    task_id: str = ""
    deployed_at: Optional[str] = None
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ComponentDeploymentState":
        return cls(
            component=row["component"],
            status=DeployState(row["status"]),
            task_id=row["task_id"] or "",
            deployed_at=row["deployed_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class OperationLogEntry:
    """Immutable audit record of a finished deployment action."""

    operation: str
    status: OpStatus
    error: str = ""
    component: str = ""
    task_id: str = ""
    id: Optional[int] = None
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "OperationLogEntry":
        return cls(
            id=row["id"],
            operation=row["operation"],
            status=OpStatus(row["status"]),
            error=row["error"] or "",
            component=row["component"] or "",
            task_id=row["task_id"] or "",
            created_at=row["created_at"],
        )


@dataclass
class OutputChunk:
    """Slice of a task's output returned by incremental reads."""

    data: str
    next_offset: int
    complete: bool
