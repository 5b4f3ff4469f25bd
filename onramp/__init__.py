"""
OnRamp deployment task orchestration.

This package turns named playbook sequences into durably tracked,
cancellable background tasks:
- Versioned SQLite schema with an append-only migration list
- Task, component deployment state and operations-log persistence
- Static playbook sequence catalog
- Ansible step execution with streamed output

Usage:
    from onramp import AnsibleRunner, SQLiteStore, TaskManager

    store = SQLiteStore("data/state.db")
    runner = AnsibleRunner("/opt/aether-onramp")
    manager = TaskManager(store, runner, inventory=str(runner.inventory_path))

    # Start a sequence; returns immediately
    task_id = manager.start_sequence("5gc-install", component="5gc")

    # Poll the task and its output
    task = manager.get_task(task_id)
    chunk = store.get_task_output(task_id, offset=0)

    # Stop it
    manager.cancel_task(task_id)
"""

from onramp.errors import (
    NotFoundError,
    OnRampError,
    StoreError,
    TaskNotActiveError,
    TaskNotFoundError,
    UnknownSequenceError,
)
from onramp.playbooks import (
    SEQUENCES,
    Direction,
    PlaybookSequence,
    PlaybookStep,
    get_sequence,
)
from onramp.runner import AnsibleRunner, StepExecutor
from onramp.state import (
    ComponentDeploymentState,
    DeploymentTask,
    DeployState,
    OperationLogEntry,
    OpStatus,
    TaskStatus,
)
from onramp.store import SQLiteStore, Store
from onramp.taskmanager import TaskManager

__all__ = [
    "AnsibleRunner",
    "ComponentDeploymentState",
    "DeploymentTask",
    "DeployState",
    "Direction",
    "NotFoundError",
    "OnRampError",
    "OperationLogEntry",
    "OpStatus",
    "PlaybookSequence",
    "PlaybookStep",
    "SEQUENCES",
    "SQLiteStore",
    "StepExecutor",
    "Store",
    "StoreError",
    "TaskManager",
    "TaskNotActiveError",
    "TaskNotFoundError",
    "TaskStatus",
    "UnknownSequenceError",
    "get_sequence",
]
