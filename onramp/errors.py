"""
Error hierarchy for the OnRamp task orchestrator.

Error Hierarchy:
- OnRampError (4xx): Expected errors with messages safe to show an operator
  - NotFoundError: unknown task or component row
  - ConfigurationError: unknown sequence name and similar catalog problems
  - TaskNotActiveError: cancel requested for a task with no running worker
- StoreError (5xx): genuine data-access failure, never a "not found"
- StepExecutionError: a provisioning step did not complete (asynchronous,
  only ever recorded on the task row)
- MigrationError: a schema migration failed and was rolled back

Each API-facing class carries a ``status_code`` so an outer REST layer can
map it to a response without parsing messages.

Usage:
    from onramp.errors import NotFoundError, TaskNotFoundError

    try:
        task = store.get_task(task_id)
    except NotFoundError:
        ...  # 404
"""

from typing import Optional


# =============================================================================
# Expected errors (4xx)
# =============================================================================

class OnRampError(Exception):
    """
    Base class for expected orchestrator errors.
    Messages are safe to expose to clients.
    """
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(OnRampError):
    """Requested row does not exist (404)."""
    status_code = 404


class TaskNotFoundError(NotFoundError):
    """No deployment task with the given ID."""

    def __init__(self, task_id: str):
        super().__init__(f"task {task_id} not found")
        self.task_id = task_id


class DeploymentStateNotFoundError(NotFoundError):
    """No deployment state recorded for the given component."""

    def __init__(self, component: str):
        super().__init__(f"deployment state for {component!r} not found")
        self.component = component


class ConfigurationError(OnRampError):
    """Static configuration problem detected before any state is touched (400)."""
    status_code = 400


class UnknownSequenceError(ConfigurationError):
    """Sequence name is not in the playbook catalog."""

    def __init__(self, name: str):
        super().__init__(f"unknown playbook sequence {name!r}")
        self.name = name


class TaskNotActiveError(OnRampError):
    """Task has no live worker in this process (unknown or already terminal)."""
    status_code = 409

    def __init__(self, task_id: str):
        super().__init__(f"task {task_id} is not active")
        self.task_id = task_id


# =============================================================================
# Internal errors (5xx)
# =============================================================================

class StoreError(Exception):
    """
    Data-access failure in the state database.
    Message may contain SQL details and should not be exposed verbatim.
    """
    status_code = 500


class MigrationError(Exception):
    """A schema migration failed; its transaction was rolled back."""

    def __init__(self, message: str, version: Optional[int] = None,
                 description: str = ""):
        super().__init__(message)
        self.version = version
        self.description = description


# =============================================================================
# Step execution
# =============================================================================

class StepExecutionError(Exception):
    """A playbook step did not complete successfully."""

    def __init__(self, message: str, step_name: str = "",
                 return_code: Optional[int] = None):
        super().__init__(message)
        self.step_name = step_name
        self.return_code = return_code


class StepCancelledError(StepExecutionError):
    """The executor observed cancellation and stopped the step."""
