"""
Deployment task orchestration.

The TaskManager turns a playbook sequence into a tracked background task:
it creates the task row, marks the owning component as deploying or
undeploying, runs each step in order on a daemon thread while streaming
output into the store, and finally reconciles the component's deployment
state and appends an operations-log entry.

Worker threads are not tied to the caller: a request handler that starts a
sequence can return (or its client can disconnect) without affecting the
provisioning run. Only ``cancel_task`` stops a running sequence.

Known gap: two concurrent sequences for the same component are not
serialized. Their deployment-state writes interleave and the last write wins,
whichever sequence actually finished last.

Usage:
    manager = TaskManager(store, AnsibleRunner(onramp_dir), inventory="hosts.ini")
    task_id = manager.start_sequence("5gc-install", component="5gc")
    ...
    manager.cancel_task(task_id)
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from onramp.errors import TaskNotActiveError
from onramp.playbooks import PlaybookSequence, PlaybookStep, resolve_sequence
from onramp.runner import StepExecutor
from onramp.state import (
    DeploymentTask,
    DeployState,
    OperationLogEntry,
    OpStatus,
    TaskStatus,
)
from onramp.store import Store

logger = logging.getLogger(__name__)

CANCEL_MESSAGE = "cancelled by user"
INTERRUPTED_MESSAGE = "interrupted: process exited before completion"


class TaskOutputWriter:
    """
    File-like sink that appends everything written to a task's output.

    Store failures are logged and swallowed so that output bookkeeping never
    aborts a running step.
    """

    def __init__(self, store: Store, task_id: str):
        self.store = store
        self.task_id = task_id

    def write(self, data: Union[str, bytes]) -> int:
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        if not data:
            return 0
        try:
            self.store.append_task_output(self.task_id, data)
        except Exception as e:
            logger.warning(f"[{self.task_id}] Failed to append task output: {e}",
                           extra={"task_id": self.task_id})
        return len(data)

    def flush(self) -> None:
        pass


@dataclass
class _ActiveTask:
    cancel_event: threading.Event
    thread: threading.Thread


class TaskManager:
    """
    Runs playbook sequences as background tasks and tracks them in a Store.

    Each running task owns one entry in ``_active`` holding its cancel event
    and worker thread. The worker removes the entry as its last action,
    whether the sequence succeeded, failed or was cancelled.
    """

    def __init__(self, store: Store, executor: StepExecutor, inventory: str):
        """
        Args:
            store: Task and deployment-state store
            executor: Runs individual playbook steps
            inventory: Inventory location passed to every step
        """
        self.store = store
        self.executor = executor
        self.inventory = inventory
        self._active: Dict[str, _ActiveTask] = {}
        self._lock = threading.Lock()

    # ----- public API ---------------------------------------------------------

    def start_sequence(
        self,
        sequence: Union[str, PlaybookSequence],
        component: str = "",
    ) -> str:
        """
        Start a sequence in the background and return its task ID.

        Args:
            sequence: Catalog key (e.g. "5gc-install") or an explicit sequence
            component: Component whose deployment state the run drives
                ("" to leave deployment state untouched)

        Returns:
            The new task ID; the task row exists when this returns

        Raises:
            UnknownSequenceError: unknown catalog key (nothing is written)
            StoreError: the task row could not be created
            RuntimeError: the worker thread could not be started (the task
                is recorded as failed first)
        """
        seq = resolve_sequence(sequence)
        direction = seq.direction

        task_id = str(uuid.uuid4())
        self.store.create_task(DeploymentTask(id=task_id, operation=seq.name))

        if component:
            self._bookkeep(
                task_id, f"set {component} to {direction.interim_state.value}",
                self.store.set_deployment_state,
                component, direction.interim_state, task_id,
            )

        cancel_event = threading.Event()
        thread = threading.Thread(
            target=self._run_sequence,
            args=(task_id, seq, component, cancel_event),
            name=f"onramp-task-{task_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._active[task_id] = _ActiveTask(cancel_event, thread)
        try:
            thread.start()
        except Exception as e:
            with self._lock:
                self._active.pop(task_id, None)
            logger.error(f"[{task_id}] Failed to start worker: {e}",
                         extra={"task_id": task_id, "sequence": seq.name})
            self._finish(task_id, seq, component, TaskStatus.FAILED,
                         f"failed to start worker: {e}")
            raise

        logger.info(
            f"[{task_id}] Started '{seq.name}' ({len(seq.steps)} steps, {direction.value})",
            extra={"task_id": task_id, "sequence": seq.name, "component": component},
        )
        return task_id

    def cancel_task(self, task_id: str) -> None:
        """
        Signal a running task to stop and mark it cancelled.

        Returns as soon as the task row is updated; the executor observes
        the cancel event on its own schedule.

        Raises:
            TaskNotActiveError: no worker in this process owns the task
                (unknown ID or already finished)
        """
        with self._lock:
            active = self._active.get(task_id)
        if active is None:
            raise TaskNotActiveError(task_id)

        # Record first so the worker's own terminal write becomes a no-op
        if not self.store.complete_task(task_id, TaskStatus.CANCELLED, CANCEL_MESSAGE):
            # Worker reached a terminal state between the lookup and the write
            raise TaskNotActiveError(task_id)
        active.cancel_event.set()

        logger.info(f"[{task_id}] Cancelled by user", extra={"task_id": task_id})

    def get_task(self, task_id: str) -> DeploymentTask:
        return self.store.get_task(task_id)

    def is_active(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._active

    def active_task_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._active)

    def wait(self, task_id: str, timeout: Optional[float] = None) -> bool:
        """
        Block until the task's worker exits.

        Returns:
            True if the worker is gone, False if ``timeout`` elapsed first
        """
        with self._lock:
            active = self._active.get(task_id)
        if active is None:
            return True
        active.thread.join(timeout)
        return not active.thread.is_alive()

    def reconcile_interrupted_tasks(self) -> List[str]:
        """
        Fail tasks left pending/running by a process that exited mid-run.

        Operator tool; never called automatically. Tasks owned by this
        manager are skipped. Components still deploying or undeploying
        under a reconciled task are marked failed.

        Returns:
            IDs of the tasks that were marked failed
        """
        stale: List[str] = []
        for status in (TaskStatus.PENDING, TaskStatus.RUNNING):
            offset = 0
            while True:
                tasks, total = self.store.list_tasks(limit=100, offset=offset, status=status)
                stale.extend(t.id for t in tasks if not self.is_active(t.id))
                offset += len(tasks)
                if not tasks or offset >= total:
                    break

        in_flight = {DeployState.DEPLOYING, DeployState.UNDEPLOYING}
        components = {
            s.task_id: s.component
            for s in self.store.list_deployment_states()
            if s.status in in_flight
        }

        reconciled = []
        for task_id in stale:
            if not self.store.complete_task(task_id, TaskStatus.FAILED, INTERRUPTED_MESSAGE):
                continue
            reconciled.append(task_id)
            component = components.get(task_id, "")
            if component:
                self.store.set_deployment_state(component, DeployState.FAILED, task_id)
            task = self.store.get_task(task_id)
            self.store.log_operation(OperationLogEntry(
                operation=task.operation,
                status=OpStatus.FAILURE,
                error=INTERRUPTED_MESSAGE,
                component=component,
                task_id=task_id,
            ))
            logger.warning(f"[{task_id}] Marked interrupted task as failed",
                           extra={"task_id": task_id, "component": component})
        return reconciled

    # ----- worker -------------------------------------------------------------

    def _run_sequence(
        self,
        task_id: str,
        seq: PlaybookSequence,
        component: str,
        cancel_event: threading.Event,
    ) -> None:
        try:
            try:
                started = self.store.update_task_status(task_id, TaskStatus.RUNNING)
            except Exception as e:
                logger.error(f"[{task_id}] Failed to mark task running: {e}",
                             extra={"task_id": task_id, "sequence": seq.name})
                return

            if not started or cancel_event.is_set():
                self._cancelled(task_id, seq, component)
                return

            writer = TaskOutputWriter(self.store, task_id)
            total = len(seq.steps)
            for i, step in enumerate(seq.steps, 1):
                if cancel_event.is_set():
                    self._cancelled(task_id, seq, component)
                    return

                writer.write(f"\n=== Step {i}/{total}: {step.name} ===\n")
                logger.info(
                    f"[{task_id}] Step {i}/{total}: {step.name}",
                    extra={"task_id": task_id, "sequence": seq.name,
                           "component": component, "step": step.name},
                )
                try:
                    self.executor.run_step(step, self.inventory, writer, cancel_event)
                except Exception as e:
                    if cancel_event.is_set():
                        self._cancelled(task_id, seq, component)
                    else:
                        self._fail_step(task_id, seq, component, step, e)
                    return

            if cancel_event.is_set():
                self._cancelled(task_id, seq, component)
                return
            self._finish(task_id, seq, component, TaskStatus.COMPLETED, "")

        finally:
            with self._lock:
                self._active.pop(task_id, None)

    def _finish(
        self,
        task_id: str,
        seq: PlaybookSequence,
        component: str,
        status: TaskStatus,
        error_message: str,
    ) -> None:
        """Write the terminal row, then reconcile component state and log it."""
        if not self._complete(task_id, status, error_message):
            # cancel_task recorded the outcome first
            status, error_message = TaskStatus.CANCELLED, CANCEL_MESSAGE

        if status == TaskStatus.COMPLETED:
            final_state = seq.direction.final_state
            op_status = OpStatus.SUCCESS
        else:
            final_state = DeployState.FAILED
            op_status = OpStatus.FAILURE

        if component:
            self._bookkeep(task_id, f"set {component} to {final_state.value}",
                           self.store.set_deployment_state,
                           component, final_state, task_id)
        self._log_operation(task_id, seq, component, op_status, error_message)
        logger.info(f"[{task_id}] '{seq.name}' {status.value}",
                    extra={"task_id": task_id, "sequence": seq.name, "component": component})

    def _fail_step(
        self,
        task_id: str,
        seq: PlaybookSequence,
        component: str,
        step: PlaybookStep,
        exc: Exception,
    ) -> None:
        error_message = f'step "{step.name}" failed: {exc}'
        logger.error(f"[{task_id}] {error_message}",
                     extra={"task_id": task_id, "sequence": seq.name,
                            "component": component, "step": step.name})
        self._finish(task_id, seq, component, TaskStatus.FAILED, error_message)

    def _cancelled(self, task_id: str, seq: PlaybookSequence, component: str) -> None:
        self._finish(task_id, seq, component, TaskStatus.CANCELLED, CANCEL_MESSAGE)

    # ----- bookkeeping --------------------------------------------------------

    def _complete(self, task_id: str, status: TaskStatus, error_message: str) -> bool:
        """Write the terminal task row. False if another writer got there first."""
        try:
            return self.store.complete_task(task_id, status, error_message)
        except Exception as e:
            logger.error(f"[{task_id}] Failed to mark task {status.value}: {e}",
                         extra={"task_id": task_id})
            return True

    def _log_operation(
        self,
        task_id: str,
        seq: PlaybookSequence,
        component: str,
        status: OpStatus,
        error_message: str,
    ) -> None:
        entry = OperationLogEntry(
            operation=seq.name,
            status=status,
            error=error_message,
            component=component,
            task_id=task_id,
        )
        self._bookkeep(task_id, "log operation", self.store.log_operation, entry)

    def _bookkeep(self, task_id: str, what: str, fn, *args) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.error(f"[{task_id}] Failed to {what}: {e}", extra={"task_id": task_id})
