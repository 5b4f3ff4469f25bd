"""Shared pytest fixtures for OnRamp tests."""
import logging
import os
import sys
import threading

import pytest

_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

from onramp.errors import StepCancelledError, StepExecutionError  # noqa: E402
from onramp.playbooks import PlaybookSequence, PlaybookStep  # noqa: E402
from onramp.store import SQLiteStore  # noqa: E402
from onramp.taskmanager import TaskManager  # noqa: E402


# =============================================================================
# Fake step executor
# =============================================================================

class FakeExecutor:
    """Scripted StepExecutor that records every call.

    Args:
        fail_on: Step name that raises StepExecutionError
        block: Wait until cancelled (or ``release`` is set) inside each step
        on_step: Called with the step name once its output is written
    """

    def __init__(self, fail_on=None, block=False, on_step=None):
        self.fail_on = fail_on
        self.block = block
        self.on_step = on_step
        self.calls = []
        self.inventories = []
        self.started = threading.Event()
        self.release = threading.Event()
        self._lock = threading.Lock()

    @property
    def step_names(self):
        with self._lock:
            return list(self.calls)

    def run_step(self, step, inventory, output, cancel_event):
        with self._lock:
            self.calls.append(step.name)
            self.inventories.append(inventory)
        output.write(f"PLAY [{step.playbook}]\n")
        self.started.set()

        if self.block:
            while not cancel_event.is_set() and not self.release.is_set():
                cancel_event.wait(0.01)
            if cancel_event.is_set():
                raise StepCancelledError("context canceled", step_name=step.name)

        if step.name == self.fail_on:
            output.write("fatal: [node1]: FAILED!\n")
            raise StepExecutionError("exit status 2", step_name=step.name, return_code=2)
        output.write("ok: [node1]\n")
        if self.on_step:
            self.on_step(step.name)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "data" / "state.db"


@pytest.fixture
def store(db_path):
    """Per-test migrated store in a temp directory."""
    s = SQLiteStore(db_path, pool_size=2)
    yield s
    s.close()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def manager(store, executor):
    return TaskManager(store, executor, inventory="/tmp/hosts.ini")


@pytest.fixture
def router_core_sequence():
    return PlaybookSequence(
        name="Install 5G Core (SD-Core)",
        steps=(
            PlaybookStep("router", "deps/5gc/router.yml", ("install",)),
            PlaybookStep("core", "deps/5gc/core.yml", ("install",)),
        ),
    )


@pytest.fixture
def make_executor():
    """Factory for FakeExecutor with custom behaviour."""
    return FakeExecutor


@pytest.fixture(autouse=True)
def _reset_onramp_logger():
    """Drop handlers configure_logging() attached so they don't leak across tests."""
    yield
    logger = logging.getLogger("onramp")
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []
    logger.setLevel(logging.NOTSET)
