"""
Command-line entry point for the OnRamp task orchestrator.

Usage:
    python -m onramp migrate
    python -m onramp sequences
    python -m onramp run 5gc-install --component 5gc
    python -m onramp tasks --limit 10
    python -m onramp task <task-id>
    python -m onramp states
    python -m onramp oplog
    python -m onramp reconcile
"""

import argparse
import json
import logging
import sys
import time
from typing import List, Optional

from dotenv import load_dotenv

from config.settings import AppSettings, get_settings
from onramp.db import DatabaseManager
from onramp.errors import MigrationError, OnRampError, StoreError
from onramp.logging_config import configure_logging
from onramp.migrations import get_current_version, run_migrations
from onramp.playbooks import list_sequences
from onramp.runner import AnsibleRunner
from onramp.state import TaskStatus
from onramp.store import SQLiteStore
from onramp.taskmanager import TaskManager

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5


def _open_store(settings: AppSettings) -> SQLiteStore:
    db = settings.database
    return SQLiteStore(db.db_path, pool_size=db.pool_size, busy_timeout_ms=db.busy_timeout_ms)


def _build_manager(settings: AppSettings, store: SQLiteStore) -> TaskManager:
    ansible = settings.ansible
    runner = AnsibleRunner(
        ansible.onramp_dir,
        vars_file=ansible.vars_path,
        inventory_file=ansible.inventory_path,
        playbook_bin=ansible.ansible_playbook_bin,
    )
    runner.ensure_vars_file()
    return TaskManager(store, runner, str(runner.inventory_path))


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


# =============================================================================
# Commands
# =============================================================================

def cmd_migrate(args, settings: AppSettings) -> int:
    db = settings.database
    dm = DatabaseManager(db.db_path, pool_size=1, busy_timeout_ms=db.busy_timeout_ms)
    try:
        applied = run_migrations(dm)
        with dm.connect() as conn:
            version = get_current_version(conn)
    finally:
        dm.close()

    if applied:
        print(f"Applied migrations: {', '.join(str(v) for v in applied)}")
    else:
        print("Already at head")
    print(f"Schema version: {version}")
    return 0


def cmd_sequences(args, settings: AppSettings) -> int:
    for key, seq in list_sequences():
        print(f"{key:<24} {seq.name} [{seq.direction.value}]")
        for i, step in enumerate(seq.steps, 1):
            tags = f" --tags {step.tag_string()}" if step.tags else ""
            print(f"    {i}. {step.name}: {step.playbook}{tags}")
    return 0


def cmd_run(args, settings: AppSettings) -> int:
    store = _open_store(settings)
    try:
        manager = _build_manager(settings, store)
        task_id = manager.start_sequence(args.sequence, component=args.component)
        print(f"Task {task_id} started")

        offset = 0
        try:
            while True:
                chunk = store.get_task_output(task_id, offset)
                if chunk.data:
                    sys.stdout.write(chunk.data)
                    sys.stdout.flush()
                offset = chunk.next_offset
                if chunk.complete and not manager.is_active(task_id):
                    break
                time.sleep(POLL_INTERVAL)
        except KeyboardInterrupt:
            print("\nCancelling...")
            try:
                manager.cancel_task(task_id)
            except OnRampError as e:
                print(f"Cancel failed: {e}")
            manager.wait(task_id)

        task = store.get_task(task_id)
        print(f"\nTask {task_id}: {task.status.value}")
        if task.error:
            print(f"Error: {task.error}")
        return 0 if task.status == TaskStatus.COMPLETED else 1
    finally:
        store.close()


def cmd_tasks(args, settings: AppSettings) -> int:
    store = _open_store(settings)
    try:
        status = TaskStatus(args.status) if args.status else None
        tasks, total = store.list_tasks(limit=args.limit, offset=args.offset, status=status)
    finally:
        store.close()

    print(f"{total} task(s)")
    for task in tasks:
        print(f"{task.id}  {task.status.value:<10} {task.created_at}  {task.operation}")
    return 0


def cmd_task(args, settings: AppSettings) -> int:
    store = _open_store(settings)
    try:
        task = store.get_task(args.task_id)
    finally:
        store.close()

    data = task.to_dict()
    if not args.output:
        data.pop("output")
    _print_json(data)
    return 0


def cmd_states(args, settings: AppSettings) -> int:
    store = _open_store(settings)
    try:
        states = store.list_deployment_states()
    finally:
        store.close()

    for state in states:
        deployed = f" since {state.deployed_at}" if state.deployed_at else ""
        print(f"{state.component:<20} {state.status.value:<14} task={state.task_id}{deployed}")
    return 0


def cmd_oplog(args, settings: AppSettings) -> int:
    store = _open_store(settings)
    try:
        entries, total = store.get_operations_log(limit=args.limit, offset=args.offset)
    finally:
        store.close()

    print(f"{total} entr{'y' if total == 1 else 'ies'}")
    for entry in entries:
        error = f"  ({entry.error})" if entry.error else ""
        print(f"{entry.created_at}  {entry.status.value:<8} {entry.operation}{error}")
    return 0


def cmd_reconcile(args, settings: AppSettings) -> int:
    store = _open_store(settings)
    try:
        manager = TaskManager(store, AnsibleRunner(settings.ansible.onramp_dir), "")
        reconciled = manager.reconcile_interrupted_tasks()
    finally:
        store.close()

    print(f"Marked {len(reconciled)} interrupted task(s) as failed")
    for task_id in reconciled:
        print(f"  {task_id}")
    return 0


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="onramp", description="OnRamp deployment task orchestrator")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("migrate", help="Apply pending schema migrations").set_defaults(func=cmd_migrate)
    sub.add_parser("sequences", help="List playbook sequences").set_defaults(func=cmd_sequences)

    run = sub.add_parser("run", help="Run a sequence and follow its output")
    run.add_argument("sequence", help="Sequence name, e.g. 5gc-install")
    run.add_argument("--component", default="", help="Component whose deployment state to track")
    run.set_defaults(func=cmd_run)

    tasks = sub.add_parser("tasks", help="List tasks, newest first")
    tasks.add_argument("--limit", type=int, default=20)
    tasks.add_argument("--offset", type=int, default=0)
    tasks.add_argument("--status", choices=[s.value for s in TaskStatus])
    tasks.set_defaults(func=cmd_tasks)

    task = sub.add_parser("task", help="Show one task")
    task.add_argument("task_id")
    task.add_argument("--output", action="store_true", help="Include playbook output")
    task.set_defaults(func=cmd_task)

    sub.add_parser("states", help="Show component deployment states").set_defaults(func=cmd_states)

    oplog = sub.add_parser("oplog", help="Show the operations log")
    oplog.add_argument("--limit", type=int, default=50)
    oplog.add_argument("--offset", type=int, default=0)
    oplog.set_defaults(func=cmd_oplog)

    sub.add_parser(
        "reconcile", help="Fail tasks left running by a process that exited"
    ).set_defaults(func=cmd_reconcile)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    settings = get_settings()
    configure_logging(settings)

    try:
        return args.func(args, settings)
    except OnRampError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (StoreError, MigrationError) as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
