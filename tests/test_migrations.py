"""
Tests for the schema migration runner.
"""

import pytest

from onramp import migrations as migrations_module
from onramp.db import DatabaseManager, column_exists, table_exists
from onramp.errors import MigrationError
from onramp.migrations import (
    MIGRATIONS,
    Migration,
    applied_migrations,
    get_current_version,
    run_migrations,
    validate_migrations,
)


@pytest.fixture
def dm(db_path):
    manager = DatabaseManager(db_path)
    yield manager
    manager.close()


def _ledger(dm):
    with dm.connect() as conn:
        return applied_migrations(conn)


def _create_widgets(conn):
    conn.execute("CREATE TABLE widgets (id INTEGER PRIMARY KEY)")


def _broken(conn):
    conn.execute("CREATE TABLE gadgets (id INTEGER PRIMARY KEY)")
    conn.execute("INSERT INTO no_such_table VALUES (1)")


class TestRunMigrations:
    """Tests for run_migrations()."""

    def test_fresh_database_reaches_head(self, dm):
        applied = run_migrations(dm)

        assert applied == [m.version for m in MIGRATIONS]
        with dm.connect() as conn:
            assert get_current_version(conn) == MIGRATIONS[-1].version
            assert table_exists(conn, "deployment_tasks")
            assert table_exists(conn, "deployment_state")
            assert table_exists(conn, "operations_log")
            assert column_exists(conn, "deployment_tasks", "started_at")
            assert column_exists(conn, "operations_log", "task_id")

    def test_rerun_at_head_is_noop(self, dm):
        run_migrations(dm)
        ledger_before = _ledger(dm)

        assert run_migrations(dm) == []
        assert _ledger(dm) == ledger_before

    def test_ledger_records_descriptions(self, dm):
        run_migrations(dm)
        ledger = _ledger(dm)

        assert [row["version"] for row in ledger] == [1, 2, 3]
        assert all(row["applied_at"] for row in ledger)
        assert ledger[0]["description"] == MIGRATIONS[0].description

    def test_failed_migration_rolls_back_completely(self, dm):
        migrations = [
            Migration(1, "widgets", _create_widgets),
            Migration(2, "broken", _broken),
            Migration(3, "never reached", _create_widgets),
        ]

        with pytest.raises(MigrationError) as exc_info:
            run_migrations(dm, migrations)

        assert exc_info.value.version == 2
        with dm.connect() as conn:
            assert get_current_version(conn) == 1
            assert table_exists(conn, "widgets")
            assert not table_exists(conn, "gadgets")
        assert [row["version"] for row in _ledger(dm)] == [1]

    def test_resume_after_fix(self, dm):
        broken = [
            Migration(1, "widgets", _create_widgets),
            Migration(2, "gadgets", _broken),
        ]
        with pytest.raises(MigrationError):
            run_migrations(dm, broken)

        def _fixed(conn):
            conn.execute("CREATE TABLE gadgets (id INTEGER PRIMARY KEY)")

        fixed = [
            Migration(1, "widgets", _create_widgets),
            Migration(2, "gadgets", _fixed),
        ]
        assert run_migrations(dm, fixed) == [2]
        with dm.connect() as conn:
            assert table_exists(conn, "gadgets")

    def test_column_guard_tolerates_existing_column(self, dm):
        """A migration guarded by column_exists can run against a patched schema."""
        run_migrations(dm, MIGRATIONS[:1])
        with dm.connect() as conn:
            conn.execute("ALTER TABLE deployment_tasks ADD COLUMN started_at TEXT")

        assert run_migrations(dm) == [2, 3]
        with dm.connect() as conn:
            assert column_exists(conn, "deployment_tasks", "completed_at")


class TestValidateMigrations:
    """Tests for validate_migrations()."""

    def test_shipped_list_is_valid(self):
        validate_migrations(MIGRATIONS)

    def test_shipped_versions_are_contiguous(self):
        assert [m.version for m in MIGRATIONS] == list(range(1, len(MIGRATIONS) + 1))

    def test_module_docs_add_migrations_in_source(self):
        doc = migrations_module.__doc__
        assert "MIGRATIONS.append" not in doc
        assert "MIGRATIONS: List[Migration] = [" in doc

    def test_duplicate_version_rejected(self):
        with pytest.raises(MigrationError):
            validate_migrations([
                Migration(1, "a", _create_widgets),
                Migration(1, "b", _create_widgets),
            ])

    def test_out_of_order_rejected(self):
        with pytest.raises(MigrationError):
            validate_migrations([
                Migration(2, "a", _create_widgets),
                Migration(1, "b", _create_widgets),
            ])

    def test_non_positive_rejected(self):
        with pytest.raises(MigrationError):
            validate_migrations([Migration(0, "zero", _create_widgets)])

    def test_invalid_list_applies_nothing(self, dm):
        with pytest.raises(MigrationError):
            run_migrations(dm, [Migration(2, "a", _create_widgets), Migration(1, "b", _create_widgets)])

        with dm.connect() as conn:
            assert not table_exists(conn, "schema_migrations")
