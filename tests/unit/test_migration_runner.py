"""
End-to-end migration tests against real SQLite files.

Each test opens the database through the lifecycle manager, so the same
code path as production (open → WAL → migrate) is exercised.
"""

import asyncio
import sqlite3
from unittest.mock import AsyncMock, MagicMock

import pytest

from dbkeeper.base.config import DatabaseOptions, ForcePolicy, MigrateOptions
from dbkeeper.data.db import ConnectionState, Database
from dbkeeper.data.migrations.migration_runner import MigrationExecutor
from dbkeeper.data.migrations.planner import MigrationAction, PlannedStep
from dbkeeper.data.migrations.source import MigrationFile
from dbkeeper.errors import (
    DriftError,
    MalformedMigrationError,
    MigrationStepError,
    SqlExecutionError,
)


def make_db(db_path, migrations_dir, **migrate_kwargs):
    return Database(
        DatabaseOptions(
            path=db_path,
            migrate=MigrateOptions(migrations_path=migrations_dir, **migrate_kwargs),
        )
    )


async def table_names(db):
    rows = await db.query(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    )
    return [row["name"] for row in rows]


async def ledger_ids(db, table="migrations"):
    rows = await db.query(f'SELECT id FROM "{table}" ORDER BY id')
    return [row["id"] for row in rows]


@pytest.fixture
def three_migrations(migrations_dir, write_migration):
    write_migration(
        migrations_dir, "001-settings.sql",
        "CREATE TABLE settings (key TEXT PRIMARY KEY, value TEXT);\n"
        "INSERT INTO settings (key, value) VALUES ('test', 'now');",
        "DROP TABLE settings;",
    )
    write_migration(
        migrations_dir, "002-users.sql",
        "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL);",
        "DROP TABLE users;",
    )
    write_migration(
        migrations_dir, "003-posts.sql",
        "CREATE TABLE posts (id INTEGER PRIMARY KEY, user_id INTEGER, body TEXT);",
        "DROP TABLE posts;",
    )
    return migrations_dir


@pytest.mark.asyncio
async def test_migrates_on_first_connection(db_path, three_migrations):
    db = make_db(db_path, three_migrations)
    try:
        rows = await db.query("SELECT value FROM settings WHERE key = ?", ("test",))
        assert rows[0]["value"] == "now"
        assert await ledger_ids(db) == [1, 2, 3]
        assert await table_names(db) == ["migrations", "posts", "settings", "users"]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_ledger_stores_scripts(db_path, three_migrations):
    db = make_db(db_path, three_migrations)
    try:
        rows = await db.query("SELECT id, name, up, down FROM migrations WHERE id = 2")
        assert rows[0]["name"] == "users"
        assert rows[0]["up"] == "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL);"
        assert rows[0]["down"] == "DROP TABLE users;"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_second_lifecycle_applies_nothing(db_path, three_migrations):
    first = make_db(db_path, three_migrations)
    await first.connection()
    await first.close()

    second = make_db(db_path, three_migrations)
    try:
        plan = await second.migrate()
        assert [step for step in plan if step.action is MigrationAction.APPLY] == []
        assert plan == []
        assert await ledger_ids(second) == [1, 2, 3]
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_removed_file_is_rolled_back(db_path, three_migrations):
    db = make_db(db_path, three_migrations)
    await db.connection()
    await db.close()

    (three_migrations / "003-posts.sql").unlink()

    db = make_db(db_path, three_migrations)
    try:
        await db.connection()
        assert await ledger_ids(db) == [1, 2]
        assert "posts" not in await table_names(db)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_rollback_uses_ledger_copy_not_edited_file(db_path, migrations_dir, write_migration):
    write_migration(migrations_dir, "001-base.sql", "CREATE TABLE base (id INTEGER);", "DROP TABLE base;")
    write_migration(migrations_dir, "002-extra.sql", "CREATE TABLE extra (id INTEGER);", "DROP TABLE extra;")
    db = make_db(db_path, migrations_dir)
    await db.connection()
    await db.close()

    # A broken down script on disk must not matter: the stored copy is used
    write_migration(migrations_dir, "002-extra.sql", "CREATE TABLE extra (id INTEGER);", "THIS IS NOT SQL;")

    db = Database(DatabaseOptions(path=db_path, migrate=None))
    try:
        plan = await db.migrate(
            MigrateOptions(migrations_path=migrations_dir, force=ForcePolicy.REAPPLY_LAST)
        )
        assert [(s.action, s.migration.id) for s in plan] == [
            (MigrationAction.ROLLBACK, 2),
            (MigrationAction.APPLY, 2),
        ]
        rows = await db.query("SELECT down FROM migrations WHERE id = 2")
        assert rows[0]["down"] == "THIS IS NOT SQL;"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_reapply_last_runs_every_time(db_path, three_migrations):
    db = make_db(db_path, three_migrations, force="reapply-last")
    try:
        await db.connection()
        await db.run("INSERT INTO posts (user_id, body) VALUES (1, 'hello')")

        plan = await db.migrate()

        assert [(s.action, s.migration.id) for s in plan] == [
            (MigrationAction.ROLLBACK, 3),
            (MigrationAction.APPLY, 3),
        ]
        # posts was dropped and recreated
        assert await db.query("SELECT * FROM posts") == []
        assert await ledger_ids(db) == [1, 2, 3]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_gap_in_ledger_is_not_repaired(db_path, three_migrations):
    db = make_db(db_path, three_migrations)
    try:
        await db.connection()
        await db.run("DELETE FROM migrations WHERE id = 2")
        await db.run("DROP TABLE users")

        plan = await db.migrate()

        assert plan == []
        assert await ledger_ids(db) == [1, 3]
        assert "users" not in await table_names(db)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_drift_check_raises_before_touching_schema(db_path, three_migrations):
    db = make_db(db_path, three_migrations)
    try:
        await db.connection()
        await db.run("DELETE FROM migrations WHERE id = 2")

        with pytest.raises(DriftError) as excinfo:
            await db.migrate(MigrateOptions(migrations_path=three_migrations, drift_check=True))

        assert excinfo.value.details["skipped_ids"] == [2]
        assert await ledger_ids(db) == [1, 3]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_malformed_file_fails_before_any_schema_change(db_path, migrations_dir, write_migration):
    write_migration(migrations_dir, "001-good.sql", "CREATE TABLE good (id INTEGER);", "DROP TABLE good;")
    (migrations_dir / "002-bad.sql").write_text("CREATE TABLE bad (id INTEGER);\n")

    db = make_db(db_path, migrations_dir)
    with pytest.raises(MalformedMigrationError, match="002-bad.sql"):
        await db.connection()
    assert db.state is ConnectionState.CLOSED

    plain = Database(DatabaseOptions(path=db_path, migrate=None))
    try:
        assert await table_names(plain) == []
    finally:
        await plain.close()


@pytest.mark.asyncio
async def test_failing_step_rolls_back_only_itself(db_path, migrations_dir, write_migration):
    write_migration(migrations_dir, "001-first.sql", "CREATE TABLE first (id INTEGER);", "DROP TABLE first;")
    write_migration(
        migrations_dir, "002-broken.sql",
        "CREATE TABLE second (id INTEGER);\n"
        "INSERT INTO second VALUES (1);\n"
        "INSERT INTO missing_table VALUES (1);",
        "DROP TABLE second;",
    )
    write_migration(migrations_dir, "003-third.sql", "CREATE TABLE third (id INTEGER);", "DROP TABLE third;")

    db = make_db(db_path, migrations_dir)
    with pytest.raises(MigrationStepError) as excinfo:
        await db.connection()

    error = excinfo.value
    assert isinstance(error, SqlExecutionError)
    assert error.details == {"id": 2, "name": "broken", "action": "apply"}
    assert "missing_table" in str(error.__cause__)
    assert db.state is ConnectionState.CLOSED

    plain = Database(DatabaseOptions(path=db_path, migrate=None))
    try:
        assert await table_names(plain) == ["first", "migrations"]
        assert await ledger_ids(plain) == [1]
    finally:
        await plain.close()


@pytest.mark.asyncio
async def test_fixing_the_failing_step_resumes_on_next_connection(db_path, migrations_dir, write_migration):
    write_migration(migrations_dir, "001-first.sql", "CREATE TABLE first (id INTEGER);", "DROP TABLE first;")
    write_migration(migrations_dir, "002-second.sql", "CREATE TABLE second (id INTEGER) nonsense;", "DROP TABLE second;")

    db = make_db(db_path, migrations_dir)
    with pytest.raises(MigrationStepError):
        await db.connection()

    write_migration(migrations_dir, "002-second.sql", "CREATE TABLE second (id INTEGER);", "DROP TABLE second;")
    try:
        await db.connection()
        assert await ledger_ids(db) == [1, 2]
        assert db.state is ConnectionState.OPEN
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_failing_rollback_keeps_ledger_row_and_stops_plan(db_path, migrations_dir, write_migration):
    write_migration(migrations_dir, "001-first.sql", "CREATE TABLE first (id INTEGER);", "DROP TABLE first;")
    write_migration(migrations_dir, "002-second.sql", "CREATE TABLE second (id INTEGER);", "DROP TABLE second;")
    db = make_db(db_path, migrations_dir)
    await db.connection()
    await db.close()

    plain = Database(DatabaseOptions(path=db_path, migrate=None))
    await plain.run("UPDATE migrations SET down = 'DROP TABLE no_such_table' WHERE id = 2")
    await plain.close()

    (migrations_dir / "002-second.sql").unlink()
    write_migration(migrations_dir, "003-third.sql", "CREATE TABLE third (id INTEGER);", "DROP TABLE third;")

    db = make_db(db_path, migrations_dir)
    with pytest.raises(MigrationStepError) as excinfo:
        await db.connection()

    assert excinfo.value.details == {"id": 2, "name": "second", "action": "rollback"}
    assert "no_such_table" in str(excinfo.value.__cause__)
    assert db.state is ConnectionState.CLOSED

    plain = Database(DatabaseOptions(path=db_path, migrate=None))
    try:
        assert await ledger_ids(plain) == [1, 2]
        assert await table_names(plain) == ["first", "migrations", "second"]
    finally:
        await plain.close()


@pytest.mark.asyncio
async def test_rollback_failure_does_not_hide_step_error():
    cause = sqlite3.OperationalError("no such table: missing")
    conn = MagicMock()
    conn.executescript = AsyncMock(side_effect=cause)
    conn.rollback = AsyncMock(side_effect=sqlite3.OperationalError("cannot rollback - no transaction is active"))
    ledger = MagicMock()
    ledger.record = AsyncMock()
    step = PlannedStep(
        MigrationAction.APPLY,
        MigrationFile(id=4, name="broken", up="INSERT INTO missing VALUES (1);", down="", filename="004-broken.sql"),
    )

    with pytest.raises(MigrationStepError) as excinfo:
        await MigrationExecutor(conn, ledger).execute([step])

    assert excinfo.value.__cause__ is cause
    assert excinfo.value.details["id"] == 4
    conn.rollback.assert_awaited_once()
    ledger.record.assert_not_awaited()


@pytest.mark.asyncio
async def test_overlapping_migrate_calls_run_one_after_another(db_path, migrations_dir, write_migration):
    write_migration(migrations_dir, "001-a.sql", "CREATE TABLE a (id INTEGER);", "DROP TABLE a;")
    db = make_db(db_path, migrations_dir)
    try:
        await db.connection()
        write_migration(migrations_dir, "002-b.sql", "CREATE TABLE b (id INTEGER);", "DROP TABLE b;")
        write_migration(migrations_dir, "003-c.sql", "CREATE TABLE c (id INTEGER);", "DROP TABLE c;")

        plans = await asyncio.gather(db.migrate(), db.migrate())

        executed = sorted(([str(step) for step in plan] for plan in plans), key=len)
        assert executed == [[], ["apply 002-b", "apply 003-c"]]
        assert await ledger_ids(db) == [1, 2, 3]
        assert await table_names(db) == ["a", "b", "c", "migrations"]
        assert db.state is ConnectionState.OPEN
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_custom_ledger_table(db_path, three_migrations):
    db = make_db(db_path, three_migrations, table="schema ledger")
    try:
        await db.connection()
        assert await ledger_ids(db, "schema ledger") == [1, 2, 3]
        assert "migrations" not in await table_names(db)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_missing_migrations_directory_is_a_no_op(db_path, tmp_path):
    db = make_db(db_path, tmp_path / "nowhere")
    try:
        await db.connection()
        assert await table_names(db) == []
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_history_lists_applied_migrations(db_path, three_migrations):
    from dbkeeper.data.migrations.migration_runner import MigrationRunner

    db = make_db(db_path, three_migrations)
    try:
        conn = await db.connection()
        history = await MigrationRunner(conn, db.options.migrate).history()
        assert [(record.id, record.name) for record in history] == [
            (1, "settings"), (2, "users"), (3, "posts"),
        ]
    finally:
        await db.close()
