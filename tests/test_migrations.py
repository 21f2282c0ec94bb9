import pytest
from unittest.mock import AsyncMock

import migrations
from tests.conftest import make_conn


def test_split_simple_commands():
    sql = "CREATE TABLE a (id INT);\nCREATE TABLE b (id INT);\n"
    assert migrations.split_sql_commands(sql) == [
        "CREATE TABLE a (id INT)",
        "CREATE TABLE b (id INT)",
    ]


def test_split_ignores_semicolons_in_strings_and_comments():
    sql = (
        "-- comment; not a separator\n"
        "INSERT INTO t VALUES ('a;b', 'it''s; fine');\n"
        'SELECT "weird;name" FROM t;'
    )
    commands = migrations.split_sql_commands(sql)
    assert len(commands) == 2
    assert "'a;b'" in commands[0]
    assert "'it''s; fine'" in commands[0]
    assert commands[1] == 'SELECT "weird;name" FROM t'


def test_split_keeps_dollar_quoted_blocks():
    sql = (
        "DO $body$ BEGIN PERFORM 1; PERFORM 2; END $body$;\n"
        "SELECT 1"
    )
    commands = migrations.split_sql_commands(sql)
    assert commands == [
        "DO $body$ BEGIN PERFORM 1; PERFORM 2; END $body$",
        "SELECT 1",
    ]


def test_initial_migration_is_discovered():
    files = migrations.get_migration_files()
    versions = [version for version, _ in files]
    assert "001" in versions
    assert versions == sorted(versions, key=int)


def test_initial_migration_creates_core_tables():
    path = dict(migrations.get_migration_files())["001"]
    commands = migrations.split_sql_commands(path.read_text(encoding="utf-8"))
    created = " ".join(commands)
    for table in ("users", "vpn_keys", "subscriptions", "payments"):
        assert f"CREATE TABLE IF NOT EXISTS {table}" in created


@pytest.mark.asyncio
async def test_run_migrations_skips_applied():
    conn = make_conn()
    conn.fetch.return_value = [{"version": "001"}]

    assert await migrations.run_migrations(conn) is True

    queries = [c.args[0] for c in conn.execute.await_args_list]
    assert queries[0] == "SELECT pg_advisory_lock($1)"
    assert "CREATE TABLE IF NOT EXISTS schema_migrations" in queries[1]
    assert queries[2] == "SELECT pg_advisory_unlock($1)"
    assert len(queries) == 3
    conn.transaction.assert_not_called()


@pytest.mark.asyncio
async def test_run_migrations_reports_failure_and_unlocks(mocker):
    conn = make_conn()
    conn.fetch.return_value = []
    mocker.patch("migrations.apply_migration", new_callable=AsyncMock, side_effect=RuntimeError("boom"))

    assert await migrations.run_migrations(conn) is False
    assert conn.execute.await_args.args == ("SELECT pg_advisory_unlock($1)", migrations.MIGRATION_LOCK_ID)


@pytest.mark.asyncio
async def test_apply_migration_records_version(tmp_path):
    path = tmp_path / "002_add_index.sql"
    path.write_text("CREATE INDEX a ON t (x);\nCREATE INDEX b ON t (y);\n", encoding="utf-8")
    conn = make_conn()

    await migrations.apply_migration(conn, "002", path)

    queries = [c.args for c in conn.execute.await_args_list]
    assert queries[0] == ("CREATE INDEX a ON t (x)",)
    assert queries[1] == ("CREATE INDEX b ON t (y)",)
    assert queries[2][1:] == ("002", "002_add_index.sql")
