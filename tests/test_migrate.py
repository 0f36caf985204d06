"""Unit tests for migrate.py - Database migration runner."""

import pytest
from unittest.mock import AsyncMock, MagicMock
from contextlib import asynccontextmanager

import migrate
from migrate import (
    MIGRATION_LOCK_KEY,
    apply_migration,
    discover_migrations,
    ensure_migration_table,
    get_applied_versions,
    run_migrations,
    select_pending,
)


def _connection_with_transaction():
    conn = AsyncMock()
    mock_transaction = AsyncMock()
    mock_transaction.__aenter__ = AsyncMock(return_value=mock_transaction)
    mock_transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=mock_transaction)
    return conn


def _pool_for(conn):
    pool = AsyncMock()

    @asynccontextmanager
    async def mock_acquire():
        yield conn

    pool.acquire = mock_acquire
    return pool


def _executed_sql(conn):
    return [c.args[0] for c in conn.execute.call_args_list]


class TestDiscoverMigrations:
    """Tests for discover_migrations function."""

    def test_returns_sorted_list(self, tmp_path, monkeypatch):
        (tmp_path / "002_add_column.sql").write_text("ALTER TABLE t ADD col TEXT;")
        (tmp_path / "001_initial.sql").write_text("CREATE TABLE t (id INT);")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        result = discover_migrations()

        assert [m[0] for m in result] == ["001", "002"]
        assert result[0][1] == "001_initial.sql"
        assert result[0][2] == tmp_path / "001_initial.sql"

    def test_skips_non_migrations(self, tmp_path, monkeypatch):
        """Non-SQL files, unprefixed names and directories are ignored."""
        (tmp_path / "001_valid.sql").write_text("SELECT 1;")
        (tmp_path / "002_readme.txt").write_text("not a migration")
        (tmp_path / "schema.sql").write_text("SELECT 1;")
        (tmp_path / "1_too_short.sql").write_text("SELECT 1;")
        (tmp_path / "003_subdir.sql").mkdir()
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        result = discover_migrations()

        assert [m[1] for m in result] == ["001_valid.sql"]

    def test_missing_directory(self, tmp_path, monkeypatch):
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path / "nonexistent")

        with pytest.raises(FileNotFoundError):
            discover_migrations()

    def test_ships_initial_schema(self):
        """The packaged migrations create the managed resource tables."""
        result = discover_migrations()

        assert result[0][1] == "001_initial.sql"
        sql = result[0][2].read_text()
        for table in (
            "managed_resources",
            "reconciliation_history",
            "provider_configs",
            "provider_config_usages",
            "secrets",
        ):
            assert f"CREATE TABLE IF NOT EXISTS {table}" in sql

    def test_ships_management_policies_column(self):
        names = [m[1] for m in discover_migrations()]
        assert names[:2] == ["001_initial.sql", "002_management_policies.sql"]
        sql = discover_migrations()[1][2].read_text()
        assert "ADD COLUMN IF NOT EXISTS management_policies" in sql


class TestSelectPending:
    def test_filters_applied_versions(self, tmp_path):
        migrations = [
            ("001", "001_a.sql", tmp_path / "001_a.sql"),
            ("002", "002_b.sql", tmp_path / "002_b.sql"),
            ("003", "003_c.sql", tmp_path / "003_c.sql"),
        ]

        pending = select_pending(migrations, {"001", "003"})

        assert [m[0] for m in pending] == ["002"]


@pytest.mark.asyncio
class TestEnsureMigrationTable:
    async def test_executes_create_table(self):
        conn = AsyncMock()

        await ensure_migration_table(conn)

        conn.execute.assert_called_once()
        sql = conn.execute.call_args[0][0]
        assert "CREATE TABLE IF NOT EXISTS schema_migrations" in sql
        assert "version" in sql
        assert "filename" in sql


@pytest.mark.asyncio
class TestGetAppliedVersions:
    async def test_returns_version_set(self):
        conn = AsyncMock()
        conn.fetch = AsyncMock(return_value=[{"version": "001"}, {"version": "002"}])

        assert await get_applied_versions(conn) == {"001", "002"}


@pytest.mark.asyncio
class TestApplyMigration:
    async def test_executes_sql_and_records(self, tmp_path):
        sql_file = tmp_path / "001_initial.sql"
        sql_file.write_text("CREATE TABLE test (id INT);")
        conn = _connection_with_transaction()

        await apply_migration(conn, ("001", "001_initial.sql", sql_file))

        conn.transaction.assert_called_once()
        assert conn.execute.call_count == 2
        conn.execute.assert_any_call("CREATE TABLE test (id INT);")
        conn.execute.assert_any_call(
            "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
            "001",
            "001_initial.sql",
        )

    async def test_propagates_exception(self, tmp_path):
        sql_file = tmp_path / "001_bad.sql"
        sql_file.write_text("INVALID SQL;")
        conn = _connection_with_transaction()
        conn.execute = AsyncMock(side_effect=Exception("syntax error"))

        with pytest.raises(Exception, match="syntax error"):
            await apply_migration(conn, ("001", "001_bad.sql", sql_file))


@pytest.mark.asyncio
class TestRunMigrations:
    async def test_applies_only_pending(self, tmp_path, monkeypatch):
        (tmp_path / "001_initial.sql").write_text("CREATE TABLE t1 (id INT);")
        (tmp_path / "002_update.sql").write_text("ALTER TABLE t1 ADD col TEXT;")
        (tmp_path / "003_index.sql").write_text("CREATE INDEX idx ON t1(id);")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        conn = _connection_with_transaction()
        conn.fetch = AsyncMock(return_value=[{"version": "001"}])

        result = await run_migrations(_pool_for(conn))

        assert result == 2
        executed = _executed_sql(conn)
        assert "CREATE TABLE t1 (id INT);" not in executed
        assert "ALTER TABLE t1 ADD col TEXT;" in executed
        assert "CREATE INDEX idx ON t1(id);" in executed

    async def test_holds_advisory_lock(self, tmp_path, monkeypatch):
        """The lock is taken first and released last."""
        (tmp_path / "001_initial.sql").write_text("CREATE TABLE t1 (id INT);")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        conn = _connection_with_transaction()
        conn.fetch = AsyncMock(return_value=[])

        await run_migrations(_pool_for(conn))

        calls = conn.execute.call_args_list
        assert calls[0].args == ("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
        assert calls[-1].args == ("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)

    async def test_releases_lock_on_failure(self, tmp_path, monkeypatch):
        (tmp_path / "001_bad.sql").write_text("INVALID SQL;")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        conn = _connection_with_transaction()
        conn.fetch = AsyncMock(return_value=[])

        async def execute(sql, *args):
            if sql == "INVALID SQL;":
                raise Exception("syntax error")

        conn.execute = AsyncMock(side_effect=execute)

        with pytest.raises(Exception, match="syntax error"):
            await run_migrations(_pool_for(conn))

        assert conn.execute.call_args_list[-1].args == (
            "SELECT pg_advisory_unlock($1)",
            MIGRATION_LOCK_KEY,
        )

    async def test_no_pending_migrations(self, tmp_path, monkeypatch):
        (tmp_path / "001_initial.sql").write_text("CREATE TABLE t1 (id INT);")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        conn = _connection_with_transaction()
        conn.fetch = AsyncMock(return_value=[{"version": "001"}])

        assert await run_migrations(_pool_for(conn)) == 0
        conn.transaction.assert_not_called()

    async def test_no_migration_files(self, tmp_path, monkeypatch):
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)
        conn = _connection_with_transaction()

        assert await run_migrations(_pool_for(conn)) == 0
        assert any(
            "CREATE TABLE IF NOT EXISTS schema_migrations" in sql
            for sql in _executed_sql(conn)
        )
