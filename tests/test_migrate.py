"""Unit tests for migrate.py - Database migration runner."""

import logging
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

import migrate
from migrate import (
    MIGRATION_LOCK_ID,
    apply_migration,
    checksum,
    discover_migrations,
    ensure_migration_table,
    get_applied_checksums,
    run_migrations,
)


def make_conn(applied=None):
    """Mock connection whose schema_migrations holds ``applied`` rows."""
    conn = AsyncMock()
    conn.fetch = AsyncMock(return_value=applied or [])
    transaction = AsyncMock()
    transaction.__aenter__ = AsyncMock(return_value=transaction)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


def make_pool(conn):
    pool = AsyncMock()

    @asynccontextmanager
    async def mock_acquire():
        yield conn

    pool.acquire = mock_acquire
    return pool


def executed_sql(conn):
    return [call.args[0] for call in conn.execute.call_args_list]


class TestDiscoverMigrations:
    """Tests for discover_migrations function."""

    def test_returns_sorted_list(self, tmp_path):
        (tmp_path / "002_add_column.sql").write_text("ALTER TABLE t ADD c TEXT;")
        (tmp_path / "001_initial.sql").write_text("CREATE TABLE t (id INT);")

        result = discover_migrations(tmp_path)

        assert [(v, f) for v, f, _ in result] == [
            ("001", "001_initial.sql"),
            ("002", "002_add_column.sql"),
        ]
        assert result[0][2] == tmp_path / "001_initial.sql"

    def test_skips_non_matching_entries(self, tmp_path):
        (tmp_path / "001_valid.sql").write_text("SELECT 1;")
        (tmp_path / "002_readme.txt").write_text("not a migration")
        (tmp_path / "schema.sql").write_text("SELECT 1;")
        (tmp_path / "1_too_short.sql").write_text("SELECT 1;")
        (tmp_path / "003_subdir.sql").mkdir()

        result = discover_migrations(tmp_path)

        assert [v for v, _, _ in result] == ["001"]

    def test_defaults_to_packaged_migrations(self, tmp_path, monkeypatch):
        (tmp_path / "001_initial.sql").write_text("SELECT 1;")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        assert len(discover_migrations()) == 1

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            discover_migrations(tmp_path / "nonexistent")

    def test_duplicate_versions_rejected(self, tmp_path):
        (tmp_path / "001_a.sql").write_text("SELECT 1;")
        (tmp_path / "001_b.sql").write_text("SELECT 2;")

        with pytest.raises(ValueError, match="Duplicate migration version 001"):
            discover_migrations(tmp_path)

    def test_shipped_migration_creates_resource_table(self):
        result = discover_migrations()
        sql = result[0][2].read_text()
        assert result[0][0] == "001"
        assert "CREATE TABLE IF NOT EXISTS custom_resources" in sql
        assert "UNIQUE (namespace, name)" in sql


@pytest.mark.asyncio
class TestMigrationHelpers:
    """Tests for the per-connection helpers."""

    async def test_ensure_migration_table(self):
        conn = AsyncMock()

        await ensure_migration_table(conn)

        sql = conn.execute.call_args[0][0]
        assert "CREATE TABLE IF NOT EXISTS schema_migrations" in sql
        assert "checksum" in sql

    async def test_get_applied_checksums(self):
        conn = make_conn([{"version": "001", "checksum": "abc"}])

        assert await get_applied_checksums(conn) == {"001": "abc"}

    async def test_apply_migration_records_checksum(self):
        conn = make_conn()
        sql = "CREATE TABLE t (id INT);"

        await apply_migration(conn, "001", "001_initial.sql", sql)

        conn.execute.assert_any_call(sql)
        conn.execute.assert_any_call(
            "INSERT INTO schema_migrations (version, filename, checksum) "
            "VALUES ($1, $2, $3)",
            "001",
            "001_initial.sql",
            checksum(sql),
        )

    async def test_apply_migration_propagates_errors(self):
        conn = make_conn()
        conn.execute = AsyncMock(side_effect=Exception("syntax error"))

        with pytest.raises(Exception, match="syntax error"):
            await apply_migration(conn, "001", "001_bad.sql", "INVALID SQL;")


@pytest.mark.asyncio
class TestRunMigrations:
    """Tests for run_migrations function."""

    async def test_applies_only_pending(self, tmp_path):
        first = "CREATE TABLE t1 (id INT);"
        (tmp_path / "001_initial.sql").write_text(first)
        (tmp_path / "002_update.sql").write_text("ALTER TABLE t1 ADD c TEXT;")
        (tmp_path / "003_index.sql").write_text("CREATE INDEX idx ON t1(id);")
        conn = make_conn([{"version": "001", "checksum": checksum(first)}])

        result = await run_migrations(make_pool(conn), tmp_path)

        assert result == 2
        statements = executed_sql(conn)
        assert first not in statements
        assert "ALTER TABLE t1 ADD c TEXT;" in statements

    async def test_runs_under_advisory_lock(self, tmp_path):
        (tmp_path / "001_initial.sql").write_text("SELECT 1;")
        conn = make_conn()

        await run_migrations(make_pool(conn), tmp_path)

        calls = conn.execute.call_args_list
        assert calls[0].args == ("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_ID)
        assert calls[-1].args == ("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)

    async def test_releases_lock_on_failure(self, tmp_path):
        (tmp_path / "001_bad.sql").write_text("INVALID SQL;")
        conn = make_conn()

        async def execute(sql, *args):
            if sql == "INVALID SQL;":
                raise Exception("syntax error")

        conn.execute = AsyncMock(side_effect=execute)

        with pytest.raises(Exception, match="syntax error"):
            await run_migrations(make_pool(conn), tmp_path)

        assert conn.execute.call_args_list[-1].args == (
            "SELECT pg_advisory_unlock($1)",
            MIGRATION_LOCK_ID,
        )

    async def test_nothing_pending(self, tmp_path):
        sql = "CREATE TABLE t1 (id INT);"
        (tmp_path / "001_initial.sql").write_text(sql)
        conn = make_conn([{"version": "001", "checksum": checksum(sql)}])

        assert await run_migrations(make_pool(conn), tmp_path) == 0

    async def test_changed_migration_is_reported_not_rerun(self, tmp_path, caplog):
        (tmp_path / "001_initial.sql").write_text("CREATE TABLE t1 (id BIGINT);")
        conn = make_conn([{"version": "001", "checksum": checksum("old text")}])

        with caplog.at_level(logging.WARNING, logger="migrate"):
            result = await run_migrations(make_pool(conn), tmp_path)

        assert result == 0
        assert "001_initial.sql changed after it was applied" in caplog.text
        assert "CREATE TABLE t1 (id BIGINT);" not in executed_sql(conn)
