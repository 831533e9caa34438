"""Tests for database schema and migrations."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from shopkeeper.db.schema import migrate, schema_version
from shopkeeper.db.schema.migrate import (
    MIGRATION_LOCK_ID,
    MIGRATIONS_DIR,
    pending_migrations,
    split_sql_statements,
)


def _mock_pool(lock_acquired=True, applied=()):
    mock_conn = AsyncMock()
    mock_conn.fetchval.return_value = lock_acquired
    mock_conn.fetch.return_value = [{"version": v} for v in applied]
    mock_tx = MagicMock()
    mock_tx.__aenter__.return_value = None
    mock_tx.__aexit__.return_value = None
    mock_conn.transaction = MagicMock(return_value=mock_tx)

    mock_acquire = MagicMock()
    mock_acquire.__aenter__.return_value = mock_conn
    mock_acquire.__aexit__.return_value = None
    mock_pool = MagicMock()
    mock_pool.acquire.return_value = mock_acquire
    return mock_pool, mock_conn


class TestSplitStatements:
    """SQL script splitting."""

    def test_comments_stripped(self):
        """Line and block comments never split or leak into statements."""
        sql = """
            -- customers
            CREATE TABLE a (id INT);
            /* block
               comment; with semicolon */
            CREATE INDEX a_idx ON a (id);
        """

        assert split_sql_statements(sql) == [
            "CREATE TABLE a (id INT);",
            "CREATE INDEX a_idx ON a (id);",
        ]

    def test_semicolon_in_string_kept(self):
        """Semicolons inside string literals do not split."""
        statements = split_sql_statements("INSERT INTO t VALUES ('a;b'); SELECT 1;")

        assert statements == ["INSERT INTO t VALUES ('a;b');", "SELECT 1;"]

    def test_dollar_quoted_body_kept_whole(self):
        """Dollar-quoted bodies stay in one statement."""
        sql = (
            "CREATE FUNCTION f() RETURNS void AS $$ BEGIN PERFORM 1; END; $$ "
            "LANGUAGE plpgsql;\nSELECT 2"
        )

        statements = split_sql_statements(sql)

        assert len(statements) == 2
        assert "PERFORM 1; END;" in statements[0]
        assert statements[1] == "SELECT 2"

    def test_billing_migration_parses(self):
        """The shipped billing migration splits into complete statements."""
        sql = (MIGRATIONS_DIR / "001_billing.sql").read_text(encoding="utf-8")

        statements = split_sql_statements(sql)

        assert any("billing_processed_events" in s for s in statements)
        assert all(s.endswith(";") for s in statements)

    def test_ordering_migration_parses(self):
        """The ordering migration adds both tie-break columns and backfills ranks."""
        sql = (MIGRATIONS_DIR / "002_subscription_ordering.sql").read_text(encoding="utf-8")

        statements = split_sql_statements(sql)

        assert len(statements) == 3
        assert "status_rank" in statements[0]
        assert "last_event_id" in statements[1]
        assert statements[2].startswith("UPDATE billing_subscriptions")


class TestPendingMigrations:
    def test_sorted_and_filtered(self, tmp_path):
        """Pending migrations are numbered files not yet applied, in order."""
        for name in ("002_b.sql", "001_a.sql", "010_c.sql", "notes.sql", "readme.txt"):
            (tmp_path / name).write_text("SELECT 1;")

        pending = pending_migrations(tmp_path, applied={2})

        assert [(v, p.name) for v, p in pending] == [(1, "001_a.sql"), (10, "010_c.sql")]

    def test_shipped_migrations(self):
        """All shipped migrations are pending on a fresh database."""
        assert [v for v, _ in pending_migrations(MIGRATIONS_DIR, set())] == [1, 2]


class TestMigrations:
    """Migration runner against a mocked pool."""

    @pytest.mark.asyncio
    async def test_migrate_fresh_database(self):
        """A fresh database gets every migration under the advisory lock."""
        pool, conn = _mock_pool()

        applied = await migrate(pool)

        assert applied == 2
        executed = " ".join(c.args[0] for c in conn.execute.call_args_list)
        assert "billing_subscriptions" in executed
        assert "status_rank" in executed
        conn.execute.assert_any_call("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)

    @pytest.mark.asyncio
    async def test_migrate_idempotent(self):
        """Re-running with everything applied does nothing."""
        pool, conn = _mock_pool(applied=[1, 2])

        assert await migrate(pool) == 0
        conn.transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_run_refused(self):
        """A second concurrent runner is refused."""
        pool, _ = _mock_pool(lock_acquired=False)

        with pytest.raises(RuntimeError, match="Another migration"):
            await migrate(pool)

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path):
        """A missing migrations directory is an error."""
        pool, _ = _mock_pool()

        with pytest.raises(FileNotFoundError):
            await migrate(pool, tmp_path / "missing")

    @pytest.mark.asyncio
    async def test_schema_version(self):
        """The schema version is the highest applied migration."""
        pool, conn = _mock_pool(lock_acquired=1)

        assert await schema_version(pool) == 1
        assert "MAX(version)" in conn.fetchval.call_args.args[0]
