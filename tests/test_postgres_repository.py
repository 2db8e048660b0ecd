"""Tests for the PostgreSQL repository.

Pool handling is tested against a mocked psycopg2 pool. The round-trip test
is skipped unless TEST_POSTGRES=1 and POSTGRES_PASSWORD are set and the
database was migrated with Alembic.

Run with: TEST_POSTGRES=1 POSTGRES_PASSWORD=password pytest tests/test_postgres_repository.py
"""

from typing import Any
from unittest.mock import MagicMock

import psycopg2
import pytest
from psycopg2 import extensions
from psycopg2 import pool as psycopg2_pool

from freight_ingest.adapters.postgres_repository import PostgresRepository
from freight_ingest.adapters.sql_repository import ConstraintViolation
from freight_ingest.config.settings import Settings
from freight_ingest.domain.exceptions import RepositoryError
from freight_ingest.domain.models import AdType
from freight_ingest.domain.protocols import RepositoryProtocol
from tests.conftest import make_load

POOL_CLASS = "freight_ingest.adapters.postgres_repository.psycopg2_pool.ThreadedConnectionPool"


def make_connection() -> tuple[MagicMock, MagicMock]:
    conn = MagicMock()
    cur = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur
    conn.get_transaction_status.return_value = extensions.TRANSACTION_STATUS_IDLE
    return conn, cur


@pytest.fixture
def pooled(mocker: Any, settings: Settings) -> tuple[PostgresRepository, MagicMock, MagicMock]:
    conn, cur = make_connection()
    pool = MagicMock()
    pool.getconn.return_value = conn
    pool_class = mocker.patch(POOL_CLASS, return_value=pool)

    repository = PostgresRepository(
        host="db", port=5432, database="freight", user="ingest", password="pw", settings=settings
    )

    assert pool_class.call_count == 1
    return repository, pool, cur


class TestPoolSetup:
    """Pool creation from settings."""

    def test_session_options_passed(self, mocker: Any, settings: Settings) -> None:
        """Statement timeout and application name are set per connection."""
        conn, _ = make_connection()
        pool_class = mocker.patch(POOL_CLASS)
        pool_class.return_value.getconn.return_value = conn

        PostgresRepository(
            host="db", port=5432, database="freight", user="ingest", password="pw", settings=settings
        )

        args, kwargs = pool_class.call_args
        assert args == (settings.postgres_min_connections, settings.postgres_max_connections)
        assert kwargs["host"] == "db"
        assert f"statement_timeout={settings.postgres_statement_timeout_ms}" in kwargs["options"]
        assert f"application_name={settings.postgres_application_name}" in kwargs["options"]

    def test_invalid_pool_bounds(self, settings: Settings) -> None:
        """A maximum below the minimum is rejected before connecting."""
        bad = settings.model_copy(
            update={"postgres_min_connections": 5, "postgres_max_connections": 2}
        )

        with pytest.raises(RepositoryError, match="postgres_max_connections"):
            PostgresRepository(
                host="db", port=5432, database="freight", user="ingest", password="pw", settings=bad
            )

    def test_failed_validation_closes_pool(self, mocker: Any, settings: Settings) -> None:
        """A server that does not answer SELECT 1 is reported."""
        conn, cur = make_connection()
        cur.execute.side_effect = psycopg2.OperationalError("down")
        pool = mocker.patch(POOL_CLASS).return_value
        pool.getconn.return_value = conn

        with pytest.raises(RepositoryError, match="validation query failed"):
            PostgresRepository(
                host="db", port=5432, database="freight", user="ingest", password="pw", settings=settings
            )
        pool.closeall.assert_called_once()


class TestCursor:
    """Transactions around repository operations."""

    def test_commit_and_return(self, pooled: tuple[PostgresRepository, MagicMock, MagicMock]) -> None:
        """A clean block commits and returns the connection."""
        repository, pool, _ = pooled
        pool.reset_mock()

        with repository._cursor("touch ads") as cur:
            cur.execute("SELECT 1")

        conn = pool.getconn.return_value
        conn.commit.assert_called_once()
        pool.putconn.assert_called_once_with(conn, close=False)

    def test_unique_violation(self, pooled: tuple[PostgresRepository, MagicMock, MagicMock]) -> None:
        """Integrity errors surface as constraint violations."""
        repository, pool, _ = pooled
        conn = pool.getconn.return_value

        with pytest.raises(ConstraintViolation, match="insert loads"):
            with repository._cursor("insert loads"):
                raise psycopg2.IntegrityError("duplicate key")

        conn.rollback.assert_called()
        conn.commit.assert_not_called()

    def test_driver_error(self, pooled: tuple[PostgresRepository, MagicMock, MagicMock]) -> None:
        """Other driver errors become repository errors."""
        repository, _, _ = pooled

        with pytest.raises(RepositoryError, match="Failed to search ads"):
            with repository._cursor("search ads"):
                raise psycopg2.OperationalError("timeout")

    def test_exhausted_pool_retries(
        self, mocker: Any, pooled: tuple[PostgresRepository, MagicMock, MagicMock]
    ) -> None:
        """An exhausted pool is retried with backoff."""
        repository, pool, _ = pooled
        sleep = mocker.patch("freight_ingest.adapters.postgres_repository.sleep")
        conn = pool.getconn.return_value
        pool.getconn.side_effect = [psycopg2_pool.PoolError("exhausted"), conn]

        with repository._cursor("count ads"):
            pass

        sleep.assert_called_once_with(0.1)

    def test_insert_returning_id(
        self, pooled: tuple[PostgresRepository, MagicMock, MagicMock]
    ) -> None:
        """Inserts read the generated id back."""
        repository, _, cur = pooled
        cur.fetchone.return_value = {"id": 7}

        assert repository._insert_returning_id(cur, "loads", ["phone", "weight"], ["90", 15]) == 7

        query, params = cur.execute.call_args.args
        assert query == "INSERT INTO loads (phone, weight) VALUES (%s, %s) RETURNING id"
        assert params == ["90", 15]


@pytest.mark.postgres
def test_postgres_insert_and_read(repo: RepositoryProtocol) -> None:
    """A stored load reads back from PostgreSQL."""
    ad_id = repo.insert_ad(make_load())

    [stored] = repo.get_ads_by_ids(AdType.LOAD, [ad_id])

    assert stored.id == ad_id
    assert stored.phone == "901234567"
