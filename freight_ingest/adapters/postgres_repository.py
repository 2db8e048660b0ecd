"""PostgreSQL repository over a psycopg2 connection pool.

The schema is owned by the Alembic migration in ``alembic/versions``; this
adapter only supplies connections, cursors and ``RETURNING id`` inserts to
the shared SQL implementation.
"""

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from time import sleep
from typing import TYPE_CHECKING, Any, Final

from psycopg2 import Error as PsycopgError
from psycopg2 import IntegrityError as PsycopgIntegrityError
from psycopg2 import extensions
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import RealDictCursor

from freight_ingest.adapters.sql_repository import ConstraintViolation, SQLRepository
from freight_ingest.config.logging_config import get_logger
from freight_ingest.domain.exceptions import RepositoryError

if TYPE_CHECKING:
    from freight_ingest.config.settings import Settings

POOL_ACQUIRE_ATTEMPTS: Final[int] = 5
POOL_ACQUIRE_BASE_DELAY_SECONDS: Final[float] = 0.1
POOL_ACQUIRE_MAX_DELAY_SECONDS: Final[float] = 2.0

logger = get_logger(__name__)


@dataclass(frozen=True)
class PoolOptions:
    """Connection pool sizing and per-session server options."""

    min_connections: int = 1
    max_connections: int = 10
    statement_timeout_ms: int = 10_000
    connect_timeout_seconds: int = 10
    application_name: str = "freight_ingest"
    ssl_mode: str | None = None

    @classmethod
    def from_settings(cls, settings: "Settings | None") -> "PoolOptions":
        if settings is None:
            return cls()
        return cls(
            min_connections=settings.postgres_min_connections,
            max_connections=settings.postgres_max_connections,
            statement_timeout_ms=settings.postgres_statement_timeout_ms,
            connect_timeout_seconds=settings.postgres_connect_timeout_seconds,
            application_name=settings.postgres_application_name,
            ssl_mode=settings.postgres_ssl_mode,
        )

    def validate(self) -> None:
        if self.min_connections <= 0:
            raise RepositoryError("postgres_min_connections must be positive")
        if self.max_connections < self.min_connections:
            raise RepositoryError(
                "postgres_max_connections must be greater than or equal to postgres_min_connections"
            )


class PostgresRepository(SQLRepository):
    """Freight store on PostgreSQL; connections are borrowed per operation."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        settings: "Settings | None" = None,
    ):
        self._database = database
        self._options = PoolOptions.from_settings(settings)
        self._options.validate()
        self._pool = self._create_pool(
            host=host, port=port, database=database, user=user, password=password
        )

    def _create_pool(self, **conn_kwargs: Any) -> psycopg2_pool.ThreadedConnectionPool:
        """Open the pool and check that the server answers."""
        options = self._options
        conn_kwargs["connect_timeout"] = options.connect_timeout_seconds
        conn_kwargs["options"] = (
            f"-c statement_timeout={options.statement_timeout_ms} "
            f"-c application_name={options.application_name}"
        )
        if options.ssl_mode:
            conn_kwargs["sslmode"] = options.ssl_mode

        try:
            pool = psycopg2_pool.ThreadedConnectionPool(
                options.min_connections, options.max_connections, **conn_kwargs
            )
        except PsycopgError as exc:
            raise RepositoryError(f"Failed to initialize PostgreSQL pool: {exc}") from exc

        try:
            conn = pool.getconn()
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
            finally:
                pool.putconn(conn)
        except PsycopgError as exc:
            pool.closeall()
            raise RepositoryError(f"PostgreSQL validation query failed: {exc}") from exc

        logger.info(
            "postgres_pool_initialized",
            host=conn_kwargs.get("host"),
            database=self._database,
            min_connections=options.min_connections,
            max_connections=options.max_connections,
        )
        return pool

    def _borrow(self) -> extensions.connection:
        """Take a pooled connection, backing off while the pool is exhausted."""
        delay = POOL_ACQUIRE_BASE_DELAY_SECONDS
        for attempt in range(1, POOL_ACQUIRE_ATTEMPTS + 1):
            try:
                return self._pool.getconn()
            except psycopg2_pool.PoolError as exc:
                if attempt == POOL_ACQUIRE_ATTEMPTS:
                    logger.error(
                        "postgres_pool_acquire_failed",
                        attempts=attempt,
                        max_connections=self._options.max_connections,
                    )
                    raise RepositoryError(
                        "Failed to acquire PostgreSQL connection from pool"
                    ) from exc
                logger.warning("postgres_pool_exhausted_retry", attempt=attempt, wait_seconds=delay)
                sleep(delay)
                delay = min(delay * 2, POOL_ACQUIRE_MAX_DELAY_SECONDS)
        raise RepositoryError("Failed to acquire PostgreSQL connection from pool")

    def _give_back(self, conn: extensions.connection, *, broken: bool) -> None:
        try:
            self._pool.putconn(conn, close=broken)
        except PsycopgError:
            logger.warning("postgres_putconn_failed", database=self._database, exc_info=True)

    @contextmanager
    def _cursor(self, operation: str) -> Iterator[RealDictCursor]:
        conn = self._borrow()
        broken = False
        try:
            conn.autocommit = False
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                yield cur
            conn.commit()
        except PsycopgIntegrityError as exc:
            conn.rollback()
            raise ConstraintViolation(f"Failed to {operation}: {exc}") from exc
        except PsycopgError as exc:
            try:
                conn.rollback()
            except PsycopgError:
                broken = True
            raise RepositoryError(f"Failed to {operation}: {exc}") from exc
        finally:
            if not broken and conn.get_transaction_status() in (
                extensions.TRANSACTION_STATUS_INTRANS,
                extensions.TRANSACTION_STATUS_INERROR,
            ):
                # Exceptions outside the driver leave the transaction open
                conn.rollback()
            self._give_back(conn, broken=broken)

    def _insert_returning_id(
        self,
        cur: RealDictCursor,
        table: str,
        columns: Sequence[str],
        values: Sequence[Any],
    ) -> int:
        marks = ", ".join(["%s"] * len(columns))
        cur.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({marks}) RETURNING id",
            list(values),
        )
        row = cur.fetchone()
        if row is None:
            raise RepositoryError(f"Insert into {table} returned no id")
        return int(row["id"])

    def close(self) -> None:
        self._pool.closeall()
        logger.info("postgres_pool_closed", database=self._database)
