"""Build the ad store selected by ``database.type`` in settings."""

from typing import cast

from freight_ingest.adapters.postgres_repository import PostgresRepository
from freight_ingest.adapters.sqlite_repository import SQLiteRepository
from freight_ingest.config.logging_config import get_logger
from freight_ingest.config.settings import Settings
from freight_ingest.domain.protocols import RepositoryProtocol

logger = get_logger(__name__)

SUPPORTED_BACKENDS = ("sqlite", "postgres")


def create_repository(settings: Settings) -> RepositoryProtocol:
    """Open the SQLite file or the PostgreSQL pool.

    Raises:
        ValueError: Unknown backend, or PostgreSQL without a password
        RepositoryError: The database could not be reached
    """
    backend = settings.database_type
    if backend not in SUPPORTED_BACKENDS:
        raise ValueError(
            f"Unsupported database type: {backend}. Must be one of {', '.join(SUPPORTED_BACKENDS)}"
        )

    if backend == "sqlite":
        logger.info("ad_store_opened", backend=backend, path=settings.db_path)
        return cast(RepositoryProtocol, SQLiteRepository(db_path=settings.db_path))

    if settings.postgres_password is None:
        raise ValueError("POSTGRES_PASSWORD must be set when database type is postgres")

    repository = PostgresRepository(
        host=settings.postgres_host,
        port=settings.postgres_port,
        database=settings.postgres_database,
        user=settings.postgres_user,
        password=settings.postgres_password.get_secret_value(),
        settings=settings,
    )
    logger.info(
        "ad_store_opened",
        backend=backend,
        host=settings.postgres_host,
        database=settings.postgres_database,
    )
    return cast(RepositoryProtocol, repository)
