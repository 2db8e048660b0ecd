"""SQLite repository adapter for local storage.

Implements RepositoryProtocol with SQLite backend.
"""

import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from freight_ingest.adapters.sql_repository import ConstraintViolation, SQLRepository
from freight_ingest.config.logging_config import get_logger
from freight_ingest.domain.exceptions import RepositoryError

logger = get_logger(__name__)

_AD_COLUMNS_SQL = """
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    origin_city_name TEXT,
    origin_city_id INTEGER,
    origin_country_id INTEGER,
    cargo_type TEXT NOT NULL DEFAULT 'not_specified',
    cargo_type2 TEXT NOT NULL DEFAULT 'not_specified',
    weight REAL,
    volume REAL,
    is_dagruz INTEGER NOT NULL DEFAULT 0,
    phone TEXT,
    telegram_user_id INTEGER,
    owner_id INTEGER,
    telegram_channel_id INTEGER,
    telegram_message_id INTEGER,
    url TEXT,
    description TEXT NOT NULL DEFAULT '',
    description_hash TEXT NOT NULL DEFAULT '',
    params_hash TEXT,
    duplication_counter INTEGER NOT NULL DEFAULT 0,
    duplicate_message_urls TEXT NOT NULL DEFAULT '[]',
    is_archived INTEGER NOT NULL DEFAULT 0,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    deleted_at TEXT,
    open_message_counter INTEGER NOT NULL DEFAULT 0,
    expiration_flag_counter INTEGER NOT NULL DEFAULT 0,
    published_date TEXT,
    created_at TEXT,
    updated_at TEXT"""


def _lower(value: Any) -> Any:
    """Unicode-aware LOWER (SQLite's built-in only folds ASCII)."""
    return value.lower() if isinstance(value, str) else value


class SQLiteRepository(SQLRepository):
    """SQLite-based repository for local runs and tests."""

    def __init__(self, db_path: str) -> None:
        """Initialize repository and ensure schema.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

        # Ensure data directory exists
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection.

        Returns:
            SQLite connection
        """
        conn = sqlite3.Connection(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.create_function("LOWER", 1, _lower, deterministic=True)
        return conn

    @contextmanager
    def _cursor(self, operation: str) -> Iterator[sqlite3.Cursor]:
        conn = self._get_connection()
        try:
            yield conn.cursor()
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise ConstraintViolation(f"Failed to {operation}: {e}") from e
        except sqlite3.Error as e:
            conn.rollback()
            raise RepositoryError(f"Failed to {operation}: {e}") from e
        finally:
            conn.close()

    def _sql(self, query: str) -> str:
        return query.replace("%s", "?")

    def _insert_returning_id(
        self,
        cur: sqlite3.Cursor,
        table: str,
        columns: Sequence[str],
        values: Sequence[Any],
    ) -> int:
        column_list = ", ".join(columns)
        marks = ", ".join(["?"] * len(columns))
        cur.execute(f"INSERT INTO {table} ({column_list}) VALUES ({marks})", list(values))
        if cur.lastrowid is None:
            raise RepositoryError(f"Insert into {table} returned no id")
        return int(cur.lastrowid)

    def close(self) -> None:
        """Connections are per operation; nothing to release."""
        return None

    def _create_schema(self) -> None:
        """Create database schema if not exists."""
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        conn = self._get_connection()
        try:
            cursor = conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS countries (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    names TEXT NOT NULL DEFAULT '[]',
                    parent_id INTEGER
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS cities (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    names TEXT NOT NULL DEFAULT '[]',
                    country_id INTEGER,
                    parent_id INTEGER,
                    latitude REAL,
                    longitude REAL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS city_distances (
                    origin_city_id INTEGER NOT NULL,
                    destination_city_id INTEGER NOT NULL,
                    distance_km REAL NOT NULL,
                    PRIMARY KEY (origin_city_id, destination_city_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS channels (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    title TEXT,
                    session TEXT NOT NULL DEFAULT 'default',
                    last_message_id INTEGER,
                    crawled_at TEXT,
                    crawl_loads INTEGER NOT NULL DEFAULT 1,
                    crawl_vehicles INTEGER NOT NULL DEFAULT 1,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT,
                    updated_at TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS senders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    telegram_id INTEGER NOT NULL UNIQUE,
                    username TEXT,
                    first_name TEXT,
                    last_name TEXT,
                    phone TEXT,
                    other_phones TEXT NOT NULL DEFAULT '[]',
                    is_bot INTEGER NOT NULL DEFAULT 0,
                    marked_expired_loads TEXT NOT NULL DEFAULT '[]',
                    marked_invalid_vehicles TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT,
                    updated_at TEXT
                )
                """
            )
            cursor.execute(
                f"""
                CREATE TABLE IF NOT EXISTS loads (
                    {_AD_COLUMNS_SQL},
                    destination_city_name TEXT,
                    destination_city_id INTEGER,
                    destination_country_id INTEGER,
                    price REAL,
                    prepayment_amount REAL,
                    has_prepayment INTEGER NOT NULL DEFAULT 0,
                    payment_type TEXT NOT NULL DEFAULT 'not_specified',
                    required_trucks_count INTEGER,
                    goods TEXT,
                    load_ready_date TEXT,
                    has_refrigerator_mode INTEGER NOT NULL DEFAULT 0,
                    loading_side TEXT,
                    customs_clearance_location TEXT,
                    is_local_load INTEGER NOT NULL DEFAULT 0,
                    description_hash_without_phone TEXT,
                    duplication_counter_different_phone INTEGER NOT NULL DEFAULT 0,
                    distance REAL,
                    is_likely_owner INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            cursor.execute(
                f"""
                CREATE TABLE IF NOT EXISTS vehicles (
                    {_AD_COLUMNS_SQL},
                    destination_city_names TEXT NOT NULL DEFAULT '[]',
                    destination_city_ids TEXT NOT NULL DEFAULT '[]',
                    destination_country_ids TEXT NOT NULL DEFAULT '[]',
                    available_vehicle_count INTEGER,
                    is_likely_dispatcher INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS dedup_cache (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS price_statistics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    day TEXT NOT NULL,
                    origin_city_id INTEGER NOT NULL,
                    destination_city_id INTEGER NOT NULL,
                    average REAL NOT NULL,
                    median REAL NOT NULL,
                    max REAL NOT NULL,
                    min REAL NOT NULL,
                    count INTEGER NOT NULL,
                    UNIQUE (day, origin_city_id, destination_city_id)
                )
                """
            )

            for table in ("loads", "vehicles"):
                # Storage backstop for concurrent inserts of the same ad
                cursor.execute(
                    f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_live_params_hash
                    ON {table} (params_hash)
                    WHERE is_deleted = 0 AND params_hash IS NOT NULL
                    """
                )
                cursor.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_published "
                    f"ON {table} (published_date)"
                )
                cursor.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_created "
                    f"ON {table} (created_at)"
                )
                cursor.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_channel_updated "
                    f"ON {table} (telegram_channel_id, updated_at)"
                )
                cursor.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_sender "
                    f"ON {table} (telegram_user_id)"
                )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_loads_description_hash_without_phone "
                "ON loads (description_hash_without_phone)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_dedup_cache_expires "
                "ON dedup_cache (expires_at)"
            )

            conn.commit()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to create schema: {e}") from e
        finally:
            conn.close()

        logger.info("sqlite_schema_ready", db_path=str(self.db_path))
