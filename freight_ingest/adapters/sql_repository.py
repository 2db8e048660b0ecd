"""SQL shared by the SQLite and PostgreSQL repository adapters.

Both stores receive the same statements with ``%s`` placeholders; dialect
adapters only differ in connection handling, placeholder style, JSON column
types and how an inserted id is returned.

Timestamps are written as UTC ISO-8601 strings (see ``to_db_timestamp``) so
the same comparisons work against SQLite TEXT and PostgreSQL TIMESTAMPTZ.
"""

import json
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from contextlib import AbstractContextManager
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Final

import pytz

from freight_ingest.adapters.query_builders import (
    DUPLICATE_LOAD_RANKING_SQL,
    TABLE_BY_AD_TYPE,
    DuplicateLookupCriteria,
    placeholders,
    to_db_timestamp,
)
from freight_ingest.config.logging_config import get_logger
from freight_ingest.domain.duplicate_lookup import DuplicateLookup
from freight_ingest.domain.exceptions import DuplicateRecordError, RepositoryError
from freight_ingest.domain.models import (
    Ad,
    AdType,
    Channel,
    ChannelConfig,
    City,
    Country,
    Load,
    PriceStatistics,
    Sender,
    Vehicle,
)

if TYPE_CHECKING:
    from freight_ingest.adapters.query_builders import (
        AdSearchCriteria,
        LoadArchivalCriteria,
        PriceSampleCriteria,
        RouteCorrectionCriteria,
        SourceVerificationCriteria,
        VehicleArchivalCriteria,
    )

logger = get_logger(__name__)

AD_MODELS: Final[dict[AdType, type[Ad]]] = {
    AdType.LOAD: Load,
    AdType.VEHICLE: Vehicle,
}

LOAD_COLUMNS: Final[tuple[str, ...]] = tuple(
    name for name in Load.model_fields if name != "id"
)
VEHICLE_COLUMNS: Final[tuple[str, ...]] = tuple(
    name for name in Vehicle.model_fields if name != "id"
)
COLUMNS_BY_AD_TYPE: Final[dict[AdType, tuple[str, ...]]] = {
    AdType.LOAD: LOAD_COLUMNS,
    AdType.VEHICLE: VEHICLE_COLUMNS,
}

AD_JSON_COLUMNS: Final[tuple[str, ...]] = (
    "duplicate_message_urls",
    "destination_city_names",
    "destination_city_ids",
    "destination_country_ids",
)
SENDER_JSON_COLUMNS: Final[tuple[str, ...]] = (
    "other_phones",
    "marked_expired_loads",
    "marked_invalid_vehicles",
)
PLACE_JSON_COLUMNS: Final[tuple[str, ...]] = ("names",)

MARKED_COLUMN_BY_AD_TYPE: Final[dict[AdType, str]] = {
    AdType.LOAD: "marked_expired_loads",
    AdType.VEHICLE: "marked_invalid_vehicles",
}
"""Sender column listing ads the user flagged (expired loads, invalid vehicles)"""


class ConstraintViolation(RepositoryError):
    """A unique constraint rejected a write."""

    pass


def encode_value(value: Any) -> Any:
    """Convert a model value into a driver parameter."""
    if isinstance(value, datetime):
        return to_db_timestamp(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list | tuple):
        return json.dumps(list(value), ensure_ascii=False)
    return value


def decode_row(row: Mapping[str, Any], json_columns: Iterable[str]) -> dict[str, Any]:
    """Turn a driver row into model input; JSON columns may arrive parsed or as text."""
    data = dict(row)
    for column in json_columns:
        if column not in data:
            continue
        value = data[column]
        if value is None:
            data[column] = []
        elif isinstance(value, str | bytes):
            data[column] = json.loads(value)
    return data


def _utc_now() -> datetime:
    return datetime.now(tz=pytz.UTC)


class SQLRepository(ABC):
    """Dialect-independent implementation of RepositoryProtocol."""

    @abstractmethod
    def _cursor(self, operation: str) -> AbstractContextManager[Any]:
        """Open a transaction and yield a cursor returning mapping rows.

        Commits on success. Driver errors are re-raised as RepositoryError
        (ConstraintViolation for unique violations) mentioning ``operation``.
        """
        ...

    @abstractmethod
    def _insert_returning_id(
        self, cur: Any, table: str, columns: Sequence[str], values: Sequence[Any]
    ) -> int:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def _sql(self, query: str) -> str:
        """Adapt ``%s`` placeholders to the driver's style."""
        return query

    def _execute(self, cur: Any, query: str, params: Sequence[Any] = ()) -> int:
        cur.execute(self._sql(query), list(params))
        return cur.rowcount

    def _fetch_all(
        self, cur: Any, query: str, params: Sequence[Any] = ()
    ) -> list[dict[str, Any]]:
        cur.execute(self._sql(query), list(params))
        return [dict(row) for row in cur.fetchall()]

    def _fetch_one(
        self, cur: Any, query: str, params: Sequence[Any] = ()
    ) -> dict[str, Any] | None:
        cur.execute(self._sql(query), list(params))
        row = cur.fetchone()
        return dict(row) if row is not None else None

    def _row_to_ad(self, ad_type: AdType, row: Mapping[str, Any]) -> Ad:
        return AD_MODELS[ad_type].model_validate(decode_row(row, AD_JSON_COLUMNS))

    # === Reference data ===

    def get_cities(self) -> list[City]:
        with self._cursor("load cities") as cur:
            rows = self._fetch_all(cur, "SELECT * FROM cities ORDER BY id")
        return [City.model_validate(decode_row(row, PLACE_JSON_COLUMNS)) for row in rows]

    def get_countries(self) -> list[Country]:
        with self._cursor("load countries") as cur:
            rows = self._fetch_all(cur, "SELECT * FROM countries ORDER BY id")
        return [
            Country.model_validate(decode_row(row, PLACE_JSON_COLUMNS)) for row in rows
        ]

    def save_cities(self, cities: list[City]) -> int:
        """Upsert cities by id.

        Returns:
            Number of cities written
        """
        with self._cursor("save cities") as cur:
            for city in cities:
                self._execute(
                    cur,
                    """
                    INSERT INTO cities (
                        id, name, names, country_id, parent_id, latitude, longitude
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        name = excluded.name,
                        names = excluded.names,
                        country_id = excluded.country_id,
                        parent_id = excluded.parent_id,
                        latitude = excluded.latitude,
                        longitude = excluded.longitude
                    """,
                    [
                        city.id,
                        city.name,
                        encode_value(city.names),
                        city.country_id,
                        city.parent_id,
                        city.latitude,
                        city.longitude,
                    ],
                )
        return len(cities)

    def save_countries(self, countries: list[Country]) -> int:
        with self._cursor("save countries") as cur:
            for country in countries:
                self._execute(
                    cur,
                    """
                    INSERT INTO countries (id, name, names, parent_id)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        name = excluded.name,
                        names = excluded.names,
                        parent_id = excluded.parent_id
                    """,
                    [
                        country.id,
                        country.name,
                        encode_value(country.names),
                        country.parent_id,
                    ],
                )
        return len(countries)

    def get_distance(self, city_a: int, city_b: int) -> float | None:
        with self._cursor("load distance") as cur:
            row = self._fetch_one(
                cur,
                """
                SELECT distance_km FROM city_distances
                WHERE (origin_city_id = %s AND destination_city_id = %s)
                   OR (origin_city_id = %s AND destination_city_id = %s)
                LIMIT 1
                """,
                [city_a, city_b, city_b, city_a],
            )
        return float(row["distance_km"]) if row else None

    def save_distance(self, city_a: int, city_b: int, distance_km: float) -> None:
        with self._cursor("save distance") as cur:
            self._execute(
                cur,
                """
                INSERT INTO city_distances (origin_city_id, destination_city_id, distance_km)
                VALUES (%s, %s, %s)
                ON CONFLICT (origin_city_id, destination_city_id)
                DO UPDATE SET distance_km = excluded.distance_km
                """,
                [city_a, city_b, distance_km],
            )

    # === Channels ===

    def sync_channels(self, configs: list[ChannelConfig]) -> list[Channel]:
        """Upsert configured channels and disable the ones no longer configured.

        Stored checkpoints and titles survive; a configured title wins.
        """
        now = to_db_timestamp(_utc_now())
        names = [config.name for config in configs]

        with self._cursor("sync channels") as cur:
            for config in configs:
                self._execute(
                    cur,
                    """
                    INSERT INTO channels (
                        name, title, session, crawl_loads, crawl_vehicles, enabled,
                        created_at, updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (name) DO UPDATE SET
                        title = COALESCE(excluded.title, channels.title),
                        session = excluded.session,
                        crawl_loads = excluded.crawl_loads,
                        crawl_vehicles = excluded.crawl_vehicles,
                        enabled = excluded.enabled,
                        updated_at = excluded.updated_at
                    """,
                    [
                        config.name,
                        config.title,
                        config.session,
                        config.crawl_loads,
                        config.crawl_vehicles,
                        config.enabled,
                        now,
                        now,
                    ],
                )

            if names:
                disabled = self._execute(
                    cur,
                    f"UPDATE channels SET enabled = %s, updated_at = %s "
                    f"WHERE enabled = %s AND name NOT IN ({placeholders(len(names))})",
                    [False, now, True, *names],
                )
            else:
                disabled = self._execute(
                    cur,
                    "UPDATE channels SET enabled = %s, updated_at = %s WHERE enabled = %s",
                    [False, now, True],
                )

            rows = (
                self._fetch_all(
                    cur,
                    f"SELECT * FROM channels WHERE name IN ({placeholders(len(names))}) "
                    "ORDER BY id",
                    names,
                )
                if names
                else []
            )

        logger.info("channels_synced", configured=len(names), disabled=disabled)
        return [Channel.model_validate(row) for row in rows]

    def get_channels(self, enabled_only: bool = True) -> list[Channel]:
        with self._cursor("load channels") as cur:
            if enabled_only:
                rows = self._fetch_all(
                    cur, "SELECT * FROM channels WHERE enabled = %s ORDER BY id", [True]
                )
            else:
                rows = self._fetch_all(cur, "SELECT * FROM channels ORDER BY id")
        return [Channel.model_validate(row) for row in rows]

    def update_channel_title(self, channel_id: int, title: str) -> None:
        with self._cursor("update channel title") as cur:
            self._execute(
                cur,
                "UPDATE channels SET title = %s, updated_at = %s WHERE id = %s",
                [title, to_db_timestamp(_utc_now()), channel_id],
            )

    def update_checkpoint(
        self, channel_id: int, last_message_id: int, crawled_at: datetime
    ) -> None:
        """Advance the crawl checkpoint; it never moves backwards."""
        with self._cursor("update checkpoint") as cur:
            self._execute(
                cur,
                """
                UPDATE channels
                SET last_message_id = %s, crawled_at = %s, updated_at = %s
                WHERE id = %s
                  AND (last_message_id IS NULL OR last_message_id <= %s)
                """,
                [
                    last_message_id,
                    to_db_timestamp(crawled_at),
                    to_db_timestamp(crawled_at),
                    channel_id,
                    last_message_id,
                ],
            )

    # === Senders ===

    def get_sender(self, telegram_id: int) -> Sender | None:
        with self._cursor("load sender") as cur:
            row = self._fetch_one(
                cur, "SELECT * FROM senders WHERE telegram_id = %s", [telegram_id]
            )
        return Sender.model_validate(decode_row(row, SENDER_JSON_COLUMNS)) if row else None

    def save_sender(self, sender: Sender) -> Sender:
        """Insert or update a sender by telegram id.

        Marked ad lists are owned by the serving layer and only written on insert.
        """
        now = to_db_timestamp(_utc_now())
        with self._cursor("save sender") as cur:
            self._execute(
                cur,
                """
                INSERT INTO senders (
                    telegram_id, username, first_name, last_name, phone, other_phones,
                    is_bot, marked_expired_loads, marked_invalid_vehicles,
                    created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (telegram_id) DO UPDATE SET
                    username = excluded.username,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    phone = COALESCE(excluded.phone, senders.phone),
                    other_phones = excluded.other_phones,
                    is_bot = excluded.is_bot,
                    updated_at = excluded.updated_at
                """,
                [
                    sender.telegram_id,
                    sender.username,
                    sender.first_name,
                    sender.last_name,
                    sender.phone,
                    encode_value(sender.other_phones),
                    sender.is_bot,
                    encode_value(sender.marked_expired_loads),
                    encode_value(sender.marked_invalid_vehicles),
                    now,
                    now,
                ],
            )
            row = self._fetch_one(
                cur, "SELECT * FROM senders WHERE telegram_id = %s", [sender.telegram_id]
            )
        if row is None:
            raise RepositoryError(f"Sender {sender.telegram_id} missing after save")
        return Sender.model_validate(decode_row(row, SENDER_JSON_COLUMNS))

    def prune_marked_ids(self, ad_type: AdType, ad_ids: Sequence[int]) -> int:
        """Remove ad ids from every sender's marked list.

        Returns:
            Number of senders updated
        """
        if not ad_ids:
            return 0
        column = MARKED_COLUMN_BY_AD_TYPE[ad_type]
        removed = set(ad_ids)
        updated = 0

        with self._cursor("prune marked ids") as cur:
            rows = self._fetch_all(
                cur, f"SELECT id, {column} FROM senders WHERE {column} IS NOT NULL"
            )
            for row in rows:
                marked = decode_row(row, (column,))[column]
                kept = [ad_id for ad_id in marked if ad_id not in removed]
                if len(kept) == len(marked):
                    continue
                self._execute(
                    cur,
                    f"UPDATE senders SET {column} = %s WHERE id = %s",
                    [encode_value(kept), row["id"]],
                )
                updated += 1
        return updated

    # === Ads ===

    def find_duplicates(self, lookup: DuplicateLookup) -> list[Ad]:
        criteria = DuplicateLookupCriteria.from_lookup(lookup)
        where_clause, where_params = criteria.to_where_clause()
        limit_clause, limit_params = criteria.to_limit_clause()
        query = f"""
            SELECT * FROM {criteria.table}
            WHERE {where_clause}
            ORDER BY {criteria.to_order_clause()}
            {limit_clause}
        """
        with self._cursor(f"find duplicates ({criteria.rule})") as cur:
            rows = self._fetch_all(cur, query, where_params + limit_params)
        return [self._row_to_ad(criteria.ad_type, row) for row in rows]

    def get_ads_by_ids(self, ad_type: AdType, ad_ids: Sequence[int]) -> list[Ad]:
        if not ad_ids:
            return []
        table = TABLE_BY_AD_TYPE[ad_type]
        with self._cursor(f"load {table}") as cur:
            rows = self._fetch_all(
                cur,
                f"SELECT * FROM {table} WHERE id IN ({placeholders(len(ad_ids))}) "
                "AND is_deleted = %s ORDER BY id",
                [*ad_ids, False],
            )
        return [self._row_to_ad(ad_type, row) for row in rows]

    def insert_ad(self, ad: Ad) -> int:
        """Insert a new ad and return its id.

        Raises:
            DuplicateRecordError: If a live ad with the same params hash exists
        """
        now = _utc_now()
        if ad.created_at is None:
            ad.created_at = now
        ad.updated_at = now

        ad_type = ad.AD_TYPE
        columns = COLUMNS_BY_AD_TYPE[ad_type]
        values = [encode_value(getattr(ad, column)) for column in columns]
        try:
            with self._cursor(f"insert {ad_type.value}") as cur:
                ad_id = self._insert_returning_id(
                    cur, TABLE_BY_AD_TYPE[ad_type], columns, values
                )
        except ConstraintViolation as exc:
            raise DuplicateRecordError(ad.params_hash or "") from exc

        ad.id = ad_id
        return ad_id

    def update_ad(self, ad: Ad) -> bool:
        """Persist a merged ad; deleted ads are left untouched."""
        if ad.id is None:
            raise RepositoryError("Cannot update an ad without id")

        ad.updated_at = _utc_now()
        ad_type = ad.AD_TYPE
        columns = COLUMNS_BY_AD_TYPE[ad_type]
        assignments = ", ".join(f"{column} = %s" for column in columns)
        values = [encode_value(getattr(ad, column)) for column in columns]

        try:
            with self._cursor(f"update {ad_type.value}") as cur:
                updated = self._execute(
                    cur,
                    f"UPDATE {TABLE_BY_AD_TYPE[ad_type]} SET {assignments} "
                    "WHERE id = %s AND is_deleted = %s",
                    [*values, ad.id, False],
                )
        except ConstraintViolation as exc:
            raise DuplicateRecordError(ad.params_hash or "") from exc
        return updated > 0

    def refresh_seen(
        self,
        ad_type: AdType,
        ad_ids: Sequence[int],
        *,
        url: str,
        channel_id: int | None,
        message_id: int,
        published_date: datetime,
        unarchive: bool,
    ) -> list[int]:
        """Point ads at a new sighting of their message and count the repeat.

        Returns:
            Ids that exist and are not deleted (the ones refreshed)
        """
        if not ad_ids:
            return []
        table = TABLE_BY_AD_TYPE[ad_type]
        assignments = [
            "url = %s",
            "telegram_channel_id = %s",
            "telegram_message_id = %s",
            "published_date = %s",
            "duplication_counter = duplication_counter + 1",
            "updated_at = %s",
        ]
        params: list[Any] = [
            url,
            channel_id,
            message_id,
            to_db_timestamp(published_date),
            to_db_timestamp(_utc_now()),
        ]
        if unarchive:
            assignments.append("is_archived = %s")
            params.append(False)

        with self._cursor(f"refresh {table}") as cur:
            rows = self._fetch_all(
                cur,
                f"SELECT id FROM {table} WHERE id IN ({placeholders(len(ad_ids))}) "
                "AND is_deleted = %s ORDER BY id",
                [*ad_ids, False],
            )
            existing = [int(row["id"]) for row in rows]
            if existing:
                self._execute(
                    cur,
                    f"UPDATE {table} SET {', '.join(assignments)} "
                    f"WHERE id IN ({placeholders(len(existing))})",
                    [*params, *existing],
                )
        return existing

    def increment_different_phone_counter(self, ad_ids: Sequence[int]) -> None:
        if not ad_ids:
            return
        with self._cursor("increment different phone counter") as cur:
            self._execute(
                cur,
                "UPDATE loads SET duplication_counter_different_phone = "
                "duplication_counter_different_phone + 1 "
                f"WHERE id IN ({placeholders(len(ad_ids))}) AND is_deleted = %s",
                [*ad_ids, False],
            )

    def count_loads_by_owner(
        self, sender_id: int, phones: Sequence[str], max_duplication: int
    ) -> int:
        """Count loads posted by the sender or carrying one of their phones."""
        identity = ["telegram_user_id = %s"]
        params: list[Any] = [sender_id]
        for phone in phones:
            identity.append("phone LIKE %s")
            params.append(f"%{phone}")
        params.append(max_duplication)

        with self._cursor("count owner loads") as cur:
            row = self._fetch_one(
                cur,
                f"SELECT COUNT(*) AS total FROM loads WHERE ({' OR '.join(identity)}) "
                "AND duplication_counter < %s",
                params,
            )
        return int(row["total"]) if row else 0

    def count_loads_by_sender(self, sender_id: int) -> int:
        with self._cursor("count sender loads") as cur:
            row = self._fetch_one(
                cur,
                "SELECT COUNT(*) AS total FROM loads WHERE telegram_user_id = %s",
                [sender_id],
            )
        return int(row["total"]) if row else 0

    def search_ads(self, criteria: "AdSearchCriteria") -> list[Ad]:
        """Run a search built from a user's filter.

        Example:
            >>> criteria = AdSearchCriteria.from_filter(search_filter, resolver)
            >>> page = repo.search_ads(criteria)
        """
        where_clause, where_params = criteria.to_where_clause()
        limit_clause, limit_params = criteria.to_limit_clause()
        query = f"""
            SELECT * FROM {criteria.table}
            WHERE {where_clause}
            ORDER BY {criteria.to_order_clause()}
            {limit_clause}
        """
        with self._cursor(f"search {criteria.table}") as cur:
            rows = self._fetch_all(cur, query, where_params + limit_params)
        return [self._row_to_ad(criteria.ad_type, row) for row in rows]

    def count_ads(self, criteria: "AdSearchCriteria") -> int:
        where_clause, where_params = criteria.to_where_clause()
        with self._cursor(f"count {criteria.table}") as cur:
            row = self._fetch_one(
                cur,
                f"SELECT COUNT(*) AS total FROM {criteria.table} WHERE {where_clause}",
                where_params,
            )
        return int(row["total"]) if row else 0

    # === Lifecycle ===

    def get_ads_for_verification(
        self, criteria: "SourceVerificationCriteria"
    ) -> list[Ad]:
        where_clause, where_params = criteria.to_where_clause()
        limit_clause, limit_params = criteria.to_limit_clause()
        query = f"""
            SELECT * FROM {criteria.table}
            WHERE {where_clause}
            ORDER BY {criteria.to_order_clause()}
            {limit_clause}
        """
        with self._cursor(f"load {criteria.table} for verification") as cur:
            rows = self._fetch_all(cur, query, where_params + limit_params)
        return [self._row_to_ad(criteria.ad_type, row) for row in rows]

    def touch_ads(self, ad_type: AdType, ad_ids: Sequence[int], now: datetime) -> int:
        if not ad_ids:
            return 0
        table = TABLE_BY_AD_TYPE[ad_type]
        with self._cursor(f"touch {table}") as cur:
            return self._execute(
                cur,
                f"UPDATE {table} SET updated_at = %s "
                f"WHERE id IN ({placeholders(len(ad_ids))}) AND is_deleted = %s",
                [to_db_timestamp(now), *ad_ids, False],
            )

    def mark_ads_deleted(
        self, ad_type: AdType, ad_ids: Sequence[int], now: datetime
    ) -> int:
        """Archive and soft-delete ads whose source message disappeared."""
        if not ad_ids:
            return 0
        table = TABLE_BY_AD_TYPE[ad_type]
        stamp = to_db_timestamp(now)
        with self._cursor(f"delete {table}") as cur:
            return self._execute(
                cur,
                f"UPDATE {table} SET is_archived = %s, is_deleted = %s, "
                "deleted_at = %s, updated_at = %s "
                f"WHERE id IN ({placeholders(len(ad_ids))}) AND is_deleted = %s",
                [True, True, stamp, stamp, *ad_ids, False],
            )

    def archive_ads(
        self,
        criteria: "LoadArchivalCriteria | VehicleArchivalCriteria",
        now: datetime,
    ) -> dict[int, int]:
        """Archive ads matching the criteria.

        Returns:
            Mapping of archived ad id to its expiration flag counter
        """
        where_clause, where_params = criteria.to_where_clause()
        with self._cursor(f"archive {criteria.table}") as cur:
            rows = self._fetch_all(
                cur,
                f"SELECT id, expiration_flag_counter FROM {criteria.table} "
                f"WHERE {where_clause}",
                where_params,
            )
            archived = {
                int(row["id"]): int(row["expiration_flag_counter"] or 0) for row in rows
            }
            if archived:
                self._execute(
                    cur,
                    f"UPDATE {criteria.table} SET is_archived = %s, updated_at = %s "
                    f"WHERE id IN ({placeholders(len(archived))})",
                    [True, to_db_timestamp(now), *archived],
                )
        return archived

    def collapse_duplicate_loads(self, now: datetime) -> int:
        """Archive and delete live loads shadowed by a newer identical one."""
        with self._cursor("collapse duplicate loads") as cur:
            rows = self._fetch_all(cur, DUPLICATE_LOAD_RANKING_SQL, [False, False])
            ids = [int(row["id"]) for row in rows]
            if not ids:
                return 0
            stamp = to_db_timestamp(now)
            return self._execute(
                cur,
                "UPDATE loads SET is_archived = %s, is_deleted = %s, deleted_at = %s, "
                f"updated_at = %s WHERE id IN ({placeholders(len(ids))})",
                [True, True, stamp, stamp, *ids],
            )

    def backfill_owner_ids(self) -> int:
        """Link loads without an owner to the stored sender that posted them."""
        with self._cursor("backfill owner ids") as cur:
            return self._execute(
                cur,
                """
                UPDATE loads
                SET owner_id = (
                    SELECT senders.id FROM senders
                    WHERE senders.telegram_id = loads.telegram_user_id
                )
                WHERE owner_id IS NULL
                  AND telegram_user_id IS NOT NULL
                  AND EXISTS (
                    SELECT 1 FROM senders
                    WHERE senders.telegram_id = loads.telegram_user_id
                  )
                """,
            )

    # === Daily maintenance ===

    def correct_reversed_routes(
        self, criteria: "RouteCorrectionCriteria", now: datetime
    ) -> int:
        """Swap origin and destination of loads extracted the wrong way round."""
        where_clause, where_params = criteria.to_where_clause()
        with self._cursor("correct reversed routes") as cur:
            return self._execute(
                cur,
                f"""
                UPDATE {criteria.table} SET
                    origin_country_id = destination_country_id,
                    destination_country_id = origin_country_id,
                    origin_city_id = destination_city_id,
                    destination_city_id = origin_city_id,
                    origin_city_name = destination_city_name,
                    destination_city_name = origin_city_name,
                    updated_at = %s
                WHERE {where_clause}
                """,
                [to_db_timestamp(now), *where_params],
            )

    def get_price_route_pairs(
        self, country_ids: Sequence[int], created_after: datetime
    ) -> list[tuple[int, int]]:
        """Resolved city pairs of recent loads touching the given countries."""
        if not country_ids:
            return []
        countries = placeholders(len(country_ids))
        with self._cursor("load price routes") as cur:
            rows = self._fetch_all(
                cur,
                f"""
                SELECT DISTINCT origin_city_id, destination_city_id FROM loads
                WHERE created_at >= %s
                  AND origin_city_id IS NOT NULL
                  AND destination_city_id IS NOT NULL
                  AND (origin_country_id IN ({countries})
                       OR destination_country_id IN ({countries}))
                ORDER BY origin_city_id, destination_city_id
                """,
                [to_db_timestamp(created_after), *country_ids, *country_ids],
            )
        return [
            (int(row["origin_city_id"]), int(row["destination_city_id"])) for row in rows
        ]

    def get_price_samples(self, criteria: "PriceSampleCriteria") -> list[tuple[float, float]]:
        """``(price, weight)`` of the loads matching the criteria."""
        where_clause, where_params = criteria.to_where_clause()
        with self._cursor("load price samples") as cur:
            rows = self._fetch_all(
                cur,
                f"SELECT price, weight FROM {criteria.table} WHERE {where_clause}",
                where_params,
            )
        return [(float(row["price"]), float(row["weight"])) for row in rows]

    def save_price_statistics(self, statistics: PriceStatistics) -> None:
        """Insert or replace the statistics of one route and day."""
        with self._cursor("save price statistics") as cur:
            self._execute(
                cur,
                """
                INSERT INTO price_statistics
                    (day, origin_city_id, destination_city_id,
                     average, median, max, min, count)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (day, origin_city_id, destination_city_id) DO UPDATE SET
                    average = excluded.average,
                    median = excluded.median,
                    max = excluded.max,
                    min = excluded.min,
                    count = excluded.count
                """,
                [
                    statistics.day.isoformat(),
                    statistics.origin_city_id,
                    statistics.destination_city_id,
                    statistics.average,
                    statistics.median,
                    statistics.max,
                    statistics.min,
                    statistics.count,
                ],
            )

    def get_price_statistics(
        self, origin_city_id: int, destination_city_id: int
    ) -> list[PriceStatistics]:
        """Stored statistics of one route, newest day first."""
        with self._cursor("load price statistics") as cur:
            rows = self._fetch_all(
                cur,
                """
                SELECT day, origin_city_id, destination_city_id,
                       average, median, max, min, count
                FROM price_statistics
                WHERE origin_city_id = %s AND destination_city_id = %s
                ORDER BY day DESC
                """,
                [origin_city_id, destination_city_id],
            )
        return [PriceStatistics.model_validate(row) for row in rows]

    # === TTL cache storage ===

    def cache_get(self, key: str, now: datetime) -> str | None:
        with self._cursor("read cache") as cur:
            row = self._fetch_one(
                cur,
                "SELECT value FROM dedup_cache WHERE key = %s AND expires_at > %s",
                [key, to_db_timestamp(now)],
            )
        return row["value"] if row else None

    def cache_set(self, key: str, value: str, expires_at: datetime) -> None:
        with self._cursor("write cache") as cur:
            self._execute(
                cur,
                """
                INSERT INTO dedup_cache (key, value, expires_at) VALUES (%s, %s, %s)
                ON CONFLICT (key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at
                """,
                [key, value, to_db_timestamp(expires_at)],
            )

    def cache_increment(self, key: str, expires_at: datetime, now: datetime) -> int:
        """Increment an integer counter; an expired counter restarts at 1.

        The expiry is set when the counter starts and kept afterwards.
        """
        with self._cursor("increment cache counter") as cur:
            row = self._fetch_one(
                cur,
                "SELECT value FROM dedup_cache WHERE key = %s AND expires_at > %s",
                [key, to_db_timestamp(now)],
            )
            if row is None:
                count = 1
                self._execute(
                    cur,
                    """
                    INSERT INTO dedup_cache (key, value, expires_at) VALUES (%s, %s, %s)
                    ON CONFLICT (key) DO UPDATE SET
                        value = excluded.value,
                        expires_at = excluded.expires_at
                    """,
                    [key, str(count), to_db_timestamp(expires_at)],
                )
            else:
                count = int(row["value"] or 0) + 1
                self._execute(
                    cur,
                    "UPDATE dedup_cache SET value = %s WHERE key = %s",
                    [str(count), key],
                )
        return count

    def purge_expired_cache(self, now: datetime) -> int:
        with self._cursor("purge cache") as cur:
            return self._execute(
                cur,
                "DELETE FROM dedup_cache WHERE expires_at <= %s",
                [to_db_timestamp(now)],
            )
