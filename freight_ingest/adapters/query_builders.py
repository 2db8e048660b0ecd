"""Query builders for constructing type-safe database queries.

Instead of building SQL WHERE clauses with string literals, use these
builders to create queries in a type-safe, testable way. All builders emit
``%s`` placeholders; the SQLite adapter converts them to ``?``.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytz

from freight_ingest.domain.lifecycle_constants import (
    HOME_COUNTRY_ID,
    LOAD_EXPIRATION_HARD_LIMIT,
    LOAD_EXPIRATION_SOFT_LIMIT,
    LOAD_MAX_AGE_DAYS,
    LOAD_MAX_AGE_RESTRICTED_DAYS,
    LOAD_MAX_DUPLICATION,
    LOAD_MAX_DUPLICATION_RESTRICTED,
    LOAD_MAX_PUBLISHED_AGE_DAYS,
    LOAD_OPEN_HARD_LIMIT,
    LOAD_OPEN_SOFT_LIMIT,
    LOAD_READY_DATE_GRACE_DAYS,
    PRICE_STATS_MAX_DUPLICATION,
    PRICE_STATS_MAX_WEIGHT,
    PRICE_STATS_MIN_PRICE,
    PRICE_STATS_MIN_WEIGHT,
    PRICE_STATS_WINDOW_DAYS,
    RESTRICTED_COUNTRY_IDS,
    ROUTE_CORRECTION_FROM_COUNTRY_ID,
    ROUTE_CORRECTION_GOODS,
    ROUTE_CORRECTION_TO_COUNTRY_ID,
    SEARCH_MAX_EXPIRATION_COUNTER,
    SEARCH_MAX_OPEN_COUNTER,
    SEARCH_NEAREST_CITY_LIMIT,
    SEARCH_NEAREST_CITY_RADIUS_KM,
    SEARCH_WINDOW_DAYS,
    VEHICLE_EXPIRATION_LIMIT,
    VEHICLE_MAX_AGE_DAYS,
    VEHICLE_MAX_DUPLICATION,
    VEHICLE_MAX_PUBLISHED_AGE_DAYS,
)
from freight_ingest.domain.duplicate_lookup import DuplicateLookup
from freight_ingest.domain.models import AdType, SearchFilter, TruckType
from freight_ingest.services.truck_types import TypeMatch, compatible_type_matches

if TYPE_CHECKING:
    from freight_ingest.services.place_resolver import PlaceResolver

TABLE_BY_AD_TYPE: dict[AdType, str] = {
    AdType.LOAD: "loads",
    AdType.VEHICLE: "vehicles",
}


def to_db_timestamp(value: datetime) -> str:
    """Serialize a datetime the way both stores compare it (UTC ISO-8601)."""
    if value.tzinfo is None:
        value = pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC).isoformat(timespec="microseconds")


def placeholders(count: int) -> str:
    """Return ``count`` comma separated placeholders.

    Example:
        >>> placeholders(3)
        '%s, %s, %s'
    """
    return ", ".join(["%s"] * count)


class BaseQueryCriteria(ABC):
    """Base class for database query criteria."""

    @abstractmethod
    def to_where_clause(self) -> tuple[str, list[Any]]:
        """Build SQL WHERE clause with parameters."""
        pass

    @abstractmethod
    def to_order_clause(self) -> str:
        """Build SQL ORDER BY clause."""
        pass

    @abstractmethod
    def to_limit_clause(self) -> tuple[str, list[Any]]:
        """Build SQL LIMIT/OFFSET clause."""
        pass

    @property
    @abstractmethod
    def table(self) -> str:
        """Table the criteria apply to."""
        pass


# === Duplicate lookups ===


@dataclass
class DuplicateLookupCriteria(DuplicateLookup, BaseQueryCriteria):
    """SQL rendering of a ``DuplicateLookup``.

    Example:
        >>> criteria = DuplicateLookupCriteria.from_lookup(lookup)
        >>> where, params = criteria.to_where_clause()
    """

    @classmethod
    def from_lookup(cls, lookup: DuplicateLookup) -> "DuplicateLookupCriteria":
        if isinstance(lookup, cls):
            return lookup
        return cls(**{f.name: getattr(lookup, f.name) for f in fields(DuplicateLookup)})

    @property
    def table(self) -> str:
        return TABLE_BY_AD_TYPE[self.ad_type]

    def to_where_clause(self) -> tuple[str, list[Any]]:
        """Build SQL WHERE clause with parameters.

        Example:
            >>> DuplicateLookupCriteria(
            ...     rule="params_hash", params_hashes=["ab12"]
            ... ).to_where_clause()
            ('is_deleted = %s AND params_hash IN (%s)', [False, 'ab12'])
        """
        conditions: list[str] = ["is_deleted = %s"]
        params: list[Any] = [False]

        if self.live_only:
            conditions.append("is_archived = %s")
            params.append(False)

        if self.params_hashes:
            conditions.append(f"params_hash IN ({placeholders(len(self.params_hashes))})")
            params.extend(self.params_hashes)

        if self.published_after:
            conditions.append("published_date >= %s")
            params.append(to_db_timestamp(self.published_after))

        if self.origin_contains:
            conditions.append("LOWER(origin_city_name) LIKE %s")
            params.append(f"%{self.origin_contains.lower()}%")

        if self.destination_contains:
            conditions.append("LOWER(destination_city_name) LIKE %s")
            params.append(f"%{self.destination_contains.lower()}%")

        if self.origin_equals:
            conditions.append("origin_city_name = %s")
            params.append(self.origin_equals)

        identity: list[str] = []
        for suffix in self.phone_suffixes or []:
            identity.append("phone LIKE %s")
            params.append(f"%{suffix}")
        if self.sender_id is not None:
            identity.append("telegram_user_id = %s")
            params.append(self.sender_id)
        if identity:
            conditions.append(f"({' OR '.join(identity)})")

        if self.goods:
            conditions.append("LOWER(goods) = %s")
            params.append(self.goods.lower())

        if self.resolved_route is not None:
            columns = (
                "origin_city_id",
                "origin_country_id",
                "destination_city_id",
                "destination_country_id",
            )
            for column, value in zip(columns, self.resolved_route, strict=True):
                if value is None:
                    conditions.append(f"{column} IS NULL")
                else:
                    conditions.append(f"{column} = %s")
                    params.append(value)

        if self.description_hash_without_phone:
            conditions.append("description_hash_without_phone = %s")
            params.append(self.description_hash_without_phone)

        if self.exclude_description_hash:
            conditions.append("description_hash <> %s")
            params.append(self.exclude_description_hash)

        return " AND ".join(conditions), params

    def to_order_clause(self) -> str:
        return "published_date DESC, id DESC"

    def to_limit_clause(self) -> tuple[str, list[Any]]:
        return "LIMIT %s", [self.limit]


# === Search ===


def _type_match_condition(match: TypeMatch) -> tuple[str, list[Any]]:
    """Render one truck-type compatibility branch."""
    conditions: list[str] = []
    params: list[Any] = []

    if match.slot is None:
        conditions.append("cargo_type = %s AND cargo_type2 = %s")
        params.extend([TruckType.NOT_SPECIFIED.value, TruckType.NOT_SPECIFIED.value])
    else:
        conditions.append(f"{match.slot} = %s")
        params.append(match.truck_type.value)

    weight: list[str] = []
    if match.min_weight is not None:
        weight.append("weight >= %s")
        params.append(match.min_weight)
    if match.max_weight is not None:
        weight.append("weight < %s")
        params.append(match.max_weight)
    if weight:
        bounded = " AND ".join(weight)
        if match.allow_missing_weight:
            conditions.append(f"(({bounded}) OR weight IS NULL)")
        else:
            conditions.append(bounded)

    if match.domestic_only:
        conditions.append("origin_country_id = %s AND destination_country_id = %s")
        params.extend([HOME_COUNTRY_ID, HOME_COUNTRY_ID])

    return f"({' AND '.join(conditions)})", params


@dataclass
class AdSearchCriteria(BaseQueryCriteria):
    """Criteria for serving search results from a user's filter.

    Location ids are expected to be expanded already (see ``from_filter``).

    Example:
        >>> criteria = AdSearchCriteria.from_filter(search_filter, resolver, now)
        >>> where, params = criteria.to_where_clause()
        >>> # SELECT * FROM loads WHERE {where} ORDER BY {order} {limit}
    """

    ad_type: AdType = AdType.LOAD
    created_after: datetime | None = None
    max_expiration_counter: int = SEARCH_MAX_EXPIRATION_COUNTER
    max_open_counter: int = SEARCH_MAX_OPEN_COUNTER

    owner_id: int | None = None
    """List only this user's own ads"""

    excluded_ids: list[int] = field(default_factory=list)
    """Ads the user marked expired/invalid"""

    origin_city_ids: list[int] = field(default_factory=list)
    origin_country_ids: list[int] = field(default_factory=list)
    destination_city_ids: list[int] = field(default_factory=list)
    destination_country_ids: list[int] = field(default_factory=list)
    require_destination: bool = True
    """When no destination is chosen, still require a resolved destination"""

    max_duplication: int = LOAD_MAX_DUPLICATION
    max_duplication_restricted: int = LOAD_MAX_DUPLICATION_RESTRICTED
    restricted_country_ids: tuple[int, ...] = RESTRICTED_COUNTRY_IDS
    home_country_id: int = HOME_COUNTRY_ID

    type_matches: list[TypeMatch] = field(default_factory=list)
    is_dagruz: bool = False

    limit: int | None = 10
    offset: int = 0

    @property
    def table(self) -> str:
        return TABLE_BY_AD_TYPE[self.ad_type]

    @classmethod
    def from_filter(
        cls,
        search_filter: SearchFilter,
        places: "PlaceResolver",
        now: datetime | None = None,
        *,
        window_days: int = SEARCH_WINDOW_DAYS,
        nearest_limit: int = SEARCH_NEAREST_CITY_LIMIT,
        nearest_radius_km: float = SEARCH_NEAREST_CITY_RADIUS_KM,
    ) -> "AdSearchCriteria":
        """Expand a stored search filter into query criteria.

        Args:
            search_filter: The user's current filter
            places: Resolver used for hierarchy and proximity expansion
            now: Reference time (defaults to current UTC time)

        Returns:
            AdSearchCriteria ready to render
        """
        reference = now or datetime.now(tz=pytz.UTC)
        criteria = cls(
            ad_type=search_filter.ad_type,
            created_after=reference - timedelta(days=window_days),
            limit=search_filter.limit,
            offset=search_filter.offset,
            is_dagruz=search_filter.is_dagruz,
        )

        if search_filter.user_search_id is not None:
            criteria.owner_id = search_filter.user_search_id
        else:
            criteria.excluded_ids = list(search_filter.marked_expired_ids)

        latitude, longitude = search_filter.latitude, search_filter.longitude
        if latitude is not None and longitude is not None:
            criteria.origin_city_ids = places.nearest_cities(
                latitude,
                longitude,
                limit=nearest_limit,
                radius_km=nearest_radius_km,
            )
        else:
            criteria.origin_country_ids = _with_children(
                search_filter.origin_country_ids, places.child_country_ids
            )
            criteria.origin_city_ids = _with_children(
                search_filter.origin_city_ids, places.child_city_ids
            )

        criteria.destination_country_ids = _with_children(
            search_filter.destination_country_ids, places.child_country_ids
        )
        criteria.destination_city_ids = _with_children(
            search_filter.destination_city_ids, places.child_city_ids
        )

        if search_filter.cargo_type and search_filter.cargo_type != TruckType.NOT_SPECIFIED:
            criteria.type_matches = compatible_type_matches(search_filter.cargo_type)

        return criteria

    def to_where_clause(self) -> tuple[str, list[Any]]:
        """Build SQL WHERE clause with parameters."""
        conditions: list[str] = [
            "is_archived = %s",
            "is_deleted = %s",
            "expiration_flag_counter < %s",
            "open_message_counter < %s",
        ]
        params: list[Any] = [
            False,
            False,
            self.max_expiration_counter,
            self.max_open_counter,
        ]

        if self.created_after:
            conditions.append("created_at > %s")
            params.append(to_db_timestamp(self.created_after))

        if self.owner_id is not None:
            conditions.append("owner_id = %s")
            params.append(self.owner_id)
        elif self.excluded_ids:
            conditions.append(f"id NOT IN ({placeholders(len(self.excluded_ids))})")
            params.extend(self.excluded_ids)

        if self.origin_country_ids:
            conditions.append(
                f"origin_country_id IN ({placeholders(len(self.origin_country_ids))})"
            )
            params.extend(self.origin_country_ids)
        if self.origin_city_ids:
            conditions.append(
                f"origin_city_id IN ({placeholders(len(self.origin_city_ids))})"
            )
            params.extend(self.origin_city_ids)

        is_load = self.ad_type == AdType.LOAD

        if is_load:
            if self.destination_country_ids:
                conditions.append(
                    "destination_country_id IN "
                    f"({placeholders(len(self.destination_country_ids))})"
                )
                params.extend(self.destination_country_ids)
            elif self.require_destination:
                conditions.append("destination_country_id IS NOT NULL")
            if self.destination_city_ids:
                conditions.append(
                    "destination_city_id IN "
                    f"({placeholders(len(self.destination_city_ids))})"
                )
                params.extend(self.destination_city_ids)

            restricted = placeholders(len(self.restricted_country_ids))
            conditions.append(
                "((duplication_counter < %s"
                f" AND origin_country_id IN ({restricted})"
                f" AND destination_country_id IN ({restricted}))"
                " OR (duplication_counter < %s"
                " AND (origin_country_id <> %s OR destination_country_id <> %s)))"
            )
            params.append(self.max_duplication_restricted)
            params.extend(self.restricted_country_ids)
            params.extend(self.restricted_country_ids)
            params.extend(
                [self.max_duplication, self.home_country_id, self.home_country_id]
            )

        if self.type_matches:
            branches: list[str] = []
            for match in self.type_matches:
                if match.domestic_only and not is_load:
                    continue
                branch, branch_params = _type_match_condition(match)
                branches.append(branch)
                params.extend(branch_params)
            conditions.append(f"({' OR '.join(branches)})")
            if not self.is_dagruz:
                conditions.append("is_dagruz = %s")
                params.append(False)

        if self.is_dagruz:
            conditions.append("is_dagruz = %s")
            params.append(True)

        return " AND ".join(conditions), params

    def to_order_clause(self) -> str:
        """Build SQL ORDER BY clause.

        Example:
            >>> AdSearchCriteria().to_order_clause()
            'created_at DESC, distance ASC NULLS LAST, price DESC NULLS LAST, CASE WHEN phone IS NULL THEN 0 ELSE 1 END DESC'
        """
        if self.ad_type == AdType.VEHICLE:
            return "created_at DESC"
        return (
            "created_at DESC, distance ASC NULLS LAST, price DESC NULLS LAST, "
            "CASE WHEN phone IS NULL THEN 0 ELSE 1 END DESC"
        )

    def to_limit_clause(self) -> tuple[str, list[Any]]:
        """Build SQL LIMIT/OFFSET clause."""
        if self.limit is None:
            return "", []
        return "LIMIT %s OFFSET %s", [self.limit, self.offset]


def _with_children(ids: Sequence[int], expand: Any) -> list[int]:
    """Selected ids followed by their (deduplicated) descendants."""
    if not ids:
        return []
    expanded = list(dict.fromkeys(ids))
    for child_id in expand(ids):
        if child_id not in expanded:
            expanded.append(child_id)
    return expanded


# === Lifecycle ===


@dataclass
class LoadArchivalCriteria:
    """Live loads that exceeded an age or usage quota.

    Example:
        >>> where, params = LoadArchivalCriteria(now=now).to_where_clause()
        >>> # UPDATE loads SET is_archived = true WHERE {where}
    """

    now: datetime
    max_duplication: int = LOAD_MAX_DUPLICATION
    max_duplication_restricted: int = LOAD_MAX_DUPLICATION_RESTRICTED
    max_age_restricted_days: float = LOAD_MAX_AGE_RESTRICTED_DAYS
    ready_date_grace_days: float = LOAD_READY_DATE_GRACE_DAYS
    max_age_days: float = LOAD_MAX_AGE_DAYS
    max_published_age_days: float = LOAD_MAX_PUBLISHED_AGE_DAYS
    expiration_soft_limit: int = LOAD_EXPIRATION_SOFT_LIMIT
    open_soft_limit: int = LOAD_OPEN_SOFT_LIMIT
    expiration_hard_limit: int = LOAD_EXPIRATION_HARD_LIMIT
    open_hard_limit: int = LOAD_OPEN_HARD_LIMIT
    restricted_country_ids: tuple[int, ...] = RESTRICTED_COUNTRY_IDS

    table = "loads"

    def _ago(self, days: float) -> str:
        return to_db_timestamp(self.now - timedelta(days=days))

    def to_where_clause(self) -> tuple[str, list[Any]]:
        restricted = placeholders(len(self.restricted_country_ids))
        both_restricted = (
            f"origin_country_id IN ({restricted})"
            f" AND destination_country_id IN ({restricted})"
        )
        pair = [*self.restricted_country_ids, *self.restricted_country_ids]

        quotas = [
            "duplication_counter > %s",
            f"(duplication_counter > %s AND {both_restricted})",
            f"({both_restricted} AND created_at < %s)",
            "load_ready_date < %s",
            "created_at < %s",
            "published_date < %s",
            "(expiration_flag_counter > %s AND open_message_counter > %s)",
            "(expiration_flag_counter > %s AND open_message_counter > %s)",
        ]
        params: list[Any] = [
            False,
            False,
            self.max_duplication,
            self.max_duplication_restricted,
            *pair,
            *pair,
            self._ago(self.max_age_restricted_days),
            self._ago(self.ready_date_grace_days),
            self._ago(self.max_age_days),
            self._ago(self.max_published_age_days),
            self.expiration_soft_limit,
            self.open_soft_limit,
            self.expiration_hard_limit,
            self.open_hard_limit,
        ]
        where = f"is_archived = %s AND is_deleted = %s AND ({' OR '.join(quotas)})"
        return where, params


@dataclass
class VehicleArchivalCriteria:
    """Live vehicles that exceeded an age or usage quota."""

    now: datetime
    max_duplication: int = VEHICLE_MAX_DUPLICATION
    max_age_days: float = VEHICLE_MAX_AGE_DAYS
    max_published_age_days: float = VEHICLE_MAX_PUBLISHED_AGE_DAYS
    expiration_limit: int = VEHICLE_EXPIRATION_LIMIT

    table = "vehicles"

    def to_where_clause(self) -> tuple[str, list[Any]]:
        quotas = [
            "duplication_counter > %s",
            "created_at < %s",
            "published_date <= %s",
            "expiration_flag_counter > %s",
        ]
        params: list[Any] = [
            False,
            False,
            self.max_duplication,
            to_db_timestamp(self.now - timedelta(days=self.max_age_days)),
            to_db_timestamp(self.now - timedelta(days=self.max_published_age_days)),
            self.expiration_limit,
        ]
        where = f"is_archived = %s AND is_deleted = %s AND ({' OR '.join(quotas)})"
        return where, params


@dataclass
class SourceVerificationCriteria(BaseQueryCriteria):
    """Recently touched live ads of one channel whose source should be re-checked."""

    ad_type: AdType
    channel_id: int
    touched_after: datetime
    max_duplication: int | None = None
    limit: int = 45

    @property
    def table(self) -> str:
        return TABLE_BY_AD_TYPE[self.ad_type]

    def to_where_clause(self) -> tuple[str, list[Any]]:
        conditions = [
            "telegram_channel_id = %s",
            "updated_at > %s",
            "telegram_message_id IS NOT NULL",
            "is_deleted = %s",
            "is_archived = %s",
        ]
        params: list[Any] = [
            self.channel_id,
            to_db_timestamp(self.touched_after),
            False,
            False,
        ]
        if self.max_duplication is not None:
            conditions.append("duplication_counter < %s")
            params.append(self.max_duplication)
        return " AND ".join(conditions), params

    def to_order_clause(self) -> str:
        return "updated_at ASC"

    def to_limit_clause(self) -> tuple[str, list[Any]]:
        return "LIMIT %s", [self.limit]


# === Daily maintenance ===


@dataclass
class RouteCorrectionCriteria:
    """Loads on a country pair whose goods only ever travel the other way.

    Example:
        >>> where, params = RouteCorrectionCriteria().to_where_clause()
        >>> # UPDATE loads SET <origin and destination swapped> WHERE {where}
    """

    from_country_id: int = ROUTE_CORRECTION_FROM_COUNTRY_ID
    to_country_id: int = ROUTE_CORRECTION_TO_COUNTRY_ID
    goods: Sequence[str] = ROUTE_CORRECTION_GOODS

    table = "loads"

    def to_where_clause(self) -> tuple[str, list[Any]]:
        if not self.goods:
            raise ValueError("Route correction needs at least one goods pattern")
        goods_conditions = " OR ".join(["LOWER(goods) LIKE %s"] * len(self.goods))
        where = (
            "origin_country_id = %s AND destination_country_id = %s"
            f" AND ({goods_conditions})"
        )
        params: list[Any] = [
            self.from_country_id,
            self.to_country_id,
            *(f"%{word.lower()}%" for word in self.goods),
        ]
        return where, params


@dataclass
class PriceSampleCriteria:
    """Priced loads of one route used for per-kilo statistics.

    City ids include descendants so a district's loads count for its city.
    """

    origin_city_ids: list[int]
    destination_city_ids: list[int]
    created_after: datetime
    min_price: float = PRICE_STATS_MIN_PRICE
    min_weight: float = PRICE_STATS_MIN_WEIGHT
    max_weight: float = PRICE_STATS_MAX_WEIGHT
    max_duplication: int = PRICE_STATS_MAX_DUPLICATION

    table = "loads"

    @classmethod
    def for_route(
        cls,
        origin_city_id: int,
        destination_city_id: int,
        places: "PlaceResolver",
        now: datetime,
        window_days: float = PRICE_STATS_WINDOW_DAYS,
    ) -> "PriceSampleCriteria":
        return cls(
            origin_city_ids=_with_children([origin_city_id], places.child_city_ids),
            destination_city_ids=_with_children(
                [destination_city_id], places.child_city_ids
            ),
            created_after=now - timedelta(days=window_days),
        )

    def to_where_clause(self) -> tuple[str, list[Any]]:
        conditions = [
            f"origin_city_id IN ({placeholders(len(self.origin_city_ids))})",
            f"destination_city_id IN ({placeholders(len(self.destination_city_ids))})",
            "created_at >= %s",
            "duplication_counter < %s",
            "price IS NOT NULL",
            "price > %s",
            "weight IS NOT NULL",
            "weight > %s",
            "weight < %s",
        ]
        params: list[Any] = [
            *self.origin_city_ids,
            *self.destination_city_ids,
            to_db_timestamp(self.created_after),
            self.max_duplication,
            self.min_price,
            self.min_weight,
            self.max_weight,
        ]
        return " AND ".join(conditions), params


DUPLICATE_LOAD_RANKING_SQL = """
    SELECT id FROM (
        SELECT id, ROW_NUMBER() OVER (
            PARTITION BY phone, description_hash, origin_city_name, destination_city_name
            ORDER BY published_date DESC, id DESC
        ) AS rn
        FROM loads
        WHERE is_archived = %s
          AND is_deleted = %s
          AND phone IS NOT NULL
          AND description_hash IS NOT NULL
          AND origin_city_name IS NOT NULL
          AND destination_city_name IS NOT NULL
    ) ranked
    WHERE rn > 1
"""
"""Ids of live loads shadowed by a newer identical load (phone, text, route)."""
