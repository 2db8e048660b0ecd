"""Search ads use case.

Turns a user's search filter, optionally completed from typed query text,
into criteria and returns one page of matching live ads with the total.
"""

from dataclasses import dataclass, field
from datetime import datetime

import pytz

from freight_ingest.adapters.query_builders import AdSearchCriteria
from freight_ingest.config.logging_config import get_logger
from freight_ingest.config.settings import Settings
from freight_ingest.domain.models import Ad, PlaceMatch, SearchFilter
from freight_ingest.domain.protocols import RepositoryProtocol
from freight_ingest.services.place_resolver import PlaceResolver

logger = get_logger(__name__)


@dataclass
class SearchPage:
    total: int
    ads: list[Ad] = field(default_factory=list)


def _place_ids(match: PlaceMatch | None) -> tuple[list[int], list[int]]:
    """(city ids, country ids) selected by a parsed place."""
    if match is None:
        return [], []
    if match.is_city:
        return [match.id], []
    return [], [match.id]


def apply_query_text(
    search_filter: SearchFilter, query_text: str, places: PlaceResolver
) -> SearchFilter:
    """Fill origin, destination and truck type parsed from "A B [type]" text.

    Example:
        >>> updated = apply_query_text(SearchFilter(), "Toshkent Samarqand isuzu", places)
        >>> updated.cargo_type
        <TruckType.ISUZU: 'isuzu'>
    """
    parsed = places.extract_from_to(query_text)
    updated = search_filter.model_copy(deep=True)

    if parsed.origin is not None:
        updated.origin_name = parsed.origin.name
        updated.origin_city_ids, updated.origin_country_ids = _place_ids(parsed.origin)
        updated.latitude = updated.longitude = None
    if parsed.destination is not None:
        updated.destination_name = parsed.destination.name
        (
            updated.destination_city_ids,
            updated.destination_country_ids,
        ) = _place_ids(parsed.destination)
    if parsed.truck_type is not None:
        updated.cargo_type = parsed.truck_type

    logger.debug(
        "search_query_parsed",
        query=query_text,
        origin=updated.origin_name,
        destination=updated.destination_name,
        cargo_type=updated.cargo_type.value if updated.cargo_type else None,
    )
    return updated


def build_search_criteria(
    search_filter: SearchFilter,
    places: PlaceResolver,
    settings: Settings,
    now: datetime,
) -> AdSearchCriteria:
    criteria = AdSearchCriteria.from_filter(
        search_filter,
        places,
        now,
        window_days=settings.search_window_days,
        nearest_limit=settings.search_nearest_city_limit,
        nearest_radius_km=settings.search_nearest_city_radius_km,
    )
    criteria.max_duplication = settings.lifecycle_load_max_duplication
    criteria.max_duplication_restricted = settings.lifecycle_load_max_duplication_restricted
    criteria.restricted_country_ids = tuple(settings.lifecycle_restricted_country_ids)
    return criteria


def search_ads_use_case(
    repository: RepositoryProtocol,
    places: PlaceResolver,
    settings: Settings,
    search_filter: SearchFilter,
    query_text: str | None = None,
    now: datetime | None = None,
) -> SearchPage:
    """Run a search for the serving layer.

    Args:
        repository: Data repository
        places: Place resolver for query parsing and hierarchy expansion
        settings: Application settings
        search_filter: The user's current filter
        query_text: Optional typed "origin destination" text
        now: Reference time (defaults to current UTC time)

    Returns:
        SearchPage with the total match count and the requested page
    """
    reference = now or datetime.now(tz=pytz.UTC)
    if query_text and query_text.strip():
        search_filter = apply_query_text(search_filter, query_text, places)

    criteria = build_search_criteria(search_filter, places, settings, reference)
    total = repository.count_ads(criteria)
    ads = repository.search_ads(criteria) if total else []

    logger.info(
        "search_completed",
        ad_type=search_filter.ad_type.value,
        total=total,
        returned=len(ads),
        offset=search_filter.offset,
    )
    return SearchPage(total=total, ads=ads)
