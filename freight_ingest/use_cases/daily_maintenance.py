"""Daily maintenance use case.

Once a day: put loads whose goods only travel inbound back on their real
direction, then publish price-per-kilo statistics for every busy route that
touches the restricted countries.
"""

from datetime import datetime, timedelta

import pytz

from freight_ingest.adapters.query_builders import (
    PriceSampleCriteria,
    RouteCorrectionCriteria,
)
from freight_ingest.config.logging_config import get_logger
from freight_ingest.config.settings import Settings
from freight_ingest.domain.models import DailyMaintenanceResult, PriceStatistics
from freight_ingest.domain.protocols import RepositoryProtocol
from freight_ingest.services.place_resolver import PlaceResolver
from freight_ingest.services.price_statistics import summarize_prices_per_kilo

logger = get_logger(__name__)


def correct_reversed_routes(
    repository: RepositoryProtocol, settings: Settings, now: datetime
) -> int:
    goods = settings.lifecycle_route_correction_goods
    if not goods:
        return 0
    corrected = repository.correct_reversed_routes(
        RouteCorrectionCriteria(goods=tuple(goods)), now
    )
    if corrected:
        logger.info("reversed_routes_corrected", loads=corrected)
    return corrected


def route_price_statistics(
    repository: RepositoryProtocol,
    places: PlaceResolver,
    settings: Settings,
    origin_city_id: int,
    destination_city_id: int,
    now: datetime,
) -> PriceStatistics | None:
    """Statistics of one route, or None when it has too few priced loads."""
    criteria = PriceSampleCriteria.for_route(
        origin_city_id,
        destination_city_id,
        places,
        now,
        window_days=settings.lifecycle_price_stats_window_days,
    )
    summary = summarize_prices_per_kilo(repository.get_price_samples(criteria))
    if summary is None or summary.count < settings.lifecycle_price_stats_min_samples:
        return None
    return PriceStatistics(
        day=now.date(),
        origin_city_id=origin_city_id,
        destination_city_id=destination_city_id,
        average=round(summary.average, 2),
        median=round(summary.median, 2),
        max=round(summary.max, 2),
        min=round(summary.min, 2),
        count=summary.count,
    )


def daily_maintenance_use_case(
    repository: RepositoryProtocol,
    places: PlaceResolver,
    settings: Settings,
    now: datetime | None = None,
) -> DailyMaintenanceResult:
    """Run the daily corrections and statistics pass.

    Args:
        repository: Data repository
        places: Place resolver for child city expansion
        settings: Application settings
        now: Reference time (defaults to current UTC time)

    Returns:
        DailyMaintenanceResult with counts per step
    """
    reference = now or datetime.now(tz=pytz.UTC)
    result = DailyMaintenanceResult()

    result.routes_corrected = correct_reversed_routes(repository, settings, reference)

    routes = repository.get_price_route_pairs(
        settings.lifecycle_restricted_country_ids,
        reference - timedelta(days=settings.lifecycle_price_stats_window_days),
    )
    for origin_city_id, destination_city_id in routes:
        result.routes_measured += 1
        statistics = route_price_statistics(
            repository, places, settings, origin_city_id, destination_city_id, reference
        )
        if statistics is None:
            continue
        repository.save_price_statistics(statistics)
        result.statistics_saved += 1

    logger.info(
        "daily_maintenance_completed",
        routes_corrected=result.routes_corrected,
        routes_measured=result.routes_measured,
        statistics_saved=result.statistics_saved,
    )
    return result
