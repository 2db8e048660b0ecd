"""Archive stale ads use case.

Periodic maintenance: retire loads and vehicles past their age or usage
quotas, prune retired ids from users' marked lists, collapse live load
duplicates, link loads to their owners and purge expired memo entries.
Transitions only move forward: nothing here revives an archived or
deleted ad.
"""

from datetime import datetime

import pytz

from freight_ingest.adapters.query_builders import (
    LoadArchivalCriteria,
    VehicleArchivalCriteria,
)
from freight_ingest.config.logging_config import get_logger
from freight_ingest.config.settings import Settings
from freight_ingest.domain.models import AdType, ArchiveResult
from freight_ingest.domain.protocols import RepositoryProtocol
from freight_ingest.observability.metrics import ADS_ARCHIVED_TOTAL

logger = get_logger(__name__)


def _flagged(archived: dict[int, int]) -> list[int]:
    """Archived ids that users had flagged as expired/invalid."""
    return sorted(ad_id for ad_id, counter in archived.items() if counter > 0)


def archive_stale_ads_use_case(
    repository: RepositoryProtocol,
    settings: Settings,
    now: datetime | None = None,
) -> ArchiveResult:
    """Run one maintenance sweep.

    Args:
        repository: Data repository
        settings: Application settings (quota overrides)
        now: Reference time (defaults to current UTC time)

    Returns:
        ArchiveResult with counts per step
    """
    reference = now or datetime.now(tz=pytz.UTC)
    result = ArchiveResult()
    restricted = tuple(settings.lifecycle_restricted_country_ids)

    archived_loads = repository.archive_ads(
        LoadArchivalCriteria(
            now=reference,
            max_duplication=settings.lifecycle_load_max_duplication,
            max_duplication_restricted=settings.lifecycle_load_max_duplication_restricted,
            restricted_country_ids=restricted,
        ),
        reference,
    )
    result.loads_archived = len(archived_loads)

    archived_vehicles = repository.archive_ads(
        VehicleArchivalCriteria(
            now=reference,
            max_duplication=settings.lifecycle_vehicle_max_duplication,
        ),
        reference,
    )
    result.vehicles_archived = len(archived_vehicles)

    result.users_pruned += repository.prune_marked_ids(
        AdType.LOAD, _flagged(archived_loads)
    )
    result.users_pruned += repository.prune_marked_ids(
        AdType.VEHICLE, _flagged(archived_vehicles)
    )

    result.duplicates_collapsed = repository.collapse_duplicate_loads(reference)
    result.owners_backfilled = repository.backfill_owner_ids()
    purged = repository.purge_expired_cache(reference)

    if result.loads_archived:
        ADS_ARCHIVED_TOTAL.labels(ad_type=AdType.LOAD.value, reason="quota").inc(
            result.loads_archived
        )
    if result.vehicles_archived:
        ADS_ARCHIVED_TOTAL.labels(ad_type=AdType.VEHICLE.value, reason="quota").inc(
            result.vehicles_archived
        )
    if result.duplicates_collapsed:
        ADS_ARCHIVED_TOTAL.labels(ad_type=AdType.LOAD.value, reason="duplicate").inc(
            result.duplicates_collapsed
        )

    logger.info(
        "archive_sweep_completed",
        loads_archived=result.loads_archived,
        vehicles_archived=result.vehicles_archived,
        users_pruned=result.users_pruned,
        duplicates_collapsed=result.duplicates_collapsed,
        owners_backfilled=result.owners_backfilled,
        cache_purged=purged,
    )
    return result
