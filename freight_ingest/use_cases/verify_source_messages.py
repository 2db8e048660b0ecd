"""Verify source messages use case.

Re-reads the upstream messages behind recently touched live ads. Ads whose
message still exists are touched; ads whose message was removed by its
author are archived and soft-deleted.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

import pytz

from freight_ingest.adapters.query_builders import SourceVerificationCriteria
from freight_ingest.config.logging_config import get_logger
from freight_ingest.config.settings import Settings
from freight_ingest.domain.models import AdType, Channel, VerificationResult
from freight_ingest.domain.protocols import MessageClientProtocol, RepositoryProtocol
from freight_ingest.observability.metrics import ADS_ARCHIVED_TOTAL
from freight_ingest.use_cases.crawl_channels import is_night

logger = get_logger(__name__)


def build_verification_criteria(
    settings: Settings, channel_id: int, ad_type: AdType, now: datetime
) -> SourceVerificationCriteria:
    """Selection window and batch size for one channel and ad type."""
    night = is_night(
        now,
        settings.crawl_timezone,
        settings.crawl_night_start_hour,
        settings.crawl_night_end_hour,
    )
    if ad_type == AdType.LOAD:
        return SourceVerificationCriteria(
            ad_type=AdType.LOAD,
            channel_id=channel_id,
            touched_after=now - timedelta(days=settings.lifecycle_load_verify_window_days),
            max_duplication=settings.lifecycle_load_verify_max_duplication,
            limit=(
                settings.lifecycle_load_verify_limit_night
                if night
                else settings.lifecycle_load_verify_limit_day
            ),
        )
    return SourceVerificationCriteria(
        ad_type=AdType.VEHICLE,
        channel_id=channel_id,
        touched_after=now - timedelta(days=settings.lifecycle_vehicle_verify_window_days),
        limit=(
            settings.lifecycle_vehicle_verify_limit_night
            if night
            else settings.lifecycle_vehicle_verify_limit_day
        ),
    )


class VerifySourceMessagesUseCase:
    """Checks that stored ads still have their upstream message."""

    def __init__(
        self,
        repository: RepositoryProtocol,
        clients: Callable[[str], MessageClientProtocol],
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.clients = clients
        self.settings = settings

    async def run(self, now: datetime | None = None) -> VerificationResult:
        reference = now or datetime.now(tz=pytz.UTC)
        result = VerificationResult()

        for channel in self.repository.get_channels(enabled_only=True):
            if channel.id is None:
                continue
            try:
                await self._verify_channel(channel, channel.id, reference, result)
            except Exception as e:
                result.errors.append(f"Channel {channel.name}: {e}")
                logger.error(
                    "source_verification_failed",
                    channel=channel.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        logger.info(
            "source_verification_completed",
            checked=result.checked,
            refreshed=result.refreshed,
            deleted=result.deleted,
            errors=len(result.errors),
        )
        return result

    async def _verify_channel(
        self,
        channel: Channel,
        channel_id: int,
        now: datetime,
        result: VerificationResult,
    ) -> None:
        client = self.clients(channel.session)

        for ad_type in (AdType.LOAD, AdType.VEHICLE):
            if (ad_type == AdType.LOAD and not channel.crawl_loads) or (
                ad_type == AdType.VEHICLE and not channel.crawl_vehicles
            ):
                continue

            criteria = build_verification_criteria(self.settings, channel_id, ad_type, now)
            ads = self.repository.get_ads_for_verification(criteria)
            if not ads:
                continue

            message_ids = sorted(
                {ad.telegram_message_id for ad in ads if ad.telegram_message_id is not None}
            )
            present = {
                message.message_id
                for message in await client.get_messages_by_ids(channel.name, message_ids)
            }

            alive = [ad.id for ad in ads if ad.id is not None and ad.telegram_message_id in present]
            gone = [
                ad.id for ad in ads if ad.id is not None and ad.telegram_message_id not in present
            ]

            result.checked += len(ads)
            result.refreshed += self.repository.touch_ads(ad_type, alive, now)
            deleted = self.repository.mark_ads_deleted(ad_type, gone, now)
            result.deleted += deleted
            if deleted:
                ADS_ARCHIVED_TOTAL.labels(ad_type=ad_type.value, reason="source_deleted").inc(
                    deleted
                )

            logger.info(
                "channel_sources_verified",
                channel=channel.name,
                ad_type=ad_type.value,
                checked=len(ads),
                alive=len(alive),
                deleted=deleted,
            )
