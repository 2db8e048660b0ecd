"""Protocol definitions for dependency inversion.

These abstract interfaces define contracts that adapters must implement.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from freight_ingest.domain.duplicate_lookup import DuplicateLookup
from freight_ingest.domain.models import (
    Ad,
    AdType,
    Channel,
    ChannelConfig,
    City,
    Country,
    ExtractedLoad,
    ExtractedVehicle,
    PriceStatistics,
    Sender,
    TelegramMessage,
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


class MessageClientProtocol(Protocol):
    """Upstream channel client (one authenticated session)."""

    async def fetch_messages(
        self, channel: str, min_id: int | None = None, limit: int = 100
    ) -> list[TelegramMessage]:
        """Fetch messages newer than ``min_id``, newest first.

        Raises:
            TelegramAPIError: On API communication errors
            RateLimitError: On flood wait longer than the client tolerates
        """
        ...

    async def get_messages_by_ids(
        self, channel: str, message_ids: Sequence[int]
    ) -> list[TelegramMessage]:
        """Fetch specific messages; missing (deleted) ones are omitted."""
        ...

    async def get_channel_title(self, channel: str) -> str | None:
        ...

    async def get_sender(self, sender_id: int, channel: str | None = None) -> Sender | None:
        """Resolve an upstream user; None for bots and unknown users."""
        ...

    async def close(self) -> None:
        ...


class ExtractionClientProtocol(Protocol):
    """Structured extraction service (LLM)."""

    def extract_batch(
        self, ad_type: AdType, items: Sequence[tuple[int, str]]
    ) -> list[ExtractedLoad] | list[ExtractedVehicle]:
        """Extract records from ``(id, text)`` items; each record carries its item id.

        Raises:
            LLMAPIError: After retries are exhausted
            ValidationError: When the response never validates
        """
        ...


class RepositoryProtocol(Protocol):
    """Protocol for ad, channel, sender and reference data storage."""

    # Reference data
    def get_cities(self) -> list[City]:
        ...

    def get_countries(self) -> list[Country]:
        ...

    def save_cities(self, cities: list[City]) -> int:
        ...

    def save_countries(self, countries: list[Country]) -> int:
        ...

    def get_distance(self, city_a: int, city_b: int) -> float | None:
        """Route length between two cities in either direction."""
        ...

    def save_distance(self, city_a: int, city_b: int, distance_km: float) -> None:
        ...

    # Channels
    def sync_channels(self, configs: list[ChannelConfig]) -> list[Channel]:
        """Upsert configured channels, keeping stored checkpoints."""
        ...

    def get_channels(self, enabled_only: bool = True) -> list[Channel]:
        ...

    def update_channel_title(self, channel_id: int, title: str) -> None:
        ...

    def update_checkpoint(
        self, channel_id: int, last_message_id: int, crawled_at: datetime
    ) -> None:
        ...

    # Senders
    def get_sender(self, telegram_id: int) -> Sender | None:
        ...

    def save_sender(self, sender: Sender) -> Sender:
        """Insert or update by telegram id; returns the stored sender."""
        ...

    def prune_marked_ids(self, ad_type: AdType, ad_ids: Sequence[int]) -> int:
        """Remove ad ids from every sender's marked list; returns senders updated."""
        ...

    # Ads
    def find_duplicates(self, lookup: DuplicateLookup) -> list[Ad]:
        """Most recent stored ads matching a duplicate rule's lookup."""
        ...

    def get_ads_by_ids(self, ad_type: AdType, ad_ids: Sequence[int]) -> list[Ad]:
        """Fetch non-deleted ads by id."""
        ...

    def insert_ad(self, ad: Ad) -> int:
        """Insert a new ad and return its id.

        Raises:
            DuplicateRecordError: If a live ad with the same params hash exists
        """
        ...

    def update_ad(self, ad: Ad) -> bool:
        """Persist a merged ad; deleted ads are left untouched.

        Returns:
            True if a row was updated
        """
        ...

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
        """Point ads at a new sighting of their message; returns refreshed ids."""
        ...

    def increment_different_phone_counter(self, ad_ids: Sequence[int]) -> None:
        ...

    def count_loads_by_owner(
        self, sender_id: int, phones: Sequence[str], max_duplication: int
    ) -> int:
        ...

    def count_loads_by_sender(self, sender_id: int) -> int:
        ...

    def search_ads(self, criteria: "AdSearchCriteria") -> list[Ad]:
        ...

    def count_ads(self, criteria: "AdSearchCriteria") -> int:
        ...

    # Lifecycle
    def get_ads_for_verification(
        self, criteria: "SourceVerificationCriteria"
    ) -> list[Ad]:
        ...

    def touch_ads(self, ad_type: AdType, ad_ids: Sequence[int], now: datetime) -> int:
        ...

    def mark_ads_deleted(
        self, ad_type: AdType, ad_ids: Sequence[int], now: datetime
    ) -> int:
        ...

    def archive_ads(
        self,
        criteria: "LoadArchivalCriteria | VehicleArchivalCriteria",
        now: datetime,
    ) -> dict[int, int]:
        """Archive matching ads.

        Returns:
            Mapping of archived ad id to its expiration flag counter
        """
        ...

    def collapse_duplicate_loads(self, now: datetime) -> int:
        ...

    def backfill_owner_ids(self) -> int:
        ...

    # Daily maintenance
    def correct_reversed_routes(
        self, criteria: "RouteCorrectionCriteria", now: datetime
    ) -> int:
        """Swap the ends of matching loads; returns the number corrected."""
        ...

    def get_price_route_pairs(
        self, country_ids: Sequence[int], created_after: datetime
    ) -> list[tuple[int, int]]:
        ...

    def get_price_samples(self, criteria: "PriceSampleCriteria") -> list[tuple[float, float]]:
        ...

    def save_price_statistics(self, statistics: PriceStatistics) -> None:
        ...

    def get_price_statistics(
        self, origin_city_id: int, destination_city_id: int
    ) -> list[PriceStatistics]:
        ...

    # TTL cache storage
    def cache_get(self, key: str, now: datetime) -> str | None:
        ...

    def cache_set(self, key: str, value: str, expires_at: datetime) -> None:
        ...

    def cache_increment(self, key: str, expires_at: datetime, now: datetime) -> int:
        ...

    def purge_expired_cache(self, now: datetime) -> int:
        ...

    def close(self) -> None:
        ...

