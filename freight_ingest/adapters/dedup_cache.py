"""Persistence-backed memo of message content hash → stored ad ids.

The memo doubles as a lock: once a message's content has been resolved, any
later sighting of the same text is answered from here without extraction.
Entries are plain comma separated id lists so they stay readable in the
``dedup_cache`` table.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Final

from freight_ingest.config.logging_config import get_logger
from freight_ingest.domain.deduplication_constants import (
    CACHE_REFRESH_TTL_DAYS,
    ECHO_SENTINEL_ID,
    LOAD_CACHE_TTL_DAYS,
    VEHICLE_CACHE_TTL_DAYS,
)
from freight_ingest.domain.models import AdType
from freight_ingest.domain.protocols import RepositoryProtocol

__all__ = ["CACHE_KEY_PREFIXES", "DedupCache", "decode_ids", "encode_ids"]

logger = get_logger(__name__)

CACHE_KEY_PREFIXES: Final[dict[AdType, str]] = {
    AdType.LOAD: "load-message:",
    AdType.VEHICLE: "vehicle-message:",
}


def encode_ids(ids: Iterable[int]) -> str:
    return ",".join(str(ad_id) for ad_id in ids)


def decode_ids(value: str | None) -> list[int]:
    """Parse a memo value, dropping the sentinel and anything non-numeric.

    Example:
        >>> decode_ids("12,1,,x,40")
        [12, 40]
    """
    if not value:
        return []
    ids: list[int] = []
    for part in value.split(","):
        part = part.strip()
        if not part.isdigit():
            continue
        ad_id = int(part)
        if ad_id != ECHO_SENTINEL_ID and ad_id not in ids:
            ids.append(ad_id)
    return ids


class DedupCache:
    """TTL memo over the repository's cache table."""

    def __init__(
        self,
        repository: RepositoryProtocol,
        *,
        load_ttl_days: float = LOAD_CACHE_TTL_DAYS,
        vehicle_ttl_days: float = VEHICLE_CACHE_TTL_DAYS,
        refresh_ttl_days: float = CACHE_REFRESH_TTL_DAYS,
    ) -> None:
        self._repository = repository
        self._ttl_days = {
            AdType.LOAD: load_ttl_days,
            AdType.VEHICLE: vehicle_ttl_days,
        }
        self._refresh_ttl_days = refresh_ttl_days

    @staticmethod
    def key(ad_type: AdType, text_hash: str) -> str:
        return f"{CACHE_KEY_PREFIXES[ad_type]}{text_hash}"

    def lookup(
        self, ad_type: AdType, hashes: Sequence[str], now: datetime
    ) -> list[int] | None:
        """Return remembered ids for the first hash that has an entry.

        Hashes are tried in order (content, raw, trimmed). None means no
        entry; an entry holding only the sentinel (content that produced
        nothing storable) yields an empty list.
        """
        for text_hash in hashes:
            value = self._repository.cache_get(self.key(ad_type, text_hash), now)
            if value:
                return decode_ids(value)
        return None

    def remember(
        self,
        ad_type: AdType,
        text_hash: str,
        ad_ids: Sequence[int],
        now: datetime,
        *,
        refresh: bool = False,
    ) -> None:
        """Store ids for a content hash.

        ``refresh`` applies the shorter lifetime used when a cache hit
        re-points existing records at a new message.
        """
        if not ad_ids:
            return
        ttl_days = self._refresh_ttl_days if refresh else self._ttl_days[ad_type]
        self._repository.cache_set(
            self.key(ad_type, text_hash),
            encode_ids(ad_ids),
            now + timedelta(days=ttl_days),
        )
        logger.debug(
            "dedup_cache_written",
            ad_type=ad_type.value,
            ids=len(ad_ids),
            ttl_days=ttl_days,
        )

    def increment(self, key: str, now: datetime, ttl: timedelta) -> int:
        """Bump a counter stored alongside the memo entries."""
        return self._repository.cache_increment(key, now + ttl, now)
