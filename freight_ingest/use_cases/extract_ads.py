"""Extract ads use case.

Groups normalized candidates into extraction batches, sends each batch to
the extraction service off the event loop, validates the yield per message
and builds unsaved Load/Vehicle records carrying their source pointers.
"""

import asyncio
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from freight_ingest.adapters.dedup_cache import DedupCache
from freight_ingest.config.logging_config import get_logger
from freight_ingest.domain.exceptions import LowQualityBatchError
from freight_ingest.domain.extraction_constants import (
    CHUNK_SIZE_DEFAULT,
    CHUNK_SIZE_LONG_TEXTS,
    CHUNK_SIZE_SHORT_TEXTS,
    LONG_TEXT_CHARS,
    SHORT_TEXT_CHARS,
)
from freight_ingest.domain.models import AdCandidate, AdType, ExtractedLoad, Load, Vehicle
from freight_ingest.domain.protocols import ExtractionClientProtocol
from freight_ingest.observability.metrics import EXTRACTION_BATCHES_TOTAL
from freight_ingest.services.ad_classifier import is_local_load
from freight_ingest.services.extraction_postprocessor import (
    build_load,
    build_vehicle,
    is_low_quality_yield,
)

logger = get_logger(__name__)

EXTRACTION_COUNTER_PREFIX = "extraction-batches:"
EXTRACTION_COUNTER_TTL = timedelta(days=2)


@dataclass
class MessageExtraction:
    """Records built from one candidate message."""

    candidate: AdCandidate
    ads: list[Load | Vehicle] = field(default_factory=list)


@dataclass
class ExtractionOutcome:
    extracted: list[MessageExtraction] = field(default_factory=list)
    unproductive: list[AdCandidate] = field(default_factory=list)
    """Candidates whose yield was empty or dropped as low quality"""
    batches: int = 0
    dropped_batches: int = 0


def chunk_size_for(texts: Sequence[str]) -> int:
    """Batch size for a set of texts, driven by the longest one.

    Example:
        >>> chunk_size_for(["x" * 2500, "short"])
        4
        >>> chunk_size_for(["x" * 100])
        14
    """
    if not texts:
        return CHUNK_SIZE_DEFAULT
    longest = max(len(text) for text in texts)
    if longest > LONG_TEXT_CHARS:
        return CHUNK_SIZE_LONG_TEXTS
    if longest < SHORT_TEXT_CHARS:
        return CHUNK_SIZE_SHORT_TEXTS
    return CHUNK_SIZE_DEFAULT


def chunk_texts(candidates: Sequence[AdCandidate]) -> list[list[AdCandidate]]:
    """Unique candidates by content hash, split into length-sorted chunks.

    Each chunk is sized from the texts it would start with: the window of
    the previous chunk's size at the current position. Long texts at the
    head of the list therefore travel in small batches while the short
    tail is packed densely.
    """
    unique: dict[str, AdCandidate] = {}
    for candidate in candidates:
        unique.setdefault(candidate.text_hash, candidate)

    ordered = sorted(unique.values(), key=lambda c: len(c.text), reverse=True)
    chunks: list[list[AdCandidate]] = []
    size = CHUNK_SIZE_DEFAULT
    start = 0
    while start < len(ordered):
        window = ordered[start : start + size]
        size = min(chunk_size_for([c.text for c in window]), len(ordered) - start)
        chunks.append(ordered[start : start + size])
        start += size
    return chunks


def has_route(ad: Load | Vehicle) -> bool:
    """Loads need both ends, vehicles their origin."""
    if isinstance(ad, Load):
        return bool(ad.origin_city_name and ad.destination_city_name)
    return bool(ad.origin_city_name)


def check_yield(ad_type: AdType, items: Sequence[Any]) -> None:
    """Reject a message's extraction yield.

    Raises:
        LowQualityBatchError: Nothing extracted, or several bare routes
    """
    if not items:
        raise LowQualityBatchError("extraction returned no records")
    if ad_type == AdType.LOAD and is_low_quality_yield(
        [item for item in items if isinstance(item, ExtractedLoad)]
    ):
        raise LowQualityBatchError(
            f"{len(items)} records without identifiable fields"
        )


def attach_source(ad: Load | Vehicle, candidate: AdCandidate) -> Load | Vehicle:
    """Copy the source message pointers and content hashes onto a built ad."""
    message = candidate.message
    ad.telegram_user_id = message.sender_id
    ad.telegram_channel_id = candidate.channel_id
    ad.telegram_message_id = message.message_id
    ad.url = message.post_url
    ad.published_date = message.date
    ad.description_hash = candidate.text_hash
    if isinstance(ad, Load):
        ad.description_hash_without_phone = candidate.description_hash_without_phone
        ad.is_local_load = candidate.is_local_load or is_local_load(
            ad.origin_city_name, ad.destination_city_name, ad.goods
        )
    return ad


async def extract_ads_use_case(
    candidates: Sequence[AdCandidate],
    extraction_client: ExtractionClientProtocol,
    *,
    ad_type: AdType,
    now: datetime,
    dedup_cache: DedupCache | None = None,
) -> ExtractionOutcome:
    """Extract structured ads for candidates of one ad type.

    Args:
        candidates: Normalized messages routed to this ad type
        extraction_client: Structured extraction service (blocking)
        ad_type: LOAD or VEHICLE
        now: Reference time for relative ready dates
        dedup_cache: When given, counts extraction batches per day

    Returns:
        ExtractionOutcome with built ads grouped per message

    Raises:
        LLMAPIError: Extraction service unavailable after retries
        ValidationError: Extraction responses never validated
    """
    outcome = ExtractionOutcome()

    for chunk in chunk_texts(candidates):
        by_id = {candidate.message.message_id: candidate for candidate in chunk}
        items = [(message_id, candidate.text) for message_id, candidate in by_id.items()]

        records = await asyncio.to_thread(extraction_client.extract_batch, ad_type, items)
        outcome.batches += 1

        if dedup_cache is not None:
            daily = dedup_cache.increment(
                f"{EXTRACTION_COUNTER_PREFIX}{now:%Y-%m-%d}", now, EXTRACTION_COUNTER_TTL
            )
            logger.debug("extraction_daily_batches", ad_type=ad_type.value, count=daily)

        if not records:
            outcome.dropped_batches += 1
            outcome.unproductive.extend(chunk)
            EXTRACTION_BATCHES_TOTAL.labels(ad_type=ad_type.value, outcome="empty").inc()
            logger.warning(
                "extraction_batch_empty", ad_type=ad_type.value, items=len(items)
            )
            continue

        grouped: dict[int, list[Any]] = defaultdict(list)
        for record in records:
            grouped[record.id].append(record)

        for message_id, candidate in by_id.items():
            message_records = grouped.get(message_id, [])
            try:
                check_yield(ad_type, message_records)
            except LowQualityBatchError as e:
                outcome.unproductive.append(candidate)
                logger.info(
                    "extraction_yield_dropped",
                    ad_type=ad_type.value,
                    message_id=message_id,
                    reason=str(e),
                )
                continue

            extraction = MessageExtraction(candidate=candidate)
            for record in message_records:
                if ad_type == AdType.LOAD:
                    ad: Load | Vehicle = build_load(record, candidate.text, now)
                else:
                    ad = build_vehicle(record, candidate.text)
                if not has_route(ad):
                    logger.debug(
                        "extraction_record_without_route",
                        ad_type=ad_type.value,
                        message_id=message_id,
                    )
                    continue
                extraction.ads.append(attach_source(ad, candidate))

            if not extraction.ads:
                outcome.unproductive.append(candidate)
                logger.info(
                    "extraction_yield_dropped",
                    ad_type=ad_type.value,
                    message_id=message_id,
                    reason="no record with a route",
                )
                continue
            outcome.extracted.append(extraction)

        EXTRACTION_BATCHES_TOTAL.labels(ad_type=ad_type.value, outcome="extracted").inc()

    logger.info(
        "extraction_completed",
        ad_type=ad_type.value,
        candidates=len(candidates),
        batches=outcome.batches,
        messages_with_ads=len(outcome.extracted),
        unproductive=len(outcome.unproductive),
    )
    return outcome
