"""Crawl channels use case.

For every enabled channel: fetch messages above the stored checkpoint,
normalize and gate them, answer repeats from the memo, extract the rest,
resolve duplicates and finally advance the checkpoint. Sessions crawl
concurrently; the channels of one session are crawled one after another.
"""

import asyncio
import time
from collections import defaultdict
from collections.abc import Callable, Sequence
from datetime import datetime

import pytz

from freight_ingest.adapters.dedup_cache import DedupCache
from freight_ingest.config.logging_config import bind_context, get_logger, unbind_context
from freight_ingest.config.settings import Settings
from freight_ingest.domain.models import (
    AdCandidate,
    AdType,
    Channel,
    ChannelCrawlResult,
    CrawlResult,
    DedupOutcome,
    Sender,
    TelegramMessage,
)
from freight_ingest.domain.protocols import (
    ExtractionClientProtocol,
    MessageClientProtocol,
    RepositoryProtocol,
)
from freight_ingest.domain.specifications import (
    PreparedMessage,
    Specification,
    message_quality_gate,
)
from freight_ingest.observability.metrics import (
    CRAWL_DURATION_SECONDS,
    MESSAGES_FETCHED_TOTAL,
    MESSAGES_REJECTED_TOTAL,
)
from freight_ingest.services.ad_classifier import (
    classify_ad_type,
    is_closing_message,
    is_local_load,
)
from freight_ingest.services.text_normalizer import (
    compute_text_hashes,
    description_hash_without_phone,
    prepare_ad_text,
    remove_filler_words,
)
from freight_ingest.use_cases.extract_ads import extract_ads_use_case
from freight_ingest.use_cases.resolve_duplicates import DuplicateResolver

logger = get_logger(__name__)

ClientProvider = Callable[[str], MessageClientProtocol]
"""Returns the message client of a session name."""


def is_night(now: datetime, timezone: str, start_hour: int, end_hour: int) -> bool:
    """Whether ``now`` falls in the quiet hours of the crawl timezone.

    Example:
        >>> is_night(datetime(2024, 5, 1, 22, 30, tzinfo=pytz.UTC), "Asia/Tashkent", 1, 6)
        True
    """
    local = now.astimezone(pytz.timezone(timezone))
    return start_hour <= local.hour < end_hour


def unique_messages(messages: Sequence[TelegramMessage]) -> list[TelegramMessage]:
    seen: set[int] = set()
    result: list[TelegramMessage] = []
    for message in messages:
        if message.message_id in seen:
            continue
        seen.add(message.message_id)
        result.append(message)
    return result


class CrawlChannelsUseCase:
    """One crawl cycle over all enabled channels."""

    def __init__(
        self,
        repository: RepositoryProtocol,
        clients: ClientProvider,
        extraction_client: ExtractionClientProtocol,
        resolver: DuplicateResolver,
        settings: Settings,
        dedup_cache: DedupCache | None = None,
    ) -> None:
        self.repository = repository
        self.clients = clients
        self.extraction_client = extraction_client
        self.resolver = resolver
        self.settings = settings
        self.dedup_cache = dedup_cache or resolver.dedup_cache
        self._senders: dict[int, Sender | None] = {}

    async def run(self, now: datetime | None = None) -> CrawlResult:
        """Crawl every enabled channel once.

        Returns:
            CrawlResult with per-channel counts and isolated errors
        """
        reference = now or datetime.now(tz=pytz.UTC)
        start = time.perf_counter()
        self._senders = {}

        channels = self.repository.get_channels(enabled_only=True)
        by_session: dict[str, list[Channel]] = defaultdict(list)
        for channel in channels:
            by_session[channel.session].append(channel)

        logger.info(
            "crawl_cycle_started",
            channels=len(channels),
            sessions=sorted(by_session),
        )

        session_results = await asyncio.gather(
            *(
                self._crawl_session(session, session_channels, reference)
                for session, session_channels in by_session.items()
            )
        )

        result = CrawlResult()
        for channel_results, errors in session_results:
            result.channels.extend(channel_results)
            result.errors.extend(errors)

        CRAWL_DURATION_SECONDS.observe(time.perf_counter() - start)
        logger.info(
            "crawl_cycle_completed",
            created=result.total_created,
            merged=result.total_merged,
            errors=len(result.errors),
        )
        return result

    async def _crawl_session(
        self, session: str, channels: list[Channel], now: datetime
    ) -> tuple[list[ChannelCrawlResult], list[str]]:
        results: list[ChannelCrawlResult] = []
        errors: list[str] = []

        try:
            client = self.clients(session)
        except ValueError as e:
            logger.error("crawl_session_unavailable", session=session, error=str(e))
            return results, [f"Session {session}: {e}"]

        for channel in channels:
            bind_context(channel=channel.name, session=session)
            try:
                results.append(await self.crawl_channel(client, channel, now))
            except Exception as e:
                # One broken channel must not stop the others; checkpoint stays put
                errors.append(f"Channel {channel.name}: {e}")
                logger.error(
                    "channel_crawl_failed",
                    channel=channel.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                unbind_context("channel", "session")
        return results, errors

    def _fetch_limit(self, now: datetime) -> int:
        settings = self.settings
        if is_night(
            now,
            settings.crawl_timezone,
            settings.crawl_night_start_hour,
            settings.crawl_night_end_hour,
        ):
            return settings.crawl_limit_night
        return settings.crawl_limit_day

    def _quality_gate(self, now: datetime) -> Specification[PreparedMessage]:
        settings = self.settings
        return message_quality_gate(
            spammer_ids=settings.spammer_ids,
            spam_phrases=settings.spam_phrases,
            watermark_marker=settings.crawl_watermark_marker,
            max_age_days=settings.crawl_message_max_age_days,
            min_length=settings.crawl_min_message_length,
            now=now,
        )

    async def crawl_channel(
        self, client: MessageClientProtocol, channel: Channel, now: datetime
    ) -> ChannelCrawlResult:
        """Crawl one channel; the checkpoint only moves after a complete pass."""
        result = ChannelCrawlResult(channel=channel.name)
        limit = self._fetch_limit(now)

        logger.info(
            "channel_crawl_started",
            channel=channel.name,
            checkpoint=channel.last_message_id,
            limit=limit,
        )
        messages = unique_messages(
            await client.fetch_messages(channel.name, min_id=channel.last_message_id, limit=limit)
        )
        result.fetched = len(messages)
        MESSAGES_FETCHED_TOTAL.labels(channel=channel.name).inc(len(messages))

        if len(messages) < self.settings.crawl_min_batch:
            result.deferred = True
            logger.info(
                "channel_crawl_deferred",
                channel=channel.name,
                fetched=len(messages),
                reason="too_few_messages",
            )
            return result

        if channel.title is None and channel.id is not None:
            title = await client.get_channel_title(channel.name)
            if title:
                self.repository.update_channel_title(channel.id, title)
                channel.title = title

        candidates = await self._build_candidates(client, channel, messages, now)
        result.skipped_messages = len(messages) - len(candidates)

        if len(candidates) < self.settings.crawl_min_extraction_pass:
            result.deferred = True
            logger.info(
                "channel_crawl_deferred",
                channel=channel.name,
                candidates=len(candidates),
                reason="extraction_pass_too_small",
            )
            return result

        fresh: list[AdCandidate] = []
        for candidate in candidates:
            if await self.resolver.precheck(candidate, now) is None:
                fresh.append(candidate)
            else:
                MESSAGES_REJECTED_TOTAL.labels(reason="cached").inc()
        result.candidates = len(fresh)

        for ad_type in (AdType.LOAD, AdType.VEHICLE):
            typed = [candidate for candidate in fresh if candidate.ad_type == ad_type]
            if not typed:
                continue

            outcome = await extract_ads_use_case(
                typed,
                self.extraction_client,
                ad_type=ad_type,
                now=now,
                dedup_cache=self.dedup_cache,
            )
            result.dropped_batches += outcome.dropped_batches
            for candidate in outcome.unproductive:
                self.resolver.remember_unproductive(candidate, now)

            for extraction in outcome.extracted:
                decisions = await self.resolver.resolve_message(
                    extraction.candidate, extraction.ads, now
                )
                for decision in decisions:
                    if decision.outcome == DedupOutcome.CREATED:
                        result.created += 1
                    elif decision.outcome == DedupOutcome.MERGED:
                        result.merged += 1
                    elif decision.outcome == DedupOutcome.ECHO:
                        result.echoes += 1

        newest_id = max(message.message_id for message in messages)
        if channel.id is not None:
            self.repository.update_checkpoint(channel.id, newest_id, now)
        result.checkpoint = newest_id

        logger.info(
            "channel_crawl_completed",
            channel=channel.name,
            fetched=result.fetched,
            candidates=result.candidates,
            created=result.created,
            merged=result.merged,
            echoes=result.echoes,
            checkpoint=newest_id,
        )
        return result

    async def _build_candidates(
        self,
        client: MessageClientProtocol,
        channel: Channel,
        messages: Sequence[TelegramMessage],
        now: datetime,
    ) -> list[AdCandidate]:
        gate = self._quality_gate(now)
        language = self.settings.crawl_language
        candidates: list[AdCandidate] = []

        for message in messages:
            if message.sender_id is None:
                MESSAGES_REJECTED_TOTAL.labels(reason="no_sender").inc()
                continue

            prepared = prepare_ad_text(message.text, message.date, language)
            if not gate.is_satisfied_by(PreparedMessage(message=message, text=prepared)):
                MESSAGES_REJECTED_TOTAL.labels(reason="quality").inc()
                continue

            ad_type = classify_ad_type(prepared)
            if (ad_type == AdType.LOAD and not channel.crawl_loads) or (
                ad_type == AdType.VEHICLE and not channel.crawl_vehicles
            ):
                MESSAGES_REJECTED_TOTAL.labels(reason="ad_type_disabled").inc()
                continue

            sender = await self._get_sender(client, message.sender_id, channel.name)
            if sender is None or sender.is_deleted_account:
                MESSAGES_REJECTED_TOTAL.labels(reason="no_sender").inc()
                continue

            text = remove_filler_words(prepared)
            hashes = compute_text_hashes(message.text)
            candidates.append(
                AdCandidate(
                    message=message,
                    channel_id=channel.id,
                    ad_type=ad_type,
                    text=text,
                    raw_text=message.text,
                    text_hash=hashes.text_hash,
                    raw_hash=hashes.raw_hash,
                    trimmed_hash=hashes.trimmed_hash,
                    description_hash_without_phone=description_hash_without_phone(
                        message.text
                    ),
                    is_closing=is_closing_message(prepared),
                    is_local_load=ad_type == AdType.LOAD and is_local_load(text),
                    sender=sender,
                )
            )

        return candidates

    async def _get_sender(
        self, client: MessageClientProtocol, sender_id: int, channel: str
    ) -> Sender | None:
        """Stored sender first, then the upstream user entity (bots skipped)."""
        if sender_id in self._senders:
            return self._senders[sender_id]

        sender = self.repository.get_sender(sender_id)
        if sender is None:
            upstream = await client.get_sender(sender_id, channel)
            if upstream is not None:
                sender = self.repository.save_sender(upstream)

        self._senders[sender_id] = sender
        return sender
