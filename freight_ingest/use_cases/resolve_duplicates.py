"""Resolve duplicates use case.

Decides for every extracted ad whether it repeats a stored live ad (merge),
re-posts a load another broker already published (echo), or is new
(insert). Work on one message content hash is serialized with a keyed
asyncio lock; the memo written at the end of a message makes any later
sighting of the same text a cache hit.
"""

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

from freight_ingest.adapters.dedup_cache import DedupCache
from freight_ingest.config.logging_config import get_logger
from freight_ingest.domain.deduplication_constants import (
    ECHO_SENTINEL_ID,
    LIKELY_DISPATCHER_MIN_LOADS,
    LIKELY_OWNER_MAX_DUPLICATION,
    LIKELY_OWNER_MAX_LOADS,
    LIKELY_OWNER_MAX_TEXT_LENGTH,
)
from freight_ingest.domain.duplicate_lookup import DuplicateLookup
from freight_ingest.domain.exceptions import DuplicateRecordError
from freight_ingest.domain.models import (
    AdCandidate,
    AdType,
    DedupDecision,
    DedupOutcome,
    Load,
    RouteResolution,
    Sender,
    Vehicle,
)
from freight_ingest.domain.protocols import RepositoryProtocol
from freight_ingest.observability.metrics import ADS_CREATED_TOTAL, ADS_MERGED_TOTAL
from freight_ingest.services.deduplicator import (
    DedupContext,
    DedupWindows,
    EchoPolicy,
    compute_params_hashes,
    compute_vehicle_params_hash,
    merge_candidate_into,
    rules_for,
)
from freight_ingest.services.place_resolver import ORIGIN_SUFFIX_PATTERN, PlaceResolver

logger = get_logger(__name__)

PARAMS_HASH_CONFLICT_RULE = "params_hash_conflict"


@dataclass
class _KeyedLock:
    lock: asyncio.Lock
    holders: int = 0


class DuplicateResolver:
    """Runs the duplicate cascade and persists its outcome."""

    def __init__(
        self,
        repository: RepositoryProtocol,
        dedup_cache: DedupCache,
        place_resolver: PlaceResolver,
        *,
        windows: DedupWindows | None = None,
        echo_policy: EchoPolicy | None = None,
    ) -> None:
        self.repository = repository
        self.dedup_cache = dedup_cache
        self.place_resolver = place_resolver
        self.windows = windows or DedupWindows()
        self.echo_policy = echo_policy or EchoPolicy()
        self._locks: dict[tuple[AdType, str], _KeyedLock] = {}

    @asynccontextmanager
    async def _content_lock(self, ad_type: AdType, text_hash: str) -> AsyncIterator[None]:
        """Serialize work on one content hash; idle locks are dropped."""
        key = (ad_type, text_hash)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyedLock(asyncio.Lock())
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    # === Memo ===

    async def precheck(self, candidate: AdCandidate, now: datetime) -> list[int] | None:
        """Answer a message from the memo before extraction.

        Returns:
            Ids of the still stored records when the content was already
            resolved (the message is skipped; empty for content that produced
            nothing), None when it must be extracted
        """
        ad_type = candidate.ad_type
        async with self._content_lock(ad_type, candidate.text_hash):
            cached_ids = self.dedup_cache.lookup(ad_type, candidate.hashes, now)
            if cached_ids is None:
                return None
            if not cached_ids:
                logger.debug(
                    "dedup_cache_unproductive_hit",
                    ad_type=ad_type.value,
                    message_id=candidate.message.message_id,
                )
                return []

            refreshed = self.repository.refresh_seen(
                ad_type,
                cached_ids,
                url=candidate.message.post_url or "",
                channel_id=candidate.channel_id,
                message_id=candidate.message.message_id,
                published_date=candidate.message.date,
                unarchive=ad_type == AdType.VEHICLE,
            )
            if not refreshed:
                # Remembered records are gone; resolve against the store again
                return None
            self.dedup_cache.remember(
                ad_type, candidate.hashes[0], refreshed, now, refresh=True
            )
            logger.info(
                "dedup_cache_hit",
                ad_type=ad_type.value,
                message_id=candidate.message.message_id,
                cached=len(cached_ids),
                refreshed=len(refreshed),
            )
        return refreshed

    def remember_unproductive(self, candidate: AdCandidate, now: datetime) -> None:
        """Mark content that produced nothing storable."""
        self.dedup_cache.remember(
            candidate.ad_type, candidate.text_hash, [ECHO_SENTINEL_ID], now
        )

    # === Resolution ===

    async def resolve_message(
        self,
        candidate: AdCandidate,
        ads: Sequence[Load | Vehicle],
        now: datetime,
    ) -> list[DedupDecision]:
        """Resolve every ad built from one message and memoize the ids."""
        ad_type = candidate.ad_type
        decisions: list[DedupDecision] = []

        async with self._content_lock(ad_type, candidate.text_hash):
            for ad in ads:
                decisions.append(self.resolve_ad(ad, candidate, now))

            stored_ids: list[int] = []
            for decision in decisions:
                for ad_id in decision.ad_ids:
                    if ad_id not in stored_ids:
                        stored_ids.append(ad_id)
            self.dedup_cache.remember(
                ad_type, candidate.text_hash, stored_ids or [ECHO_SENTINEL_ID], now
            )
        return decisions

    def resolve_ad(
        self, ad: Load | Vehicle, candidate: AdCandidate, now: datetime
    ) -> DedupDecision:
        """Merge, drop as echo, or insert one extracted ad."""
        route = self._resolve_places(ad)
        sender = candidate.sender
        if sender is not None:
            self._record_sender_phone(sender, ad.phone)

        context = DedupContext.for_ad(
            ad,
            text_hash=candidate.text_hash,
            now=now,
            sender=sender,
            route=route,
            windows=self.windows,
        )

        for rule in rules_for(ad.AD_TYPE):
            criteria = rule.lookup(context)
            if criteria is None:
                continue
            matches = self.repository.find_duplicates(criteria)
            if matches:
                return self._merge(matches[0], ad, rule.name)

        if isinstance(ad, Load):
            decision = self._apply_echo_policy(context, ad)
            if decision is not None:
                return decision

        return self._insert(ad, candidate)

    def _resolve_places(self, ad: Load | Vehicle) -> RouteResolution:
        if isinstance(ad, Vehicle):
            route = RouteResolution(
                origin=self.place_resolver.resolve(ad.origin_city_name, ORIGIN_SUFFIX_PATTERN)
            )
            destinations = self.place_resolver.resolve_destinations(
                ad.destination_city_names
            )
            ad.destination_city_ids = [m.id for m in destinations if m.is_city]
            ad.destination_country_ids = sorted(
                {m.country_id if m.is_city else m.id for m in destinations} - {None}
            )
        else:
            if ad.is_local_load and ad.origin_city_name:
                ad.destination_city_name = ad.origin_city_name
            route = self.place_resolver.resolve_route(
                ad.origin_city_name, ad.destination_city_name
            )
            if ad.is_local_load and route.origin is not None:
                route = RouteResolution(origin=route.origin, destination=route.origin)
            ad.destination_city_id = route.destination_city_id
            ad.destination_country_id = route.destination_country_id
            if route.origin_city_id and route.destination_city_id:
                ad.distance = self.repository.get_distance(
                    route.origin_city_id, route.destination_city_id
                )

        ad.origin_city_id = route.origin_city_id
        ad.origin_country_id = route.origin_country_id
        return route

    def _record_sender_phone(self, sender: Sender, phone: str | None) -> None:
        if sender.add_phone(phone):
            self.repository.save_sender(sender)
            logger.debug(
                "sender_phone_added", telegram_id=sender.telegram_id, phone=phone
            )

    def _apply_echo_policy(self, context: DedupContext, ad: Load) -> DedupDecision | None:
        criteria = self.echo_policy.criteria(context)
        if criteria is None:
            return None
        matches = self.repository.find_duplicates(criteria)
        if not matches:
            return None

        self.repository.increment_different_phone_counter(
            [match.id for match in matches if match.id is not None]
        )
        outcome, target = self.echo_policy.decide(
            context, [match for match in matches if isinstance(match, Load)]
        )
        if outcome == DedupOutcome.MERGED and target is not None:
            return self._merge(target, ad, criteria.rule)
        if outcome == DedupOutcome.ECHO:
            logger.info(
                "dedup_echo_detected",
                matched=[match.id for match in matches],
                sender_id=context.sender_id,
            )
            return DedupDecision(outcome=DedupOutcome.ECHO, rule=criteria.rule)
        return None

    def _merge(self, existing: Load | Vehicle, ad: Load | Vehicle, rule: str) -> DedupDecision:
        merged = merge_candidate_into(existing, ad)
        self.repository.update_ad(merged)
        ADS_MERGED_TOTAL.labels(ad_type=ad.AD_TYPE.value, rule=rule).inc()
        logger.info(
            "dedup_rule_matched",
            ad_type=ad.AD_TYPE.value,
            rule=rule,
            ad_id=existing.id,
            duplication_counter=merged.duplication_counter,
        )
        return DedupDecision(
            outcome=DedupOutcome.MERGED,
            ad_ids=[existing.id] if existing.id is not None else [],
            rule=rule,
        )

    def _insert(self, ad: Load | Vehicle, candidate: AdCandidate) -> DedupDecision:
        sender_id = ad.telegram_user_id
        if isinstance(ad, Load):
            ad.params_hash = compute_params_hashes(
                ad.origin_city_name, ad.destination_city_name, sender_id, candidate.text_hash
            )[0]
            if sender_id is not None:
                phones = candidate.sender.known_phones() if candidate.sender else []
                if ad.phone and ad.phone not in phones:
                    phones.append(ad.phone)
                owned = self.repository.count_loads_by_owner(
                    sender_id, phones, LIKELY_OWNER_MAX_DUPLICATION
                )
                ad.is_likely_owner = (
                    owned < LIKELY_OWNER_MAX_LOADS
                    and len(candidate.raw_text) < LIKELY_OWNER_MAX_TEXT_LENGTH
                )
        else:
            ad.params_hash = compute_vehicle_params_hash(
                ad.origin_city_name, sender_id, candidate.text_hash
            )
            if sender_id is not None:
                ad.is_likely_dispatcher = (
                    self.repository.count_loads_by_sender(sender_id)
                    > LIKELY_DISPATCHER_MIN_LOADS
                )

        ad.duplication_counter = 0
        ad.is_archived = False
        try:
            ad_id = self.repository.insert_ad(ad)
        except DuplicateRecordError as e:
            winners = self.repository.find_duplicates(
                DuplicateLookup(
                    rule=PARAMS_HASH_CONFLICT_RULE,
                    ad_type=ad.AD_TYPE,
                    params_hashes=[e.params_hash],
                )
            )
            if not winners:
                raise
            return self._merge(winners[0], ad, PARAMS_HASH_CONFLICT_RULE)

        ADS_CREATED_TOTAL.labels(ad_type=ad.AD_TYPE.value).inc()
        logger.info(
            "ad_created",
            ad_type=ad.AD_TYPE.value,
            ad_id=ad_id,
            origin=ad.origin_city_name,
            origin_resolved=ad.origin_city_id is not None or ad.origin_country_id is not None,
        )
        return DedupDecision(outcome=DedupOutcome.CREATED, ad_ids=[ad_id])
