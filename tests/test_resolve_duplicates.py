"""Tests for the resolve duplicates use case."""

import asyncio
from typing import Any
from unittest.mock import Mock

import pytest

from freight_ingest.adapters.dedup_cache import DedupCache
from freight_ingest.domain.duplicate_lookup import DuplicateLookup
from freight_ingest.domain.exceptions import DuplicateRecordError
from freight_ingest.domain.models import (
    AdCandidate,
    AdType,
    DedupDecision,
    DedupOutcome,
    Load,
    Vehicle,
)
from freight_ingest.domain.protocols import RepositoryProtocol
from freight_ingest.services.deduplicator import compute_params_hashes
from freight_ingest.services.place_resolver import PlaceResolver
from freight_ingest.use_cases.extract_ads import attach_source
from freight_ingest.use_cases.resolve_duplicates import DuplicateResolver
from tests.conftest import (
    NOW,
    SAMPLE_LOAD_TEXT,
    make_candidate,
    make_load,
    make_sender,
)

ECHO_TEXT = "Toshkentdan Samarqandga 15 tonna un bor tent kerak 935551122"
VEHICLE_TEXT = "Fura bor Toshkentdan Moskvaga yuk kerak 901234567"


@pytest.fixture
def resolver(repo: RepositoryProtocol, places: PlaceResolver) -> DuplicateResolver:
    return DuplicateResolver(repo, DedupCache(repo), places)


def extracted_load(candidate: AdCandidate, **kwargs: Any) -> Load:
    """Load as the extraction step builds it for a candidate."""
    fields: dict[str, Any] = {
        "origin_city_name": "Toshkentdan",
        "destination_city_name": "Samarqandga",
        "weight": 15,
        "goods": "un",
        "phone": "901234567",
        "description": candidate.text,
    }
    fields.update(kwargs)
    load = attach_source(Load(**fields), candidate)
    assert isinstance(load, Load)
    return load


def extracted_vehicle(candidate: AdCandidate, **kwargs: Any) -> Vehicle:
    fields: dict[str, Any] = {
        "origin_city_name": "Toshkentdan",
        "destination_city_names": ["Moskva"],
        "phone": "901234567",
        "description": candidate.text,
    }
    fields.update(kwargs)
    vehicle = attach_source(Vehicle(**fields), candidate)
    assert isinstance(vehicle, Vehicle)
    return vehicle


def resolve(resolver: DuplicateResolver, candidate: AdCandidate, ad: Load | Vehicle) -> DedupDecision:
    decisions = asyncio.run(resolver.resolve_message(candidate, [ad], NOW))
    assert len(decisions) == 1
    return decisions[0]


def stored_load(repo: RepositoryProtocol, ad_id: int) -> Load:
    loads = repo.get_ads_by_ids(AdType.LOAD, [ad_id])
    assert len(loads) == 1
    load = loads[0]
    assert isinstance(load, Load)
    return load


def create_first_load(resolver: DuplicateResolver) -> int:
    candidate = make_candidate(message_id=101)
    decision = resolve(resolver, candidate, extracted_load(candidate))
    assert decision.outcome == DedupOutcome.CREATED
    return decision.ad_ids[0]


class TestCreate:
    """New ads are inserted with resolved places."""

    def test_new_load(self, resolver: DuplicateResolver, repo: RepositoryProtocol) -> None:
        """An unseen load is created with its composite hash and places."""
        candidate = make_candidate(message_id=101)

        decision = resolve(resolver, candidate, extracted_load(candidate))

        assert decision.outcome == DedupOutcome.CREATED
        load = stored_load(repo, decision.ad_ids[0])
        assert load.params_hash == compute_params_hashes(
            "Toshkentdan", "Samarqandga", 42, candidate.text_hash
        )[0]
        assert (load.origin_city_id, load.origin_country_id) == (1, 1)
        assert (load.destination_city_id, load.destination_country_id) == (2, 1)
        assert load.duplication_counter == 0
        assert load.is_likely_owner is True
        assert load.distance is None
        assert load.url == "https://t.me/yuk_markazi/101"

    def test_known_distance_is_stored(
        self, resolver: DuplicateResolver, repo: RepositoryProtocol
    ) -> None:
        """Route length comes from the distance table."""
        repo.save_distance(1, 2, 300)

        ad_id = create_first_load(resolver)

        assert stored_load(repo, ad_id).distance == 300

    def test_sender_phone_recorded(
        self, resolver: DuplicateResolver, repo: RepositoryProtocol
    ) -> None:
        """Phones seen in ads are added to the sender."""
        create_first_load(resolver)

        sender = repo.get_sender(42)
        assert sender is not None
        assert sender.other_phones == ["901234567"]

    def test_busy_sender_is_not_likely_owner(
        self, resolver: DuplicateResolver, repo: RepositoryProtocol
    ) -> None:
        """Senders with several live loads are dispatchers, not owners."""
        for message_id in range(1, 5):
            repo.insert_ad(
                make_load(
                    telegram_message_id=message_id,
                    origin_city_name="Moskvadan",
                    destination_city_name="Almatyga",
                    origin_city_id=4,
                    origin_country_id=2,
                    destination_city_id=5,
                    destination_country_id=8,
                )
            )

        ad_id = create_first_load(resolver)

        assert stored_load(repo, ad_id).is_likely_owner is False

    def test_local_load_stays_in_origin(
        self, resolver: DuplicateResolver, repo: RepositoryProtocol
    ) -> None:
        """Intra-city loads get the origin as destination."""
        candidate = make_candidate("Toshkent ichida mestniy yuk bor 901234567")
        ad = extracted_load(candidate, destination_city_name=None, goods="mestniy yuk")

        decision = resolve(resolver, candidate, ad)

        load = stored_load(repo, decision.ad_ids[0])
        assert load.is_local_load is True
        assert load.destination_city_name == "Toshkentdan"
        assert load.destination_city_id == 1

    def test_new_vehicle(self, resolver: DuplicateResolver, repo: RepositoryProtocol) -> None:
        """Vehicle destinations resolve to city and country ids."""
        candidate = make_candidate(VEHICLE_TEXT, message_id=202, ad_type=AdType.VEHICLE)

        decision = resolve(resolver, candidate, extracted_vehicle(candidate))

        assert decision.outcome == DedupOutcome.CREATED
        vehicle = repo.get_ads_by_ids(AdType.VEHICLE, decision.ad_ids)[0]
        assert isinstance(vehicle, Vehicle)
        assert vehicle.origin_city_id == 1
        assert vehicle.destination_city_ids == [4]
        assert vehicle.destination_country_ids == [2]
        assert vehicle.is_likely_dispatcher is False


class TestMergeRules:
    """Reposts are merged into the stored ad."""

    def test_same_text_same_sender(
        self, resolver: DuplicateResolver, repo: RepositoryProtocol
    ) -> None:
        """The composite hash catches a repost of the same text."""
        first_id = create_first_load(resolver)
        repost = make_candidate(message_id=102)

        decision = resolve(resolver, repost, extracted_load(repost))

        assert decision.outcome == DedupOutcome.MERGED
        assert decision.rule == "params_hash"
        assert decision.ad_ids == [first_id]
        load = stored_load(repo, first_id)
        assert load.duplication_counter == 1
        assert load.url == "https://t.me/yuk_markazi/102"
        assert load.duplicate_message_urls == ["https://t.me/yuk_markazi/101"]

    def test_same_phone_and_goods(
        self, resolver: DuplicateResolver, repo: RepositoryProtocol
    ) -> None:
        """Another wording with the same phone and goods is the same load."""
        first_id = create_first_load(resolver)
        candidate = make_candidate(
            "Toshkentdan Samarqandga un bor 15 tonna tel 901234567",
            message_id=103,
            sender=make_sender(77),
        )

        decision = resolve(resolver, candidate, extracted_load(candidate))

        assert decision.outcome == DedupOutcome.MERGED
        assert decision.rule == "phone_goods"
        assert decision.ad_ids == [first_id]

    def test_same_sender_similar_route(self, resolver: DuplicateResolver) -> None:
        """The same sender on the same route within two days is merged."""
        first_id = create_first_load(resolver)
        candidate = make_candidate("Toshkentdan Samarqandga sement bor", message_id=104)

        decision = resolve(
            resolver, candidate, extracted_load(candidate, phone=None, goods="sement")
        )

        assert decision.rule == "sender_phones"
        assert decision.ad_ids == [first_id]

    def test_same_resolved_places(self, resolver: DuplicateResolver) -> None:
        """Differently spelled places resolving to the same ids are merged."""
        first_id = create_first_load(resolver)
        candidate = make_candidate("Tashkent Samarkand yuk bor", message_id=105)

        decision = resolve(
            resolver,
            candidate,
            extracted_load(
                candidate,
                origin_city_name="Tashkent",
                destination_city_name="Samarkand",
                phone=None,
                goods=None,
            ),
        )

        assert decision.rule == "resolved_route"
        assert decision.ad_ids == [first_id]

    def test_vehicle_same_phone_and_origin(self, resolver: DuplicateResolver) -> None:
        """Vehicles match on phone and exact origin."""
        first = make_candidate(VEHICLE_TEXT, message_id=202, ad_type=AdType.VEHICLE)
        created = resolve(resolver, first, extracted_vehicle(first))
        second = make_candidate(
            "Fura bor Toshkentdan Rossiyaga 901234567", message_id=203, ad_type=AdType.VEHICLE
        )

        decision = resolve(
            resolver, second, extracted_vehicle(second, destination_city_names=["Rossiya"])
        )

        assert decision.outcome == DedupOutcome.MERGED
        assert decision.rule == "phone_origin"
        assert decision.ad_ids == created.ad_ids

    def test_deleted_load_is_not_resurrected(
        self, resolver: DuplicateResolver, repo: RepositoryProtocol
    ) -> None:
        """A repost of a deleted load creates a new record."""
        first_id = create_first_load(resolver)
        repo.mark_ads_deleted(AdType.LOAD, [first_id], NOW)
        repost = make_candidate(message_id=102)

        decision = resolve(resolver, repost, extracted_load(repost))

        assert decision.outcome == DedupOutcome.CREATED
        assert decision.ad_ids != [first_id]


class TestEcho:
    """Loads re-posted by another broker with their own phone."""

    def test_other_broker_echo(
        self, resolver: DuplicateResolver, repo: RepositoryProtocol
    ) -> None:
        """The echo is not stored; the original counts it."""
        first_id = create_first_load(resolver)
        candidate = make_candidate(ECHO_TEXT, message_id=110, sender=make_sender(77))

        decision = resolve(resolver, candidate, extracted_load(candidate, phone="935551122"))

        assert decision.outcome == DedupOutcome.ECHO
        assert decision.ad_ids == []
        assert stored_load(repo, first_id).duplication_counter_different_phone == 1
        assert repo.count_loads_by_sender(77) == 0
        sender = repo.get_sender(77)
        assert sender is not None
        assert "935551122" in sender.known_phones()

    def test_echo_content_is_remembered(self, resolver: DuplicateResolver) -> None:
        """A later sighting of the echo text is skipped."""
        create_first_load(resolver)
        candidate = make_candidate(ECHO_TEXT, message_id=110, sender=make_sender(77))
        resolve(resolver, candidate, extracted_load(candidate, phone="935551122"))

        again = make_candidate(ECHO_TEXT, message_id=111, sender=make_sender(77))

        assert asyncio.run(resolver.precheck(again, NOW)) == []


class TestPrecheck:
    """Memo answers before extraction."""

    def test_miss(self, resolver: DuplicateResolver) -> None:
        """Unknown content must be extracted."""
        assert asyncio.run(resolver.precheck(make_candidate(), NOW)) is None

    def test_retransmit_refreshes_records(
        self, resolver: DuplicateResolver, repo: RepositoryProtocol
    ) -> None:
        """A known text moves the stored ad to the new message."""
        first_id = create_first_load(resolver)
        retransmit = make_candidate(message_id=120, channel_id=2)

        assert asyncio.run(resolver.precheck(retransmit, NOW)) == [first_id]

        load = stored_load(repo, first_id)
        assert load.duplication_counter == 1
        assert load.telegram_message_id == 120
        assert load.telegram_channel_id == 2

    def test_unproductive_content(self, resolver: DuplicateResolver) -> None:
        """Content that produced nothing is skipped without ids."""
        candidate = make_candidate("Assalomu alaykum hammaga yaxshi kun tilayman")
        resolver.remember_unproductive(candidate, NOW)

        assert asyncio.run(resolver.precheck(candidate, NOW)) == []

    def test_remembered_records_gone(
        self, resolver: DuplicateResolver, repo: RepositoryProtocol
    ) -> None:
        """When remembered records were deleted the text is resolved again."""
        first_id = create_first_load(resolver)
        repo.mark_ads_deleted(AdType.LOAD, [first_id], NOW)

        assert asyncio.run(resolver.precheck(make_candidate(message_id=121), NOW)) is None


class TestInsertConflict:
    """Concurrent inserts of the same ad."""

    def test_conflict_merges_into_winner(
        self, mock_repository: Mock, places: PlaceResolver
    ) -> None:
        """The losing insert merges into the record that won."""
        winner = make_load(id=9, params_hash="h1")

        def find_duplicates(lookup: DuplicateLookup) -> list[Load]:
            return [winner] if lookup.rule == "params_hash_conflict" else []

        mock_repository.find_duplicates.side_effect = find_duplicates
        mock_repository.insert_ad.side_effect = DuplicateRecordError("h1")
        resolver = DuplicateResolver(mock_repository, DedupCache(mock_repository), places)
        candidate = make_candidate(SAMPLE_LOAD_TEXT, message_id=130)

        decision = resolve(resolver, candidate, extracted_load(candidate))

        assert decision.outcome == DedupOutcome.MERGED
        assert decision.rule == "params_hash_conflict"
        assert decision.ad_ids == [9]
        merged = mock_repository.update_ad.call_args.args[0]
        assert merged.id == 9
        assert merged.duplication_counter == 1

    def test_conflict_without_winner_raises(
        self, mock_repository: Mock, places: PlaceResolver
    ) -> None:
        """A collision that cannot be found again is surfaced."""
        mock_repository.insert_ad.side_effect = DuplicateRecordError("h1")
        resolver = DuplicateResolver(mock_repository, DedupCache(mock_repository), places)
        candidate = make_candidate(message_id=131)

        with pytest.raises(DuplicateRecordError):
            resolve(resolver, candidate, extracted_load(candidate))


def test_concurrent_messages_with_same_text(
    resolver: DuplicateResolver, repo: RepositoryProtocol
) -> None:
    """Two sightings resolved concurrently produce a single record."""
    first = make_candidate(message_id=140)
    second = make_candidate(message_id=141)

    async def run() -> list[list[DedupDecision]]:
        return await asyncio.gather(
            resolver.resolve_message(first, [extracted_load(first)], NOW),
            resolver.resolve_message(second, [extracted_load(second)], NOW),
        )

    outcomes = sorted(decisions[0].outcome.value for decisions in asyncio.run(run()))

    assert outcomes == [DedupOutcome.CREATED.value, DedupOutcome.MERGED.value]
    assert repo.count_loads_by_sender(42) == 1
