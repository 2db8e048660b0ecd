"""Tests for duplicate rules and merge policy."""

from datetime import timedelta

import pytest

from freight_ingest.domain.exceptions import ValidationError
from freight_ingest.domain.models import (
    AdType,
    DedupOutcome,
    PaymentType,
    PlaceMatch,
    PlaceType,
    RouteResolution,
    TruckType,
)
from freight_ingest.services.deduplicator import (
    DedupContext,
    DedupWindows,
    EchoPolicy,
    MergeCeilings,
    compute_params_hashes,
    compute_vehicle_params_hash,
    merge_candidate_into,
    params_hash_rule,
    phone_goods_rule,
    resolved_route_rule,
    rules_for,
    sender_phones_rule,
    strip_destination_suffix,
    strip_origin_suffix,
    vehicle_phone_origin_rule,
)
from tests.conftest import NOW, make_load, make_sender, make_vehicle


def load_context(**kwargs: object) -> DedupContext:
    defaults: dict[str, object] = {
        "ad_type": AdType.LOAD,
        "origin": "Toshkentdan",
        "destination": "Samarqandga",
        "sender_id": 42,
        "text_hash": "ab12",
        "now": NOW,
        "phone": "901234567",
        "goods": "un",
    }
    defaults.update(kwargs)
    return DedupContext(**defaults)  # type: ignore[arg-type]


def city(place_id: int, country_id: int) -> PlaceMatch:
    return PlaceMatch(
        id=place_id, name=str(place_id), type=PlaceType.CITY, country_id=country_id
    )


def test_strip_suffixes() -> None:
    """From/to suffixes are removed from route names."""
    assert strip_origin_suffix(" Toshkentdan ") == "Toshkent"
    assert strip_destination_suffix("Samarqandgacha") == "Samarqand"
    assert strip_destination_suffix("Moskvaga") == "Moskva"
    assert strip_origin_suffix(None) is None


def test_compute_params_hashes() -> None:
    """Suffixed names yield the exact hash plus the stripped variant."""
    hashes = compute_params_hashes("Toshkentdan", "Samarqandga", 42, "ab12")

    assert len(hashes) == 2
    assert compute_params_hashes("Toshkent", "Samarqand", 42, "ab12") == [hashes[1]]
    assert compute_params_hashes("Toshkentdan", "Samarqandga", 43, "ab12")[0] != hashes[0]


def test_compute_vehicle_params_hash_is_deterministic() -> None:
    """Vehicle hash depends on origin, sender and text."""
    first = compute_vehicle_params_hash("Toshkent", 42, "ab12")

    assert first == compute_vehicle_params_hash("Toshkent", 42, "ab12")
    assert first != compute_vehicle_params_hash("Toshkent", 42, "cd34")


class TestLoadRules:
    """Tests for the load duplicate cascade."""

    def test_params_hash_rule(self) -> None:
        """Composite hash lookup within its window."""
        criteria = params_hash_rule(load_context())

        assert criteria is not None
        assert criteria.rule == "params_hash"
        assert criteria.params_hashes == compute_params_hashes(
            "Toshkentdan", "Samarqandga", 42, "ab12"
        )
        assert criteria.published_after == NOW - timedelta(days=4)

    def test_params_hash_rule_needs_sender(self) -> None:
        """Without a sender the composite hash is meaningless."""
        assert params_hash_rule(load_context(sender_id=None)) is None
        assert params_hash_rule(load_context(destination=None)) is None

    def test_phone_goods_rule(self) -> None:
        """Phone and goods match on fuzzy route stems, live loads only."""
        criteria = phone_goods_rule(load_context(phone="+998901234567"))

        assert criteria is not None
        assert criteria.origin_contains == "Toshkent"
        assert criteria.destination_contains == "Samarqand"
        assert criteria.phone_suffixes == ["901234567"]
        assert criteria.goods == "un"
        assert criteria.live_only
        assert criteria.published_after == NOW - timedelta(days=5)

    def test_phone_goods_rule_needs_phone_and_goods(self) -> None:
        """Short phones and missing goods skip the rule."""
        assert phone_goods_rule(load_context(phone="12345")) is None
        assert phone_goods_rule(load_context(goods=None)) is None

    def test_sender_phones_rule(self) -> None:
        """Sender phones and id are compared on the route stems."""
        context = load_context(sender_phones=("998935551122", "901234567"))

        criteria = sender_phones_rule(context)

        assert criteria is not None
        assert criteria.phone_suffixes == ["901234567", "935551122"]
        assert criteria.sender_id == 42
        assert criteria.published_after == NOW - timedelta(days=2)

    def test_sender_phones_rule_without_identity(self) -> None:
        """No phone and no sender leaves nothing to compare."""
        assert sender_phones_rule(load_context(phone=None, sender_id=None)) is None

    def test_resolved_route_rule(self) -> None:
        """Resolved place ids replace name matching."""
        route = RouteResolution(origin=city(1, 1), destination=city(2, 1))

        criteria = resolved_route_rule(load_context(route=route))

        assert criteria is not None
        assert criteria.resolved_route == (1, 1, 2, 1)

    def test_resolved_route_rule_needs_resolution(self) -> None:
        """Unresolved ends skip the rule."""
        assert resolved_route_rule(load_context()) is None
        assert resolved_route_rule(
            load_context(route=RouteResolution(origin=city(1, 1)))
        ) is None

    def test_custom_windows(self) -> None:
        """Windows come from the context."""
        context = load_context(windows=DedupWindows(params_hash=1))

        criteria = params_hash_rule(context)

        assert criteria is not None
        assert criteria.published_after == NOW - timedelta(days=1)

    def test_cascade_order(self) -> None:
        """Rules run in a fixed order per ad type."""
        assert [rule.name for rule in rules_for(AdType.LOAD)] == [
            "params_hash",
            "phone_goods",
            "sender_phones",
            "resolved_route",
        ]
        assert [rule.name for rule in rules_for(AdType.VEHICLE)] == [
            "params_hash",
            "phone_origin",
        ]

    def test_rules_ignore_other_type(self) -> None:
        """A vehicle context never triggers a load rule."""
        context = load_context(ad_type=AdType.VEHICLE)

        assert all(rule.lookup(context) is None for rule in rules_for(AdType.LOAD))


def test_vehicle_phone_origin_rule() -> None:
    """Vehicles match on phone and exact origin."""
    context = DedupContext.for_ad(make_vehicle(), text_hash="ef56", now=NOW)

    criteria = vehicle_phone_origin_rule(context)

    assert criteria is not None
    assert criteria.ad_type == AdType.VEHICLE
    assert criteria.origin_equals == "Toshkentdan"
    assert criteria.phone_suffixes == ["901234567"]


def test_context_for_ad() -> None:
    """Context picks the ad fields and the sender's phones."""
    sender = make_sender(phone="998935551122", other_phones=["901234567", "977777777"])

    context = DedupContext.for_ad(
        make_load(description_hash_without_phone="d1"),
        text_hash="ab12",
        now=NOW,
        sender=sender,
    )

    assert context.origin == "Toshkentdan"
    assert context.goods == "un"
    assert context.sender_phones == ("998935551122", "901234567")
    assert context.description_hash_without_phone == "d1"
    assert context.phone_suffixes() == ["901234567", "935551122"]


class TestEchoPolicy:
    """Tests for the echo decision."""

    def test_criteria(self) -> None:
        """Echo lookup compares phoneless hashes of differing texts."""
        criteria = EchoPolicy().criteria(load_context(description_hash_without_phone="d1"))

        assert criteria is not None
        assert criteria.description_hash_without_phone == "d1"
        assert criteria.exclude_description_hash == "ab12"
        assert criteria.published_after == NOW - timedelta(days=8)

    def test_criteria_disabled(self) -> None:
        """Disabled policy and missing hash skip the lookup."""
        context = load_context(description_hash_without_phone="d1")

        assert EchoPolicy(enabled=False).criteria(context) is None
        assert EchoPolicy().criteria(load_context()) is None

    def test_same_sender_merges(self) -> None:
        """A re-post by the same sender is merged."""
        match = make_load(id=7, telegram_user_id=42)

        assert EchoPolicy().decide(load_context(), [match]) == (DedupOutcome.MERGED, match)

    def test_other_sender_with_phone_is_echo(self) -> None:
        """Another broker's copy of a load with a phone is an echo."""
        match = make_load(id=7, telegram_user_id=77)

        assert EchoPolicy().decide(load_context(), [match]) == (DedupOutcome.ECHO, None)

    def test_phoneless_match_creates(self) -> None:
        """A candidate with a phone repeating a phoneless load is new."""
        match = make_load(id=7, telegram_user_id=77, phone=None)

        assert EchoPolicy().decide(load_context(), [match]) == (DedupOutcome.CREATED, None)

    def test_both_phoneless(self) -> None:
        """Two phoneless copies are echoes unless configured otherwise."""
        match = make_load(id=7, telegram_user_id=77, phone=None)
        context = load_context(phone=None)

        assert EchoPolicy().decide(context, [match])[0] == DedupOutcome.ECHO
        assert (
            EchoPolicy(phoneless_is_echo=False).decide(context, [match])[0]
            == DedupOutcome.CREATED
        )


class TestMergeCandidateInto:
    """Tests for merging a duplicate into the stored ad."""

    def test_fills_empty_fields_and_moves_source(self) -> None:
        """Empty fields are filled; source pointer and counter advance."""
        existing = make_load(id=7, goods=None, price=None, duplication_counter=2)
        incoming = make_load(
            goods="sement",
            price=1500,
            payment_type=PaymentType.CASH,
            cargo_type=TruckType.TENTED,
            telegram_message_id=150,
            url="https://t.me/yuk_markazi/150",
            published_date=NOW,
        )

        merged = merge_candidate_into(existing, incoming)

        assert merged.id == 7
        assert merged.goods == "sement"
        assert merged.price == 1500
        assert merged.payment_type == PaymentType.CASH
        assert merged.cargo_type == TruckType.TENTED
        assert merged.telegram_message_id == 150
        assert merged.url == "https://t.me/yuk_markazi/150"
        assert merged.published_date == NOW
        assert merged.duplication_counter == 3
        assert merged.duplicate_message_urls == ["https://t.me/yuk_markazi/101"]
        assert existing.duplication_counter == 2

    def test_existing_values_kept(self) -> None:
        """Stored values are never overwritten."""
        existing = make_load(id=7, weight=15, cargo_type=TruckType.REEFER)
        incoming = make_load(weight=20, cargo_type=TruckType.TENTED)

        merged = merge_candidate_into(existing, incoming)

        assert merged.weight == 15
        assert merged.cargo_type == TruckType.REEFER

    def test_url_list_frozen_at_ceiling(self) -> None:
        """Old urls stop accumulating at the counter ceiling."""
        existing = make_load(id=7, duplication_counter=40)

        merged = merge_candidate_into(existing, make_load(url="https://t.me/x/1"))

        assert merged.duplicate_message_urls == []
        assert merged.duplication_counter == 41

    @pytest.mark.parametrize(
        ("counter", "archived_after"), [(200, False), (279, True), (400, True)]
    )
    def test_load_unarchive(self, counter: int, archived_after: bool) -> None:
        """An archived load revives while its counter stays below the ceiling."""
        existing = make_load(id=7, is_archived=True, duplication_counter=counter)

        merged = merge_candidate_into(existing, make_load())

        assert merged.is_archived is archived_after

    def test_flagged_load_stays_archived(self) -> None:
        """Loads flagged expired by several users stay archived."""
        existing = make_load(id=7, is_archived=True, expiration_flag_counter=4)

        assert merge_candidate_into(existing, make_load()).is_archived

    def test_vehicle_unarchive_ceiling(self) -> None:
        """Vehicles use their own lower ceiling."""
        revived = merge_candidate_into(
            make_vehicle(id=9, is_archived=True, duplication_counter=100), make_vehicle()
        )
        kept = merge_candidate_into(
            make_vehicle(id=9, is_archived=True, duplication_counter=199), make_vehicle()
        )

        assert revived.is_archived is False
        assert kept.is_archived is True

    def test_custom_ceilings(self) -> None:
        """Ceilings can be overridden."""
        existing = make_load(id=7, is_archived=True, duplication_counter=5)

        merged = merge_candidate_into(
            existing, make_load(), MergeCeilings(unarchive_max_duplication=5)
        )

        assert merged.is_archived is True

    def test_deleted_is_never_resurrected(self) -> None:
        """Merging into a deleted ad is rejected."""
        with pytest.raises(ValidationError):
            merge_candidate_into(make_load(id=7, is_deleted=True), make_load())

    def test_type_mismatch(self) -> None:
        """Loads and vehicles never merge."""
        with pytest.raises(ValidationError):
            merge_candidate_into(make_load(id=7), make_vehicle())
