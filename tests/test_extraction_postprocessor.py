"""Tests for extraction pre- and post-processing."""

from datetime import datetime

import pytest
import pytz

from freight_ingest.domain.models import (
    ExtractedLoad,
    ExtractedVehicle,
    LoadingSide,
    PaymentType,
    TruckType,
)
from freight_ingest.services.extraction_postprocessor import (
    build_load,
    build_vehicle,
    clamp_volume,
    clamp_weight,
    clean_goods,
    collapse_spaced_numbers,
    derive_is_dagruz,
    describe_goods,
    has_identifiable_fields,
    is_low_quality_yield,
    normalize_phone,
    parse_ready_date,
    prepare_load_batch_text,
    prepare_vehicle_batch_text,
    swap_reversed_direction,
    validate_prepayment,
    validate_price,
)
from tests.conftest import NOW


class TestValidatePrice:
    """Tests for tariff plausibility."""

    @pytest.mark.parametrize(
        ("price", "expected"),
        [
            (1500, 1500),
            (7350, 7350),
            (2_500_000, 2_500_000),
            (1505, None),
            (7355, None),
            (2_512_000, None),
            (5, None),
            (None, None),
        ],
    )
    def test_round_numbers(self, price: float | None, expected: float | None) -> None:
        """Tariffs are round at every magnitude."""
        assert validate_price(price, None) == expected

    def test_value_read_from_phone(self) -> None:
        """A number found inside the phone is not a price."""
        assert validate_price(1234, "901234567") is None
        assert validate_price(1500, "901234567") == 1500


def test_validate_prepayment() -> None:
    """Tiny prepayments of large prices are dropped."""
    assert validate_prepayment(2_000_000, 5000) is None
    assert validate_prepayment(2_000_000, 500_000) == 500_000
    assert validate_prepayment(1500, 500) == 500
    assert validate_prepayment(None, 0) is None
    assert validate_prepayment(1500, None) is None


class TestParseReadyDate:
    """Tests for load ready dates."""

    def test_future_date(self) -> None:
        """Future dates are kept as UTC midnight."""
        assert parse_ready_date("2026-10-25", NOW) == datetime(2026, 10, 25, tzinfo=pytz.UTC)

    def test_year_moved_to_current(self) -> None:
        """Dates with a stale year move into the current one."""
        assert parse_ready_date("25.10.2025", NOW) == datetime(2026, 10, 25, tzinfo=pytz.UTC)

    def test_today_kept(self) -> None:
        """A load ready today is still valid."""
        assert parse_ready_date("2026-10-19", NOW) == datetime(2026, 10, 19, tzinfo=pytz.UTC)

    @pytest.mark.parametrize("value", ["2026-10-01", "none", "soon", None, ""])
    def test_dropped(self, value: str | None) -> None:
        """Past, empty and unparseable dates are dropped."""
        assert parse_ready_date(value, NOW) is None


def test_clamp_weight_and_volume() -> None:
    """Weight within (0, 80), volume within [30, 400]."""
    assert clamp_weight(20) == 20
    assert clamp_weight(0) is None
    assert clamp_weight(80) is None
    assert clamp_weight(None) is None
    assert clamp_volume(96) == 96
    assert clamp_volume(30) == 30
    assert clamp_volume(29) is None
    assert clamp_volume(401) is None


@pytest.mark.parametrize(
    ("weight", "hazardous", "expected"),
    [
        (0.5, None, True),
        (1.5, True, True),
        (1.5, False, False),
        (3, True, False),
        (None, True, True),
        (None, None, False),
    ],
)
def test_derive_is_dagruz(weight: float | None, hazardous: bool | None, expected: bool) -> None:
    """Small or marked part loads are dagruz."""
    assert derive_is_dagruz(weight, hazardous) is expected


class TestSwapReversedDirection:
    """Tests for route repair."""

    def test_reversed_route(self) -> None:
        """A destination with the from-suffix swaps with the origin."""
        assert swap_reversed_direction("Samarqandga", "Toshkentdan") == (
            "Toshkentdan",
            "Samarqandga",
        )

    def test_unsplit_route(self) -> None:
        """A missing destination is taken from the origin text."""
        assert swap_reversed_direction("Toshkent-Samarqand", None) == ("Toshkent", "Samarqand")
        assert swap_reversed_direction("Toshkent", "none") == ("Toshkent", "")

    def test_valid_route_unchanged(self) -> None:
        """A well-formed route stays."""
        assert swap_reversed_direction("Toshkentdan", "Samarqandga") == (
            "Toshkentdan",
            "Samarqandga",
        )


def test_goods_cleanup() -> None:
    """Goods keep the cargo name only."""
    assert clean_goods("un yuk bor") == "un"
    assert clean_goods("fura kerak") is None
    assert describe_goods("Un 20 tonna!") == "un 20 tonna"
    assert describe_goods("tented") is None
    assert describe_goods("x" * 100) is None


def test_normalize_phone() -> None:
    """Extracted phone wins; the message text is the fallback."""
    assert normalize_phone("+998901234567") == "901234567"
    assert normalize_phone(None, "tel 90 123 45 67") == "901234567"
    assert normalize_phone(None, "Toshkentdan Samarqandga") is None


def test_batch_text_preparation() -> None:
    """Truck words, part-load words and route direction are made explicit."""
    prepared = prepare_load_batch_text("Toshkentdan Samarqandga tentovka dogruz")

    assert prepared.startswith("Toshkentdan -> ")
    assert prepared.endswith("Samarqandga tented hazardous")
    assert prepare_vehicle_batch_text("Fura tentovka dogruz") == "Fura tented hazardous"
    assert collapse_spaced_numbers("tel 90 123 45 67") == "tel 901234567"


class TestBuildLoad:
    """Tests for building loads from extracted records."""

    def test_validated_fields(self) -> None:
        """Fields are validated and normalized."""
        item = ExtractedLoad(
            id=1,
            origin="Toshkentdan",
            destination="Samarqandga",
            fare=1500,
            paymentType="cash",
            truckType=["tented"],
            weight=20,
            loadDescription="un",
            loadingSide="боковая",
            phone="+998901234567",
        )

        load = build_load(item, "Toshkentdan Samarqandga un", now=NOW)

        assert load.origin_city_name == "Toshkentdan"
        assert load.destination_city_name == "Samarqandga"
        assert load.phone == "901234567"
        assert load.price == 1500
        assert load.payment_type == PaymentType.CASH
        assert load.cargo_type == TruckType.TENTED
        assert load.cargo_type2 == TruckType.NOT_SPECIFIED
        assert load.weight == 20
        assert load.is_dagruz is False
        assert load.goods == "un"
        assert load.loading_side == LoadingSide.SIDE
        assert load.has_prepayment is False
        assert load.description == "Toshkentdan Samarqandga un"

    def test_refrigerated_reefer(self) -> None:
        """Reefer with refrigeration becomes reefer mode."""
        item = ExtractedLoad(id=1, truckType="reefer", isRefrigerated=True, loadDescription="мясо")

        load = build_load(item, "Реф мясо", now=NOW)

        assert load.cargo_type == TruckType.REEFER_MODE
        assert load.has_refrigerator_mode is True

    def test_type_from_goods(self) -> None:
        """Without a truck type, a goods text naming one is used."""
        load = build_load(ExtractedLoad(id=1, loadDescription="isuzu"), "isuzu kerak", now=NOW)

        assert load.cargo_type == TruckType.ISUZU
        assert load.cargo_type2 == TruckType.ISUZU
        assert load.goods is None

    def test_price_equal_to_prepayment(self) -> None:
        """A price equal to the prepayment is the prepayment."""
        load = build_load(
            ExtractedLoad(id=1, fare=1500, prepayment=1500), "Toshkentdan", now=NOW
        )

        assert load.price is None
        assert load.prepayment_amount == 1500
        assert load.has_prepayment is True

    def test_implausible_values_dropped(self) -> None:
        """Out-of-range values become None."""
        load = build_load(
            ExtractedLoad(id=1, weight=120, volume=10, requiredVehicleCount=50),
            "Toshkentdan",
            now=NOW,
        )

        assert load.weight is None
        assert load.volume is None
        assert load.required_trucks_count is None


def test_build_vehicle() -> None:
    """Vehicle destinations drop empty names; light trucks are dagruz."""
    item = ExtractedVehicle(
        id=2,
        origin="Toshkent",
        destinations=["Moskva", "none"],
        truckType="tented",
        cargoWeight=0.5,
    )

    vehicle = build_vehicle(item, "Fura bor 901234567")

    assert vehicle.origin_city_name == "Toshkent"
    assert vehicle.destination_city_names == ["Moskva"]
    assert vehicle.cargo_type == TruckType.TENTED
    assert vehicle.is_dagruz is True
    assert vehicle.phone == "901234567"


class TestLowQualityYield:
    """Tests for yield quality."""

    def test_bare_routes(self) -> None:
        """Several bare routes from one text are low quality."""
        items = [
            ExtractedLoad(id=1, origin="Toshkent", destination=destination)
            for destination in ("Samarqand", "Buxoro", "Xiva")
        ]

        assert is_low_quality_yield(items)

    def test_single_bare_route(self) -> None:
        """A single bare route is accepted."""
        assert not is_low_quality_yield([ExtractedLoad(id=1, origin="A", destination="B")])

    def test_identifiable_field(self) -> None:
        """Any real content makes the yield acceptable."""
        items = [
            ExtractedLoad(id=1, origin="A", destination="B"),
            ExtractedLoad(id=1, origin="A", destination="C", weight=10),
        ]

        assert has_identifiable_fields(items[1])
        assert not has_identifiable_fields(ExtractedLoad(id=1, paymentType="not_specified"))
        assert not is_low_quality_yield(items)
