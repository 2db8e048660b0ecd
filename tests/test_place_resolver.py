"""Tests for fuzzy place resolution."""

import pytest

from freight_ingest.domain.models import PlaceType, TruckType
from freight_ingest.services.place_resolver import (
    DESTINATION_SUFFIX_PATTERN,
    ORIGIN_SUFFIX_PATTERN,
    PlaceResolver,
    haversine_km,
    normalize_place_text,
    trigram_similarity,
    trigrams,
)


def test_trigrams_follow_pg_trgm_padding() -> None:
    """Words are padded with two leading blanks and one trailing blank."""
    assert trigrams("un") == frozenset({"  u", " un", "un "})
    assert trigrams("") == frozenset()


def test_trigram_similarity() -> None:
    """Similarity is shared trigrams over all trigrams."""
    assert trigram_similarity("toshkent", "toshkent") == 1.0
    assert round(trigram_similarity("samarqand", "samarkand"), 2) == 0.54
    assert trigram_similarity("", "toshkent") == 0.0


def test_normalize_place_text() -> None:
    """Accents are removed and case folded."""
    assert normalize_place_text(" Ürgenç ") == "urgenc"
    assert normalize_place_text("Ташкент") == "ташкент"


class TestFindSimilarPlace:
    """Tests for the best-match lookup."""

    @pytest.mark.parametrize("text", ["Toshkent", "Tashkent", "Ташкент", "TOSHKENT"])
    def test_exact_variant(self, places: PlaceResolver, text: str) -> None:
        """Any stored spelling is an exact match."""
        match = places.find_similar_place(text)

        assert match is not None
        assert match.id == 1
        assert match.type == PlaceType.CITY
        assert match.similarity == 1.0
        assert match.distance == 0

    def test_misspelling(self, places: PlaceResolver) -> None:
        """Close misspellings resolve above the threshold."""
        match = places.find_similar_place("Samarqant")

        assert match is not None
        assert match.id == 2
        assert 0.31 < match.similarity < 1.0

    def test_w_read_as_sh(self, places: PlaceResolver) -> None:
        """Latin w stands for sh in informal spelling."""
        match = places.find_similar_place("Tawkent")

        assert match is not None
        assert match.id == 1

    def test_country(self, places: PlaceResolver) -> None:
        """Countries resolve with their own id."""
        match = places.find_similar_place("Казахстан")

        assert match is not None
        assert match.type == PlaceType.COUNTRY
        assert match.id == 8

    @pytest.mark.parametrize("text", ["sement", "", "   ", None])
    def test_no_match(self, places: PlaceResolver, text: str | None) -> None:
        """Unrelated words and empty input resolve to nothing."""
        assert places.find_similar_place(text) is None

    def test_strict_rejects_token_count_mismatch(self, places: PlaceResolver) -> None:
        """Strict mode rejects a single-word match for a two-word query."""
        assert places.find_similar_place("Toshkent Samarqand", strict=True) is None


class TestResolve:
    """Tests for extracted place resolution."""

    def test_suffixes_stripped(self, places: PlaceResolver) -> None:
        """From/to suffixes are removed before matching."""
        origin = places.resolve("Toshkentdan", ORIGIN_SUFFIX_PATTERN)
        destination = places.resolve("Samarqandga", DESTINATION_SUFFIX_PATTERN)

        assert origin is not None and origin.id == 1
        assert destination is not None and destination.id == 2

    def test_child_city_preferred_over_parent(self, places: PlaceResolver) -> None:
        """A district city wins over the region center it belongs to."""
        match = places.resolve("Toshkent viloyati, Chirchiq")

        assert match is not None
        assert match.id == 3
        assert match.parent_id == 1

    def test_unresolvable(self, places: PlaceResolver) -> None:
        """Nothing matches an unknown place."""
        assert places.resolve("Xyzzyqorgon") is None
        assert places.resolve(None) is None

    def test_resolve_route(self, places: PlaceResolver) -> None:
        """Route ends carry their city and country ids."""
        route = places.resolve_route("Toshkentdan", "Moskvaga")

        assert route.origin_city_id == 1
        assert route.origin_country_id == 1
        assert route.destination_city_id == 4
        assert route.destination_country_id == 2

    def test_resolve_route_to_country(self, places: PlaceResolver) -> None:
        """A country destination has no city id."""
        route = places.resolve_route("Toshkentdan", "Qozog'iston")

        assert route.destination_city_id is None
        assert route.destination_country_id == 8

    def test_resolve_route_partial(self, places: PlaceResolver) -> None:
        """Unresolved ends stay None."""
        route = places.resolve_route("Toshkentdan", None)

        assert route.origin_city_id == 1
        assert route.destination is None
        assert route.destination_country_id is None

    def test_resolve_destinations(self, places: PlaceResolver) -> None:
        """Unresolvable vehicle destinations are skipped."""
        matches = places.resolve_destinations(["Moskva", "Xyzzyqorgon", "Almaty"])

        assert [match.id for match in matches] == [4, 5]


class TestExtractFromTo:
    """Tests for typed search queries."""

    def test_origin_destination_and_truck(self, places: PlaceResolver) -> None:
        """Query words split into origin, destination and truck type."""
        parsed = places.extract_from_to("Toshkent Samarqand isuzu")

        assert parsed.origin is not None and parsed.origin.id == 1
        assert parsed.destination is not None and parsed.destination.id == 2
        assert parsed.has_destination_text
        assert parsed.truck_type == TruckType.ISUZU

    def test_origin_only(self, places: PlaceResolver) -> None:
        """A single word is the origin."""
        parsed = places.extract_from_to("Samarqand")

        assert parsed.origin is not None and parsed.origin.id == 2
        assert parsed.destination is None
        assert not parsed.has_destination_text
        assert parsed.truck_type is None

    def test_empty_query(self, places: PlaceResolver) -> None:
        """A truck type alone leaves no places."""
        parsed = places.extract_from_to("isuzu")

        assert parsed.origin is None
        assert parsed.destination is None
        assert parsed.truck_type == TruckType.ISUZU


def test_nearest_cities(places: PlaceResolver) -> None:
    """Cities within the radius come nearest first."""
    assert places.nearest_cities(41.30, 69.24, limit=5, radius_km=10) == [1]
    assert places.nearest_cities(41.30, 69.24, limit=5, radius_km=50) == [1, 3]
    assert places.nearest_cities(41.30, 69.24, limit=1, radius_km=50) == [1]


def test_hierarchy(places: PlaceResolver) -> None:
    """Child lookups follow parent ids."""
    assert places.child_city_ids([1]) == [3]
    assert places.child_city_ids([2]) == []
    assert places.child_country_ids([1]) == []
    assert places.get_city(4) is not None
    assert places.get_city(None) is None


def test_haversine_km() -> None:
    """Toshkent to Samarqand is roughly 270 km."""
    assert 250 < haversine_km(41.2995, 69.2401, 39.6542, 66.9597) < 290
    assert haversine_km(41.0, 69.0, 41.0, 69.0) == 0
