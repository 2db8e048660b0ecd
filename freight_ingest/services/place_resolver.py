"""Fuzzy resolution of free-text place names to reference cities/countries.

Similarity follows PostgreSQL pg_trgm semantics so thresholds tuned against
the database carry over: every word is padded with two leading blanks and
one trailing blank, split into 3-grams, and two strings score
|shared trigrams| / |all trigrams|. Ties are broken by Levenshtein distance.
"""

import math
import re
import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Final

from rapidfuzz.distance import Levenshtein

from freight_ingest.config.logging_config import get_logger
from freight_ingest.domain.models import (
    City,
    Country,
    PlaceMatch,
    PlaceType,
    RouteResolution,
    TruckType,
)
from freight_ingest.domain.place_constants import (
    CRAWLER_SIMILARITY_THRESHOLD,
    EXCLUDED_PLACE_TOKENS,
    MAX_SPLIT_PARTS,
    QUERY_SIMILARITY_THRESHOLD,
)
from freight_ingest.services.truck_types import detect_truck_type

logger = get_logger(__name__)

EARTH_RADIUS_KM: Final[float] = 6371.0

ORIGIN_SUFFIX_PATTERN: Final[re.Pattern[str]] = re.compile(r"(dan|дан)$", re.IGNORECASE)
DESTINATION_SUFFIX_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(gacha|гача|ga|га)$", re.IGNORECASE
)
_SPLIT_NOISE_PATTERN: Final[re.Pattern[str]] = re.compile(r"\b(\)|из)\b", re.IGNORECASE)
_SPLIT_PATTERN: Final[re.Pattern[str]] = re.compile(r"[ ,(]")
_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"[\s-]+")


def normalize_place_text(text: str) -> str:
    """Lowercase and strip accents (pg unaccent equivalent).

    Example:
        >>> normalize_place_text("Qoʻqon")
        'qoʻqon'
        >>> normalize_place_text("Ürgenç")
        'urgenc'
    """
    decomposed = unicodedata.normalize("NFKD", text.lower())
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return unicodedata.normalize("NFC", stripped).strip()


def trigrams(text: str) -> frozenset[str]:
    """Return the pg_trgm trigram set of a string."""
    result: set[str] = set()
    word: list[str] = []
    for char in text.lower() + " ":
        if char.isalnum():
            word.append(char)
            continue
        if word:
            padded = "  " + "".join(word) + " "
            result.update(padded[i : i + 3] for i in range(len(padded) - 2))
            word = []
    return frozenset(result)


def _set_similarity(left: frozenset[str], right: frozenset[str]) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def trigram_similarity(left: str, right: str) -> float:
    """pg_trgm ``similarity()``.

    Example:
        >>> trigram_similarity("toshkent", "toshkent")
        1.0
        >>> round(trigram_similarity("samarqand", "samarkand"), 2)
        0.54
    """
    return _set_similarity(trigrams(left), trigrams(right))


@dataclass(frozen=True)
class _PlaceVariant:
    place_id: int
    name: str
    variant: str
    type: PlaceType
    country_id: int | None
    parent_id: int | None
    grams: frozenset[str]


@dataclass(frozen=True)
class ParsedQuery:
    """Places and truck type parsed from a typed search query."""

    origin: PlaceMatch | None
    destination: PlaceMatch | None
    has_destination_text: bool
    truck_type: TruckType | None


def _preference_key(match: PlaceMatch) -> tuple[bool, bool]:
    # Most specific first: places with a parent, then cities over countries.
    return (match.parent_id is None, not match.is_city)


class PlaceResolver:
    """In-memory fuzzy matcher over the city/country reference set.

    Reference data is read-only during ingestion; the resolver is built once
    per process from the repository and shared by the crawler and search.
    """

    def __init__(
        self,
        cities: Iterable[City],
        countries: Iterable[Country],
        crawler_threshold: float = CRAWLER_SIMILARITY_THRESHOLD,
        query_threshold: float = QUERY_SIMILARITY_THRESHOLD,
    ) -> None:
        self.cities = {city.id: city for city in cities}
        self.countries = {country.id: country for country in countries}
        self.crawler_threshold = crawler_threshold
        self.query_threshold = query_threshold
        self._variants: list[_PlaceVariant] = []

        for city in self.cities.values():
            for variant in city.variants():
                normalized = normalize_place_text(variant)
                self._variants.append(
                    _PlaceVariant(
                        place_id=city.id,
                        name=city.name,
                        variant=normalized,
                        type=PlaceType.CITY,
                        country_id=city.country_id,
                        parent_id=city.parent_id,
                        grams=trigrams(normalized),
                    )
                )
        for country in self.countries.values():
            for variant in country.variants():
                normalized = normalize_place_text(variant)
                self._variants.append(
                    _PlaceVariant(
                        place_id=country.id,
                        name=country.name,
                        variant=normalized,
                        type=PlaceType.COUNTRY,
                        country_id=None,
                        parent_id=None,
                        grams=trigrams(normalized),
                    )
                )

        logger.debug(
            "place_resolver_initialized",
            cities=len(self.cities),
            countries=len(self.countries),
            variants=len(self._variants),
        )

    def find_similar_place(
        self,
        text: str | None,
        *,
        strict: bool = False,
        threshold: float | None = None,
    ) -> PlaceMatch | None:
        """Return the best matching place above the similarity threshold.

        Args:
            text: Free-text place name
            strict: Reject the best match when its token count differs from
                the input's (used while scanning multi-word queries)
            threshold: Minimum similarity (defaults to the crawler threshold)

        Returns:
            PlaceMatch or None
        """
        if not text or not text.strip():
            return None

        limit = self.crawler_threshold if threshold is None else threshold
        query = normalize_place_text(text).replace("w", "sh")
        query_grams = trigrams(query)

        best: tuple[float, int, _PlaceVariant] | None = None
        for variant in self._variants:
            similarity = _set_similarity(variant.grams, query_grams)
            if similarity <= limit:
                continue
            distance = Levenshtein.distance(variant.variant, query)
            if best is None or (similarity, -distance) > (best[0], -best[1]):
                best = (similarity, distance, variant)

        if best is None:
            return None

        similarity, distance, variant = best
        if strict and len(_TOKEN_PATTERN.split(variant.variant)) != len(
            _TOKEN_PATTERN.split(query)
        ):
            return None

        return PlaceMatch(
            id=variant.place_id,
            name=variant.name,
            type=variant.type,
            country_id=variant.country_id,
            parent_id=variant.parent_id,
            similarity=similarity,
            distance=distance,
        )

    def resolve(
        self, text: str | None, suffix_pattern: re.Pattern[str] | None = None
    ) -> PlaceMatch | None:
        """Resolve an extracted origin/destination string.

        The whole string and each of its parts are matched; a matched city
        that is the parent of another matched city is dropped, then the most
        specific remaining match wins.

        Example:
            "Toshkent viloyati, Chirchiq" resolves to Chirchiq rather than
            the Tashkent region center that is its parent.
        """
        if not text:
            return None
        if suffix_pattern is not None:
            text = suffix_pattern.sub("", text.strip())

        whole = self.find_similar_place(text)
        parts = _SPLIT_PATTERN.split(_SPLIT_NOISE_PATTERN.sub(" ", text))
        if len(parts) >= MAX_SPLIT_PARTS:
            return whole

        matches = [
            self.find_similar_place(part)
            for part in parts
            if part and part.lower() not in EXCLUDED_PLACE_TOKENS
        ]
        matches.append(whole)
        found = [match for match in matches if match is not None]

        leaves = [
            match
            for match in found
            if not match.is_city
            or not any(
                other.is_city and other.parent_id == match.id for other in found
            )
        ]
        if not leaves:
            return None
        return sorted(leaves, key=_preference_key)[0]

    def resolve_route(
        self, origin: str | None, destination: str | None
    ) -> RouteResolution:
        """Resolve both ends of a load; unresolved ends stay None."""
        route = RouteResolution(
            origin=self.resolve(origin, ORIGIN_SUFFIX_PATTERN),
            destination=self.resolve(destination, DESTINATION_SUFFIX_PATTERN),
        )
        if route.origin is None or route.destination is None:
            logger.debug(
                "place_unresolved",
                origin=origin,
                destination=destination,
                origin_resolved=route.origin is not None,
                destination_resolved=route.destination is not None,
            )
        return route

    def resolve_destinations(self, names: Iterable[str]) -> list[PlaceMatch]:
        """Resolve a vehicle's list of preferred destinations."""
        matches = (self.find_similar_place(name) for name in names)
        return [match for match in matches if match is not None]

    def extract_from_to(self, text: str) -> ParsedQuery:
        """Parse "origin destination [truck type]" typed by a user.

        The origin is the longest leading word run that strictly matches a
        place; the destination is searched in the remainder, preferring the
        higher-similarity window, with a non-strict fallback.
        """
        truck_type, text = detect_truck_type(text)
        parts = [part for part in _TOKEN_PATTERN.split(text.strip()) if part]
        threshold = self.query_threshold

        if not parts:
            return ParsedQuery(None, None, False, truck_type)
        if len(parts) == 1:
            return ParsedQuery(
                self.find_similar_place(parts[0], threshold=threshold),
                None,
                False,
                truck_type,
            )

        origin: PlaceMatch | None = None
        origin_length = 0
        for end in range(1, len(parts) + 1):
            match = self.find_similar_place(
                " ".join(parts[:end]), strict=True, threshold=threshold
            )
            if match is not None:
                origin, origin_length = match, end
        if origin is None:
            origin_length = 1

        remaining = parts[origin_length:]
        destination: PlaceMatch | None = None
        if remaining:
            for end in range(1, len(remaining) + 1):
                match = self.find_similar_place(
                    " ".join(remaining[:end]), strict=True, threshold=threshold
                )
                if match is not None:
                    destination = match

            if destination is None:
                for start in range(1, len(remaining)):
                    for end in range(start + 1, len(remaining) + 1):
                        match = self.find_similar_place(
                            " ".join(remaining[start:end]),
                            strict=True,
                            threshold=threshold,
                        )
                        if match is not None and (
                            destination is None
                            or destination.similarity < match.similarity
                        ):
                            destination = match
                            break
                    if destination is not None:
                        break

            if destination is None:
                destination = self.find_similar_place(
                    " ".join(remaining), threshold=threshold
                )

        return ParsedQuery(origin, destination, bool(remaining), truck_type)

    def nearest_cities(
        self, latitude: float, longitude: float, limit: int, radius_km: float
    ) -> list[int]:
        """Ids of the closest cities within the radius, nearest first."""
        distances = []
        for city in self.cities.values():
            if city.latitude is None or city.longitude is None:
                continue
            distance = haversine_km(latitude, longitude, city.latitude, city.longitude)
            if distance <= radius_km:
                distances.append((distance, city.id))
        return [city_id for _, city_id in sorted(distances)[:limit]]

    def child_city_ids(self, parent_ids: Iterable[int]) -> list[int]:
        """All descendants of the given cities, breadth first."""
        result: list[int] = []
        frontier = set(parent_ids)
        seen = set(frontier)
        while frontier:
            children = sorted(
                city.id
                for city in self.cities.values()
                if city.parent_id in frontier and city.id not in seen
            )
            result.extend(children)
            seen.update(children)
            frontier = set(children)
        return result

    def child_country_ids(self, parent_ids: Iterable[int]) -> list[int]:
        parents = set(parent_ids)
        return sorted(
            country.id
            for country in self.countries.values()
            if country.parent_id in parents
        )

    def get_city(self, city_id: int | None) -> City | None:
        return self.cities.get(city_id) if city_id is not None else None


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometers."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))
