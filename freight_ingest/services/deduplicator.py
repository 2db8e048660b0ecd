"""Ad deduplication rules and merge policy.

Rules (tried in order, first match wins):
1. Content-hash memo (handled by the resolver before extraction)
2. Same route + sender + text composite hash within 4 days
3. Same phone + same goods on a similar route within 5 days
4. Any of the sender's phones, or the sender itself, on a similar route
   within 2 days
5. Same resolved places + phone/sender within 2 days
6. Echo: the same text with a different phone within 8 days

Each rule is a pure function from a ``DedupContext`` to the lookup criteria
it needs, or None when the candidate lacks the fields the rule compares.
The resolver executes the lookups; this module never touches storage.
"""

import hashlib
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Final

from freight_ingest.domain.deduplication_constants import (
    DUPLICATE_URLS_MAX_COUNTER,
    ECHO_WINDOW_DAYS,
    PARAMS_HASH_WINDOW_DAYS,
    PHONE_GOODS_WINDOW_DAYS,
    RESOLVED_ROUTE_WINDOW_DAYS,
    SENDER_PHONES_WINDOW_DAYS,
    UNARCHIVE_MAX_DUPLICATION_COUNTER,
    UNARCHIVE_MAX_EXPIRATION_COUNTER,
    VEHICLE_PHONE_ORIGIN_WINDOW_DAYS,
)
from freight_ingest.domain.duplicate_lookup import DuplicateLookup
from freight_ingest.domain.exceptions import ValidationError
from freight_ingest.domain.lifecycle_constants import (
    VEHICLE_EXPIRATION_LIMIT,
    VEHICLE_MAX_DUPLICATION,
)
from freight_ingest.domain.models import (
    Ad,
    AdType,
    DedupOutcome,
    Load,
    PaymentType,
    RouteResolution,
    Sender,
    TruckType,
    Vehicle,
)
from freight_ingest.services.phone_numbers import is_usable_phone, remove_country_code
from freight_ingest.services.place_resolver import (
    DESTINATION_SUFFIX_PATTERN,
    ORIGIN_SUFFIX_PATTERN,
)

ECHO_RULE: Final[str] = "echo"
ECHO_LOOKUP_LIMIT: Final[int] = 50
"""Upper bound on stored loads touched by one echo match."""


@dataclass(frozen=True)
class DedupWindows:
    """Recency windows (days) of the duplicate rules."""

    params_hash: float = PARAMS_HASH_WINDOW_DAYS
    phone_goods: float = PHONE_GOODS_WINDOW_DAYS
    sender_phones: float = SENDER_PHONES_WINDOW_DAYS
    resolved_route: float = RESOLVED_ROUTE_WINDOW_DAYS
    vehicle_phone_origin: float = VEHICLE_PHONE_ORIGIN_WINDOW_DAYS


@dataclass(frozen=True)
class DedupContext:
    """Everything a duplicate rule may compare on for one extracted ad."""

    ad_type: AdType
    origin: str | None
    destination: str | None
    sender_id: int | None
    text_hash: str
    now: datetime
    phone: str | None = None
    goods: str | None = None
    sender_phones: tuple[str, ...] = ()
    route: RouteResolution | None = None
    description_hash_without_phone: str | None = None
    windows: DedupWindows = field(default_factory=DedupWindows)

    @classmethod
    def for_ad(
        cls,
        ad: Load | Vehicle,
        *,
        text_hash: str,
        now: datetime,
        sender: Sender | None = None,
        route: RouteResolution | None = None,
        windows: DedupWindows | None = None,
    ) -> "DedupContext":
        """Build the context from a record prepared for insertion."""
        is_load = isinstance(ad, Load)
        return cls(
            ad_type=ad.AD_TYPE,
            origin=ad.origin_city_name,
            destination=ad.destination_city_name if is_load else None,
            sender_id=ad.telegram_user_id,
            text_hash=text_hash,
            now=now,
            phone=ad.phone,
            goods=ad.goods if is_load else None,
            sender_phones=tuple(sender.known_phones()) if sender else (),
            route=route,
            description_hash_without_phone=(
                ad.description_hash_without_phone if is_load else None
            ),
            windows=windows or DedupWindows(),
        )

    def days_ago(self, days: float) -> datetime:
        return self.now - timedelta(days=days)

    @property
    def origin_stem(self) -> str | None:
        return strip_origin_suffix(self.origin)

    @property
    def destination_stem(self) -> str | None:
        return strip_destination_suffix(self.destination)

    def phone_suffixes(self) -> list[str]:
        """Candidate phone and the sender's known phones, country code removed."""
        suffixes: list[str] = []
        for phone in (self.phone, *self.sender_phones):
            if not is_usable_phone(phone):
                continue
            suffix = remove_country_code(phone)
            if suffix and suffix not in suffixes:
                suffixes.append(suffix)
        return suffixes


def strip_origin_suffix(name: str | None) -> str | None:
    """Drop the "from" suffix of an origin name ("Toshkentdan" → "Toshkent")."""
    if name is None:
        return None
    return ORIGIN_SUFFIX_PATTERN.sub("", name.strip())


def strip_destination_suffix(name: str | None) -> str | None:
    if name is None:
        return None
    return DESTINATION_SUFFIX_PATTERN.sub("", name.strip())


def _md5(parts: Sequence[object]) -> str:
    key_material = "-".join("" if part is None else str(part) for part in parts)
    return hashlib.md5(key_material.encode("utf-8")).hexdigest()


def compute_params_hashes(
    origin: str | None,
    destination: str | None,
    sender_id: int | None,
    text_hash: str,
) -> list[str]:
    """Composite route+sender+text hash of a load, and its suffix-stripped variant.

    The first hash is the one stored on a new load.

    Example:
        >>> hashes = compute_params_hashes("Toshkentdan", "Samarqandga", 42, "ab12")
        >>> len(hashes)
        2
    """
    exact = _md5([origin, destination, sender_id, text_hash])
    stripped = _md5(
        [
            strip_origin_suffix(origin),
            strip_destination_suffix(destination),
            sender_id,
            text_hash,
        ]
    )
    return [exact] if stripped == exact else [exact, stripped]


def compute_vehicle_params_hash(
    origin: str | None, sender_id: int | None, text_hash: str
) -> str:
    return _md5([origin, sender_id, text_hash])


# === Rules ===

RuleBuilder = Callable[[DedupContext], DuplicateLookup | None]


@dataclass(frozen=True)
class DedupRule:
    """One step of the duplicate cascade."""

    name: str
    ad_type: AdType
    build: RuleBuilder

    def lookup(self, context: DedupContext) -> DuplicateLookup | None:
        if context.ad_type != self.ad_type:
            return None
        return self.build(context)


def params_hash_rule(context: DedupContext) -> DuplicateLookup | None:
    if not context.origin or not context.destination or context.sender_id is None:
        return None
    return DuplicateLookup(
        rule="params_hash",
        ad_type=AdType.LOAD,
        params_hashes=compute_params_hashes(
            context.origin, context.destination, context.sender_id, context.text_hash
        ),
        published_after=context.days_ago(context.windows.params_hash),
    )


def phone_goods_rule(context: DedupContext) -> DuplicateLookup | None:
    if not is_usable_phone(context.phone) or not context.goods:
        return None
    if not context.origin_stem or not context.destination_stem:
        return None
    return DuplicateLookup(
        rule="phone_goods",
        ad_type=AdType.LOAD,
        origin_contains=context.origin_stem,
        destination_contains=context.destination_stem,
        phone_suffixes=[remove_country_code(context.phone) or ""],
        goods=context.goods,
        live_only=True,
        published_after=context.days_ago(context.windows.phone_goods),
    )


def sender_phones_rule(context: DedupContext) -> DuplicateLookup | None:
    if not context.origin_stem or not context.destination_stem:
        return None
    suffixes = context.phone_suffixes()
    if not suffixes and context.sender_id is None:
        return None
    return DuplicateLookup(
        rule="sender_phones",
        ad_type=AdType.LOAD,
        origin_contains=context.origin_stem,
        destination_contains=context.destination_stem,
        phone_suffixes=suffixes,
        sender_id=context.sender_id,
        live_only=True,
        published_after=context.days_ago(context.windows.sender_phones),
    )


def resolved_route_rule(context: DedupContext) -> DuplicateLookup | None:
    route = context.route
    if route is None or route.origin_city_id is None:
        return None
    if route.destination_city_id is None and route.destination_country_id is None:
        return None
    suffixes = context.phone_suffixes()
    if not suffixes and context.sender_id is None:
        return None
    return DuplicateLookup(
        rule="resolved_route",
        ad_type=AdType.LOAD,
        resolved_route=(
            route.origin_city_id,
            route.origin_country_id,
            route.destination_city_id,
            route.destination_country_id,
        ),
        phone_suffixes=suffixes,
        sender_id=context.sender_id,
        live_only=True,
        published_after=context.days_ago(context.windows.resolved_route),
    )


def vehicle_params_hash_rule(context: DedupContext) -> DuplicateLookup | None:
    if not context.origin or context.sender_id is None:
        return None
    return DuplicateLookup(
        rule="params_hash",
        ad_type=AdType.VEHICLE,
        params_hashes=[
            compute_vehicle_params_hash(
                context.origin, context.sender_id, context.text_hash
            )
        ],
        live_only=True,
    )


def vehicle_phone_origin_rule(context: DedupContext) -> DuplicateLookup | None:
    if not context.origin or not is_usable_phone(context.phone):
        return None
    return DuplicateLookup(
        rule="phone_origin",
        ad_type=AdType.VEHICLE,
        origin_equals=context.origin,
        phone_suffixes=[remove_country_code(context.phone) or ""],
        published_after=context.days_ago(context.windows.vehicle_phone_origin),
    )


LOAD_RULES: Final[tuple[DedupRule, ...]] = (
    DedupRule("params_hash", AdType.LOAD, params_hash_rule),
    DedupRule("phone_goods", AdType.LOAD, phone_goods_rule),
    DedupRule("sender_phones", AdType.LOAD, sender_phones_rule),
    DedupRule("resolved_route", AdType.LOAD, resolved_route_rule),
)
"""Load cascade after the memo lookup; the echo rule runs last, separately."""

VEHICLE_RULES: Final[tuple[DedupRule, ...]] = (
    DedupRule("params_hash", AdType.VEHICLE, vehicle_params_hash_rule),
    DedupRule("phone_origin", AdType.VEHICLE, vehicle_phone_origin_rule),
)


def rules_for(ad_type: AdType) -> tuple[DedupRule, ...]:
    return LOAD_RULES if ad_type == AdType.LOAD else VEHICLE_RULES


# === Echo ===


@dataclass(frozen=True)
class EchoPolicy:
    """How a load re-posted by another broker with a different phone is handled.

    The echo lookup matches stored loads whose phone-stripped description
    equals the candidate's while the full text differs. Matched loads get
    their different-phone counter incremented. Then:

    - a match from the same sender is merged (``merge_same_sender``);
    - otherwise the candidate is an echo (not stored) when a match has a
      phone, or when neither side has one (``phoneless_is_echo``);
    - otherwise a new load is created.
    """

    enabled: bool = True
    window_days: float = ECHO_WINDOW_DAYS
    merge_same_sender: bool = True
    phoneless_is_echo: bool = True

    def criteria(self, context: DedupContext) -> DuplicateLookup | None:
        if not self.enabled or context.ad_type != AdType.LOAD:
            return None
        if not context.description_hash_without_phone:
            return None
        if not context.origin_stem or not context.destination_stem:
            return None
        return DuplicateLookup(
            rule=ECHO_RULE,
            ad_type=AdType.LOAD,
            origin_contains=context.origin_stem,
            destination_contains=context.destination_stem,
            description_hash_without_phone=context.description_hash_without_phone,
            exclude_description_hash=context.text_hash,
            published_after=context.days_ago(self.window_days),
            limit=ECHO_LOOKUP_LIMIT,
        )

    def decide(
        self, context: DedupContext, matches: Sequence[Load]
    ) -> tuple[DedupOutcome, Load | None]:
        """Classify the candidate against the echo matches.

        Returns:
            (MERGED, target), (ECHO, None) or (CREATED, None)
        """
        if self.merge_same_sender and context.sender_id is not None:
            for match in matches:
                if match.telegram_user_id == context.sender_id:
                    return DedupOutcome.MERGED, match

        for match in matches:
            if match.telegram_user_id == context.sender_id:
                continue
            if match.phone:
                return DedupOutcome.ECHO, None
            if self.phoneless_is_echo and not context.phone:
                return DedupOutcome.ECHO, None

        return DedupOutcome.CREATED, None


# === Merge ===


@dataclass(frozen=True)
class MergeCeilings:
    """Counter limits applied when a duplicate is merged into a stored ad."""

    duplicate_urls_max_counter: int = DUPLICATE_URLS_MAX_COUNTER
    unarchive_max_duplication: int = UNARCHIVE_MAX_DUPLICATION_COUNTER
    unarchive_max_expiration: int = UNARCHIVE_MAX_EXPIRATION_COUNTER


LOAD_MERGE_CEILINGS: Final[MergeCeilings] = MergeCeilings()
VEHICLE_MERGE_CEILINGS: Final[MergeCeilings] = MergeCeilings(
    unarchive_max_duplication=VEHICLE_MAX_DUPLICATION,
    unarchive_max_expiration=VEHICLE_EXPIRATION_LIMIT + 1,
)


def _first_truck_type(current: TruckType, incoming: TruckType) -> TruckType:
    return current if current != TruckType.NOT_SPECIFIED else incoming


def merge_candidate_into(
    existing: Ad, incoming: Ad, ceilings: MergeCeilings | None = None
) -> Ad:
    """Merge a duplicate candidate into the stored ad it repeats.

    Only empty fields are filled; the ready date always follows the newest
    post; the source pointer moves to the new message and the duplication
    counter grows by one. An archived ad comes back while its counters stay
    below the ceilings.

    Args:
        existing: Stored ad found by a duplicate rule
        incoming: Ad built from the new message
        ceilings: Counter limits (defaults per ad type)

    Returns:
        Updated copy of the stored ad

    Raises:
        ValidationError: If the stored ad is deleted or of another type
    """
    if existing.is_deleted:
        raise ValidationError(f"Ad {existing.id} is deleted and cannot be merged")
    if type(existing) is not type(incoming):
        raise ValidationError("Cannot merge ads of different types")
    if ceilings is None:
        ceilings = (
            LOAD_MERGE_CEILINGS if isinstance(existing, Load) else VEHICLE_MERGE_CEILINGS
        )

    merged = existing.model_copy(deep=True)

    if merged.duplication_counter < ceilings.duplicate_urls_max_counter and merged.url:
        merged.duplicate_message_urls = [merged.url, *merged.duplicate_message_urls]

    merged.cargo_type = _first_truck_type(merged.cargo_type, incoming.cargo_type)
    merged.weight = merged.weight or incoming.weight
    merged.volume = merged.volume or incoming.volume

    if isinstance(merged, Load) and isinstance(incoming, Load):
        merged.cargo_type2 = _first_truck_type(merged.cargo_type2, incoming.cargo_type2)
        merged.goods = merged.goods or incoming.goods
        if merged.payment_type == PaymentType.NOT_SPECIFIED:
            merged.payment_type = incoming.payment_type
        merged.price = merged.price or incoming.price
        merged.phone = merged.phone or incoming.phone
        merged.load_ready_date = incoming.load_ready_date

    merged.telegram_message_id = incoming.telegram_message_id
    merged.telegram_channel_id = incoming.telegram_channel_id
    merged.url = incoming.url
    merged.published_date = incoming.published_date
    merged.duplication_counter += 1

    if (
        merged.is_archived
        and merged.duplication_counter < ceilings.unarchive_max_duplication
        and merged.expiration_flag_counter < ceilings.unarchive_max_expiration
    ):
        merged.is_archived = False

    return merged
