"""Pre- and post-processing around structured extraction.

Before a batch is sent, texts are rewritten so the extraction service sees a
closed vocabulary (canonical truck tokens, an explicit dagruz marker, an
explicit route arrow). After it answers, every field is checked against
plausibility rules; implausible values become None rather than errors.
"""

import re
from datetime import datetime
from typing import Final

import pytz

from freight_ingest.domain.extraction_constants import (
    DAGRUZ_MAX_HAZARDOUS_WEIGHT,
    DAGRUZ_MAX_WEIGHT,
    GOODS_MAX_MESSAGE_LENGTH,
    LARGE_PRICE,
    MAX_REQUIRED_TRUCKS,
    MAX_VOLUME_M3,
    MAX_WEIGHT_TONS,
    MEDIUM_PRICE,
    MIN_PREPAYMENT_FOR_LARGE_PRICE,
    MIN_PRICE,
    MIN_VOLUME_M3,
    PREPAYMENT_CHECK_PRICE,
    VEHICLE_DAGRUZ_MAX_WEIGHT,
)
from freight_ingest.domain.models import (
    ExtractedLoad,
    ExtractedVehicle,
    Load,
    LoadingSide,
    PaymentType,
    TruckType,
    Vehicle,
)
from freight_ingest.services.phone_numbers import (
    clean_phone,
    extract_phone_number,
    remove_country_code,
)
from freight_ingest.services.truck_types import (
    REFRIGERATED_GOODS_PATTERN,
    canonicalize_truck_vocabulary,
    mark_dagruz_keywords,
    to_truck_type,
)

SPACED_PHONE_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(\d)\s?(\d)\s?(\d)\s?(\d)\s?(\d)\s?(\d)\s?(\d)\s?(\d)"
)
ROUTE_WORDS_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"([\wа-яА-ЯёЁ]+(дан|dan))([\s.\n\]+|\[\wа-яА-ЯёЁ]+)([\wа-яА-ЯёЁ]+(га|ga))",
    re.IGNORECASE | re.MULTILINE,
)
CUBE_WORD_PATTERN: Final[re.Pattern[str]] = re.compile(r" (куба|cuba) ", re.IGNORECASE)
REVERSED_DESTINATION_PATTERN: Final[re.Pattern[str]] = re.compile(r"(dan|дан)$")
PLACE_SPLIT_PATTERN: Final[re.Pattern[str]] = re.compile(r"[\W\d_]+")

LOADING_SIDES: Final[dict[str, LoadingSide]] = {
    "боковая": LoadingSide.SIDE,
    "задняя": LoadingSide.REAR,
    "верхняя": LoadingSide.TOP,
    "side": LoadingSide.SIDE,
    "rear": LoadingSide.REAR,
    "top": LoadingSide.TOP,
}

EMPTY_VALUES: Final[frozenset[str]] = frozenset({"none", "not_specified", "null", "0", ""})

GOODS_NOISE_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?<![а-яА-ЯёЁa-zA-Z0-9])(?:юк|догруз|груз|bor|бор|paravoz|yuklanadi|ATROFI"
    r"|без режима|стандарт|исузу|lar|tent|ref|fura|готов|YUK|КЕРАК|KERE|unknown"
    r"|РЕФ-ТЕНТ|Нужен|null|йук|TAYYOR|moshina|kerak|GRUZ|КЕРЕ|фура|таййор|Реф"
    r"|нужен|тент(?:офка)?|плашатка|hazardous|реф|срочни|исузи|not_specified|yoki"
    r"|yuk|mestniy|mesni|shaxar ichiga|шахар ичига|месни|местни|местний|месныи|ta"
    r"|та|gruz|yukbor|yarim|kk|майда|керак|юка|bo'sh|katta)(?![а-яА-ЯёЁa-zA-Z0-9])",
    re.IGNORECASE,
)
"""Words that describe the truck or the posting rather than the cargo."""

_TRUCK_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b(" + "|".join(re.escape(t.value) for t in TruckType) + r")\b", re.IGNORECASE
)


# === Batch text preparation ===


def collapse_spaced_numbers(text: str) -> str:
    """Join 8-digit runs written with spaces ("90 123 45 67")."""
    return SPACED_PHONE_PATTERN.sub(lambda match: "".join(match.groups()), text)


def mark_route_direction(text: str) -> str:
    """Rewrite "Xdan Yga" into "Xdan -> Yga"."""
    return ROUTE_WORDS_PATTERN.sub(r"\1 -> \3\4", text)


def prepare_load_batch_text(payload: str) -> str:
    text = collapse_spaced_numbers(payload)
    text = canonicalize_truck_vocabulary(text)
    text = mark_dagruz_keywords(text)
    text = CUBE_WORD_PATTERN.sub("куб", text, count=1)
    return mark_route_direction(text)


def prepare_vehicle_batch_text(payload: str) -> str:
    text = collapse_spaced_numbers(payload)
    text = canonicalize_truck_vocabulary(text)
    return mark_dagruz_keywords(text)


# === Field validation ===


def _number_text(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def validate_price(price: float | None, phone: str | None) -> float | None:
    """Accept a price only if it looks like a real tariff.

    Round numbers are expected at every magnitude; a value that also occurs
    inside the phone number was read from it.

    Example:
        >>> validate_price(1500, "901234567")
        1500
        >>> validate_price(1234, "901234567")  # part of the phone
        >>> validate_price(2_512_000, None)  # not a round tariff
    """
    if price is None or isinstance(price, bool) or price < MIN_PRICE:
        return None
    text = _number_text(price)
    if phone and text in phone:
        return None

    if price > LARGE_PRICE:
        accepted = text.endswith("0000")
    elif price >= MEDIUM_PRICE:
        accepted = text.endswith("00") or text.endswith("50")
    else:
        accepted = text.endswith("0")
    if not accepted:
        return None
    return int(price) if float(price).is_integer() else price


def validate_prepayment(price: float | None, prepayment: float | None) -> float | None:
    """Drop prepayments too small to belong to a large price."""
    if prepayment is None:
        return None
    if (
        price is not None
        and price > PREPAYMENT_CHECK_PRICE
        and prepayment < MIN_PREPAYMENT_FOR_LARGE_PRICE
    ):
        return None
    return prepayment if prepayment > 0 else None


def parse_ready_date(value: str | None, now: datetime | None = None) -> datetime | None:
    """Parse a load ready date and move it into the current year.

    Dates already in the past are dropped.
    """
    if not value or value.strip().lower() in EMPTY_VALUES:
        return None
    text = value.strip()[:10]
    parsed: datetime | None = None
    for date_format in ("%Y-%m-%d", "%d.%m.%Y", "%d-%m-%Y", "%d/%m/%Y"):
        try:
            parsed = datetime.strptime(text, date_format)
            break
        except ValueError:
            continue
    if parsed is None:
        return None

    today = (now or datetime.now(tz=pytz.UTC)).date()
    try:
        parsed = parsed.replace(year=today.year)
    except ValueError:
        # Feb 29 outside a leap year
        return None
    if parsed.date() < today:
        return None
    return pytz.UTC.localize(parsed)


def clamp_weight(weight: float | None) -> float | None:
    """Weight in tons must be within (0, 80)."""
    if weight is None or not 0 < weight < MAX_WEIGHT_TONS:
        return None
    return weight


def clamp_volume(volume: float | None) -> float | None:
    """Volume in m3 must be within [30, 400]."""
    if volume is None or volume > MAX_VOLUME_M3 or volume < MIN_VOLUME_M3:
        return None
    return volume


def derive_is_dagruz(weight: float | None, hazardous: bool | None) -> bool:
    """Small or part-load shipment.

    Example:
        - 0.5 t → dagruz
        - 1.5 t marked dagruz/hazardous → dagruz
        - no weight, marked → dagruz
    """
    if weight:
        return weight < DAGRUZ_MAX_WEIGHT or bool(
            hazardous and weight < DAGRUZ_MAX_HAZARDOUS_WEIGHT
        )
    return bool(hazardous)


def swap_reversed_direction(
    origin: str | None, destination: str | None
) -> tuple[str | None, str | None]:
    """Fix routes the extraction returned backwards or unsplit.

    A destination ending in the "from" suffix is really the origin. A
    missing destination is taken from the second word of the origin
    ("Toshkent-Samarqand").
    """
    if destination and REVERSED_DESTINATION_PATTERN.search(destination):
        origin, destination = destination, origin
    if (not destination or destination.lower() == "none") and origin:
        parts = [part for part in PLACE_SPLIT_PATTERN.split(origin) if part]
        if parts:
            origin = parts[0]
            destination = parts[1] if len(parts) > 1 else ""
    return origin, destination


def clean_goods(goods: str | None) -> str | None:
    """Goods description reduced to the cargo name, for duplicate matching.

    Example:
        >>> clean_goods("un yuk bor")
        'un'
        >>> clean_goods("fura kerak")
    """
    if not goods:
        return None
    result = re.sub(r"\s+", " ", GOODS_NOISE_PATTERN.sub(" ", goods)).strip()
    return result if len(result) > 1 else None


def describe_goods(load_text: str | None) -> str | None:
    """Stored goods text: truck tokens and punctuation removed, lowercased."""
    if not load_text or len(load_text) >= GOODS_MAX_MESSAGE_LENGTH:
        return None
    if to_truck_type(load_text) != TruckType.NOT_SPECIFIED:
        return None
    text = _TRUCK_TOKEN_PATTERN.sub("", load_text)
    text = re.sub(r"\s{2,}", " ", text)
    text = re.sub(r"[!?:;]", "", text).strip().lower()
    return text or None


def normalize_phone(phone: str | None, message_text: str = "") -> str | None:
    """Extracted phone, else the first phone in the message, without 998."""
    return remove_country_code(clean_phone(phone) or extract_phone_number(message_text))


def _payment_type(value: str | None) -> PaymentType:
    if not value or value == "none":
        return PaymentType.NOT_SPECIFIED
    try:
        return PaymentType(value)
    except ValueError:
        return PaymentType.NOT_SPECIFIED


def _optional_text(value: str | None) -> str | None:
    if value is None or value.strip().lower() in EMPTY_VALUES:
        return None
    return value.strip()


# === Record building ===


def build_load(
    item: ExtractedLoad, message_text: str, now: datetime | None = None
) -> Load:
    """Turn one extracted load into an unsaved Load with validated fields."""
    phone = normalize_phone(item.phone, message_text)
    price = validate_price(item.price, clean_phone(item.phone))
    if price is not None and item.prepayment == price:
        price = None
    prepayment = validate_prepayment(price, item.prepayment)

    has_mode = bool(item.refrigeration) or bool(
        item.goods and REFRIGERATED_GOODS_PATTERN.search(item.goods)
    )
    if item.truck_type:
        cargo_type = to_truck_type(item.truck_type[0], has_mode)
        cargo_type2 = (
            to_truck_type(item.truck_type[1], has_mode)
            if len(item.truck_type) > 1
            else TruckType.NOT_SPECIFIED
        )
    else:
        cargo_type = cargo_type2 = to_truck_type(item.goods, has_mode)

    weight = clamp_weight(item.weight)
    origin, destination = swap_reversed_direction(item.origin, item.destination)
    required = item.required_vehicle_count
    loading_side = LOADING_SIDES.get((item.loading_side or "").strip().lower())

    return Load(
        origin_city_name=_optional_text(origin),
        destination_city_name=_optional_text(destination),
        cargo_type=cargo_type,
        cargo_type2=cargo_type2,
        weight=weight,
        volume=clamp_volume(item.volume),
        is_dagruz=derive_is_dagruz(weight, item.hazardous),
        phone=phone,
        price=price,
        prepayment_amount=prepayment,
        has_prepayment=prepayment is not None,
        payment_type=_payment_type(item.payment_type),
        required_trucks_count=(
            required if required is not None and required < MAX_REQUIRED_TRUCKS else None
        ),
        goods=clean_goods(describe_goods(item.goods)),
        load_ready_date=parse_ready_date(item.load_ready_date, now),
        has_refrigerator_mode=has_mode,
        loading_side=loading_side,
        customs_clearance_location=_optional_text(item.customs_clearance_location),
        description=message_text,
    )


def build_vehicle(item: ExtractedVehicle, message_text: str) -> Vehicle:
    """Turn one extracted vehicle offer into an unsaved Vehicle."""
    weight = item.weight
    destinations = [name for name in item.destinations if _optional_text(name)]
    return Vehicle(
        origin_city_name=_optional_text(item.origin),
        destination_city_names=destinations,
        cargo_type=to_truck_type(item.truck_type[0] if item.truck_type else None),
        cargo_type2=to_truck_type(
            item.truck_type[1] if len(item.truck_type) > 1 else None
        ),
        weight=weight,
        volume=item.volume,
        is_dagruz=bool(item.hazardous)
        or bool(weight and weight < VEHICLE_DAGRUZ_MAX_WEIGHT),
        phone=normalize_phone(item.phone, message_text),
        available_vehicle_count=item.available_vehicle_count,
        description=message_text,
    )


# === Batch quality ===


def _is_filled(value: object) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and value == 0:
        return False
    if isinstance(value, str) and value.strip().lower() in EMPTY_VALUES:
        return False
    return True


def has_identifiable_fields(item: ExtractedLoad) -> bool:
    """True when the load carries anything beyond its route (phone excluded)."""
    return any(
        _is_filled(value)
        for value in (
            item.truck_type[0] if item.truck_type else None,
            item.truck_type[1] if len(item.truck_type) > 1 else None,
            item.payment_type,
            item.load_ready_date,
            item.weight,
            item.volume,
            item.price,
            item.loading_side,
            item.goods,
            item.customs_clearance_location,
        )
    )


def is_low_quality_yield(items: list[ExtractedLoad]) -> bool:
    """A message split into several loads none of which has real content.

    Example:
        A greeting text the service split into three bare "A -> B" routes
        is low quality; a single bare route is not.
    """
    return len(items) > 1 and not any(has_identifiable_fields(item) for item in items)
