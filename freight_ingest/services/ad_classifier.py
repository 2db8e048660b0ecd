"""Routing of accepted messages to the load or vehicle stream.

Drivers advertise free trucks with a small set of stock phrases ("fura bor",
"yuk kerak bo'lsa", "есть свободная фура"); everything else posted in a
freight channel is treated as a shipment looking for a carrier.
"""

import re
from typing import Final

from freight_ingest.domain.extraction_constants import CLOSING_MESSAGE_MAX_LENGTH
from freight_ingest.domain.models import AdType

_TRUCKS_LATIN: Final[str] = (
    "fura|tent|isuzi|isuzu|chakman|cakman|Gazell|mowina|moshin|mashina|moshina"
    "|benzavoz|mashinasi|izoterma|tentofkalar|labo|damas|paravoz|ref"
)
_TRUCKS_CYRILLIC: Final[str] = (
    "фура|фуры|исузи|исузу|тент|тенты|рефы|фурамиз|чакман|тентофкы|тентофка"
    "|мошина|мошин|газель|лабо|реф|тентовка|машина|изотерма"
)

DRIVER_OFFER_PATTERNS: Final[tuple[re.Pattern[str], ...]] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        rf"({_TRUCKS_LATIN}) kerak (bòsa|bo'lsa|bosa|bolsa)",
        r"(labo|damas) hizmati",
        r"возьмём",
        r"муравей",
        r"yuk (boʻsa|bo'lsa|bolsa|bòlsa)",
        r"kimda yuk (boʻsa|bo'lsa|bolsa|bor|bòlsa)",
        r"кимда (йук|юк) (бўса|бўлса|болса|бор)",
        r"юналишида юрамиз",
        r" булса оламиз\s+",
        rf"освободится ({_TRUCKS_CYRILLIC})",
        rf"есть свобод(ный|ная|ные) ({_TRUCKS_CYRILLIC})",
        r"(предлагайте|предложите|нужен|ищу) груз",
        r"yuk (kere|kerak|kk|boʻsa|bo'lsa|bormi|bolsa|k\.k)",
        rf"\b({_TRUCKS_LATIN}) bor(?![a-zA-Z])",
        rf"({_TRUCKS_CYRILLIC}) бор(?![a-zA-Zа-яА-Я])",
        r"(юк|йук|йуклар|юук|юклар)\s?(керак|кк|кере|таклиф килинглар|оламиз"
        r"|болса|булса|бу́лса|буса|боса|борми|оламз)",
        r"(yuk|yuuk|yuklar|xizmatla)\s(kerak|kk|kere|keray|taklif qilinglar"
        r"|olamiz|bulsa|bûlsa|busa|bosa|bo'ls|bo's)",
    )
)
"""Phrases a driver uses to offer a free truck ("have a truck, need cargo")."""

CLOSING_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"yopildi|епилди|йопилди", re.IGNORECASE
)
"""Short follow-ups announcing that a load is taken ("closed")."""

LOCAL_LOAD_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b(mestniy|mesni|ichida|местный|месне|мэсни|shaxar ichiga|шахар ичига"
    r"|месни|mesniy|местни|местний|месныи)\b",
    re.IGNORECASE,
)
"""Intra-city delivery markers; such loads start and end in the same place."""


def contains_driver_offer(text: str) -> bool:
    return any(pattern.search(text) for pattern in DRIVER_OFFER_PATTERNS)


def classify_ad_type(text: str) -> AdType:
    """Classify a message as a vehicle offer or a load offer.

    Example:
        >>> classify_ad_type("Fura bor, Toshkentdan Moskvaga yuk kerak")
        <AdType.VEHICLE: 'vehicle'>
        >>> classify_ad_type("Toshkentdan Samarqandga 15 tonna un")
        <AdType.LOAD: 'load'>
    """
    return AdType.VEHICLE if contains_driver_offer(text) else AdType.LOAD


def is_closing_message(text: str) -> bool:
    return len(text) < CLOSING_MESSAGE_MAX_LENGTH and bool(CLOSING_PATTERN.search(text))


def is_local_load(*parts: str | None) -> bool:
    """Check origin, destination or goods texts for an intra-city marker."""
    return any(part and LOCAL_LOAD_PATTERN.search(part) for part in parts)
