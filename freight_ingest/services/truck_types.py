"""Truck/trailer vocabulary and type compatibility.

Channel posts name vehicles in Uzbek (Latin and Cyrillic) and Russian with
many spellings. Before extraction every known spelling is rewritten to the
canonical TruckType token so the extraction schema can use a closed enum.
"""

import re
from dataclasses import dataclass
from typing import Final

from freight_ingest.domain.models import TruckType

TRUCK_TYPE_SPELLINGS: Final[dict[TruckType, tuple[str, ...]]] = {
    TruckType.SMALL_ISUZU: (
        "кичик изузи", "майда исузи", "mayda isuzi", "кичик исузу", "кичик исузи",
        "kichchik isuzu", "kichik isuzi", "kichkina isuzu", "kichkina isuzi",
        "kichkina izuzi", "исузи кичкина", "кичкина исузи", "исузу кичкина",
        "кичкина исузу", "5 тонналик изузу", "кичкина изузи", "кичкина эсузи",
        "kichkina esuzi", "кичкина  есузи", "маленький исузу",
    ),
    TruckType.BIG_ISUZU: (
        "katta isuzi", "kichik isuz", "mayda isuzu", "мини фура", "kata isuzu",
        "katta izuzi", "исузи катта", "катта исузи", "катта исузу", "катта изузи",
        "катта эсузи", "katta esuzi", "katta isuzu", "kotta isuzi", "kotta izuzi",
        "исузи котта", "котта исузи", "котта исузу", "котта изузи", "котта эсузи",
        "kotta esuzi", "большой исузу", "kotta isuzu", "исузу катта", "кота эсузи",
        "кота исузу", "кота исузи", "катта изузу", "катта исюзи",
    ),
    TruckType.ISUZU: (
        "isuzi", "izuzi", "исузи", "изузи", "izuzu", "эсузи", "исузу", "esuzi",
        "usuzi", "изузу", "isuzu",
    ),
    TruckType.REEFER_MODE: (
        "реф-18", "ref-18", "режим -18", "ref -18", "реф -18", "ref+", "ref-",
    ),
    TruckType.TENTED: (
        "tent", "chodirli", "tentli", "temtofka", "tend", "тент", "тенд",
        "тентованный", "тентофка", "тентовка", "tentovka", "tentofka", "тентовки",
        "тенты", "тента", "тентов", "тент кк", "tent kk", "tentlar", "тентлар",
        "tentofkalar", "tentopka", "tentga", "tentovkalar", "tentofkalarga",
        "tentovkalarga", "tentlarga", "тентофкаларга", "тентовкаларга", "тентларга",
    ),
    TruckType.REEFER: (
        "ref", "reefer", "реф", "reflar", "рефлар", "refrejerator", "рефа", "рефов",
        "reflarga", "рефларга",
    ),
    TruckType.FAW: ("faf", "fav", "фав", "faw", "faz", "фаф"),
    TruckType.MEGA: ("мега", "меге", "mega", "mege"),
    TruckType.LABO: ("лабо", "labo", "damas", "дамас"),
    TruckType.KAMAZ: ("камаз", "kamaz", "qamaz", "kamas"),
    TruckType.FLATBED: ("площадка", "ploshadka", "plashadka", "plawatka"),
    TruckType.BARGE: ("шаланда", "shalanda"),
    TruckType.LOWBOY: ("трал", "тралл", "tral", "traller", "тралы", "трала"),
    TruckType.CONTAINERSHIP: ("контейнеровоз", "konteyneravoz"),
    TruckType.LOCOMOTIVE: (
        "паровоз", "parovoz", "paravoz", "паравоз", "поезд", "паровой",
        "паровой_поезд", "автопаровоз", "автопаравоз", "паравозлар", "paravozlar",
        "паровозы", "parvoz",
    ),
    TruckType.CHAKMAN: (
        "chakman", "cakman", "chaqman", "чакман", "chacman", "чакмон", "шакман",
        "shakman", "chakmon", "shaqman",
    ),
    TruckType.MAN: ("man", "ман"),
    TruckType.SPRINTER: ("sprinter", "sprintr", "спринтер", "спринтр"),
    TruckType.GAZEL: ("gazel", "газел", "газель"),
    TruckType.AVTOVOZ: ("avtovoz", "автовоз", "автовозы", "avtovozlar"),
    TruckType.ISOTHERM: (
        "изотерма", "изотерм", "izoterm", "izoterma", "изотермы", "isotherm",
        "isoterm", "izotermalar", "изотермалар", "izotermiz", "izotermik",
        "изотермик", "изотермический",
    ),
    TruckType.KIA_BONGO: (
        "kia bongo", "киа бонго", "киа bongo", "kia бонго", "bongo", "бонго",
        "кияа бонго", "кия бонго", "kiya bongo",
    ),
}  # fmt: skip
"""Known spellings per truck type, most specific types first.

Example:
    - "kichkina isuzu" → small_isuzu (matched before plain "isuzu")
    - "тентовка" → tented
"""

TENTED_REEFER_SPELLINGS: Final[tuple[str, ...]] = (
    "тент/реф", "tent/ref", "реф/тент", "ref/tent", "тентреф", "tentref",
    "рефтент", "reftent",
)  # fmt: skip
"""Combined trailer mentions rewritten to both tokens."""

_BOUNDARY: Final[str] = r"""(^|\s|\\n|[0-9.,'"!?\-:;/\[\]()])"""
_END_BOUNDARY: Final[str] = r"""($|\s|\\n|[0-9.,'"!?\-:;/\[\]()])"""

DAGRUZ_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"догруз|лахтак|папути|paputi|laxtak|ahchaga|ахчага|axchaga|кушимча юк|dogruz"
    r"|poputi|қўшимча|dagruz|qoʻshimcha|quwimca|qoshimcha",
    re.IGNORECASE,
)
"""Part-load ("dagruz") keywords; extraction sees them as the hazardous marker."""

DAGRUZ_TOKEN: Final[str] = "hazardous"

REFRIGERATED_GOODS_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"мясо|кури", re.IGNORECASE
)


def _spelling_pattern(spelling: str) -> re.Pattern[str]:
    return re.compile(_BOUNDARY + re.escape(spelling) + _END_BOUNDARY, re.IGNORECASE)


_SPELLING_PATTERNS: Final[list[tuple[str, re.Pattern[str]]]] = [
    (f"{TruckType.TENTED.value} {TruckType.REEFER.value}", _spelling_pattern(value))
    for value in TENTED_REEFER_SPELLINGS
] + [
    (truck_type.value, _spelling_pattern(value))
    for truck_type, spellings in TRUCK_TYPE_SPELLINGS.items()
    for value in spellings
]


def canonicalize_truck_vocabulary(text: str) -> str:
    """Rewrite every known truck spelling to its canonical token.

    Example:
        >>> canonicalize_truck_vocabulary("Fura tentovka kerak")
        'Fura tented kerak'
    """
    for token, pattern in _SPELLING_PATTERNS:
        text = pattern.sub(rf"\g<1>{token}\g<2>", text)
    return text


def mark_dagruz_keywords(text: str) -> str:
    return DAGRUZ_PATTERN.sub(DAGRUZ_TOKEN, text)


def detect_truck_type(text: str) -> tuple[TruckType | None, str]:
    """Find the first truck type mentioned in a search query.

    Returns:
        Tuple of (truck type or None, text with the mention removed)
    """
    text = text.strip().replace("\\n", " ")
    for truck_type, spellings in TRUCK_TYPE_SPELLINGS.items():
        for value in spellings:
            pattern = _spelling_pattern(value)
            if pattern.search(text):
                return truck_type, pattern.sub(" ", text, count=1).strip()
    return None, text


def to_truck_type(value: str | None, has_refrigerator_mode: bool = False) -> TruckType:
    """Map an extracted token to the enum; unknown values are not_specified."""
    if not value:
        return TruckType.NOT_SPECIFIED
    try:
        truck_type = TruckType(value.strip().lower())
    except ValueError:
        return TruckType.NOT_SPECIFIED
    if truck_type == TruckType.REEFER and has_refrigerator_mode:
        return TruckType.REEFER_MODE
    return truck_type


# === Search compatibility ===


@dataclass(frozen=True)
class TypeMatch:
    """One OR-branch of a truck type search.

    ``slot`` is the column compared with ``truck_type``; ``None`` means both
    columns must be not_specified. Weight bounds are [min, max).
    """

    truck_type: TruckType
    slot: str | None = "cargo_type"
    min_weight: float | None = None
    max_weight: float | None = None
    allow_missing_weight: bool = False
    domestic_only: bool = False


SMALL_ISUZU_WEIGHT: Final[tuple[float, float]] = (3, 6)
BIG_ISUZU_WEIGHT: Final[tuple[float, float]] = (10, 17)
TENTED_MIN_WEIGHT: Final[float] = 20
LABO_MAX_WEIGHT: Final[float] = 1


def compatible_type_matches(selected: TruckType) -> list[TypeMatch]:
    """Expand a selected truck type into equivalent stored type conditions.

    Example:
        small_isuzu also matches an unspecified type carrying 3-6 t, and a
        plain isuzu carrying 3-6 t or an unknown weight.
    """
    matches = [TypeMatch(selected), TypeMatch(selected, slot="cargo_type2")]

    if selected == TruckType.ISUZU:
        matches += [
            TypeMatch(TruckType.SMALL_ISUZU),
            TypeMatch(TruckType.BIG_ISUZU, slot="cargo_type2"),
            TypeMatch(TruckType.BIG_ISUZU),
            TypeMatch(TruckType.SMALL_ISUZU, slot="cargo_type2"),
        ]
    elif selected in (TruckType.SMALL_ISUZU, TruckType.BIG_ISUZU):
        low, high = (
            SMALL_ISUZU_WEIGHT if selected == TruckType.SMALL_ISUZU else BIG_ISUZU_WEIGHT
        )
        matches += [
            TypeMatch(TruckType.NOT_SPECIFIED, slot=None, min_weight=low, max_weight=high),
            TypeMatch(
                TruckType.ISUZU, min_weight=low, max_weight=high, allow_missing_weight=True
            ),
            TypeMatch(
                TruckType.ISUZU,
                slot="cargo_type2",
                min_weight=low,
                max_weight=high,
                allow_missing_weight=True,
            ),
        ]
    elif selected == TruckType.REEFER:
        matches += [
            TypeMatch(TruckType.REEFER_MODE),
            TypeMatch(TruckType.REEFER_MODE, slot="cargo_type2"),
        ]
    elif selected == TruckType.TENTED:
        matches.append(
            TypeMatch(TruckType.NOT_SPECIFIED, slot=None, min_weight=TENTED_MIN_WEIGHT)
        )
    elif selected == TruckType.LABO:
        matches.append(
            TypeMatch(
                TruckType.NOT_SPECIFIED,
                slot=None,
                max_weight=LABO_MAX_WEIGHT,
                domestic_only=True,
            )
        )
    return matches
