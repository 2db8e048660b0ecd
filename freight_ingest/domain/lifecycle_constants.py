"""Archival ceilings and verification windows for the lifecycle manager.

Loads and vehicles age out at different speeds: vehicles are announced
for a single day's availability, loads stay relevant for several days.
The restricted country pair covers domestic routes, which churn faster and
are reposted far more often than international ones.
"""

from typing import Final

HOME_COUNTRY_ID: Final[int] = 1
"""Reference id of the home country."""

RESTRICTED_COUNTRY_IDS: Final[tuple[int, ...]] = (1, 8)
"""Country pair whose domestic routes get the stricter duplication ceiling.

Example:
    - Tashkent (1) → Almaty (8) with duplication_counter=300 → archived
    - Tashkent (1) → Moscow (2) with duplication_counter=300 → kept
"""

# Verification pass (source message still exists)
LOAD_VERIFY_WINDOW_DAYS: Final[float] = 3.1
VEHICLE_VERIFY_WINDOW_DAYS: Final[float] = 2.2
LOAD_VERIFY_MAX_DUPLICATION: Final[int] = 50
"""Heavily reposted loads are skipped; their latest repost keeps them fresh."""

LOAD_VERIFY_LIMIT_NIGHT: Final[int] = 80
LOAD_VERIFY_LIMIT_DAY: Final[int] = 45
VEHICLE_VERIFY_LIMIT_NIGHT: Final[int] = 15
VEHICLE_VERIFY_LIMIT_DAY: Final[int] = 6

# Load archival sweep
LOAD_MAX_DUPLICATION: Final[int] = 650
LOAD_MAX_DUPLICATION_RESTRICTED: Final[int] = 245
LOAD_MAX_AGE_RESTRICTED_DAYS: Final[float] = 4.5
LOAD_MAX_AGE_DAYS: Final[float] = 6
LOAD_MAX_PUBLISHED_AGE_DAYS: Final[float] = 3
LOAD_READY_DATE_GRACE_DAYS: Final[float] = 1.5
LOAD_EXPIRATION_SOFT_LIMIT: Final[int] = 3
LOAD_OPEN_SOFT_LIMIT: Final[int] = 6
LOAD_EXPIRATION_HARD_LIMIT: Final[int] = 2
LOAD_OPEN_HARD_LIMIT: Final[int] = 22
"""Two expiration-limit pairs: >3 flags after >6 opens, or >2 after >22."""

# Vehicle archival sweep
VEHICLE_MAX_DUPLICATION: Final[int] = 200
VEHICLE_MAX_AGE_DAYS: Final[float] = 4
VEHICLE_MAX_PUBLISHED_AGE_DAYS: Final[float] = 2.8
VEHICLE_EXPIRATION_LIMIT: Final[int] = 3

# Search eligibility
SEARCH_WINDOW_DAYS: Final[int] = 7
SEARCH_MAX_EXPIRATION_COUNTER: Final[int] = 3
SEARCH_MAX_OPEN_COUNTER: Final[int] = 28
SEARCH_NEAREST_CITY_LIMIT: Final[int] = 5
SEARCH_NEAREST_CITY_RADIUS_KM: Final[float] = 10.0

# Daily route correction
ROUTE_CORRECTION_FROM_COUNTRY_ID: Final[int] = HOME_COUNTRY_ID
ROUTE_CORRECTION_TO_COUNTRY_ID: Final[int] = 2
ROUTE_CORRECTION_GOODS: Final[tuple[str, ...]] = (
    "мясо",
    "пиломатериал",
    "дсп",
    "мдф",
    "подсолнечное масло",
    "фанер",
    "тахта",
)
"""Goods that only travel inbound on this country pair.

A home → pair load carrying them was extracted with its ends reversed.
"""

# Daily price-per-kilo statistics
PRICE_STATS_WINDOW_DAYS: Final[int] = 60
PRICE_STATS_MIN_PRICE: Final[float] = 1_000_000
PRICE_STATS_MIN_WEIGHT: Final[float] = 4
PRICE_STATS_MAX_WEIGHT: Final[float] = 27
PRICE_STATS_MAX_DUPLICATION: Final[int] = 200
PRICE_STATS_MIN_SAMPLES: Final[int] = 15
"""Routes with fewer loads left after outlier removal are not published."""
PRICE_STATS_IQR_FACTOR: Final[float] = 1.5
