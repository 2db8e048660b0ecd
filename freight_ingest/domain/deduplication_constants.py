"""Business rules and constants for ad deduplication.

All recency windows, cache lifetimes and counter ceilings used by the
duplicate cascade live here so the resolver, the lifecycle sweeps and the
query builder agree on the same numbers. Every value can be overridden
through settings.
"""

from typing import Final

PARAMS_HASH_WINDOW_DAYS: Final[int] = 4
"""Recency window for the exact route+sender+text composite hash match.

Business rule: a stored load with the same params hash published within the
last 4 days is the same ad reposted.

Example:
    - Load A: "Toshkentdan Samarqandga 15 tonna" by sender 42 on Monday
    - Same text by sender 42 on Wednesday → duplicate (2 days < 4)
    - Same text by sender 42 next Monday → new load
"""

PHONE_GOODS_WINDOW_DAYS: Final[int] = 5
"""Recency window for the phone + goods + fuzzy route match.

Business rule: the same phone advertising the same goods on a similar route
within 5 days is one load, even when the wording changed.
"""

SENDER_PHONES_WINDOW_DAYS: Final[int] = 2
"""Recency window for the sender phone-set / sender id + fuzzy route match."""

RESOLVED_ROUTE_WINDOW_DAYS: Final[int] = 2
"""Recency window for the resolved place ids + phone/sender match."""

ECHO_WINDOW_DAYS: Final[int] = 8
"""Recency window for the phone-stripped description hash (echo) match.

Business rule: brokers copy each other's ads and swap in their own phone.
A load whose text without phone numbers equals a stored load within 8 days
is treated as an echo of the original, not as a new load.
"""

VEHICLE_PHONE_ORIGIN_WINDOW_DAYS: Final[int] = 2
"""Recency window for the vehicle phone + exact origin match."""

LOAD_CACHE_TTL_DAYS: Final[int] = 8
"""Lifetime of a content hash → load ids memo written after a pass."""

VEHICLE_CACHE_TTL_DAYS: Final[int] = 6
"""Lifetime of a content hash → vehicle ids memo written after a pass."""

CACHE_REFRESH_TTL_DAYS: Final[int] = 5
"""Lifetime applied to a memo entry when a cache hit refreshes its records."""

DUPLICATE_URLS_MAX_COUNTER: Final[int] = 40
"""Previous message URLs are remembered only while the counter is below this.

Example:
    - Load with duplication_counter=12 → old url prepended to duplicates
    - Load with duplication_counter=40 → url list frozen
"""

UNARCHIVE_MAX_DUPLICATION_COUNTER: Final[int] = 280
"""A merge revives an archived load only while its counter is below this."""

UNARCHIVE_MAX_EXPIRATION_COUNTER: Final[int] = 4
"""A merge revives an archived ad only while fewer users flagged it expired."""

MIN_PHONE_DIGITS: Final[int] = 9
"""Phones shorter than this are treated as missing (more than 8 digits)."""

LIKELY_OWNER_MAX_LOADS: Final[int] = 4
"""Senders with fewer live low-duplicate loads than this may be cargo owners."""

LIKELY_OWNER_MAX_DUPLICATION: Final[int] = 15
"""Loads duplicated this many times are ignored when counting owner loads."""

LIKELY_OWNER_MAX_TEXT_LENGTH: Final[int] = 200
"""Owners write short messages; longer texts come from dispatch channels."""

LIKELY_DISPATCHER_MIN_LOADS: Final[int] = 3
"""A vehicle sender who posted more loads than this is likely a dispatcher."""

ECHO_SENTINEL_ID: Final[int] = 1
"""Record id reported for echo decisions that produced no record."""
