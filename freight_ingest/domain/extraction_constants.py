"""Batching, crawl sizing and field plausibility limits for extraction."""

from typing import Final

CRAWL_LIMIT_NIGHT: Final[int] = 40
"""Messages fetched per channel per pass during low-traffic hours."""

CRAWL_LIMIT_DAY: Final[int] = 100
CRAWL_MIN_BATCH: Final[int] = 10
"""Fewer fetched messages than this means the channel has not caught up yet."""

NIGHT_START_HOUR: Final[int] = 1
NIGHT_END_HOUR: Final[int] = 6
"""Night is the open interval (start, end) in the crawl timezone."""

MIN_EXTRACTION_PASS: Final[int] = 6
"""A pass with fewer extractable texts is deferred to the next crawl."""

CHUNK_SIZE_DEFAULT: Final[int] = 10
CHUNK_SIZE_LONG_TEXTS: Final[int] = 4
CHUNK_SIZE_SHORT_TEXTS: Final[int] = 14
LONG_TEXT_CHARS: Final[int] = 2100
SHORT_TEXT_CHARS: Final[int] = 350

MESSAGE_MAX_AGE_DAYS: Final[int] = 4
"""Messages older than this are not worth extracting."""

MIN_MESSAGE_LENGTH: Final[int] = 29
"""Cleaned messages need at least this many characters."""

CLOSING_MESSAGE_MAX_LENGTH: Final[int] = 25

MAX_WEIGHT_TONS: Final[float] = 80
MIN_VOLUME_M3: Final[float] = 30
MAX_VOLUME_M3: Final[float] = 400
MAX_REQUIRED_TRUCKS: Final[int] = 40
GOODS_MAX_MESSAGE_LENGTH: Final[int] = 100
"""Goods are trusted from short messages only; long ones list several."""

MIN_PRICE: Final[int] = 10
LARGE_PRICE: Final[int] = 99_999
MEDIUM_PRICE: Final[int] = 5_000
PREPAYMENT_CHECK_PRICE: Final[int] = 1_000_000
MIN_PREPAYMENT_FOR_LARGE_PRICE: Final[int] = 10_000

DAGRUZ_MAX_WEIGHT: Final[float] = 1
DAGRUZ_MAX_HAZARDOUS_WEIGHT: Final[float] = 2
VEHICLE_DAGRUZ_MAX_WEIGHT: Final[float] = 0.6

LLM_SEED: Final[int] = 525212
