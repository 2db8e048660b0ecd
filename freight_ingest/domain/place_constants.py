"""Similarity thresholds for fuzzy place-name resolution."""

from typing import Final

CRAWLER_SIMILARITY_THRESHOLD: Final[float] = 0.31
"""Minimum trigram similarity for places named inside ad texts.

Ad texts are noisy (misspellings, suffixes, mixed scripts); the slightly
higher bar keeps street names and goods from resolving to small villages.

Example:
    - "samarqand" vs "samarkand" → 0.54 → accepted
    - "sement" vs "toshkent" → 0.14 → rejected
"""

QUERY_SIMILARITY_THRESHOLD: Final[float] = 0.3
"""Minimum trigram similarity for places typed into a search query."""

MAX_SPLIT_PARTS: Final[int] = 5
"""Place texts with this many parts or more are only matched as a whole."""

EXCLUDED_PLACE_TOKENS: Final[frozenset[str]] = frozenset({"через", "orqali"})
"""Tokens meaning "via"; the part after them is not an endpoint."""
