"""What a duplicate rule asks the store for.

Rules in ``services/deduplicator.py`` describe the stored ad they look for
with a ``DuplicateLookup``; the repository turns it into a query.
"""

from dataclasses import dataclass
from datetime import datetime

from freight_ingest.domain.models import AdType


@dataclass
class DuplicateLookup:
    """Lookup of a stored ad that an incoming candidate duplicates.

    Each duplicate rule fills the fields it compares on; everything left as
    None is not constrained. Deleted records never match.

    Example:
        >>> lookup = DuplicateLookup(
        ...     rule="phone_goods",
        ...     ad_type=AdType.LOAD,
        ...     published_after=now - timedelta(days=5),
        ...     origin_contains="toshkent",
        ...     destination_contains="samarqand",
        ...     phone_suffixes=["901234567"],
        ...     goods="un",
        ...     live_only=True,
        ... )
    """

    rule: str
    """Name of the rule that built the lookup (for logs and metrics)"""

    ad_type: AdType = AdType.LOAD

    published_after: datetime | None = None
    """Only records published at or after this time"""

    params_hashes: list[str] | None = None
    """Composite route+sender+text hashes (OR logic)"""

    origin_contains: str | None = None
    """Case-insensitive substring of the stored origin name"""

    destination_contains: str | None = None
    """Case-insensitive substring of the stored destination name"""

    origin_equals: str | None = None
    """Exact stored origin name"""

    phone_suffixes: list[str] | None = None
    """Stored phone ends with any of these (OR logic, OR-ed with sender_id)"""

    sender_id: int | None = None
    """Same upstream sender (OR-ed with phone_suffixes)"""

    goods: str | None = None
    """Stored goods equal to this, ignoring case"""

    resolved_route: tuple[int | None, int | None, int | None, int | None] | None = (
        None
    )
    """(origin city, origin country, destination city, destination country);
    None entries must be NULL in the stored record too"""

    description_hash_without_phone: str | None = None

    exclude_description_hash: str | None = None
    """Skip records whose description hash equals this (same text)"""

    live_only: bool = False
    """Exclude archived records"""

    limit: int = 1
