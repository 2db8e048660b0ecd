"""Specification pattern for the message quality gate.

Each rule that can reject an incoming channel message is a specification.
The crawler combines them with AND; a message reaching extraction satisfied
every one of them.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Generic, TypeVar

import pytz

from freight_ingest.domain.extraction_constants import (
    MESSAGE_MAX_AGE_DAYS,
    MIN_MESSAGE_LENGTH,
)
from freight_ingest.domain.models import TelegramMessage
from freight_ingest.services.watermark import DEFAULT_MARKER, has_watermark

T = TypeVar("T")


class Specification(ABC, Generic[T]):
    """Base specification interface.

    A specification represents a business rule that can be checked
    against a candidate object. Specifications can be combined using
    logical operators to create complex conditions.
    """

    @abstractmethod
    def is_satisfied_by(self, candidate: T) -> bool:
        """Check if candidate satisfies this specification.

        Args:
            candidate: Object to check

        Returns:
            True if candidate satisfies the specification
        """
        pass

    def and_(self, other: "Specification[T]") -> "AndSpecification[T]":
        """Combine with AND logic."""
        return AndSpecification(self, other)

    def or_(self, other: "Specification[T]") -> "OrSpecification[T]":
        """Combine with OR logic."""
        return OrSpecification(self, other)

    def not_(self) -> "NotSpecification[T]":
        """Negate this specification."""
        return NotSpecification(self)


class AndSpecification(Specification[T]):
    """AND combination of two specifications."""

    def __init__(self, left: Specification[T], right: Specification[T]) -> None:
        self.left = left
        self.right = right

    def is_satisfied_by(self, candidate: T) -> bool:
        return self.left.is_satisfied_by(candidate) and self.right.is_satisfied_by(
            candidate
        )


class OrSpecification(Specification[T]):
    """OR combination of two specifications."""

    def __init__(self, left: Specification[T], right: Specification[T]) -> None:
        self.left = left
        self.right = right

    def is_satisfied_by(self, candidate: T) -> bool:
        return self.left.is_satisfied_by(candidate) or self.right.is_satisfied_by(
            candidate
        )


class NotSpecification(Specification[T]):
    """NOT negation of a specification."""

    def __init__(self, spec: Specification[T]) -> None:
        self.spec = spec

    def is_satisfied_by(self, candidate: T) -> bool:
        return not self.spec.is_satisfied_by(candidate)


@dataclass(frozen=True)
class PreparedMessage:
    """Upstream message together with its prepared (pre-filler-removal) text."""

    message: TelegramMessage
    text: str


class RecentMessageSpec(Specification[PreparedMessage]):
    """Message was posted within the recency window."""

    def __init__(
        self, max_age_days: float = MESSAGE_MAX_AGE_DAYS, now: datetime | None = None
    ) -> None:
        """Initialize with the window.

        Args:
            max_age_days: Oldest accepted message age
            now: Reference time (defaults to current UTC time)
        """
        reference = now or datetime.now(tz=pytz.UTC)
        self.cutoff = reference - timedelta(days=max_age_days)

    def is_satisfied_by(self, candidate: PreparedMessage) -> bool:
        posted = candidate.message.date
        if posted.tzinfo is None:
            posted = pytz.UTC.localize(posted)
        return posted >= self.cutoff


class MinimumLengthSpec(Specification[PreparedMessage]):
    """Text is long enough to describe a shipment."""

    def __init__(self, min_length: int = MIN_MESSAGE_LENGTH) -> None:
        self.min_length = min_length

    def is_satisfied_by(self, candidate: PreparedMessage) -> bool:
        return len(candidate.text) >= self.min_length


class NotFromSpammerSpec(Specification[PreparedMessage]):
    """Sender is not on the spammer list."""

    def __init__(self, spammer_ids: Iterable[int]) -> None:
        self.spammer_ids = frozenset(spammer_ids)

    def is_satisfied_by(self, candidate: PreparedMessage) -> bool:
        return candidate.message.sender_id not in self.spammer_ids


class NoSpamPhraseSpec(Specification[PreparedMessage]):
    """Text contains none of the spam phrases (case-insensitive substring)."""

    def __init__(self, phrases: Iterable[str]) -> None:
        self.phrases = tuple(phrase.lower() for phrase in phrases if phrase.strip())

    def is_satisfied_by(self, candidate: PreparedMessage) -> bool:
        text = candidate.message.text.lower()
        return not any(phrase in text for phrase in self.phrases)


class NoWatermarkSpec(Specification[PreparedMessage]):
    """Text is not a copy of content this system published."""

    def __init__(self, marker: str = DEFAULT_MARKER) -> None:
        self.marker = marker

    def is_satisfied_by(self, candidate: PreparedMessage) -> bool:
        return not has_watermark(candidate.message.text, self.marker)


def message_quality_gate(
    *,
    spammer_ids: Iterable[int] = (),
    spam_phrases: Iterable[str] = (),
    watermark_marker: str = DEFAULT_MARKER,
    max_age_days: float = MESSAGE_MAX_AGE_DAYS,
    min_length: int = MIN_MESSAGE_LENGTH,
    now: datetime | None = None,
) -> Specification[PreparedMessage]:
    """Factory for the combined quality gate.

    Example:
        >>> gate = message_quality_gate(spam_phrases=["kredit"])
        >>> accepted = [m for m in prepared if gate.is_satisfied_by(m)]
    """
    return (
        RecentMessageSpec(max_age_days, now)
        .and_(MinimumLengthSpec(min_length))
        .and_(NotFromSpammerSpec(spammer_ids))
        .and_(NoSpamPhraseSpec(spam_phrases))
        .and_(NoWatermarkSpec(watermark_marker))
    )
