"""Phone number detection and cleanup in ad texts."""

import re
from typing import Final

from freight_ingest.domain.deduplication_constants import MIN_PHONE_DIGITS

PHONE_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?!\d{2}[.-])[+]?(\b\d{1,3}[ .-]?)?([(]?\d{2,3}[)]?)((?:[ .-]?\d){4,7})(?![ .-]?\d)",
    re.ASCII,
)
"""Local and international formats: +998 90 123-45-67, (90) 1234567, 901234567."""

PRICE_LIKE_SUFFIX: Final[str] = "0000"
"""Digit runs ending in four zeros are prices, not phones."""

COUNTRY_CODE: Final[str] = "998"
MIN_EXTRACTED_PHONE_LENGTH: Final[int] = 7


def remove_phone_numbers(text: str) -> tuple[str, list[str]]:
    """Remove phone numbers from text.

    Args:
        text: Ad text

    Returns:
        Tuple of (text without phones, removed phone strings)

    Example:
        >>> remove_phone_numbers("Fura kerak 90 123 45 67")
        ('Fura kerak', ['90 123 45 67'])
    """
    removed: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        value = match.group(0)
        if value.strip().endswith(PRICE_LIKE_SUFFIX):
            return value
        removed.append(value.strip())
        return ""

    return PHONE_PATTERN.sub(_replace, text).strip(), removed


def extract_phone_number(text: str | None) -> str | None:
    """Return the first phone-looking number with separators removed."""
    if not text:
        return None
    match = PHONE_PATTERN.search(text)
    if not match:
        return None
    phone = re.sub(r"[\s\-]+", "", match.group(0))
    return phone if len(phone) >= MIN_EXTRACTED_PHONE_LENGTH else None


def clean_phone(phone: str | None) -> str | None:
    """Keep digits only; phones with too few characters are dropped."""
    if not phone or len(phone) < MIN_PHONE_DIGITS:
        return None
    digits = re.sub(r"\D", "", phone)
    return digits or None


def remove_country_code(phone: str | None) -> str | None:
    """Strip the home country code from full-length numbers.

    Example:
        >>> remove_country_code("+998901234567")
        '901234567'
        >>> remove_country_code("901234567")
        '901234567'
    """
    if not phone or len(phone) not in (12, 13):
        return phone
    if phone.startswith("+" + COUNTRY_CODE):
        return phone[len(COUNTRY_CODE) + 1 :]
    if phone.startswith(COUNTRY_CODE):
        return phone[len(COUNTRY_CODE) :]
    return phone


def is_usable_phone(phone: str | None) -> bool:
    return bool(phone) and len(phone or "") >= MIN_PHONE_DIGITS
