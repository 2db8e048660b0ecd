"""Zero-width steganographic watermark for texts the system republishes.

Each marker character is written as 8 bits appended to the text, using a
zero-width space for 0 and a zero-width non-joiner for 1. Channels that copy
our own posts carry the marker along, which lets the crawler skip them.
"""

from typing import Final

ZERO_BIT: Final[str] = "\u200b"
ONE_BIT: Final[str] = "\u200c"
DEFAULT_MARKER: Final[str] = "X"

_BIT_BY_CHAR: Final[dict[str, str]] = {ZERO_BIT: "0", ONE_BIT: "1"}


def embed_watermark(text: str, marker: str = DEFAULT_MARKER) -> str:
    """Append the marker encoded as zero-width characters."""
    bits = "".join(format(ord(char), "08b") for char in marker)
    return text + "".join(ONE_BIT if bit == "1" else ZERO_BIT for bit in bits)


def extract_watermark(text: str) -> str:
    """Decode zero-width characters found anywhere in the text.

    Returns:
        Decoded payload, empty string when the text carries none
    """
    bits = "".join(_BIT_BY_CHAR[char] for char in text if char in _BIT_BY_CHAR)
    return "".join(chr(int(bits[i : i + 8], 2)) for i in range(0, len(bits), 8))


def has_watermark(text: str, marker: str = DEFAULT_MARKER) -> bool:
    return bool(marker) and extract_watermark(text) == marker
