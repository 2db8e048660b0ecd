"""Tests for the zero-width watermark."""

from freight_ingest.services.watermark import (
    ONE_BIT,
    ZERO_BIT,
    embed_watermark,
    extract_watermark,
    has_watermark,
)


def test_embedded_marker_is_invisible_and_detected() -> None:
    """Marker survives as zero-width characters only."""
    marked = embed_watermark("Toshkentdan Samarqandga un")

    visible = marked.replace(ZERO_BIT, "").replace(ONE_BIT, "")
    assert visible == "Toshkentdan Samarqandga un"
    assert len(marked) == len(visible) + 8
    assert has_watermark(marked)


def test_extract_watermark_custom_marker() -> None:
    """Multi-character markers decode in order."""
    assert extract_watermark(embed_watermark("Fura bor", "OK")) == "OK"


def test_plain_text_has_no_watermark() -> None:
    """Unmarked text decodes to an empty payload."""
    assert extract_watermark("Fura bor") == ""
    assert not has_watermark("Fura bor")
    assert not has_watermark(embed_watermark("Fura bor", "Y"))
