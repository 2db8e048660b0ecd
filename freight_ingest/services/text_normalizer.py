"""Ad text normalization.

Telegram freight channels mix Uzbek (Latin and Cyrillic) and Russian, emoji
route markers and forwarded-message headers. The steps below turn a raw post
into text the extraction service can read reliably, without translating it.
"""

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Final

from freight_ingest.services.phone_numbers import remove_phone_numbers

DEFAULT_LANGUAGE: Final[str] = "en"

MONTH_ABBREVIATIONS: Final[dict[str, tuple[str, ...]]] = {
    "en": (
        "Jan", "Feb", "Mar", "Apr", "May", "Jun",
        "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
    ),
    "ru": (
        "янв", "фев", "мар", "апр", "май", "июн",
        "июл", "авг", "сен", "окт", "ноя", "дек",
    ),
    "uz": (
        "yan", "fev", "mar", "apr", "may", "iyn",
        "iyl", "avg", "sen", "okt", "noy", "dek",
    ),
}  # fmt: skip

TELEGRAM_HEADER_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^(.{1,32}?), \[(\d{2}\.\d{2}\.\d{4} \d{1,2}:\d{2})\]\n*"
)
"""Header added when a post is copied from the desktop client: "Name, [dd.mm.yyyy hh:mm]"."""

TODAY_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b(bugun|бугун|xozirga|хозирга|сейчас|hozir|hozrga|сегодня)\b", re.IGNORECASE
)
TOMORROW_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b(ertaga|ertalabga|eralab|ерталб|эртангига|ерталафка|эрталабга|ертагаликка"
    r"|ертагалиk|ertagalik|ерталабга|эртага|завтра)\b",
    re.IGNORECASE,
)

FLAG_PATTERN: Final[re.Pattern[str]] = re.compile("([\U0001f1e6-\U0001f1ff]{2})")
EMOJI_RUN_PATTERN: Final[re.Pattern[str]] = re.compile(
    "(?:[\U00002700-\U000027bf\U0000e000-\U0000f8ff\U0001f000-\U0001f7ff"
    "\U00002011-\U000026ff\U0001f910-\U0001f9ff\U0000fe0f])+"
)
MAX_KEPT_EMOJI_RUN: Final[int] = 5
"""Longer emoji runs are visual separators and become a dash line."""

ARROW_PATTERN: Final[re.Pattern[str]] = re.compile(
    "(?:\U000027a1\U0000fe0f?|\U0001f449)"
)
MONEY_BAG: Final[str] = "\U0001f4b0"
NO_BREAK_SPACE: Final[str] = "\xa0"

DIRECTION_WORD_PATTERN: Final[re.Pattern[str]] = re.compile(r"\b\w*(dan|ga|дан|га)\b")

FILLER_PATTERN: Final[re.Pattern[str]] = re.compile(
    "|".join(
        [
            "срочно", "sroshni", "assalomu", "alaykum", "assalom",
            "без посредников", "диспетчерла безовта килмасин", "здравствуйте",
            "bismillah", "напрямую от грузовладельца", "самые высокие ставки",
            "diqqat", "aleykum", "Assalomualaykum", "груз готов",
            "narx kelishamiz", "siroshni", "srochniy", "Surochna", "узидан",
            "ставка нормальная", "srochna", "srochno", "Шопир", "сирочни",
            "bezrejim", "bez rejm", "диспетчеры не нужны", "shòpir akalar",
            "Shopirakalar", "Shopir akalar", "akalar", "актуальные грузы",
            "акалар", "bez rejim", "яхшимисизлар", "яхшимисиз", "rejimsiz",
            "Akala ", "хурматли", "без режима", "без режим",
            "без температурного режима", "без температуры", "ассалому",
            "ассалом", "алайкум", "диспетчерла билан ишламаймиз", "алейкум",
        ]
    ),
    re.IGNORECASE,
)  # fmt: skip
"""Greetings, pleas and boilerplate that carry no shipment information."""

BARE_VOLUME_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?<![\w\d])(96|105|120|130|140)(?!\d)\s*(?![\- ]*(kub|куб|сум|sum|kg|кг))",
    re.IGNORECASE,
)
"""Standard trailer volumes written without a unit."""


@dataclass(frozen=True)
class TextHashes:
    """Content hashes used as dedup keys."""

    text_hash: str
    raw_hash: str
    trimmed_hash: str


def md5_hex(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def compute_text_hashes(text: str) -> TextHashes:
    """Hash the raw message three ways, tolerant of case and whitespace.

    Example:
        >>> hashes = compute_text_hashes(" Fura kerak ")
        >>> hashes.text_hash == md5_hex("fura kerak")
        True
    """
    return TextHashes(
        text_hash=md5_hex(text.strip().lower()),
        raw_hash=md5_hex(text),
        trimmed_hash=md5_hex(text.strip()),
    )


def remove_telegram_header(text: str) -> str:
    return TELEGRAM_HEADER_PATTERN.sub("", text, count=1)


def description_hash_without_phone(raw_text: str) -> str:
    """Hash of the text with header and phone numbers stripped."""
    stripped, _ = remove_phone_numbers(remove_telegram_header(raw_text))
    return md5_hex(stripped)


def format_short_date(value: datetime, language: str = DEFAULT_LANGUAGE) -> str:
    """Format as DD-MMM-YY with month names of the given language.

    Example:
        >>> format_short_date(datetime(2026, 10, 19), "en")
        '19-Oct-26'
    """
    months = MONTH_ABBREVIATIONS.get(language, MONTH_ABBREVIATIONS[DEFAULT_LANGUAGE])
    return f"{value.day:02d}-{months[value.month - 1]}-{value.year % 100:02d}"


def replace_relative_dates(
    text: str, message_date: datetime, language: str = DEFAULT_LANGUAGE
) -> str:
    """Replace "today"/"tomorrow" words with dates relative to the message."""
    today = format_short_date(message_date, language)
    tomorrow = format_short_date(message_date + timedelta(days=1), language)
    text = TODAY_PATTERN.sub(today, text)
    return TOMORROW_PATTERN.sub(tomorrow, text)


def insert_flag_sequence_line(text: str) -> str:
    """Turn a vertical flag listing into explicit route lines.

    The first flag line of a sequence is the origin; every following flag
    line becomes "origin -> line".

    Example:
        Input::

            [RU]СМОЛЕНСК
            [UZ]КОКАНД 2850
            [UZ]ТАШКЕНТ 2650

        Output::

            [RU]СМОЛЕНСК -> [UZ]КОКАНД 2850
            [RU]СМОЛЕНСК -> [UZ]ТАШКЕНТ 2650

        where [RU]/[UZ] stand for flag emoji.
    """
    lines = text.split("\n")
    result: list[str] = []
    pending: list[str] = []
    origin_line: str | None = None

    def _flag(index: int) -> str | None:
        if index >= len(lines):
            return None
        match = FLAG_PATTERN.search(lines[index])
        return match.group(1) if match else None

    for index, raw_line in enumerate(lines):
        line = raw_line.strip()
        current_flag = _flag(index)
        next_flag = _flag(index + 1)
        starts_sequence = (
            current_flag is not None
            and next_flag is not None
            and current_flag != next_flag
            and _flag(index + 2) is not None
            and "растаможка" not in lines[index + 1]
        )

        if current_flag is not None and (origin_line is not None or starts_sequence):
            if origin_line is None:
                origin_line = line
                continue
            pending.append(f"{origin_line} -> {line}")
            continue

        result.extend(pending)
        result.append(raw_line)
        pending = []
        origin_line = None

    result.extend(pending)
    return "\n".join(result)


def remove_every_second_line_if_all_empty(text: str) -> str:
    """Drop blank spacer lines when every odd line is blank."""
    lines = text.split("\n")
    if all(not line.strip() for line in lines[1::2]):
        return "\n".join(lines[0::2])
    return text


def remove_emojis(text: str) -> str:
    """Remove emoji; flags become spaces, long runs become a separator."""

    def _replace(match: re.Match[str]) -> str:
        value = match.group(0)
        if FLAG_PATTERN.search(value):
            return " "
        return "-----" if len(value) > MAX_KEPT_EMOJI_RUN else ""

    return EMOJI_RUN_PATTERN.sub(_replace, text)


def capitalize_direction_words(text: str) -> str:
    """Capitalize words ending with the "from"/"to" suffixes (dan/ga)."""
    return DIRECTION_WORD_PATTERN.sub(
        lambda match: match.group(0)[:1].upper() + match.group(0)[1:], text
    )


def remove_filler_words(text: str) -> str:
    """Strip filler words and collapse separators and units."""
    text = FILLER_PATTERN.sub("", text)
    text = text.replace(NO_BREAK_SPACE, " ")
    text = re.sub(r"\${3,}", "$", text)
    text = re.sub(r"[-=]{4,}", "---", text)
    text = re.sub(r"_{4,}", "___", text)
    text = re.sub(r"\n{4,}", "\n\n\n", text)
    text = BARE_VOLUME_PATTERN.sub(r"\1куб ", text)
    text = re.sub(r"млн", "миллион", text, flags=re.IGNORECASE)
    text = re.sub(r"mln", "million", text, flags=re.IGNORECASE)
    return text.strip()


def prepare_ad_text(
    text: str, message_date: datetime, language: str = DEFAULT_LANGUAGE
) -> str:
    """Header, relative dates, emoji and route markers; filler words are kept.

    The quality gate measures length and classifies on this form.
    """
    text = remove_telegram_header(text)
    text = replace_relative_dates(text, message_date, language)
    text = text.replace("милйон", "миллион")
    text = ARROW_PATTERN.sub(" -> ", text)
    text = text.replace(MONEY_BAG, "$")
    text = insert_flag_sequence_line(text)
    text = remove_every_second_line_if_all_empty(text)
    text = remove_emojis(text)
    return capitalize_direction_words(text).strip()


def normalize_ad_text(
    text: str, message_date: datetime, language: str = DEFAULT_LANGUAGE
) -> str:
    """Full normalization applied before extraction.

    Args:
        text: Raw message text
        message_date: Message timestamp; relative dates resolve against it
        language: Language for formatted dates (en, ru, uz)

    Returns:
        Cleaned text
    """
    return remove_filler_words(prepare_ad_text(text, message_date, language))
