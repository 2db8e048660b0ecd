"""Structured logging setup for the ingestion pipeline.

Crawler, extraction and lifecycle jobs all log through structlog so every
entry carries the bound channel/session context. Console rendering is used
for local runs, JSON for deployed workers.
"""

import logging
import sys
from enum import Enum
from typing import Any

import structlog
from structlog.types import EventDict, Processor

APP_NAME = "freight_ingest"

# Third-party chatter kept out of pipeline logs below WARNING
QUIET_LOGGERS = ("httpx", "httpcore", "openai", "telethon", "asyncio")


def stamp_pipeline_fields(_: Any, __: str, event_dict: EventDict) -> EventDict:
    """Add the app name and log enum fields (ad_type, outcome) by value."""
    event_dict["app"] = APP_NAME
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def _processor_chain(json_logs: bool) -> list[Processor]:
    chain: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        stamp_pipeline_fields,
    ]
    if json_logs:
        chain += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return chain


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Route structlog through the stdlib root logger on stdout.

    Args:
        log_level: Level name (DEBUG, INFO, WARNING, ERROR)
        json_logs: Emit JSON lines (Cyrillic kept readable) instead of console output
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=_processor_chain(json_logs),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: Any) -> None:
    """Attach fields to every entry logged by the current task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)
