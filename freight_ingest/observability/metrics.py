"""Prometheus metrics for the crawl, dedup and lifecycle stages."""

import os
import threading
from typing import Final

from prometheus_client import Counter, Histogram, start_http_server

from freight_ingest.config.logging_config import get_logger

logger = get_logger(__name__)

MESSAGES_FETCHED_TOTAL: Final[Counter] = Counter(
    "freight_messages_fetched_total",
    "Channel messages fetched from upstream",
    labelnames=("channel",),
)

MESSAGES_REJECTED_TOTAL: Final[Counter] = Counter(
    "freight_messages_rejected_total",
    "Messages skipped before extraction",
    labelnames=("reason",),
)

EXTRACTION_BATCHES_TOTAL: Final[Counter] = Counter(
    "freight_extraction_batches_total",
    "Extraction batches by ad type and outcome",
    labelnames=("ad_type", "outcome"),
)

ADS_CREATED_TOTAL: Final[Counter] = Counter(
    "freight_ads_created_total",
    "New ads stored",
    labelnames=("ad_type",),
)

ADS_MERGED_TOTAL: Final[Counter] = Counter(
    "freight_ads_merged_total",
    "Duplicate ads merged into stored ones, by matching rule",
    labelnames=("ad_type", "rule"),
)

ADS_ARCHIVED_TOTAL: Final[Counter] = Counter(
    "freight_ads_archived_total",
    "Ads retired by the lifecycle manager",
    labelnames=("ad_type", "reason"),
)

CRAWL_DURATION_SECONDS: Final[Histogram] = Histogram(
    "freight_crawl_duration_seconds",
    "Duration of a full crawl cycle",
)

STAGE_DURATION_SECONDS: Final[Histogram] = Histogram(
    "freight_stage_duration_seconds",
    "Duration of scheduler stages",
    labelnames=("stage",),
)

_EXPORTER_LOCK = threading.Lock()
_EXPORTER_STARTED = False
_DEFAULT_METRICS_PORT: Final[int] = 9000
_METRICS_PORT_ENV: Final[str] = "METRICS_PORT"


def _resolve_metrics_port() -> int:
    port_raw = os.getenv(_METRICS_PORT_ENV)
    try:
        return int(port_raw) if port_raw else _DEFAULT_METRICS_PORT
    except ValueError:
        logger.warning("invalid_metrics_port", port=port_raw)
        return _DEFAULT_METRICS_PORT


def ensure_metrics_exporter() -> None:
    """Start Prometheus HTTP exporter once per process."""

    global _EXPORTER_STARTED
    with _EXPORTER_LOCK:
        if _EXPORTER_STARTED:
            return

        port = _resolve_metrics_port()
        try:
            start_http_server(port)
        except OSError as exc:
            logger.error("metrics_exporter_start_failed", port=port, error=str(exc))
            raise

        _EXPORTER_STARTED = True
        logger.info("metrics_exporter_started", port=port)


__all__ = [
    "ADS_ARCHIVED_TOTAL",
    "ADS_CREATED_TOTAL",
    "ADS_MERGED_TOTAL",
    "CRAWL_DURATION_SECONDS",
    "EXTRACTION_BATCHES_TOTAL",
    "MESSAGES_FETCHED_TOTAL",
    "MESSAGES_REJECTED_TOTAL",
    "STAGE_DURATION_SECONDS",
    "ensure_metrics_exporter",
]
