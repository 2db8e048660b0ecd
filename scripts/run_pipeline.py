"""Main pipeline runner script.

Runs the freight ingestion pipeline:
1. Crawl channels (fetch, gate, extract, dedup, checkpoint)
2. Verify source messages of recent ads
3. Archive stale ads and collapse duplicates

Can run once or continuously on the configured intervals.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from freight_ingest.config.logging_config import get_logger, setup_logging
from freight_ingest.config.settings import get_settings
from freight_ingest.observability.metrics import ensure_metrics_exporter
from freight_ingest.workers.scheduler import (
    PipelineScheduler,
    build_jobs,
    create_runtime,
)

logger = get_logger(__name__)

# Global flag for graceful shutdown
_shutdown_requested = False


def signal_handler(signum: int, frame: object) -> None:
    """Handle SIGTERM/SIGINT for graceful shutdown."""
    global _shutdown_requested
    logger.warning("shutdown_requested", signal=signal.Signals(signum).name)
    _shutdown_requested = True


async def _watch_shutdown(scheduler: PipelineScheduler) -> None:
    while not _shutdown_requested and not scheduler.stopped:
        await asyncio.sleep(0.5)
    scheduler.stop()


async def run(args: argparse.Namespace) -> int:
    try:
        settings = get_settings()
    except Exception as e:
        logger.error("settings_load_failed", error=str(e))
        return 1

    try:
        runtime = create_runtime(settings)
    except Exception as e:
        logger.error("runtime_init_failed", error=str(e), error_type=type(e).__name__)
        return 1

    jobs = build_jobs(
        runtime,
        crawl=not args.maintenance_only,
        maintenance=not args.crawl_only,
        crawl_interval_seconds=args.interval,
    )
    scheduler = PipelineScheduler(jobs)

    try:
        if args.once:
            logger.info("pipeline_single_run", jobs=[job.name for job in jobs])
            outcomes = await scheduler.run_once()
            return 0 if all(outcomes.values()) else 1

        if args.metrics:
            ensure_metrics_exporter()
        logger.info("pipeline_continuous_run", jobs=[job.name for job in jobs])
        await asyncio.gather(scheduler.run_forever(), _watch_shutdown(scheduler))
        return 0
    finally:
        await runtime.close()
        logger.info("pipeline_shutdown_complete")


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run the freight ad ingestion pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run every stage once and exit
  python scripts/run_pipeline.py --once

  # Crawl only, every 60 seconds
  python scripts/run_pipeline.py --crawl-only --interval 60

  # Verification and archival once (cron style)
  python scripts/run_pipeline.py --maintenance-only --once
        """,
    )
    parser.add_argument("--once", action="store_true", help="Run each job once and exit")
    modes = parser.add_mutually_exclusive_group()
    modes.add_argument("--crawl-only", action="store_true", help="Skip maintenance jobs")
    modes.add_argument(
        "--maintenance-only", action="store_true", help="Skip channel crawling"
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Crawl interval in seconds (default: from config)",
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument(
        "--metrics",
        action="store_true",
        help="Expose Prometheus metrics (port from METRICS_PORT, default 9000)",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    args = parser.parse_args()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    setup_logging(log_level=args.log_level, json_logs=args.json_logs)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
