"""Periodic pipeline runner.

Three jobs share one event loop:

- ``crawl``: crawl every enabled channel (every couple of minutes);
- ``maintenance``: verify source messages, then archive stale ads (hourly);
- ``daily``: reload the place reference set, correct reversed routes and
  publish route price statistics (daily).

A failing job is logged and retried on its next tick; it never stops the
other jobs.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import pytz

from freight_ingest.adapters.dedup_cache import DedupCache
from freight_ingest.adapters.llm_client import LLMClient
from freight_ingest.adapters.message_client_factory import MessageClientPool
from freight_ingest.adapters.repository_factory import create_repository
from freight_ingest.config.logging_config import get_logger
from freight_ingest.config.settings import Settings
from freight_ingest.domain.models import (
    ArchiveResult,
    CrawlResult,
    DailyMaintenanceResult,
    VerificationResult,
)
from freight_ingest.domain.protocols import RepositoryProtocol
from freight_ingest.observability.metrics import STAGE_DURATION_SECONDS
from freight_ingest.services.place_resolver import PlaceResolver
from freight_ingest.use_cases.archive_stale_ads import archive_stale_ads_use_case
from freight_ingest.use_cases.crawl_channels import CrawlChannelsUseCase
from freight_ingest.use_cases.daily_maintenance import daily_maintenance_use_case
from freight_ingest.use_cases.resolve_duplicates import DuplicateResolver
from freight_ingest.use_cases.verify_source_messages import VerifySourceMessagesUseCase

logger = get_logger(__name__)

JobCallable = Callable[[datetime], Awaitable[Any]]


@dataclass
class PeriodicJob:
    """A named coroutine run every ``interval_seconds``."""

    name: str
    interval_seconds: float
    run: JobCallable
    last_started: float | None = None
    failures: int = 0

    def is_due(self, monotonic_now: float) -> bool:
        if self.last_started is None:
            return True
        return monotonic_now - self.last_started >= self.interval_seconds


def build_place_resolver(repository: RepositoryProtocol, settings: Settings) -> PlaceResolver:
    return PlaceResolver(
        repository.get_cities(),
        repository.get_countries(),
        crawler_threshold=settings.places_crawler_threshold,
        query_threshold=settings.places_query_threshold,
    )


@dataclass
class PipelineRuntime:
    """Wired adapters and use cases of one process."""

    settings: Settings
    repository: RepositoryProtocol
    clients: MessageClientPool
    resolver: DuplicateResolver
    crawler: CrawlChannelsUseCase
    verifier: VerifySourceMessagesUseCase
    last_results: dict[str, Any] = field(default_factory=dict)

    async def crawl(self, now: datetime) -> CrawlResult:
        result = await self.crawler.run(now)
        self.last_results["crawl"] = result
        return result

    async def maintenance(self, now: datetime) -> tuple[VerificationResult, ArchiveResult]:
        verification = await self.verifier.run(now)
        archive = archive_stale_ads_use_case(self.repository, self.settings, now)
        self.last_results["maintenance"] = (verification, archive)
        return verification, archive

    async def reload_places(self, now: datetime) -> PlaceResolver:
        places = build_place_resolver(self.repository, self.settings)
        self.resolver.place_resolver = places
        logger.info(
            "place_reference_reloaded",
            cities=len(places.cities),
            countries=len(places.countries),
            at=now.isoformat(),
        )
        return places

    async def daily(self, now: datetime) -> DailyMaintenanceResult:
        places = await self.reload_places(now)
        result = daily_maintenance_use_case(self.repository, places, self.settings, now)
        self.last_results["daily"] = result
        return result

    async def close(self) -> None:
        await self.clients.close()
        self.repository.close()


def create_runtime(
    settings: Settings, repository: RepositoryProtocol | None = None
) -> PipelineRuntime:
    """Wire the pipeline from settings.

    Channels from configuration are synced into the store before anything
    reads them.
    """
    repo = repository or create_repository(settings)
    channels = repo.sync_channels(settings.channels)
    logger.info("channels_synced", channels=len(channels))

    dedup_cache = DedupCache(
        repo,
        load_ttl_days=settings.dedup_load_cache_ttl_days,
        vehicle_ttl_days=settings.dedup_vehicle_cache_ttl_days,
        refresh_ttl_days=settings.dedup_cache_refresh_ttl_days,
    )
    resolver = DuplicateResolver(
        repo,
        dedup_cache,
        build_place_resolver(repo, settings),
        windows=settings.dedup_windows(),
        echo_policy=settings.echo_policy(),
    )
    llm_client = LLMClient(
        api_key=settings.openai_api_key.get_secret_value(),
        model=settings.llm_model,
        temperature=settings.llm_temperature,
        top_p=settings.llm_top_p,
        seed=settings.llm_seed,
        timeout=settings.llm_timeout_seconds,
        max_retries=settings.llm_max_retries,
        prompts_dir=settings.llm_prompts_dir,
    )
    clients = MessageClientPool(settings)

    return PipelineRuntime(
        settings=settings,
        repository=repo,
        clients=clients,
        resolver=resolver,
        crawler=CrawlChannelsUseCase(
            repo, clients.get, llm_client, resolver, settings, dedup_cache
        ),
        verifier=VerifySourceMessagesUseCase(repo, clients.get, settings),
    )


class PipelineScheduler:
    """Runs periodic jobs until stopped."""

    def __init__(
        self,
        jobs: list[PeriodicJob],
        *,
        tick_seconds: float = 1.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not jobs:
            raise ValueError("PipelineScheduler needs at least one job")
        self.jobs = jobs
        self.tick_seconds = tick_seconds
        self._clock = clock or (lambda: datetime.now(tz=pytz.UTC))
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def run_job(self, job: PeriodicJob) -> bool:
        """Run one job now; returns False when it raised."""
        job.last_started = time.monotonic()
        started = time.perf_counter()
        logger.info("scheduler_job_started", job=job.name)
        try:
            await job.run(self._clock())
        except Exception as exc:  # noqa: BLE001
            job.failures += 1
            logger.exception(
                "scheduler_job_failed",
                job=job.name,
                failures=job.failures,
                error=f"{type(exc).__name__}: {exc}",
            )
            return False
        finally:
            STAGE_DURATION_SECONDS.labels(stage=job.name).observe(
                time.perf_counter() - started
            )
        job.failures = 0
        logger.info("scheduler_job_completed", job=job.name)
        return True

    async def run_once(self) -> dict[str, bool]:
        """Run every job once, in order."""
        return {job.name: await self.run_job(job) for job in self.jobs}

    async def run_forever(self) -> None:
        logger.info(
            "scheduler_started",
            jobs={job.name: job.interval_seconds for job in self.jobs},
        )
        while not self._stop.is_set():
            for job in self.jobs:
                if self._stop.is_set():
                    break
                if job.is_due(time.monotonic()):
                    await self.run_job(job)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.tick_seconds)
            except TimeoutError:
                continue
        logger.info("scheduler_stopped")


def build_jobs(
    runtime: PipelineRuntime,
    *,
    crawl: bool = True,
    maintenance: bool = True,
    crawl_interval_seconds: float | None = None,
) -> list[PeriodicJob]:
    settings = runtime.settings
    jobs: list[PeriodicJob] = []
    if crawl:
        jobs.append(
            PeriodicJob(
                "crawl",
                crawl_interval_seconds or settings.scheduler_crawl_interval_seconds,
                runtime.crawl,
            )
        )
    if maintenance:
        jobs.append(
            PeriodicJob(
                "maintenance",
                settings.scheduler_maintenance_interval_seconds,
                runtime.maintenance,
            )
        )
    jobs.append(
        PeriodicJob(
            "daily",
            settings.scheduler_daily_interval_seconds,
            runtime.daily,
            last_started=time.monotonic(),
        )
    )
    return jobs
