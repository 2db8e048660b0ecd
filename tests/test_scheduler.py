"""Tests for the periodic pipeline scheduler."""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, Mock

import pytest

from freight_ingest.config.settings import Settings
from freight_ingest.domain.models import CrawlResult, VerificationResult
from freight_ingest.domain.protocols import RepositoryProtocol
from freight_ingest.workers.scheduler import (
    PeriodicJob,
    PipelineScheduler,
    build_jobs,
    create_runtime,
)
from tests.conftest import NOW, sample_cities, sample_countries


def fixed_clock() -> datetime:
    return NOW


class TestPeriodicJob:
    """Due-time checks."""

    def test_never_run_is_due(self) -> None:
        """A job that never ran is due immediately."""
        assert PeriodicJob("crawl", 60, AsyncMock()).is_due(0.0)

    def test_due_after_interval(self) -> None:
        """A job is due once its interval elapsed."""
        job = PeriodicJob("crawl", 60, AsyncMock(), last_started=100.0)

        assert not job.is_due(159.0)
        assert job.is_due(160.0)


class TestPipelineScheduler:
    """Tests for PipelineScheduler."""

    def test_requires_jobs(self) -> None:
        """An empty schedule is a configuration error."""
        with pytest.raises(ValueError):
            PipelineScheduler([])

    def test_run_job_passes_clock(self) -> None:
        """Jobs receive the scheduler clock's time."""
        run = AsyncMock()
        job = PeriodicJob("crawl", 60, run)
        scheduler = PipelineScheduler([job], clock=fixed_clock)

        assert asyncio.run(scheduler.run_job(job)) is True

        run.assert_awaited_once_with(NOW)
        assert job.last_started is not None

    def test_failures_are_counted_and_reset(self) -> None:
        """A raising job is reported; a later success clears the count."""
        run = AsyncMock(side_effect=[RuntimeError("boom"), RuntimeError("boom"), None])
        job = PeriodicJob("crawl", 60, run)
        scheduler = PipelineScheduler([job], clock=fixed_clock)

        assert asyncio.run(scheduler.run_job(job)) is False
        assert asyncio.run(scheduler.run_job(job)) is False
        assert job.failures == 2
        assert asyncio.run(scheduler.run_job(job)) is True
        assert job.failures == 0

    def test_run_once_isolates_failures(self) -> None:
        """One failing job does not stop the others."""
        crawl = PeriodicJob("crawl", 60, AsyncMock(side_effect=RuntimeError("boom")))
        maintenance = PeriodicJob("maintenance", 3600, AsyncMock())
        scheduler = PipelineScheduler([crawl, maintenance], clock=fixed_clock)

        assert asyncio.run(scheduler.run_once()) == {"crawl": False, "maintenance": True}

    def test_run_forever_until_stopped(self) -> None:
        """The loop exits once stop is requested."""
        scheduler: PipelineScheduler
        calls: list[datetime] = []

        async def crawl(now: datetime) -> None:
            calls.append(now)
            scheduler.stop()

        scheduler = PipelineScheduler(
            [PeriodicJob("crawl", 60, crawl)], tick_seconds=0.01, clock=fixed_clock
        )

        asyncio.run(scheduler.run_forever())

        assert calls == [NOW]
        assert scheduler.stopped


class TestRuntime:
    """Wiring from settings."""

    def test_create_runtime_syncs_channels(
        self, repo: RepositoryProtocol, settings: Settings
    ) -> None:
        """Configured channels are stored before the first crawl."""
        runtime = create_runtime(settings, repo)

        names = {channel.name for channel in repo.get_channels(enabled_only=False)}
        assert names == {channel.name for channel in settings.channels}
        assert runtime.resolver.repository is repo

    def test_build_jobs(self, repo: RepositoryProtocol, settings: Settings) -> None:
        """Crawl and maintenance are due at once; the daily job waits a day."""
        runtime = create_runtime(settings, repo)

        jobs = build_jobs(runtime, crawl_interval_seconds=30)

        assert [job.name for job in jobs] == ["crawl", "maintenance", "daily"]
        assert jobs[0].interval_seconds == 30
        assert jobs[1].interval_seconds == settings.scheduler_maintenance_interval_seconds
        assert jobs[2].last_started is not None

    def test_build_jobs_maintenance_only(
        self, repo: RepositoryProtocol, settings: Settings
    ) -> None:
        """Jobs can be switched off."""
        runtime = create_runtime(settings, repo)

        assert [job.name for job in build_jobs(runtime, crawl=False)] == [
            "maintenance",
            "daily",
        ]

    def test_reload_places(self, repo: RepositoryProtocol, settings: Settings) -> None:
        """A reload swaps the resolver's reference set."""
        runtime = create_runtime(settings, repo)
        repo.save_countries(sample_countries())
        repo.save_cities(sample_cities())

        places = asyncio.run(runtime.reload_places(NOW))

        assert runtime.resolver.place_resolver is places
        assert sorted(places.cities) == [1, 2, 3, 4, 5]

    def test_crawl_and_maintenance_keep_results(
        self, repo: RepositoryProtocol, settings: Settings
    ) -> None:
        """The latest job results are kept on the runtime."""
        runtime = create_runtime(settings, repo)
        runtime.crawler = Mock()
        runtime.crawler.run = AsyncMock(return_value=CrawlResult())
        runtime.verifier = Mock()
        runtime.verifier.run = AsyncMock(return_value=VerificationResult())

        asyncio.run(runtime.crawl(NOW))
        verification, archive = asyncio.run(runtime.maintenance(NOW))

        assert runtime.last_results["crawl"] == CrawlResult()
        assert verification == VerificationResult()
        assert archive.loads_archived == 0
        runtime.verifier.run.assert_awaited_once_with(NOW)

    def test_daily_reloads_places_and_measures_routes(
        self, repo: RepositoryProtocol, settings: Settings
    ) -> None:
        """The daily job refreshes places before the maintenance pass."""
        runtime = create_runtime(settings, repo)
        repo.save_countries(sample_countries())
        repo.save_cities(sample_cities())

        result = asyncio.run(runtime.daily(NOW))

        assert sorted(runtime.resolver.place_resolver.cities) == [1, 2, 3, 4, 5]
        assert result.routes_corrected == 0
        assert result.statistics_saved == 0
        assert runtime.last_results["daily"] is result
