"""Tests for the verify source messages use case."""

import asyncio
from collections.abc import Sequence
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock

import pytz

from freight_ingest.adapters.query_builders import SourceVerificationCriteria
from freight_ingest.config.settings import Settings
from freight_ingest.domain.models import AdType, Channel
from freight_ingest.use_cases.verify_source_messages import (
    VerifySourceMessagesUseCase,
    build_verification_criteria,
)
from tests.conftest import NOW, make_load, make_message, make_vehicle

NIGHT = datetime(2026, 10, 19, 22, 0, tzinfo=pytz.UTC)


class TestBuildVerificationCriteria:
    """Selection windows and batch sizes."""

    def test_loads_by_day(self, settings: Settings) -> None:
        """Day batches are small; over-duplicated loads are skipped."""
        criteria = build_verification_criteria(settings, 1, AdType.LOAD, NOW)

        assert criteria.channel_id == 1
        assert criteria.touched_after == NOW - timedelta(days=3.1)
        assert criteria.max_duplication == 50
        assert criteria.limit == 45

    def test_loads_at_night(self, settings: Settings) -> None:
        """Quiet hours allow larger batches."""
        assert build_verification_criteria(settings, 1, AdType.LOAD, NIGHT).limit == 80

    def test_vehicles(self, settings: Settings) -> None:
        """Vehicles use their own window and no duplication cap."""
        day = build_verification_criteria(settings, 1, AdType.VEHICLE, NOW)
        night = build_verification_criteria(settings, 1, AdType.VEHICLE, NIGHT)

        assert day.touched_after == NOW - timedelta(days=2.2)
        assert day.max_duplication is None
        assert (day.limit, night.limit) == (6, 15)


class TestVerifySourceMessagesUseCase:
    """Tests for VerifySourceMessagesUseCase."""

    def test_touches_alive_and_deletes_gone(
        self, mock_repository: Mock, settings: Settings
    ) -> None:
        """Ads whose message is still upstream are touched, the rest deleted."""
        mock_repository.get_channels.return_value = [Channel(id=1, name="yuk_markazi")]
        alive = make_load(id=1, telegram_message_id=101)
        gone = make_load(id=2, telegram_message_id=102)
        vehicle = make_vehicle(id=7, telegram_message_id=202)

        def ads_for(criteria: SourceVerificationCriteria) -> list:
            return [alive, gone] if criteria.ad_type == AdType.LOAD else [vehicle]

        mock_repository.get_ads_for_verification.side_effect = ads_for
        mock_repository.touch_ads.side_effect = lambda ad_type, ids, now: len(ids)
        mock_repository.mark_ads_deleted.side_effect = lambda ad_type, ids, now: len(ids)

        client = AsyncMock()

        async def present(channel: str, ids: Sequence[int]) -> list:
            return [make_message(message_id) for message_id in ids if message_id != 102]

        client.get_messages_by_ids.side_effect = present
        use_case = VerifySourceMessagesUseCase(mock_repository, lambda session: client, settings)

        result = asyncio.run(use_case.run(NOW))

        assert result.checked == 3
        assert result.refreshed == 2
        assert result.deleted == 1
        assert result.errors == []
        mock_repository.touch_ads.assert_any_call(AdType.LOAD, [1], NOW)
        mock_repository.mark_ads_deleted.assert_any_call(AdType.LOAD, [2], NOW)
        mock_repository.touch_ads.assert_any_call(AdType.VEHICLE, [7], NOW)
        client.get_messages_by_ids.assert_any_await("yuk_markazi", [101, 102])

    def test_disabled_ad_type_is_skipped(
        self, mock_repository: Mock, settings: Settings
    ) -> None:
        """Channels that do not crawl vehicles are not verified for them."""
        mock_repository.get_channels.return_value = [
            Channel(id=1, name="yuk_markazi", crawl_vehicles=False)
        ]
        mock_repository.get_ads_for_verification.return_value = []
        use_case = VerifySourceMessagesUseCase(mock_repository, lambda session: AsyncMock(), settings)

        asyncio.run(use_case.run(NOW))

        (criteria,) = [c.args[0] for c in mock_repository.get_ads_for_verification.call_args_list]
        assert criteria.ad_type == AdType.LOAD

    def test_channel_errors_are_isolated(
        self, mock_repository: Mock, settings: Settings
    ) -> None:
        """A failing channel is reported and the next one still runs."""
        mock_repository.get_channels.return_value = [
            Channel(id=1, name="broken", session="second"),
            Channel(id=2, name="yuk_markazi"),
        ]
        mock_repository.get_ads_for_verification.return_value = []

        def clients(session: str) -> AsyncMock:
            if session == "second":
                raise ValueError("Session 'second' is not configured")
            return AsyncMock()

        use_case = VerifySourceMessagesUseCase(mock_repository, clients, settings)

        result = asyncio.run(use_case.run(NOW))

        assert result.errors == ["Channel broken: Session 'second' is not configured"]
        channel_ids = {
            c.args[0].channel_id for c in mock_repository.get_ads_for_verification.call_args_list
        }
        assert channel_ids == {2}

    def test_unsaved_channel_is_skipped(
        self, mock_repository: Mock, settings: Settings
    ) -> None:
        """Channels without a stored id are not verified."""
        mock_repository.get_channels.return_value = [
            Channel(name="draft"),
            Channel(id=2, name="yuk_markazi"),
        ]
        mock_repository.get_ads_for_verification.return_value = []
        sessions: list[str] = []

        def clients(session: str) -> AsyncMock:
            sessions.append(session)
            return AsyncMock()

        use_case = VerifySourceMessagesUseCase(mock_repository, clients, settings)

        result = asyncio.run(use_case.run(NOW))

        assert result.errors == []
        assert len(sessions) == 1
        channel_ids = {
            c.args[0].channel_id for c in mock_repository.get_ads_for_verification.call_args_list
        }
        assert channel_ids == {2}
