"""Tests for the daily maintenance use case."""

from datetime import timedelta
from unittest.mock import Mock

from freight_ingest.adapters.query_builders import RouteCorrectionCriteria
from freight_ingest.config.settings import Settings
from freight_ingest.domain.models import AdType, Load, PriceStatistics
from freight_ingest.domain.protocols import RepositoryProtocol
from freight_ingest.services.place_resolver import PlaceResolver
from freight_ingest.use_cases.daily_maintenance import (
    daily_maintenance_use_case,
    route_price_statistics,
)
from tests.conftest import NOW, make_load


def priced_load(message_id: int, price: float, **kwargs: object) -> Load:
    return make_load(telegram_message_id=message_id, price=price, weight=20, **kwargs)


def stored(repo: RepositoryProtocol, ad_id: int) -> Load:
    (load,) = repo.get_ads_by_ids(AdType.LOAD, [ad_id])
    assert isinstance(load, Load)
    return load


class TestRouteCorrection:
    """Inbound-only goods put back on their real direction."""

    def test_swaps_inbound_goods(
        self, repo: RepositoryProtocol, places: PlaceResolver, settings: Settings
    ) -> None:
        """Meat from the home country to Russia is really going the other way."""
        to_moscow = {
            "destination_city_name": "Moskvaga",
            "destination_city_id": 4,
            "destination_country_id": 2,
        }
        meat = repo.insert_ad(make_load(goods="Мясо говядина", **to_moscow))
        flour = repo.insert_ad(make_load(telegram_message_id=102, goods="un", **to_moscow))

        result = daily_maintenance_use_case(repo, places, settings, NOW)

        assert result.routes_corrected == 1
        corrected = stored(repo, meat)
        assert (corrected.origin_city_id, corrected.origin_country_id) == (4, 2)
        assert (corrected.destination_city_id, corrected.destination_country_id) == (1, 1)
        assert corrected.origin_city_name == "Moskvaga"
        assert corrected.destination_city_name == "Toshkentdan"
        assert stored(repo, flour).origin_city_id == 1

    def test_correction_runs_once(
        self, repo: RepositoryProtocol, places: PlaceResolver, settings: Settings
    ) -> None:
        """A corrected load no longer matches the home to Russia pair."""
        repo.insert_ad(
            make_load(goods="фанера", destination_city_id=4, destination_country_id=2)
        )

        daily_maintenance_use_case(repo, places, settings, NOW)
        second = daily_maintenance_use_case(repo, places, settings, NOW)

        assert second.routes_corrected == 0

    def test_empty_goods_list_skips(
        self, mock_repository: Mock, places: PlaceResolver, settings: Settings
    ) -> None:
        """Without goods patterns nothing is corrected."""
        mock_repository.get_price_route_pairs.return_value = []
        tuned = settings.model_copy(update={"lifecycle_route_correction_goods": []})

        result = daily_maintenance_use_case(mock_repository, places, tuned, NOW)

        assert result.routes_corrected == 0
        mock_repository.correct_reversed_routes.assert_not_called()

    def test_configured_goods_reach_criteria(
        self, mock_repository: Mock, places: PlaceResolver, settings: Settings
    ) -> None:
        mock_repository.correct_reversed_routes.return_value = 0
        mock_repository.get_price_route_pairs.return_value = []
        tuned = settings.model_copy(update={"lifecycle_route_correction_goods": ["paxta"]})

        daily_maintenance_use_case(mock_repository, places, tuned, NOW)

        criteria = mock_repository.correct_reversed_routes.call_args.args[0]
        assert isinstance(criteria, RouteCorrectionCriteria)
        assert criteria.goods == ("paxta",)


class TestPriceStatistics:
    """Route price-per-kilo statistics."""

    def test_busy_route_is_published(
        self, repo: RepositoryProtocol, places: PlaceResolver, settings: Settings
    ) -> None:
        """District loads count for their city; outliers are left out."""
        for i in range(15):
            repo.insert_ad(priced_load(200 + i, 3_000_000 + i * 20_000))
        repo.insert_ad(
            priced_load(
                215, 3_300_000, origin_city_name="Chirchiqdan", origin_city_id=3
            )
        )
        repo.insert_ad(priced_load(216, 20_000_000))

        result = daily_maintenance_use_case(repo, places, settings, NOW)

        assert result.routes_measured == 2
        assert result.statistics_saved == 1
        (statistics,) = repo.get_price_statistics(1, 2)
        assert statistics == PriceStatistics(
            day=NOW.date(),
            origin_city_id=1,
            destination_city_id=2,
            average=157.5,
            median=157.5,
            max=165.0,
            min=150.0,
            count=16,
        )
        assert repo.get_price_statistics(3, 2) == []

    def test_sample_filters(
        self, repo: RepositoryProtocol, places: PlaceResolver, settings: Settings
    ) -> None:
        """Cheap, light, heavy, reposted and old loads are not sampled."""
        for i in range(15):
            repo.insert_ad(priced_load(200 + i, 3_000_000))
        repo.insert_ad(priced_load(300, 900_000))
        repo.insert_ad(make_load(telegram_message_id=301, price=3_000_000, weight=4))
        repo.insert_ad(make_load(telegram_message_id=302, price=3_000_000, weight=27))
        repo.insert_ad(priced_load(303, 3_000_000, duplication_counter=200))
        repo.insert_ad(
            priced_load(304, 3_000_000, created_at=NOW - timedelta(days=61))
        )

        statistics = route_price_statistics(repo, places, settings, 1, 2, NOW)

        assert statistics is not None
        assert statistics.count == 15

    def test_quiet_route_is_skipped(
        self, repo: RepositoryProtocol, places: PlaceResolver, settings: Settings
    ) -> None:
        """Fewer than fifteen priced loads publish nothing."""
        for i in range(14):
            repo.insert_ad(priced_load(200 + i, 3_000_000))

        result = daily_maintenance_use_case(repo, places, settings, NOW)

        assert result.routes_measured == 1
        assert result.statistics_saved == 0
        assert repo.get_price_statistics(1, 2) == []

    def test_rerun_replaces_the_day(
        self, repo: RepositoryProtocol, places: PlaceResolver, settings: Settings
    ) -> None:
        """Statistics are kept once per route and day."""
        for i in range(15):
            repo.insert_ad(priced_load(200 + i, 3_000_000))
        daily_maintenance_use_case(repo, places, settings, NOW)
        repo.insert_ad(priced_load(215, 3_000_000))

        daily_maintenance_use_case(repo, places, settings, NOW + timedelta(hours=1))

        (statistics,) = repo.get_price_statistics(1, 2)
        assert statistics.count == 16
