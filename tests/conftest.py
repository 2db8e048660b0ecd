"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
from collections.abc import Generator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest
import pytz

# Settings require an API key; tests never reach the real service
os.environ.setdefault("OPENAI_API_KEY", "test-key")

from freight_ingest.adapters.repository_factory import create_repository  # noqa: E402
from freight_ingest.adapters.telegram_client import build_post_url  # noqa: E402
from freight_ingest.config.settings import Settings  # noqa: E402
from freight_ingest.domain.models import (  # noqa: E402
    AdCandidate,
    AdType,
    City,
    Country,
    Load,
    Sender,
    TelegramMessage,
    Vehicle,
)
from freight_ingest.domain.protocols import RepositoryProtocol  # noqa: E402
from freight_ingest.services.place_resolver import PlaceResolver  # noqa: E402
from freight_ingest.services.text_normalizer import (  # noqa: E402
    compute_text_hashes,
    description_hash_without_phone,
)

NOW = datetime(2026, 10, 19, 9, 0, tzinfo=pytz.UTC)
"""Reference time of the fixtures (14:00 in Tashkent, daytime)."""

PROMPTS_DIR = Path(__file__).resolve().parents[1] / "config" / "prompts"

SAMPLE_LOAD_TEXT = "Toshkentdan Samarqandga 15 tonna un bor tent kerak 901234567"


@pytest.fixture
def settings(
    tmp_path_factory: pytest.TempPathFactory, request: pytest.FixtureRequest
) -> Settings:
    """Create settings configured for the requested database backend."""

    base_settings = Settings()

    backend = "sqlite"
    if hasattr(request.node, "callspec"):
        backend = request.node.callspec.params.get("repo", backend)

    if request.node.get_closest_marker("postgres"):
        backend = "postgres"

    if backend == "postgres":
        if os.environ.get("TEST_POSTGRES", "0") != "1":
            pytest.skip("PostgreSQL tests disabled (TEST_POSTGRES!=1)")
        if not os.environ.get("POSTGRES_PASSWORD"):
            pytest.skip("POSTGRES_PASSWORD not set for PostgreSQL tests")
        return base_settings.model_copy(update={"database_type": "postgres"})

    temp_dir = tmp_path_factory.mktemp("db")
    db_path = temp_dir / "test.sqlite"
    return base_settings.model_copy(
        update={"database_type": "sqlite", "db_path": str(db_path)}
    )


@pytest.fixture
def repo(settings: Settings) -> Generator[RepositoryProtocol, None, None]:
    """Provide a repository instance for the configured backend."""

    repository = create_repository(settings)

    try:
        yield repository
    finally:
        close = getattr(repository, "close", None)
        if callable(close):
            close()

        if settings.database_type == "sqlite":
            db_path = Path(settings.db_path)
            if db_path.exists():
                try:
                    db_path.unlink()
                except OSError:
                    pass
            try:
                db_path.parent.rmdir()
            except OSError:
                pass


# === Reference data ===


def sample_countries() -> list[Country]:
    return [
        Country(id=1, name="O'zbekiston", names=["Uzbekistan", "Узбекистан"]),
        Country(id=2, name="Rossiya", names=["Russia", "Россия"]),
        Country(id=8, name="Qozog'iston", names=["Kazakhstan", "Казахстан"]),
    ]


def sample_cities() -> list[City]:
    return [
        City(
            id=1,
            name="Toshkent",
            names=["Tashkent", "Ташкент"],
            country_id=1,
            latitude=41.2995,
            longitude=69.2401,
        ),
        City(
            id=2,
            name="Samarqand",
            names=["Samarkand", "Самарканд"],
            country_id=1,
            latitude=39.6542,
            longitude=66.9597,
        ),
        City(
            id=3,
            name="Chirchiq",
            names=["Chirchik", "Чирчик"],
            country_id=1,
            parent_id=1,
            latitude=41.4689,
            longitude=69.5822,
        ),
        City(
            id=4,
            name="Moskva",
            names=["Moscow", "Москва"],
            country_id=2,
            latitude=55.7558,
            longitude=37.6173,
        ),
        City(
            id=5,
            name="Almaty",
            names=["Алматы"],
            country_id=8,
            latitude=43.2220,
            longitude=76.8512,
        ),
    ]


@pytest.fixture
def places() -> PlaceResolver:
    """Place resolver over the sample reference set."""
    return PlaceResolver(sample_cities(), sample_countries())


# === Factories ===


def make_message(
    message_id: int = 101,
    text: str = SAMPLE_LOAD_TEXT,
    *,
    sender_id: int | None = 42,
    channel: str = "yuk_markazi",
    date: datetime | None = None,
) -> TelegramMessage:
    """Upstream message with a post url."""
    return TelegramMessage(
        message_id=message_id,
        channel=channel,
        date=date or NOW - timedelta(minutes=30),
        sender_id=sender_id,
        text=text,
        post_url=build_post_url(channel, message_id),
    )


def make_sender(telegram_id: int = 42, **kwargs: Any) -> Sender:
    defaults: dict[str, Any] = {
        "telegram_id": telegram_id,
        "username": "ali_yuk",
        "first_name": "Ali",
    }
    defaults.update(kwargs)
    return Sender(**defaults)


def make_candidate(
    text: str = SAMPLE_LOAD_TEXT,
    *,
    message_id: int = 101,
    ad_type: AdType = AdType.LOAD,
    sender: Sender | None = None,
    channel_id: int | None = 1,
    date: datetime | None = None,
) -> AdCandidate:
    """Candidate as the crawler builds it from a raw message."""
    sender = sender or make_sender()
    message = make_message(message_id, text, sender_id=sender.telegram_id, date=date)
    hashes = compute_text_hashes(text)
    return AdCandidate(
        message=message,
        channel_id=channel_id,
        ad_type=ad_type,
        text=text,
        raw_text=text,
        text_hash=hashes.text_hash,
        raw_hash=hashes.raw_hash,
        trimmed_hash=hashes.trimmed_hash,
        description_hash_without_phone=description_hash_without_phone(text),
        sender=sender,
    )


def make_load(**kwargs: Any) -> Load:
    """Load on the Toshkent → Samarqand route, published half an hour ago."""
    defaults: dict[str, Any] = {
        "origin_city_name": "Toshkentdan",
        "destination_city_name": "Samarqandga",
        "origin_city_id": 1,
        "origin_country_id": 1,
        "destination_city_id": 2,
        "destination_country_id": 1,
        "weight": 15,
        "phone": "901234567",
        "goods": "un",
        "telegram_user_id": 42,
        "telegram_channel_id": 1,
        "telegram_message_id": 101,
        "url": "https://t.me/yuk_markazi/101",
        "description": SAMPLE_LOAD_TEXT,
        "description_hash": compute_text_hashes(SAMPLE_LOAD_TEXT).text_hash,
        "published_date": NOW - timedelta(minutes=30),
        "created_at": NOW - timedelta(minutes=30),
    }
    defaults.update(kwargs)
    return Load(**defaults)


def make_vehicle(**kwargs: Any) -> Vehicle:
    defaults: dict[str, Any] = {
        "origin_city_name": "Toshkentdan",
        "origin_city_id": 1,
        "origin_country_id": 1,
        "destination_city_names": ["Moskva"],
        "destination_city_ids": [4],
        "destination_country_ids": [2],
        "phone": "901234567",
        "telegram_user_id": 42,
        "telegram_channel_id": 1,
        "telegram_message_id": 202,
        "url": "https://t.me/yuk_markazi/202",
        "description": "Fura bor, Toshkentdan Moskvaga yuk kerak 901234567",
        "published_date": NOW - timedelta(minutes=30),
        "created_at": NOW - timedelta(minutes=30),
    }
    defaults.update(kwargs)
    return Vehicle(**defaults)


@pytest.fixture
def mock_repository() -> Mock:
    """Mock repository."""
    mock = Mock(spec=RepositoryProtocol)
    mock.get_channels.return_value = []
    mock.find_duplicates.return_value = []
    mock.get_sender.return_value = None
    mock.cache_get.return_value = None
    mock.cache_increment.return_value = 1
    mock.refresh_seen.return_value = []
    mock.get_distance.return_value = None
    mock.count_loads_by_owner.return_value = 0
    mock.count_loads_by_sender.return_value = 0
    return mock


@pytest.fixture
def mock_llm_client() -> Mock:
    """Mock extraction client."""
    mock = Mock()
    mock.extract_batch.return_value = []
    return mock
