"""Application settings with Pydantic Settings validation.

Secrets (API keys, passwords) are loaded from the .env file.
Non-sensitive configuration is loaded from config/main.yaml and the other
config/*.yaml files. All configs are merged and validated against JSON
schemas in config/schemas/.
"""

import json
from pathlib import Path
from typing import Any, Final, Literal, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from freight_ingest.config.logging_config import get_logger
from freight_ingest.domain import (
    deduplication_constants as dedup,
)
from freight_ingest.domain import extraction_constants as extraction
from freight_ingest.domain import lifecycle_constants as lifecycle
from freight_ingest.domain.models import ChannelConfig
from freight_ingest.domain.place_constants import (
    CRAWLER_SIMILARITY_THRESHOLD,
    QUERY_SIMILARITY_THRESHOLD,
)
from freight_ingest.services.deduplicator import DedupWindows, EchoPolicy
from freight_ingest.services.watermark import DEFAULT_MARKER

POSTGRES_MIN_CONNECTIONS_DEFAULT: Final[int] = 1
POSTGRES_MAX_CONNECTIONS_DEFAULT: Final[int] = 10
POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT: Final[int] = 10_000
POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT: Final[int] = 10
POSTGRES_APPLICATION_NAME_DEFAULT: Final[str] = "freight_ingest"

DEFAULT_SESSION: Final[str] = "default"
CRAWL_TIMEZONE_DEFAULT: Final[str] = "Asia/Tashkent"
CONTENT_LANGUAGE_DEFAULT: Final[str] = "en"

logger = cast(Any, get_logger(__name__))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; nested dicts merge, lists are replaced."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def load_schema(schema_name: str, config_dir: Path = Path("config")) -> dict[str, Any]:
    """Read ``<config_dir>/schemas/<schema_name>.schema.json``; ``{}`` when absent or unreadable."""
    schema_path = config_dir / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}
    try:
        return json.loads(schema_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("config_schema_load_failed", schema=schema_name, error=str(e))
        return {}


def validate_config_section(
    config: dict[str, Any],
    schema_name: str,
    file_path: str = "",
    config_dir: Path = Path("config"),
) -> None:
    """Check a loaded YAML document against its schema, if one ships.

    Raises:
        ValueError: If validation fails
    """
    schema = load_schema(schema_name, config_dir)
    if not schema:
        return

    try:
        validate(instance=config, schema=schema)
    except JSONSchemaValidationError as e:
        where = f" (file: {file_path})" if file_path else ""
        raise ValueError(f"Config validation failed for {schema_name}{where}: {e.message}") from e


def _config_files(config_dir: Path) -> list[Path]:
    """main.yaml first, then the remaining YAML files alphabetically."""
    if not config_dir.is_dir():
        return []
    return sorted(
        config_dir.glob("*.yaml"), key=lambda path: (path.name != "main.yaml", path.name)
    )


def load_all_configs(config_dir: Path = Path("config")) -> dict[str, Any]:
    """Merge every YAML file in ``config_dir``; later files override earlier ones.

    A file named ``<stem>.yaml`` is validated against ``schemas/<stem>.schema.json``.
    Unreadable files are skipped with a warning; schema violations raise.
    """
    merged: dict[str, Any] = {}
    loaded = 0
    for path in _config_files(config_dir):
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning("config_file_load_failed", path=str(path), error=str(e))
            continue

        try:
            validate_config_section(document, path.stem, str(path), config_dir)
        except ValueError as e:
            logger.error("config_validation_failed", path=str(path), error=str(e))
            raise

        merged = deep_merge(merged, document)
        loaded += 1

    logger.info("config_load_complete", file_count=loaded)
    return merged


class Settings(BaseSettings):
    """Application settings.

    Secrets are loaded from .env file.
    Non-sensitive config is loaded from config/*.yaml with fallback to the
    defaults declared in the domain constants modules.
    """

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === SECRETS (from .env) ===

    openai_api_key: SecretStr = Field(..., description="OpenAI API key (from .env)")

    postgres_password: SecretStr | None = Field(
        default=None, description="PostgreSQL password (from .env, optional)"
    )

    telegram_api_id: int | None = Field(
        default=None, description="Telegram API ID (from .env)"
    )
    telegram_api_hash: SecretStr | None = Field(
        default=None, description="Telegram API hash (from .env)"
    )

    @field_validator("openai_api_key", mode="before")
    @classmethod
    def _require_api_key(
        cls, value: SecretStr | str | None, info: ValidationInfo
    ) -> SecretStr:
        raw = value.get_secret_value() if isinstance(value, SecretStr) else value
        if not raw or not str(raw).strip():
            raise ValueError(f"{info.field_name} must be set to a non-empty key")
        return SecretStr(str(raw))

    def __init__(self, **data: Any):
        config = load_all_configs()
        super().__init__(**data)
        self._apply_yaml_defaults(config)

    def _apply_yaml_defaults(self, config: dict[str, Any]) -> None:
        """Copy YAML values onto fields not given explicitly or via env."""

        explicit = set(self.model_fields_set)

        def _assign(field_name: str, value: Any) -> None:
            if value is None or field_name in explicit:
                return
            object.__setattr__(self, field_name, value)
            self.model_fields_set.add(field_name)

        def _assign_section(section: str, prefix: str) -> None:
            section_config = config.get(section) or {}
            for key, value in section_config.items():
                field_name = f"{prefix}_{key}"
                if field_name in type(self).model_fields:
                    _assign(field_name, value)
                else:
                    logger.warning("config_key_ignored", section=section, key=key)

        llm_config = config.get("llm") or {}
        _assign("llm_model", llm_config.get("model"))
        _assign("llm_temperature", llm_config.get("temperature"))
        _assign("llm_top_p", llm_config.get("top_p"))
        _assign("llm_seed", llm_config.get("seed"))
        _assign("llm_timeout_seconds", llm_config.get("timeout_seconds"))
        _assign("llm_max_retries", llm_config.get("max_retries"))
        _assign("llm_prompts_dir", llm_config.get("prompts_dir"))

        database_config = config.get("database") or {}
        _assign("database_type", database_config.get("type"))
        _assign("db_path", database_config.get("path"))

        postgres_config = database_config.get("postgres") or {}
        _assign("postgres_host", postgres_config.get("host"))
        _assign("postgres_port", postgres_config.get("port"))
        _assign("postgres_database", postgres_config.get("database"))
        _assign("postgres_user", postgres_config.get("user"))
        _assign("postgres_min_connections", postgres_config.get("min_connections"))
        _assign("postgres_max_connections", postgres_config.get("max_connections"))
        _assign("postgres_ssl_mode", postgres_config.get("ssl_mode"))

        telegram_config = config.get("telegram") or {}
        _assign("telegram_sessions", telegram_config.get("sessions"))
        _assign("telegram_flood_wait_max_seconds", telegram_config.get("flood_wait_max_seconds"))

        _assign_section("crawl", "crawl")
        _assign_section("places", "places")
        _assign_section("deduplication", "dedup")
        _assign_section("lifecycle", "lifecycle")
        _assign_section("search", "search")
        _assign_section("scheduler", "scheduler")

        spam_config = config.get("spam") or {}
        _assign("spammer_ids", spam_config.get("sender_ids"))
        _assign("spam_phrases", spam_config.get("phrases"))

        logging_config = config.get("logging") or {}
        _assign("log_level", logging_config.get("level"))
        _assign("log_json", logging_config.get("json"))

        channels_config = config.get("channels")
        if isinstance(channels_config, list):
            _assign("channels", [ChannelConfig(**channel) for channel in channels_config])

    # LLM configuration
    llm_model: str = Field(default="gpt-4o-mini", description="OpenAI model to use")
    llm_temperature: float = Field(default=0.0, description="Sampling temperature")
    llm_top_p: float = Field(default=1.0, description="Nucleus sampling mass")
    llm_seed: int = Field(
        default=extraction.LLM_SEED, description="Fixed seed for repeatable extraction"
    )
    llm_timeout_seconds: int = Field(default=120, description="LLM request timeout")
    llm_max_retries: int = Field(default=3, ge=1, description="Extraction attempts")
    llm_prompts_dir: str = Field(
        default="config/prompts", description="Directory with <ad_type>.yaml prompts"
    )

    # Database configuration
    database_type: Literal["sqlite", "postgres"] = Field(
        default="sqlite", description="Database type: sqlite or postgres"
    )
    db_path: str = Field(default="data/freight.db", description="SQLite database path")
    postgres_host: str = Field(default="localhost", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_database: str = Field(
        default="freight", description="PostgreSQL database name"
    )
    postgres_user: str = Field(default="postgres", description="PostgreSQL user")
    postgres_min_connections: int = Field(default=POSTGRES_MIN_CONNECTIONS_DEFAULT)
    postgres_max_connections: int = Field(default=POSTGRES_MAX_CONNECTIONS_DEFAULT)
    postgres_statement_timeout_ms: int = Field(
        default=POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT
    )
    postgres_connect_timeout_seconds: int = Field(
        default=POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT
    )
    postgres_application_name: str = Field(default=POSTGRES_APPLICATION_NAME_DEFAULT)
    postgres_ssl_mode: str | None = Field(
        default=None,
        description="Optional SSL mode for PostgreSQL connections (e.g., require)",
    )

    # Telegram configuration
    telegram_sessions: dict[str, str] = Field(
        default_factory=lambda: {DEFAULT_SESSION: "data/telegram_default.session"},
        description="Session name → Telethon session file",
    )
    telegram_flood_wait_max_seconds: int = Field(
        default=300, description="Longer flood waits abort the channel instead of sleeping"
    )

    # Crawl configuration
    crawl_timezone: str = Field(
        default=CRAWL_TIMEZONE_DEFAULT, description="Timezone defining night hours"
    )
    crawl_language: str = Field(
        default=CONTENT_LANGUAGE_DEFAULT,
        description="Month abbreviations used when rewriting relative dates",
    )
    crawl_night_start_hour: int = Field(default=extraction.NIGHT_START_HOUR)
    crawl_night_end_hour: int = Field(default=extraction.NIGHT_END_HOUR)
    crawl_limit_night: int = Field(default=extraction.CRAWL_LIMIT_NIGHT)
    crawl_limit_day: int = Field(default=extraction.CRAWL_LIMIT_DAY)
    crawl_min_batch: int = Field(default=extraction.CRAWL_MIN_BATCH)
    crawl_min_extraction_pass: int = Field(default=extraction.MIN_EXTRACTION_PASS)
    crawl_message_max_age_days: int = Field(default=extraction.MESSAGE_MAX_AGE_DAYS)
    crawl_min_message_length: int = Field(default=extraction.MIN_MESSAGE_LENGTH)
    crawl_watermark_marker: str = Field(
        default=DEFAULT_MARKER, description="Marker embedded in content we publish"
    )

    # Spam filtering
    spammer_ids: list[int] = Field(default_factory=list)
    spam_phrases: list[str] = Field(default_factory=list)

    # Place resolution
    places_crawler_threshold: float = Field(default=CRAWLER_SIMILARITY_THRESHOLD)
    places_query_threshold: float = Field(default=QUERY_SIMILARITY_THRESHOLD)

    # Deduplication
    dedup_params_hash_window_days: float = Field(default=dedup.PARAMS_HASH_WINDOW_DAYS)
    dedup_phone_goods_window_days: float = Field(default=dedup.PHONE_GOODS_WINDOW_DAYS)
    dedup_sender_phones_window_days: float = Field(
        default=dedup.SENDER_PHONES_WINDOW_DAYS
    )
    dedup_resolved_route_window_days: float = Field(
        default=dedup.RESOLVED_ROUTE_WINDOW_DAYS
    )
    dedup_vehicle_phone_origin_window_days: float = Field(
        default=dedup.VEHICLE_PHONE_ORIGIN_WINDOW_DAYS
    )
    dedup_echo_enabled: bool = Field(default=True)
    dedup_echo_window_days: float = Field(default=dedup.ECHO_WINDOW_DAYS)
    dedup_echo_merge_same_sender: bool = Field(default=True)
    dedup_echo_phoneless_is_echo: bool = Field(default=True)
    dedup_load_cache_ttl_days: float = Field(default=dedup.LOAD_CACHE_TTL_DAYS)
    dedup_vehicle_cache_ttl_days: float = Field(default=dedup.VEHICLE_CACHE_TTL_DAYS)
    dedup_cache_refresh_ttl_days: float = Field(default=dedup.CACHE_REFRESH_TTL_DAYS)

    # Lifecycle
    lifecycle_load_verify_window_days: float = Field(
        default=lifecycle.LOAD_VERIFY_WINDOW_DAYS
    )
    lifecycle_vehicle_verify_window_days: float = Field(
        default=lifecycle.VEHICLE_VERIFY_WINDOW_DAYS
    )
    lifecycle_load_verify_max_duplication: int = Field(
        default=lifecycle.LOAD_VERIFY_MAX_DUPLICATION
    )
    lifecycle_load_verify_limit_night: int = Field(
        default=lifecycle.LOAD_VERIFY_LIMIT_NIGHT
    )
    lifecycle_load_verify_limit_day: int = Field(default=lifecycle.LOAD_VERIFY_LIMIT_DAY)
    lifecycle_vehicle_verify_limit_night: int = Field(
        default=lifecycle.VEHICLE_VERIFY_LIMIT_NIGHT
    )
    lifecycle_vehicle_verify_limit_day: int = Field(
        default=lifecycle.VEHICLE_VERIFY_LIMIT_DAY
    )
    lifecycle_load_max_duplication: int = Field(default=lifecycle.LOAD_MAX_DUPLICATION)
    lifecycle_load_max_duplication_restricted: int = Field(
        default=lifecycle.LOAD_MAX_DUPLICATION_RESTRICTED
    )
    lifecycle_vehicle_max_duplication: int = Field(
        default=lifecycle.VEHICLE_MAX_DUPLICATION
    )
    lifecycle_restricted_country_ids: list[int] = Field(
        default_factory=lambda: list(lifecycle.RESTRICTED_COUNTRY_IDS)
    )
    lifecycle_route_correction_goods: list[str] = Field(
        default_factory=lambda: list(lifecycle.ROUTE_CORRECTION_GOODS)
    )
    lifecycle_price_stats_window_days: int = Field(
        default=lifecycle.PRICE_STATS_WINDOW_DAYS
    )
    lifecycle_price_stats_min_samples: int = Field(
        default=lifecycle.PRICE_STATS_MIN_SAMPLES
    )

    # Search
    search_window_days: int = Field(default=lifecycle.SEARCH_WINDOW_DAYS)
    search_nearest_city_limit: int = Field(default=lifecycle.SEARCH_NEAREST_CITY_LIMIT)
    search_nearest_city_radius_km: float = Field(
        default=lifecycle.SEARCH_NEAREST_CITY_RADIUS_KM
    )

    # Scheduler
    scheduler_crawl_interval_seconds: int = Field(
        default=120, description="Pause between crawl cycles"
    )
    scheduler_maintenance_interval_seconds: int = Field(
        default=3600, description="Pause between archival sweeps"
    )
    scheduler_daily_interval_seconds: int = Field(
        default=86_400, description="Pause between daily maintenance runs"
    )

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Render logs as JSON")

    # Channels (config/channels.yaml)
    channels: list[ChannelConfig] = Field(
        default_factory=list, description="Channels to crawl"
    )

    @field_validator("channels", mode="before")
    @classmethod
    def validate_channels(cls, v: Any) -> list[ChannelConfig]:
        """Validate that channels is a list of ChannelConfig objects."""
        if isinstance(v, list):
            if v and isinstance(v[0], ChannelConfig):
                return v
            return [ChannelConfig(**ch) for ch in v]
        return v

    def dedup_windows(self) -> DedupWindows:
        return DedupWindows(
            params_hash=self.dedup_params_hash_window_days,
            phone_goods=self.dedup_phone_goods_window_days,
            sender_phones=self.dedup_sender_phones_window_days,
            resolved_route=self.dedup_resolved_route_window_days,
            vehicle_phone_origin=self.dedup_vehicle_phone_origin_window_days,
        )

    def echo_policy(self) -> EchoPolicy:
        return EchoPolicy(
            enabled=self.dedup_echo_enabled,
            window_days=self.dedup_echo_window_days,
            merge_same_sender=self.dedup_echo_merge_same_sender,
            phoneless_is_echo=self.dedup_echo_phoneless_is_echo,
        )

    def get_session_path(self, session: str) -> str:
        """Session file for a named credential.

        Raises:
            ValueError: If the session is not configured
        """
        try:
            return self.telegram_sessions[session]
        except KeyError as e:
            raise ValueError(f"Telegram session '{session}' is not configured") from e


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore[call-arg]
    return _settings
