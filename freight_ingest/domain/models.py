"""Domain models for the freight ad ingestion pipeline.

All models use Pydantic v2 for validation and serialization.
"""

from datetime import date, datetime
from enum import Enum
from typing import ClassVar, Final

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AdType(str, Enum):
    """Kind of classified ad."""

    LOAD = "load"
    VEHICLE = "vehicle"


class TruckType(str, Enum):
    """Internal truck/trailer vocabulary."""

    NOT_SPECIFIED = "not_specified"
    ISUZU = "isuzu"
    SMALL_ISUZU = "small_isuzu"
    BIG_ISUZU = "big_isuzu"
    MAN = "man"
    LABO = "labo"
    CHAKMAN = "chakman"
    KAMAZ = "kamaz"
    FLATBED = "flatbed"
    BARGE = "barge"
    LOWBOY = "lowboy"
    FAW = "faw"
    TENTED = "tented"
    CONTAINERSHIP = "containership"
    LOCOMOTIVE = "locomotive"
    MEGA = "mega"
    REEFER = "reefer"
    REEFER_MODE = "reefer-mode"
    GAZEL = "gazel"
    SPRINTER = "sprinter"
    AVTOVOZ = "avtovoz"
    ISOTHERM = "isotherm"
    KIA_BONGO = "kia_bongo"


class PaymentType(str, Enum):
    """How the carrier gets paid."""

    NOT_SPECIFIED = "not_specified"
    CASH = "cash"
    TRANSFER = "transfer"
    BY_CARD = "by_card"
    CASH_OR_BY_CARD = "cash_or_by_card"
    COMBO = "combo"


class LoadingSide(str, Enum):
    SIDE = "side"
    REAR = "rear"
    TOP = "top"


class PlaceType(str, Enum):
    CITY = "city"
    COUNTRY = "country"


class DedupOutcome(str, Enum):
    """Disposition of a candidate after the duplicate cascade."""

    CREATED = "created"
    MERGED = "merged"
    CACHED = "cached"
    ECHO = "echo"


# === Reference data ===


class City(BaseModel):
    """City reference entity with alternative spellings."""

    id: int
    name: str
    names: list[str] = Field(
        default_factory=list, description="Alternative spellings and languages"
    )
    country_id: int | None = None
    parent_id: int | None = Field(
        default=None, description="Regional grouping city (oblast/district center)"
    )
    latitude: float | None = None
    longitude: float | None = None

    def variants(self) -> list[str]:
        """Return canonical name followed by unique alternative spellings."""
        seen: list[str] = []
        for value in [self.name, *self.names]:
            value = value.strip()
            if value and value not in seen:
                seen.append(value)
        return seen


class Country(BaseModel):
    """Country reference entity; parent groups sub-national regions."""

    id: int
    name: str
    names: list[str] = Field(default_factory=list)
    parent_id: int | None = None

    def variants(self) -> list[str]:
        seen: list[str] = []
        for value in [self.name, *self.names]:
            value = value.strip()
            if value and value not in seen:
                seen.append(value)
        return seen


class PlaceMatch(BaseModel):
    """Best reference place for a free-text name."""

    id: int
    name: str
    type: PlaceType
    country_id: int | None = None
    parent_id: int | None = None
    similarity: float = 0.0
    distance: int = 0
    """Levenshtein distance between the input and the matched variant."""

    @property
    def is_city(self) -> bool:
        return self.type == PlaceType.CITY


class RouteResolution(BaseModel):
    """Resolved origin and destination; unresolved ends stay None."""

    origin: PlaceMatch | None = None
    destination: PlaceMatch | None = None

    @property
    def origin_city_id(self) -> int | None:
        return self.origin.id if self.origin and self.origin.is_city else None

    @property
    def origin_country_id(self) -> int | None:
        if self.origin is None:
            return None
        return self.origin.country_id if self.origin.is_city else self.origin.id

    @property
    def destination_city_id(self) -> int | None:
        if self.destination and self.destination.is_city:
            return self.destination.id
        return None

    @property
    def destination_country_id(self) -> int | None:
        if self.destination is None:
            return None
        if self.destination.is_city:
            return self.destination.country_id
        return self.destination.id


# === Channels and upstream messages ===

DELETED_ACCOUNT_NAME: Final[str] = "Deleted Account"
"""Display name Telegram reports for removed user accounts."""


class ChannelConfig(BaseModel):
    """Crawl source as declared in config/channels.yaml."""

    name: str = Field(..., description="Public channel username without @")
    title: str | None = None
    session: str = Field(
        default="default", description="Telegram session credential crawling it"
    )
    crawl_loads: bool = True
    crawl_vehicles: bool = True
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def _strip_at(cls, value: str) -> str:
        value = value.strip().lstrip("@")
        if not value:
            raise ValueError("channel name must not be empty")
        return value


class Channel(BaseModel):
    """Stored crawl source with its checkpoint."""

    id: int | None = None
    name: str
    title: str | None = None
    session: str = "default"
    last_message_id: int | None = Field(
        default=None, description="Newest message id already processed"
    )
    crawled_at: datetime | None = None
    crawl_loads: bool = True
    crawl_vehicles: bool = True
    enabled: bool = True


class TelegramMessage(BaseModel):
    """Upstream channel message."""

    message_id: int
    channel: str
    date: datetime
    sender_id: int | None = None
    text: str = ""
    forward_from: str | None = None
    post_url: str | None = None


class Sender(BaseModel):
    """Telegram user who posts ads; accumulates observed phones."""

    id: int | None = None
    telegram_id: int
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    other_phones: list[str] = Field(default_factory=list)
    is_bot: bool = False
    marked_expired_loads: list[int] = Field(default_factory=list)
    marked_invalid_vehicles: list[int] = Field(default_factory=list)

    @property
    def is_deleted_account(self) -> bool:
        return self.first_name == DELETED_ACCOUNT_NAME and not self.username

    def add_phone(self, phone: str | None) -> bool:
        """Append a phone to the observed set; return True when it was new."""
        if not phone or phone == self.phone or phone in self.other_phones:
            return False
        self.other_phones.append(phone)
        return True

    def known_phones(self) -> list[str]:
        """Registration phone first, then the first observed ad phone."""
        phones = [self.phone] if self.phone else []
        if self.other_phones:
            phones.append(self.other_phones[0])
        return phones


class AdCandidate(BaseModel):
    """Normalized message that passed the quality gate."""

    message: TelegramMessage
    channel_id: int | None = Field(default=None, description="Stored channel id")
    ad_type: AdType
    text: str
    raw_text: str
    text_hash: str
    raw_hash: str
    trimmed_hash: str
    description_hash_without_phone: str
    is_closing: bool = False
    is_local_load: bool = False
    sender: Sender | None = None

    @property
    def hashes(self) -> tuple[str, str, str]:
        return (self.text_hash, self.raw_hash, self.trimmed_hash)


# === Structured extraction output ===


class ExtractedLoad(BaseModel):
    """Load fields returned by the extraction service for one text."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    origin: str | None = None
    destination: str | None = None
    price: float | None = Field(default=None, alias="fare")
    payment_type: str | None = Field(default=None, alias="paymentType")
    prepayment: float | None = None
    truck_type: list[str] = Field(default_factory=list, alias="truckType")
    required_vehicle_count: int | None = Field(
        default=None, alias="requiredVehicleCount"
    )
    weight: float | None = None
    volume: float | None = None
    goods: str | None = Field(default=None, alias="loadDescription")
    load_ready_date: str | None = Field(default=None, alias="loadReadyDate")
    refrigeration: bool | None = Field(default=None, alias="isRefrigerated")
    loading_side: str | None = Field(default=None, alias="loadingSide")
    customs_clearance_location: str | None = Field(
        default=None, alias="customsClearanceLocation"
    )
    hazardous: bool | None = Field(default=None, alias="isHazardous")
    phone: str | None = None

    @field_validator("truck_type", mode="before")
    @classmethod
    def _listify(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class ExtractedVehicle(BaseModel):
    """Vehicle availability fields returned by the extraction service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    origin: str | None = None
    destinations: list[str] = Field(default_factory=list)
    truck_type: list[str] = Field(default_factory=list, alias="truckType")
    available_vehicle_count: int | None = Field(
        default=None, alias="availableVehicleCount"
    )
    weight: float | None = Field(default=None, alias="cargoWeight")
    volume: float | None = Field(default=None, alias="cargoVolume")
    hazardous: bool | None = Field(default=None, alias="isHazardous")
    phone: str | None = None

    @field_validator("truck_type", "destinations", mode="before")
    @classmethod
    def _listify(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


# === Stored ads ===


class Ad(BaseModel):
    """Fields shared by loads and vehicles."""

    AD_TYPE: ClassVar[AdType]

    id: int | None = None
    origin_city_name: str | None = None
    origin_city_id: int | None = None
    origin_country_id: int | None = None
    cargo_type: TruckType = TruckType.NOT_SPECIFIED
    cargo_type2: TruckType = TruckType.NOT_SPECIFIED
    weight: float | None = None
    volume: float | None = None
    is_dagruz: bool = False
    phone: str | None = None
    telegram_user_id: int | None = Field(default=None, description="Sender id")
    owner_id: int | None = Field(default=None, description="Internal user id")
    telegram_channel_id: int | None = None
    telegram_message_id: int | None = None
    url: str | None = None
    description: str = ""
    description_hash: str = ""
    params_hash: str | None = None
    duplication_counter: int = 0
    duplicate_message_urls: list[str] = Field(default_factory=list)
    is_archived: bool = False
    is_deleted: bool = False
    deleted_at: datetime | None = None
    open_message_counter: int = 0
    expiration_flag_counter: int = 0
    published_date: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_live(self) -> bool:
        return not self.is_archived and not self.is_deleted


class Load(Ad):
    """Shipment offer looking for a carrier."""

    AD_TYPE: ClassVar[AdType] = AdType.LOAD

    destination_city_name: str | None = None
    destination_city_id: int | None = None
    destination_country_id: int | None = None
    price: float | None = None
    prepayment_amount: float | None = None
    has_prepayment: bool = False
    payment_type: PaymentType = PaymentType.NOT_SPECIFIED
    required_trucks_count: int | None = None
    goods: str | None = None
    load_ready_date: datetime | None = None
    has_refrigerator_mode: bool = False
    loading_side: LoadingSide | None = None
    customs_clearance_location: str | None = None
    is_local_load: bool = False
    description_hash_without_phone: str | None = None
    duplication_counter_different_phone: int = 0
    distance: float | None = Field(default=None, description="Route length in km")
    is_likely_owner: bool = False


class Vehicle(Ad):
    """Truck availability offer looking for cargo."""

    AD_TYPE: ClassVar[AdType] = AdType.VEHICLE

    destination_city_names: list[str] = Field(default_factory=list)
    destination_city_ids: list[int] = Field(default_factory=list)
    destination_country_ids: list[int] = Field(default_factory=list)
    available_vehicle_count: int | None = None
    is_likely_dispatcher: bool = False


# === Search ===


class SearchFilter(BaseModel):
    """Per-user search state consumed by the query builder."""

    ad_type: AdType = AdType.LOAD
    user_search_id: int | None = Field(
        default=None, description="Owner id when listing the user's own ads"
    )
    origin_name: str | None = None
    destination_name: str | None = None
    origin_city_ids: list[int] = Field(default_factory=list)
    origin_country_ids: list[int] = Field(default_factory=list)
    destination_city_ids: list[int] = Field(default_factory=list)
    destination_country_ids: list[int] = Field(default_factory=list)
    latitude: float | None = None
    longitude: float | None = None
    cargo_type: TruckType | None = None
    is_dagruz: bool = False
    marked_expired_ids: list[int] = Field(default_factory=list)
    limit: int = Field(default=10, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


# === Results ===


class DedupDecision(BaseModel):
    """Outcome of the duplicate cascade for one extracted ad."""

    outcome: DedupOutcome
    ad_ids: list[int] = Field(default_factory=list)
    rule: str | None = Field(default=None, description="Name of the matching rule")


class ChannelCrawlResult(BaseModel):
    channel: str
    fetched: int = 0
    skipped_messages: int = 0
    candidates: int = 0
    created: int = 0
    merged: int = 0
    echoes: int = 0
    dropped_batches: int = 0
    checkpoint: int | None = None
    deferred: bool = False


class CrawlResult(BaseModel):
    """Summary of one crawl cycle across all channels."""

    channels: list[ChannelCrawlResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def total_created(self) -> int:
        return sum(channel.created for channel in self.channels)

    @property
    def total_merged(self) -> int:
        return sum(channel.merged for channel in self.channels)


class VerificationResult(BaseModel):
    checked: int = 0
    refreshed: int = 0
    deleted: int = 0
    errors: list[str] = Field(default_factory=list)


class ArchiveResult(BaseModel):
    loads_archived: int = 0
    vehicles_archived: int = 0
    users_pruned: int = 0
    duplicates_collapsed: int = 0
    owners_backfilled: int = 0


class PriceStatistics(BaseModel):
    """Price-per-kilo summary of one route on one day."""

    day: date
    origin_city_id: int
    destination_city_id: int
    average: float
    median: float
    max: float
    min: float
    count: int


class DailyMaintenanceResult(BaseModel):
    routes_corrected: int = 0
    routes_measured: int = 0
    statistics_saved: int = 0
