"""Initial PostgreSQL schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None

AD_TABLES = ("loads", "vehicles")


def _jsonb_list(name: str) -> sa.Column:
    return sa.Column(
        name,
        postgresql.JSONB(astext_type=sa.Text()),
        nullable=False,
        server_default=sa.text("'[]'::jsonb"),
    )


def _flag(name: str, default: bool = False) -> sa.Column:
    return sa.Column(
        name, sa.Boolean(), nullable=False, server_default=sa.true() if default else sa.false()
    )


def _counter(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=False, server_default="0")


def _ad_columns() -> list[sa.Column]:
    """Columns shared by loads and vehicles."""
    return [
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("origin_city_name", sa.Text(), nullable=True),
        sa.Column("origin_city_id", sa.Integer(), nullable=True),
        sa.Column("origin_country_id", sa.Integer(), nullable=True),
        sa.Column(
            "cargo_type", sa.String(length=32), nullable=False, server_default="not_specified"
        ),
        sa.Column(
            "cargo_type2", sa.String(length=32), nullable=False, server_default="not_specified"
        ),
        sa.Column("weight", sa.Float(), nullable=True),
        sa.Column("volume", sa.Float(), nullable=True),
        _flag("is_dagruz"),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("telegram_user_id", sa.BigInteger(), nullable=True),
        sa.Column("owner_id", sa.BigInteger(), nullable=True),
        sa.Column("telegram_channel_id", sa.Integer(), nullable=True),
        sa.Column("telegram_message_id", sa.BigInteger(), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("description_hash", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("params_hash", sa.String(length=64), nullable=True),
        _counter("duplication_counter"),
        _jsonb_list("duplicate_message_urls"),
        _flag("is_archived"),
        _flag("is_deleted"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        _counter("open_message_counter"),
        _counter("expiration_flag_counter"),
        sa.Column("published_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    """Create schema for the freight ad store."""

    # 1. Place reference data
    op.create_table(
        "countries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        _jsonb_list("names"),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "cities",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        _jsonb_list("names"),
        sa.Column("country_id", sa.Integer(), nullable=True),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "city_distances",
        sa.Column("origin_city_id", sa.Integer(), nullable=False),
        sa.Column("destination_city_id", sa.Integer(), nullable=False),
        sa.Column("distance_km", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("origin_city_id", "destination_city_id"),
    )

    # 2. Channels and their crawl checkpoints
    op.create_table(
        "channels",
        sa.Column("id", sa.Integer(), sa.Identity(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("session", sa.String(length=64), nullable=False, server_default="default"),
        sa.Column("last_message_id", sa.BigInteger(), nullable=True),
        sa.Column("crawled_at", sa.DateTime(timezone=True), nullable=True),
        _flag("crawl_loads", default=True),
        _flag("crawl_vehicles", default=True),
        _flag("enabled", default=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_channels_name"),
    )

    # 3. Message authors
    op.create_table(
        "senders",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("telegram_id", sa.BigInteger(), nullable=False),
        sa.Column("username", sa.Text(), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        _jsonb_list("other_phones"),
        _flag("is_bot"),
        _jsonb_list("marked_expired_loads"),
        _jsonb_list("marked_invalid_vehicles"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("telegram_id", name="uq_senders_telegram_id"),
    )

    # 4. Ads
    op.create_table(
        "loads",
        *_ad_columns(),
        sa.Column("destination_city_name", sa.Text(), nullable=True),
        sa.Column("destination_city_id", sa.Integer(), nullable=True),
        sa.Column("destination_country_id", sa.Integer(), nullable=True),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("prepayment_amount", sa.Float(), nullable=True),
        _flag("has_prepayment"),
        sa.Column(
            "payment_type", sa.String(length=32), nullable=False, server_default="not_specified"
        ),
        sa.Column("required_trucks_count", sa.Integer(), nullable=True),
        sa.Column("goods", sa.Text(), nullable=True),
        sa.Column("load_ready_date", sa.DateTime(timezone=True), nullable=True),
        _flag("has_refrigerator_mode"),
        sa.Column("loading_side", sa.Text(), nullable=True),
        sa.Column("customs_clearance_location", sa.Text(), nullable=True),
        _flag("is_local_load"),
        sa.Column("description_hash_without_phone", sa.String(length=64), nullable=True),
        _counter("duplication_counter_different_phone"),
        sa.Column("distance", sa.Float(), nullable=True),
        _flag("is_likely_owner"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "vehicles",
        *_ad_columns(),
        _jsonb_list("destination_city_names"),
        _jsonb_list("destination_city_ids"),
        _jsonb_list("destination_country_ids"),
        sa.Column("available_vehicle_count", sa.Integer(), nullable=True),
        _flag("is_likely_dispatcher"),
        sa.PrimaryKeyConstraint("id"),
    )

    for table in AD_TABLES:
        # Storage backstop for concurrent inserts of the same ad
        op.create_index(
            f"uq_{table}_live_params_hash",
            table,
            ["params_hash"],
            unique=True,
            postgresql_where=sa.text("is_deleted = false AND params_hash IS NOT NULL"),
        )
        op.create_index(f"idx_{table}_published", table, ["published_date"])
        op.create_index(f"idx_{table}_created", table, ["created_at"])
        op.create_index(
            f"idx_{table}_channel_updated", table, ["telegram_channel_id", "updated_at"]
        )
        op.create_index(f"idx_{table}_sender", table, ["telegram_user_id"])
    op.create_index(
        "idx_loads_description_hash_without_phone",
        "loads",
        ["description_hash_without_phone"],
    )

    # 5. Dedup memo with expiry
    op.create_table(
        "dedup_cache",
        sa.Column("key", sa.Text(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("idx_dedup_cache_expires", "dedup_cache", ["expires_at"])

    # 6. Daily price-per-kilo statistics per route
    op.create_table(
        "price_statistics",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("origin_city_id", sa.Integer(), nullable=False),
        sa.Column("destination_city_id", sa.Integer(), nullable=False),
        sa.Column("average", sa.Float(), nullable=False),
        sa.Column("median", sa.Float(), nullable=False),
        sa.Column("max", sa.Float(), nullable=False),
        sa.Column("min", sa.Float(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "day",
            "origin_city_id",
            "destination_city_id",
            name="uq_price_statistics_route_day",
        ),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("price_statistics")
    op.drop_index("idx_dedup_cache_expires", table_name="dedup_cache")
    op.drop_table("dedup_cache")
    op.drop_index("idx_loads_description_hash_without_phone", table_name="loads")
    for table in AD_TABLES:
        op.drop_index(f"idx_{table}_sender", table_name=table)
        op.drop_index(f"idx_{table}_channel_updated", table_name=table)
        op.drop_index(f"idx_{table}_created", table_name=table)
        op.drop_index(f"idx_{table}_published", table_name=table)
        op.drop_index(f"uq_{table}_live_params_hash", table_name=table)
        op.drop_table(table)
    op.drop_table("senders")
    op.drop_table("channels")
    op.drop_table("city_distances")
    op.drop_table("cities")
    op.drop_table("countries")
