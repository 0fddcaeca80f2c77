"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Ledger event store location."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_DB_")

    db_path: str = "data/ledger.db"


class ReplaySettings(BaseSettings):
    """Balance reconstruction parameters.

    The timezone pins what "today" and an event's calendar day mean for
    both the daily balance grid and same-day deposit re-pricing.
    """

    model_config = SettingsConfigDict(env_prefix="REPLAY_")

    default_days: int = 30
    token_decimals: int = 7  # raw amounts are stroops
    epsilon: Decimal = Decimal("0.0001")  # sub-epsilon noise reads as zero
    timezone: str = "UTC"
    default_rate: Decimal = Decimal("1")  # b_rate/d_rate before the first sample


class PricingSettings(BaseSettings):
    """Historical price lookup fallbacks."""

    model_config = SettingsConfigDict(env_prefix="PRICING_")

    fallback_usd_price: Decimal = Decimal("0")
    lp_token_address: str = ""  # backstop LP token, priced like any other token


class SnapshotSettings(BaseSettings):
    """Live snapshot aggregation: cache lifetimes and protocol fixed-point scales."""

    model_config = SettingsConfigDict(env_prefix="SNAPSHOT_")

    pool_cache_ttl: float = 30.0  # volatile pool / backstop state
    metadata_cache_ttl: float = 300.0  # token metadata and oracle prices
    default_oracle_decimals: int = 14
    rate_decimals: int = 12
    factor_decimals: int = 7
    tracked_pools: list[str] = []


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    database: DatabaseSettings = DatabaseSettings()
    replay: ReplaySettings = ReplaySettings()
    pricing: PricingSettings = PricingSettings()
    snapshot: SnapshotSettings = SnapshotSettings()
