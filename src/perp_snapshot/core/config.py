from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .enums import SideDataMode, UniverseStrategy


class Settings(BaseSettings):
    rest_base_url: str = Field(default="https://fapi.binance.com")
    stream_base_url: str = Field(default="wss://fstream.binance.com/stream")
    backfill_ws_url: str = Field(default="wss://fstream.binance.com/ws")

    core_intervals: list[str] = Field(default_factory=lambda: ["4h", "1h", "15m"])
    alt_intervals: list[str] = Field(default_factory=lambda: ["1h"])

    universe_strategy: UniverseStrategy = Field(default=UniverseStrategy.VOLUME)
    universe_top_n: int = Field(default=30, ge=1, le=200)
    expected_alt_count: int | None = Field(default=None, ge=1)
    candles: int = Field(default=120, ge=1, le=1500)

    funding_mode: SideDataMode = Field(default=SideDataMode.UNIVERSE)
    open_interest_mode: SideDataMode = Field(default=SideDataMode.CORE_ONLY)

    rest_timeout_seconds: float = Field(default=6.0, gt=0)
    rest_max_attempts: int = Field(default=3, ge=1)
    rest_base_delay_seconds: float = Field(default=0.25, ge=0)
    rest_max_delay_seconds: float = Field(default=2.0, ge=0)
    rest_min_interval_seconds: float = Field(default=0.0, ge=0)
    rest_max_connections: int = Field(default=32, ge=1)
    concurrency: int = Field(default=16, ge=1)

    exchange_info_ttl_seconds: float = Field(default=600.0, gt=0)
    ticker_ttl_seconds: float = Field(default=30.0, gt=0)
    klines_ttl_seconds: float = Field(default=30.0, ge=0)

    ring_capacity: int = Field(default=200, ge=1)
    ws_reconnect_base_seconds: float = Field(default=0.5, gt=0)
    ws_reconnect_max_seconds: float = Field(default=5.0, gt=0)
    backfill_reconnect_seconds: float = Field(default=1.0, gt=0)
    backfill_drops_limit: int = Field(default=50, ge=1)

    stale_threshold_seconds: int = Field(default=1800, ge=1)
    global_deadline_seconds: float = Field(default=8.0, gt=0)
    max_snapshot_bytes: int = Field(default=2_000_000, ge=1024)

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="PMS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
