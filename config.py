"""
Configuration module for the pool surveillance engine.
Loads environment variables and provides application and engine settings.
"""
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigurationError
from utils.filters import parse_pool_addresses


class EngineConfig(BaseModel):
    """Detection thresholds and scheduling intervals for the engine."""

    # Whale detection
    poll_interval_ms: int = 300_000
    whale_change_threshold: float = 0.05
    top_bin_change_count: int = 3
    high_risk_total_change_pct: float = 0.15
    high_risk_top_bin_pct: float = 0.10
    medium_risk_total_change_pct: float = 0.08
    medium_risk_top_bin_pct: float = 0.05

    # Market-structure analysis
    analysis_interval_ms: int = 3_600_000
    history_interval: str = "1h"
    history_limit: int = 168
    series_window: int = 168
    arbitrage_fee_pct: float = 0.3  # per leg, percent
    activity_reference_volume: float = 100_000.0

    # Scheduling
    tick_interval_ms: int = 1_000
    retry_base_delay_ms: int = 5_000
    retry_max_delay_ms: int = 300_000

    @field_validator(
        "whale_change_threshold",
        "high_risk_total_change_pct",
        "high_risk_top_bin_pct",
        "medium_risk_total_change_pct",
        "medium_risk_top_bin_pct",
    )
    @classmethod
    def _ratio_in_unit_interval(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError(f"ratio must be in (0, 1], got {value}")
        return value

    @field_validator(
        "poll_interval_ms",
        "analysis_interval_ms",
        "history_limit",
        "series_window",
        "tick_interval_ms",
        "retry_base_delay_ms",
        "retry_max_delay_ms",
        "top_bin_change_count",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"must be positive, got {value}")
        return value

    @field_validator("arbitrage_fee_pct", "activity_reference_volume")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError(f"must not be negative, got {value}")
        return value

    @model_validator(mode="after")
    def _check_ordering(self) -> "EngineConfig":
        if self.medium_risk_total_change_pct > self.high_risk_total_change_pct:
            raise ValueError("medium_risk_total_change_pct must not exceed high_risk_total_change_pct")
        if self.medium_risk_top_bin_pct > self.high_risk_top_bin_pct:
            raise ValueError("medium_risk_top_bin_pct must not exceed high_risk_top_bin_pct")
        if self.retry_base_delay_ms > self.retry_max_delay_ms:
            raise ValueError("retry_base_delay_ms must not exceed retry_max_delay_ms")
        return self

    @classmethod
    def create(cls, **options) -> "EngineConfig":
        """Build a config, turning validation failures into ConfigurationError."""
        try:
            return cls(**options)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid engine configuration: {e}") from e

    def updated(self, **changes) -> "EngineConfig":
        """Return a validated copy with the given options changed."""
        return self.create(**{**self.model_dump(), **changes})


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Pool data service (REST) and Solana RPC websocket for push notifications
    data_service_url: str = "http://localhost:3000/api"
    solana_ws_url: Optional[str] = None
    request_timeout: float = 10.0
    request_min_interval: float = 0.2  # seconds between provider requests

    # Websocket reconnect behaviour
    ws_reconnect_delay: int = 1
    ws_max_reconnect_delay: int = 60
    ws_ping_interval: int = 30
    ws_ping_timeout: int = 20

    # Pools to watch at startup, comma separated
    watched_pools: str = ""

    # Alert sinks
    database_path: Optional[str] = "./data/surveillance.db"
    bot_token: Optional[str] = None
    alerts_chat_id: Optional[str] = None  # "chat_id" or "chat_id:thread_id"
    min_alert_risk: str = "medium"

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    # Engine options (see EngineConfig)
    poll_interval_ms: int = 300_000
    whale_change_threshold: float = 0.05
    top_bin_change_count: int = 3
    high_risk_total_change_pct: float = 0.15
    high_risk_top_bin_pct: float = 0.10
    medium_risk_total_change_pct: float = 0.08
    medium_risk_top_bin_pct: float = 0.05
    analysis_interval_ms: int = 3_600_000
    history_interval: str = "1h"
    history_limit: int = 168
    series_window: int = 168
    arbitrage_fee_pct: float = 0.3
    activity_reference_volume: float = 100_000.0
    tick_interval_ms: int = 1_000
    retry_base_delay_ms: int = 5_000
    retry_max_delay_ms: int = 300_000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def engine_config(self) -> EngineConfig:
        """Extract and validate the engine options."""
        options = self.model_dump(include=set(EngineConfig.model_fields))
        return EngineConfig.create(**options)

    def watched_pool_list(self) -> List[str]:
        return parse_pool_addresses(self.watched_pools)


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()


def load_settings() -> Settings:
    """
    Load settings and validate the engine options.

    Raises:
        ConfigurationError: if any value is malformed or out of range
    """
    try:
        settings = get_settings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
    settings.engine_config()
    return settings


def ensure_data_directory(settings: Settings):
    """Ensure the data directory exists for the alert database."""
    if not settings.database_path:
        return
    db_path = Path(settings.database_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
