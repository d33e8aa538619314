"""Configuration management."""

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class FMPConfig(BaseModel):
    """Configuration for FMP (Financial Modeling Prep) API."""

    api_key: str | None = Field(
        default_factory=lambda: os.environ.get("FMP_API_KEY"),
        description="FMP API key (loaded from FMP_API_KEY env var)",
    )
    base_url: str = Field(default="https://financialmodelingprep.com/api/v3")
    batch_size: int = Field(default=50, description="Max tickers per batch request")
    timeout: int = Field(default=30)

    @classmethod
    def from_env(cls) -> "FMPConfig":
        """Load FMP config with API key from environment."""
        return cls(api_key=os.environ.get("FMP_API_KEY"))


class DatabaseConfig(BaseModel):
    """Configuration for the sqlite data store."""

    path: str = Field(default="data/stock_screener.db", description="Path to the sqlite database")

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Allow STOCK_SCREENER_DB to override the default path."""
        path = os.environ.get("STOCK_SCREENER_DB")
        return cls(path=path) if path else cls()


class EngineConfig(BaseModel):
    """Trading engine defaults used when a run or account does not override them."""

    trailing_stop_pct: float = Field(default=15.0, gt=0, lt=100, description="Trailing stop percent")
    time_cutoff_hour: int = Field(default=15, ge=0, le=23, description="Hour after which live positions exit")
    time_cutoff_minute: int = Field(default=45, ge=0, le=59)
    max_hold_days: int | None = Field(default=5, description="Historical runs exit after this many days")
    negative_news_drop_pct: float = Field(
        default=10.0, description="One-step price drop treated as a negative news signal"
    )
    profit_target_pct: float | None = Field(default=None, description="Optional take-profit percent")
    default_max_positions: int = Field(default=5, ge=1)
    default_initial_capital: float = Field(default=10_000.0, gt=0)
    min_data_quality: int = Field(default=30, ge=0, le=100)
    min_earnings_surprise: float = Field(default=5.0, description="Default qualifying surprise percent")
    live_poll_seconds: float = Field(default=60.0, gt=0)
    stale_run_minutes: int = Field(default=15, ge=1, description="RUNNING records idle this long are stale")
    bar_close_hour: int = Field(default=16, ge=0, le=23, description="Timestamp hour assigned to daily bars")


class ScreeningConfig(BaseModel):
    """Configuration for screening passes."""

    min_score: float = Field(default=0.0, description="Scores must reach this to qualify")
    scoring_mode: str = Field(default="weighted", description="'equal' or 'weighted'")


class DataConfig(BaseModel):
    """Configuration for data fetching."""

    rate_limit_delay: float = Field(default=0.1, description="Seconds between API calls")
    timeout: int = Field(default=30)
    max_workers: int = Field(default=10, description="Maximum concurrent quote fetches")
    max_age_hours: int = Field(default=48, description="Snapshots older than this are refreshed first")


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(default="INFO")


class Settings(BaseModel):
    """Main settings container."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig.from_env)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    screening: ScreeningConfig = Field(default_factory=ScreeningConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    fmp: FMPConfig = Field(default_factory=FMPConfig.from_env)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_settings(config_path: Path | str | None = None) -> Settings:
    """
    Load settings from YAML file.

    Args:
        config_path: Path to config file. If None, uses default config/settings.yaml

    Returns:
        Settings object with validated configuration
    """
    if config_path is None:
        # Look for config relative to project root
        config_path = Path(__file__).parent.parent.parent / "config" / "settings.yaml"

    config_path = Path(config_path)

    if not config_path.exists():
        # Return defaults if no config file
        return Settings()

    with open(config_path) as f:
        data: dict[str, Any] = yaml.safe_load(f) or {}

    settings = Settings(**data)

    # Environment wins over the file for the database path
    if os.environ.get("STOCK_SCREENER_DB"):
        settings.database = DatabaseConfig.from_env()
    return settings


# Global settings instance (lazy loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
