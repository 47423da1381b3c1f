"""Configuration management for the Bourse market simulator."""

from decimal import Decimal
from typing import Literal

from pydantic import Field, computed_field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="Bourse", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")

    # Operational settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    # Enables the virtual-time simulation commands
    enable_debug: bool = Field(default=False, validation_alias="ENABLE_DEBUG")


# =============================================================================
# Market Configuration
# =============================================================================


class MarketConfig(BaseSettings):
    """Instrument, trading window and settlement freeze configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Instrument
    currency: str = Field(default="credits", validation_alias="BOURSE_CURRENCY")
    instrument_id: str = Field(default="MAIN", validation_alias="BOURSE_INSTRUMENT_ID")
    instrument_name: str = Field(
        default="Bourse Holdings", validation_alias="BOURSE_INSTRUMENT_NAME"
    )
    initial_price: float = Field(default=1200.0, validation_alias="BOURSE_INITIAL_PRICE")
    max_holdings: int = Field(default=100000, validation_alias="BOURSE_MAX_HOLDINGS")

    # Trading window (hours in market_timezone)
    open_hour: int = Field(default=8, validation_alias="BOURSE_OPEN_HOUR")
    close_hour: int = Field(default=23, validation_alias="BOURSE_CLOSE_HOUR")
    market_timezone: str = Field(default="UTC", validation_alias="BOURSE_TIMEZONE")

    # Forced status: open/close override everything, auto follows the window
    market_status: Literal["open", "close", "auto"] = Field(
        default="auto", validation_alias="BOURSE_MARKET_STATUS"
    )

    # Freeze mechanism
    freeze_cost_per_minute: float = Field(
        default=100.0, validation_alias="BOURSE_FREEZE_COST_PER_MINUTE"
    )
    min_freeze_minutes: float = Field(
        default=10.0, validation_alias="BOURSE_MIN_FREEZE_MINUTES"
    )
    max_freeze_minutes: float = Field(
        default=1440.0, validation_alias="BOURSE_MAX_FREEZE_MINUTES"
    )

    # Price regulation
    day_limit_ratio: float = Field(default=0.5, validation_alias="BOURSE_DAY_LIMIT_RATIO")
    price_floor: float = Field(default=1.0, validation_alias="BOURSE_PRICE_FLOOR")

    # Scheduling and retention
    tick_interval_seconds: float = Field(
        default=120.0, validation_alias="BOURSE_TICK_INTERVAL_SECONDS"
    )
    history_retention_days: int = Field(
        default=30, validation_alias="BOURSE_HISTORY_RETENTION_DAYS"
    )

    @field_validator("initial_price", "freeze_cost_per_minute", "tick_interval_seconds")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("price_floor")
    @classmethod
    def validate_price_floor(cls, v):
        if v < 0.01:
            raise ValueError("Price floor must be at least 0.01")
        return v

    @field_validator("max_holdings", "history_retention_days")
    @classmethod
    def validate_at_least_one(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("open_hour", "close_hour")
    @classmethod
    def validate_hour(cls, v):
        if v < 0 or v > 23:
            raise ValueError("Hour must be between 0 and 23")
        return v

    @field_validator("min_freeze_minutes", "max_freeze_minutes")
    @classmethod
    def validate_freeze(cls, v):
        if v < 0:
            raise ValueError("Freeze minutes cannot be negative")
        return v

    @field_validator("day_limit_ratio")
    @classmethod
    def validate_day_limit_ratio(cls, v):
        if v <= 0 or v >= 1:
            raise ValueError("Day limit ratio must be between 0 and 1")
        return v

    @model_validator(mode="after")
    def validate_trading_window(self):
        if self.close_hour <= self.open_hour:
            raise ValueError("close_hour must be after open_hour")
        return self

    @computed_field
    @property
    def freeze_enabled(self) -> bool:
        """A zero maximum disables the freeze entirely."""
        return self.max_freeze_minutes > 0

    @property
    def initial_price_decimal(self) -> Decimal:
        return Decimal(str(self.initial_price)).quantize(Decimal("0.01"))


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite:///./data/bourse.db", validation_alias="DATABASE_URL"
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: str = Field(default="logs/bourse.log", validation_alias="LOG_FILE")
    log_file_max_size_mb: int = Field(default=100, validation_alias="LOG_FILE_MAX_SIZE_MB")
    log_file_backup_count: int = Field(default=10, validation_alias="LOG_FILE_BACKUP_COUNT")


# =============================================================================
# Paper Trading Configuration
# =============================================================================


class PaperConfig(BaseSettings):
    """In-memory ledger settings used when no external ledger is wired in."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    paper_initial_balance: float = Field(
        default=100000.0, validation_alias="PAPER_INITIAL_BALANCE"
    )


# =============================================================================
# Global Configuration Container
# =============================================================================


class BourseConfig:
    """
    Container for all Bourse configurations.

    Usage:
        from bourse.core.config import bourse_config

        if bourse_config.market.freeze_enabled:
            minutes = bourse_config.market.max_freeze_minutes
    """

    def __init__(self):
        self.system = SystemConfig()
        self.market = MarketConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()
        self.paper = PaperConfig()

    def validate_configuration(self) -> dict:
        """
        Validate cross-section settings and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if self.market.min_freeze_minutes > self.market.max_freeze_minutes > 0:
            issues.append(
                "min_freeze_minutes exceeds max_freeze_minutes; the minimum wins"
            )

        if self.market.price_floor >= self.market.initial_price:
            issues.append("price_floor must be below initial_price")

        if self.market.day_limit_ratio not in (0.3, 0.5):
            issues.append(
                f"day_limit_ratio {self.market.day_limit_ratio} is not a standard policy (0.3 or 0.5)"
            )

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

market_config = MarketConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()

bourse_config = BourseConfig()


__all__ = [
    "BourseConfig",
    "bourse_config",
    "market_config",
    "database_config",
    "logging_config",
    "SystemConfig",
    "MarketConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "PaperConfig",
]
