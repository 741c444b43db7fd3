from datetime import time
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingSettings(BaseSettings):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["text", "json"] = "text"
    environment: str = "development"

    model_config = SettingsConfigDict(env_prefix="LOG_")


class DispatchSettings(BaseSettings):
    """Offer-lock and optimistic-concurrency configuration."""

    lock_ttl_seconds: int = Field(
        default=60,
        ge=5,
        le=3600,
        description="Seconds a driver has to confirm a locked ride before it is redispatched",
    )
    sweep_interval_seconds: float = Field(
        default=5.0,
        ge=0.1,
        le=300.0,
        description="Seconds between background sweeps for expired locks",
    )
    version_retry_attempts: int = Field(default=5, ge=1, le=20)
    version_retry_base_delay: float = Field(default=0.01, ge=0.0, le=1.0)
    phone_pattern: str = Field(
        default=r"^(0|\+972)?5\d{8}$",
        description="Customer phone pattern, matched after stripping spaces and dashes",
    )

    model_config = SettingsConfigDict(env_prefix="DISPATCH_")


class PricingSettings(BaseSettings):
    """Pricing rates read by the settings provider at computation time."""

    base_price: float = Field(default=15.0, ge=0)
    price_per_km: float = Field(default=3.0, ge=0)
    price_per_minute: float = Field(default=0.5, ge=0)
    night_start: time = time(22, 0)
    night_end: time = time(6, 0)
    night_surcharge_percent: float = Field(default=25.0, ge=0, le=200)
    weekend_days: list[int] = Field(
        default_factory=lambda: [4, 5],
        description="Weekdays (0=Monday) that carry the weekend surcharge",
    )
    weekend_surcharge_percent: float = Field(default=0.0, ge=0, le=200)
    discount_type: Literal["flat", "percent"] = "flat"
    discount_value: float = Field(default=0.0, ge=0)
    commission_rate: float = Field(default=0.10, ge=0, le=1)
    timezone: str = "Asia/Jerusalem"

    model_config = SettingsConfigDict(env_prefix="PRICING_")

    @field_validator("weekend_days")
    @classmethod
    def validate_weekend_days(cls, v: list[int]) -> list[int]:
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("weekend_days must contain weekday numbers 0-6")
        return sorted(set(v))

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone '{v}'") from e
        return v

    @model_validator(mode="after")
    def validate_percent_discount(self) -> "PricingSettings":
        if self.discount_type == "percent" and self.discount_value > 100:
            raise ValueError("Percent discount cannot exceed 100")
        return self


class RecurrenceSettings(BaseSettings):
    poll_interval_seconds: float = Field(default=30.0, ge=0.1, le=3600.0)
    auto_dispatch: bool = Field(
        default=False,
        description="Offer each materialized ride to the active drivers of its region",
    )

    model_config = SettingsConfigDict(env_prefix="RECURRENCE_")


class DatabaseSettings(BaseSettings):
    backend: Literal["sqlite", "memory"] = "sqlite"
    path: str = "data/rides.db"

    model_config = SettingsConfigDict(env_prefix="DB_")


class APISettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    model_config = SettingsConfigDict(env_prefix="API_")


class Settings(BaseSettings):
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    pricing: PricingSettings = Field(default_factory=PricingSettings)
    recurrence: RecurrenceSettings = Field(default_factory=RecurrenceSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    api: APISettings = Field(default_factory=APISettings)

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        case_sensitive=False,
    )


def get_settings() -> Settings:
    """Load and validate settings from environment variables."""
    return Settings()
