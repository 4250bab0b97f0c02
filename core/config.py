"""Environment settings and the admin-controlled system settings record."""
from decimal import Decimal
from enum import Enum
from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process configuration loaded from environment variables or `.env`."""

    app_name: str = Field(default="referral-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="console or json")

    # Daraja (M-Pesa STK push)
    daraja_consumer_key: str = Field(default="", description="Daraja OAuth consumer key")
    daraja_consumer_secret: str = Field(default="", description="Daraja OAuth consumer secret")
    daraja_pass_key: str = Field(default="", description="Lipa na M-Pesa pass key")
    daraja_short_code: str = Field(default="", description="Business short code")
    daraja_base_url: str = Field(default="https://sandbox.safaricom.co.ke")
    daraja_callback_url: str = Field(default="http://localhost:8000/webhooks/daraja")
    daraja_timeout_seconds: float = Field(default=30.0)

    signup_amount: Decimal = Field(default=Decimal("250"), description="Signup fee charged via STK push")

    # Webhook idempotency
    idempotency_window_hours: int = Field(default=24, gt=0)
    idempotency_cache_size: int = Field(default=10_000, gt=0)

    # Defaults for admin controls, overridable at runtime
    escrow_delay_days: int = Field(default=7, ge=0, le=30)
    referral_velocity_window_minutes: int = Field(default=60, gt=0, le=24 * 60)
    referral_velocity_limit: int = Field(default=10, ge=1, le=100)
    fraud_check_enabled: bool = Field(default=True)
    maintenance_mode: bool = Field(default=False)
    min_withdrawal_amount: Decimal = Field(default=Decimal("100"), ge=0)
    max_withdrawal_amount: Decimal = Field(default=Decimal("1000000"), gt=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()


class ControlKey(str, Enum):
    ESCROW_DELAY_DAYS = "escrow_delay_days"
    REFERRAL_VELOCITY_WINDOW_MINUTES = "referral_velocity_window_minutes"
    REFERRAL_VELOCITY_LIMIT = "referral_velocity_limit"
    FRAUD_CHECK_ENABLED = "fraud_check_enabled"
    MAINTENANCE_MODE = "maintenance_mode"
    MIN_WITHDRAWAL_AMOUNT = "min_withdrawal_amount"
    MAX_WITHDRAWAL_AMOUNT = "max_withdrawal_amount"


class SystemSettings(BaseModel):
    """Point-in-time snapshot of the admin controls. One field per `ControlKey`."""

    escrow_delay_days: int = Field(default=7, ge=0, le=30)
    referral_velocity_window_minutes: int = Field(default=60, gt=0, le=24 * 60)
    referral_velocity_limit: int = Field(default=10, ge=1, le=100)
    fraud_check_enabled: bool = True
    maintenance_mode: bool = False
    min_withdrawal_amount: Decimal = Field(default=Decimal("100"), ge=0)
    max_withdrawal_amount: Decimal = Field(default=Decimal("1000000"), gt=0)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @model_validator(mode="after")
    def check_withdrawal_bounds(self) -> "SystemSettings":
        if self.min_withdrawal_amount > self.max_withdrawal_amount:
            raise ValueError("min_withdrawal_amount cannot exceed max_withdrawal_amount")
        return self

    @classmethod
    def from_settings(cls, settings: Settings) -> "SystemSettings":
        return cls(**{key.value: getattr(settings, key.value) for key in ControlKey})
