from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AnyHttpUrl, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables with validation."""

    model_config = SettingsConfigDict(
        env_file=(str(Path(__file__).resolve().parents[1] / ".env"), ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = Field(default="Enrollment API", alias="APP_NAME")
    app_env: Literal["development", "staging", "production", "test"] = Field(
        default="production",
        alias="APP_ENV",
    )
    app_debug: bool = Field(default=False, alias="APP_DEBUG")
    api_v1_prefix: str = Field(default="/api/v1", alias="API_V1_PREFIX")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    secret_key: SecretStr = Field(
        default=SecretStr("change-me-in-production"),
        alias="SECRET_KEY",
    )

    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173"],
        alias="CORS_ORIGINS",
    )

    database_url: str = Field(default="sqlite:///./enrollment.db", alias="DATABASE_URL")
    db_pool_size: int = Field(default=10, ge=1, le=100, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=20, ge=0, le=200, alias="DB_MAX_OVERFLOW")
    db_pool_timeout: int = Field(default=30, ge=1, le=300, alias="DB_POOL_TIMEOUT")
    db_pool_recycle: int = Field(default=1800, ge=60, alias="DB_POOL_RECYCLE")

    # Payment gateway (Flutterwave hosted checkout).
    flw_base_url: AnyHttpUrl = Field(
        default="https://api.flutterwave.com/v3",
        alias="FLW_BASE_URL",
    )
    flw_secret_key: SecretStr = Field(default=SecretStr(""), alias="FLW_SECRET_KEY")
    flutterwave_hash: SecretStr = Field(default=SecretStr(""), alias="FLUTTERWAVE_HASH")
    payment_redirect_url: str = Field(
        default="http://localhost:5173/payment-success/{draft_id}",
        alias="PAYMENT_REDIRECT_URL",
    )
    gateway_timeout_seconds: float = Field(default=15.0, gt=0, le=120, alias="GATEWAY_TIMEOUT_SECONDS")
    default_currency: str = Field(default="RWF", alias="DEFAULT_CURRENCY")
    phone_country_code: str = Field(default="+250", alias="PHONE_COUNTRY_CODE")

    subscription_period_days: int = Field(default=30, ge=1, le=3660, alias="SUBSCRIPTION_PERIOD_DAYS")
    expiry_sweep_cron: str = Field(default="0 0 1 * *", alias="EXPIRY_SWEEP_CRON")
    expiry_sweep_enabled: bool = Field(default=True, alias="EXPIRY_SWEEP_ENABLED")
    manual_confirmation_enabled: bool = Field(default=False, alias="MANUAL_CONFIRMATION_ENABLED")

    sendgrid_api_key: SecretStr | None = Field(default=None, alias="SENDGRID_API_KEY")
    smtp_host: str | None = Field(default=None, alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_username: str | None = Field(default=None, alias="SMTP_USERNAME")
    smtp_password: SecretStr | None = Field(default=None, alias="SMTP_PASSWORD")
    default_from_email: str = Field(default="noreply@wekraft.co", alias="DEFAULT_FROM_EMAIL")
    default_from_name: str = Field(default="WeKraft", alias="DEFAULT_FROM_NAME")

    quiz_service_url: str | None = Field(default=None, alias="QUIZ_SERVICE_URL")
    internal_api_key: SecretStr | None = Field(default=None, alias="INTERNAL_API_KEY")

    @field_validator("api_v1_prefix")
    @classmethod
    def validate_api_prefix(cls, value: str) -> str:
        """Ensure the API prefix starts with a slash and has no trailing slash."""
        normalized = value.strip()
        if not normalized.startswith("/"):
            raise ValueError("API_V1_PREFIX must start with '/'.")
        if len(normalized) > 1 and normalized.endswith("/"):
            normalized = normalized.rstrip("/")
        return normalized

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, value: str | list[str]) -> list[str]:
        """Support comma-separated CORS origins from environment variables."""
        if isinstance(value, str):
            if not value.strip():
                return []
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, value: str) -> str:
        """Accept PostgreSQL for deployments and SQLite for local runs and tests."""
        lowered = value.lower()
        if not lowered.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("DATABASE_URL must start with postgresql://, postgresql+psycopg2:// or sqlite://")
        return value

    @field_validator("payment_redirect_url")
    @classmethod
    def validate_redirect_url(cls, value: str) -> str:
        if "{draft_id}" not in value:
            raise ValueError("PAYMENT_REDIRECT_URL must contain a '{draft_id}' placeholder.")
        return value

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def gateway_base_url(self) -> str:
        return str(self.flw_base_url).rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""
    return Settings()


settings: Settings = get_settings()
