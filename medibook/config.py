# medibook/config.py - Environment driven configuration
from dotenv import load_dotenv

load_dotenv()
import os
from decimal import Decimal
from typing import Optional, Union
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "MediBook Scheduling & Settlement"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database
    database_url: str = Field(default="sqlite:///./medibook.db", alias="DATABASE_URL")
    database_pool_size: int = Field(default=20, alias="DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(default=30, alias="DATABASE_MAX_OVERFLOW")

    # Security
    secret_key: str = Field(default="development-secret-key-change-me-0123456789", alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=60, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=["http://localhost:3000"], alias="CORS_ORIGINS")

    # Canonical clock
    clinic_timezone: str = Field(default="UTC", alias="CLINIC_TIMEZONE")

    # Scheduling defaults (used when a doctor has no availability row)
    default_slot_duration_minutes: int = Field(default=30, alias="DEFAULT_SLOT_DURATION_MINUTES")
    default_booking_advance_days: int = Field(default=30, alias="DEFAULT_BOOKING_ADVANCE_DAYS")
    default_min_booking_hours: int = Field(default=24, alias="DEFAULT_MIN_BOOKING_HOURS")

    # Commission
    default_commission_percentage: Decimal = Field(default=Decimal("5.00"), alias="DEFAULT_COMMISSION_PERCENTAGE")
    commission_percentage_min: Decimal = Field(default=Decimal("1"), alias="COMMISSION_PERCENTAGE_MIN")
    commission_percentage_max: Decimal = Field(default=Decimal("10"), alias="COMMISSION_PERCENTAGE_MAX")

    # Payment processor
    payment_gateway_url: Optional[str] = Field(default=None, alias="PAYMENT_GATEWAY_URL")
    payment_gateway_api_key: Optional[str] = Field(default=None, alias="PAYMENT_GATEWAY_API_KEY")
    payment_timeout_seconds: float = Field(default=10.0, alias="PAYMENT_TIMEOUT_SECONDS")

    # Email notifications
    sendgrid_api_key: Optional[str] = Field(default=None, alias="SENDGRID_API_KEY")
    sender_email: str = Field(default="noreply@medibook.local", alias="SENDER_EMAIL")
    notification_workers: int = Field(default=4, alias="NOTIFICATION_WORKERS")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    booking_rate_limit: str = Field(default="5/minute", alias="BOOKING_RATE_LIMIT")

    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:3000"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite:///")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("secret_key")
    @classmethod
    def validate_key_length(cls, v):
        if not v or len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @field_validator("payment_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("PAYMENT_TIMEOUT_SECONDS must be positive")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def email_enabled(self) -> bool:
        return bool(self.sendgrid_api_key)

    @property
    def payment_gateway_enabled(self) -> bool:
        return bool(self.payment_gateway_url)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance for the current ENVIRONMENT"""
    return get_config_by_env(os.getenv("ENVIRONMENT", "development"))


class DevelopmentConfig(Settings):
    """Development environment configuration"""
    debug: bool = True
    environment: str = "development"


class ProductionConfig(Settings):
    """Production environment configuration"""
    debug: bool = False
    environment: str = "production"


class TestingConfig(Settings):
    """Testing environment configuration"""
    debug: bool = True
    environment: str = "testing"
    database_url: str = "sqlite:///./test.db"
    rate_limit_enabled: bool = False


def get_config_by_env(env: str) -> Settings:
    """Get configuration by environment name"""
    configs = {
        "development": DevelopmentConfig,
        "production": ProductionConfig,
        "testing": TestingConfig
    }

    config_class = configs.get(env.lower(), Settings)
    return config_class()
