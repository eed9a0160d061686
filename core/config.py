"""
Application Configuration

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from decimal import Decimal
from functools import lru_cache


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables or .env file.
    """

    # Application
    APP_NAME: str = "AgroMarket Payments"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"

    # Database
    DATABASE_URL: str = "sqlite:///./agro_payments.db"
    DATABASE_ECHO: bool = False

    # Checkout pricing
    TAX_RATE: Decimal = Decimal("0.085")  # 8.5%
    STANDARD_SHIPPING: Decimal = Decimal("5.99")
    EXPRESS_SHIPPING: Decimal = Decimal("12.99")
    FREE_SHIPPING_THRESHOLD: Decimal = Decimal("50.00")
    DEFAULT_CURRENCY: str = "USD"

    # Payment processing
    MAX_RETRIES: int = 3
    GATEWAY_TIMEOUT_SECONDS: float = 30.0
    PAYMENT_WORKERS: int = 4
    SIMULATED_LATENCY_SECONDS: float = 1.5  # Upper bound of simulated gateway latency
    LARGE_TRANSACTION_THRESHOLD: Decimal = Decimal("10000")
    LARGE_TRANSACTION_FACTOR: float = 0.8

    # Email Configuration
    NOTIFICATIONS_ENABLED: bool = False
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = "noreply@agromarket.app"
    SMTP_FROM_NAME: str = "AgroMarket"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/app.log"

    @field_validator("MAX_RETRIES", "PAYMENT_WORKERS")
    @classmethod
    def must_be_positive(cls, value: int) -> int:
        """Reject zero or negative pool sizes and retry caps."""
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
