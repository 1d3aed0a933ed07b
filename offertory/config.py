"""Application configuration from environment variables."""

import logging
from typing import Optional

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Engine settings loaded from environment variables and .env file."""

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./offertory.db",
        description="SQLAlchemy connection string",
    )
    database_echo: bool = Field(default=False, description="Log SQL queries")

    # Payment gateway
    gateway_base_url: str = Field(
        default="https://sandbox.monnify.com/api", description="Gateway API base URL"
    )
    gateway_api_key: str = Field(default="", description="Gateway API key")
    gateway_secret_key: str = Field(
        default="", description="Shared secret for request and callback signatures"
    )
    gateway_contract_code: str = Field(default="", description="Merchant contract code")
    gateway_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Deadline for the initialization call"
    )
    gateway_signature_header: str = Field(
        default="monnify-signature", description="Header carrying the callback signature"
    )
    gateway_redirect_url: str = Field(
        default="", description="Where the gateway sends the payer after checkout"
    )

    # Money
    default_currency: str = Field(default="NGN", description="Currency for new records")

    # Plans
    plan_catalog_path: Optional[str] = Field(
        default=None, description="Optional JSON file overriding the built-in plan tiers"
    )

    # Ledger entries
    verification_overdue_days: int = Field(
        default=7, ge=0, description="Days after which a pending verification is overdue"
    )
    stale_pending_after_minutes: int = Field(
        default=60, ge=0, description="Age after which a pending contribution is swept"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="logs/server.log", description="Server log file")

    # API
    api_title: str = Field(default="Offertory", description="API title")
    api_version: str = Field(default="0.1.0", description="API version")


# Lazy loader so tests can set environment variables before first use
_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the settings instance."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
        logger.debug("Settings loaded (database_url=%s)", _settings_instance.database_url)
    return _settings_instance


def reset_settings() -> None:
    """Drop the cached settings so the next access re-reads the environment."""
    global _settings_instance
    _settings_instance = None


__all__ = ["Settings", "get_settings", "reset_settings"]
