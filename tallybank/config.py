"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Every field can be overridden with a TALLY_ prefixed environment variable or a .env file.
"""

from decimal import Decimal
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TallyConfig(BaseSettings):
    """Tally Bank ledger engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="TALLY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///tallybank.db"  # memory:// for in-memory storage

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Business rules configuration
    rounding_tolerance: Decimal = Decimal("0.01")
    default_gic_minimum_amount: Decimal = Decimal("100.00")
    default_transaction_period_days: int = Field(default=30, ge=0)
    max_transaction_period_days: int = Field(default=365, ge=0)
    maturity_lookahead_days: int = Field(default=30, ge=0)

    # Daily settlement schedule (local time)
    settlement_hour: int = Field(default=0, ge=0, le=23)
    settlement_minute: int = Field(default=0, ge=0, le=59)

    # Feature flags
    enable_audit_logging: bool = True
    validate_schema_on_startup: bool = True


# Global configuration instance
config = TallyConfig()


def get_config() -> TallyConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> TallyConfig:
    """Reload configuration from environment"""
    global config
    config = TallyConfig()
    return config
