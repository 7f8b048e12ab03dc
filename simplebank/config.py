"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """simplebank ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="SIMPLEBANK_",
        env_file=".env",
        case_sensitive=False,
    )

    # Database configuration
    database_url: str = "sqlite:///simplebank.db"  # Default SQLite
    database_pool_min: int = 1
    database_pool_size: int = 10  # Max pooled connections (PostgreSQL)
    auto_migrate: bool = True

    # Transaction configuration
    lock_timeout_seconds: float = 5.0  # Max wait for a row lock
    transfer_timeout_seconds: Optional[float] = None  # None = no deadline

    # Business rules configuration
    allow_overdraft: bool = False  # Caller-side sufficient funds check
    page_size_min: int = 5
    page_size_max: int = 10

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
