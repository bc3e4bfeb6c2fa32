"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerConfig(BaseSettings):
    """Balance ledger configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # memory, sqlite or postgresql
    sqlite_path: str = "ledger.db"
    sqlite_busy_timeout: float = 30.0  # Seconds a writer waits for the database lock
    database_url: str = ""  # PostgreSQL DSN, required for the postgresql backend
    database_pool_min: int = 1
    database_pool_max: int = 10
    auto_migrate: bool = True

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


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
