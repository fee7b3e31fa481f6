"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class TreasuryConfig(BaseSettings):
    """Check treasury engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///treasury.db"  # memory:// for the in-memory backend

    # Concurrency
    lock_timeout_seconds: float = 5.0  # Lease wait before LockTimeout

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_checkbook_length: int = 50
    default_channel: str = "C1"

    # Pagination
    default_page_size: int = 20
    max_page_size: int = 100

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "TREASURY_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = TreasuryConfig()


def get_config() -> TreasuryConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> TreasuryConfig:
    """Reload configuration from environment"""
    global config
    config = TreasuryConfig()
    return config
