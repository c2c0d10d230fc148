"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class CollectionConfig(BaseSettings):
    """Tax collection engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///tax_collection.db"  # memory:// for tests

    # Jurisdiction calendar
    timezone: str = "Asia/Kolkata"

    # Scheduled jobs (local time in the jurisdiction timezone)
    accrual_run_time: str = "00:00"
    task_generation_time: str = "06:00"
    scheduler_poll_seconds: int = 60

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Follow-up rules
    promise_buffer_days: int = 2
    not_available_retry_days: int = 3
    refused_retry_days: int = 7
    enforcement_notice_level: int = 3
    enforcement_notice_due_days: int = 15
    default_payment_mode: str = "cash"

    # Feature flags
    enable_audit_logging: bool = True
    enable_scheduler: bool = True

    class Config:
        env_prefix = "TAXCOL_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = CollectionConfig()


def get_config() -> CollectionConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> CollectionConfig:
    """Reload configuration from environment"""
    global config
    config = CollectionConfig()
    return config
