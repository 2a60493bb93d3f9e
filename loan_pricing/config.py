"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LoanPricingConfig(BaseSettings):
    """Loan pricing engine configuration"""

    # Storage configuration
    storage_type: str = "memory"  # memory or sqlite
    database_path: str = "loan_pricing.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Snapshot configuration
    snapshot_retention_limit: int = 100
    snapshot_auto_prune: bool = False
    snapshot_timeline_default_limit: int = 50

    # Business rules configuration
    split_percentage_tolerance: str = "0.0001"
    batch_max_concurrency: int = 10

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_PRICING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanPricingConfig()


def get_config() -> LoanPricingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanPricingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanPricingConfig()
    return config
