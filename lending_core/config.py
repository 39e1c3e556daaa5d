"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Micro-lending engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///:memory:"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    installment_paid_tolerance: Decimal = Decimal("0.05")  # Remaining at or below this is settled
    agreement_tolerance: Decimal = Decimal("0.10")         # Per agreement installment
    default_fine_percent: Decimal = Decimal("2")
    default_daily_interest_percent: Decimal = Decimal("1")
    default_fixed_term_days: int = 15
    monthly_period_days: int = 30

    # DAILY_FIXED_TERM loans use the Monthly calculator unless this is set
    route_fixed_term_to_dedicated_strategy: bool = False

    # Feature flags
    enable_audit_logging: bool = True

    # Optional default deadline for coordinated persistence steps
    persistence_deadline_seconds: Optional[float] = None

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
