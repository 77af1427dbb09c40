"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LoanServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""

    # Storage configuration
    database_url: str = "sqlite:///loan_servicing.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Financial defaults applied when a loan does not say otherwise
    default_currency: str = "COP"
    default_day_count: str = "actual_360"
    default_rate_type: str = "nominal_annual"

    # Calendar policy
    semi_monthly_first_day: int = 15
    semi_monthly_second_day: int = 30
    end_of_month_fallback: bool = True
    business_day_shift: str = "none"  # none, forward or backward

    # Causation
    causation_max_workers: int = 4
    minimum_accrual_amount: str = "0.00"

    # Feature flags
    enable_audit_logging: bool = True
    enable_aging_snapshots: bool = True

    class Config:
        env_prefix = "LOAN_SERVICING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanServicingConfig()


def get_config() -> LoanServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanServicingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanServicingConfig()
    return config
