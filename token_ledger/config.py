"""
Configuration Management Module

Centralized engine configuration using pydantic-settings. Every field can be
overridden through TOKEN_LEDGER_* environment variables or a .env file.
"""

from pydantic_settings import BaseSettings
from typing import Optional

from .currency import Currency


class LedgerConfig(BaseSettings):
    """Repayment ledger engine configuration"""

    # Storage configuration
    database_url: str = "memory://"  # memory:// or sqlite:///path/to/ledger.db

    # Business rules configuration
    currency: str = "INR"
    organization_actor_id: str = "1"  # Account that funds agents and issuance
    ledger_enabled: bool = True

    # Concurrency configuration
    lock_timeout_seconds: float = 5.0
    lock_retry_attempts: int = 3

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "TOKEN_LEDGER_"
        env_file = ".env"
        case_sensitive = False

    @property
    def currency_enum(self) -> Currency:
        """Configured currency as a Currency member"""
        return Currency[self.currency.upper()]


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
