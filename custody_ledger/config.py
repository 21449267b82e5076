"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """Custody ledger configuration"""
    
    model_config = SettingsConfigDict(
        env_prefix="CUSTODY_LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )
    
    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    database_path: str = "custody_ledger.db"
    
    # Asset configuration
    asset_symbol: str = "TKN"
    asset_decimals: int = 18
    
    # Business rules (amounts are base units, stored as strings to survive env parsing)
    min_deposit_amount: str = str(1 * 10**18)
    max_deposit_amount: str = str(10_000_000 * 10**18)
    annual_period_seconds: int = 365 * 24 * 60 * 60
    interest_rate_numerator: int = 100
    interest_rate_denominator: int = 1000
    
    # Custody service configuration
    custody_url: str = ""  # Empty = in-process custody service
    custody_timeout: float = 5.0
    custody_api_key: str = ""
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Feature flags
    enable_audit_logging: bool = True


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
