"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class ObligationsConfig(BaseSettings):
    """Obligations engine configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///obligations.db"  # memory:// for in-memory storage
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    currency: str = "USD"  # Decides the rounding unit
    default_months_to_generate: int = 12
    max_months_to_generate: int = 60
    max_loan_installments: int = 360
    max_grace_days: int = 31
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "OBLIGATIONS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ObligationsConfig()


def get_config() -> ObligationsConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ObligationsConfig:
    """Reload configuration from environment"""
    global config
    config = ObligationsConfig()
    return config
