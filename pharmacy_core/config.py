"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class PharmacyCoreConfig(BaseSettings):
    """Pharmacy core configuration"""
    
    # Lockout policy
    lockout_max_attempts: int = 5
    lockout_duration_minutes: int = 15
    
    # Login input rules
    identifier_min_length: int = 3
    
    # Password hashing
    hash_algorithm: str = "scrypt"  # scrypt or sha256
    scrypt_n: int = 16384
    scrypt_r: int = 8
    scrypt_p: int = 1
    salt_bytes: int = 16  # 128 bits minimum
    
    # Card vault
    card_number_length: int = 16
    card_fingerprint_key: str = "change-me-in-production"
    
    # Wallet rules
    currency: str = "EGP"
    max_deposit_amount: str = "10000.00"
    
    # Card payment gateway
    gateway_url: str = ""  # Empty = HTTP gateway disabled
    gateway_timeout: float = 5.0
    gateway_api_key: str = ""
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "PHARMACY_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = PharmacyCoreConfig()


def get_config() -> PharmacyCoreConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> PharmacyCoreConfig:
    """Reload configuration from environment"""
    global config
    config = PharmacyCoreConfig()
    return config
