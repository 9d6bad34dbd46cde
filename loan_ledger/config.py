"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Loan ledger engine configuration"""
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Monetary precision (19 digits, 6 fractional, matching the storage columns)
    storage_precision: int = 19
    storage_scale: int = 6
    decimal_context_precision: int = 34
    
    # Allocation configuration
    default_strategy_code: str = "interest-principal-penalties-fees-order-strategy"
    penalty_wait_period_days: int = 0
    
    # Effective interest rate solver
    eir_max_iterations: int = 100
    eir_bisection_iterations: int = 200
    eir_tolerance: str = "1e-10"
    eir_initial_guess: str = "0.008333333333333333"  # 10% annual / 12
    eir_percentage_scale: int = 4
    
    class Config:
        env_prefix = "LOAN_LEDGER_"
        env_file = ".env"
        case_sensitive = False
    
    @property
    def eir_tolerance_decimal(self) -> Decimal:
        return Decimal(self.eir_tolerance)
    
    @property
    def eir_initial_guess_decimal(self) -> Decimal:
        return Decimal(self.eir_initial_guess)


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
