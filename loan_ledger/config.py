"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings
from typing import Dict


class LedgerConfig(BaseSettings):
    """Loan ledger engine configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "loan_ledger.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Interest configuration
    day_count_convention: str = "actual_365_25"  # actual_365_25, actual_365, actual_360, thirty_360

    # Loan rules
    max_active_loans: int = 5
    treasury_account_id: str = "treasury"

    # Payment rail configuration
    payment_rail_url: str = ""  # Empty = in-memory rail
    payment_rail_timeout_seconds: float = 5.0
    payment_rail_api_key: str = ""

    # Overdue processing
    penalty_rate: str = "0.18"  # Annual rate charged on arrears
    grace_period_days: int = 7
    suspension_threshold: int = 3
    blacklist_threshold: int = 6
    max_unresolved_days: int = 90
    max_collection_attempts: int = 5  # attempts before the loan defaults
    collection_fee: str = "0.00"  # minimum total penalty once grace has passed
    collateral_discount_rate: str = "0.20"

    # Credit scoring
    weight_transaction_frequency: float = 0.20
    weight_transaction_amount: float = 0.15
    weight_repayment_history: float = 0.35
    weight_account_age: float = 0.15
    weight_current_balance: float = 0.15
    min_scores: Dict[str, int] = {
        "credit": 600,
        "mortgage": 650,
        "business": 700,
        "emergency": 500,
    }
    penalty_late_payment: int = 10
    penalty_account_suspension: int = 25
    penalty_default: int = 50
    penalty_blacklist: int = 100
    payoff_bonus: int = 20
    credit_refresh_batch_size: int = 100

    # Scheduler
    scheduler_max_workers: int = 2
    credit_refresh_interval_seconds: float = 7 * 24 * 3600
    credit_queue_interval_seconds: float = 24 * 3600
    overdue_sweep_interval_seconds: float = 3600
    shutdown_timeout_seconds: float = 30.0

    @field_validator("storage_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        if value not in ("sqlite", "memory"):
            raise ValueError("storage_backend must be 'sqlite' or 'memory'")
        return value

    def scoring_weights(self) -> Dict[str, float]:
        return {
            "transaction_frequency": self.weight_transaction_frequency,
            "transaction_amount": self.weight_transaction_amount,
            "repayment_history": self.weight_repayment_history,
            "account_age": self.weight_account_age,
            "current_balance": self.weight_current_balance,
        }

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config(**overrides) -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig(**overrides)
    return config
