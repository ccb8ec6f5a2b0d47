"""Canonical configuration surface for Quorum Custody."""
from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class QuorumSettings(BaseSettings):
    """Main Quorum configuration."""

    model_config = SettingsConfigDict(
        env_prefix="QUORUM_",
        env_file=".env",
        extra="ignore",
    )

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Transactions
    transaction_ttl_seconds: int = Field(default=86400, gt=0)
    min_amount: Decimal = Decimal("0.000001")
    max_amount: Decimal = Decimal("1000000000")
    decimal_places: int = Field(default=6, ge=0, le=18)
    default_currency: str = "USDC"
    auto_execute_on_approval: bool = False

    # Wallets
    max_participants: int = Field(default=20, ge=1)

    # Execution / ledger gateway
    max_execution_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=60.0, ge=0)
    stale_execution_seconds: int = Field(default=600, gt=0)

    # Deposits
    min_deposit_confirmations: int = Field(default=3, ge=0)

    # Fund split
    split_rule_policy: Literal["first_match", "all_matching"] = "first_match"

    # Idempotency
    idempotency_ttl_hours: int = Field(default=24, gt=0)

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def check_amount_bounds(self) -> "QuorumSettings":
        if self.min_amount <= 0:
            raise ValueError("min_amount must be positive")
        if self.max_amount < self.min_amount:
            raise ValueError("max_amount must not be below min_amount")
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must not be below retry_base_delay")
        return self

    @property
    def amount_quantum(self) -> Decimal:
        """Smallest representable amount step, e.g. 0.000001 for 6 places."""
        return Decimal(1).scaleb(-self.decimal_places)


@lru_cache
def get_settings(env_file: Optional[str] = None) -> QuorumSettings:
    """Load QuorumSettings once per process to keep components consistent."""
    env_path = Path(env_file) if env_file else None
    return QuorumSettings(_env_file=env_path)
