"""
Billing configuration.

Markup and low-balance thresholds are injected here; an account may override
the markup on its balance row.
"""

from decimal import Decimal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BillingConfig(BaseSettings):
    """Billing configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    markup_multiplier: Decimal = Field(
        default=Decimal("1.667"),
        gt=0,
        description="Provider cost multiplier applied to every billed call.",
    )
    low_balance_warning_cents: int = Field(default=500, ge=0)
    low_balance_critical_cents: int = Field(default=100, ge=0)

    @model_validator(mode="after")
    def _thresholds_ordered(self) -> "BillingConfig":
        if self.low_balance_critical_cents > self.low_balance_warning_cents:
            raise ValueError("low_balance_critical_cents must not exceed low_balance_warning_cents")
        return self


def get_billing_config() -> BillingConfig:
    return BillingConfig()
