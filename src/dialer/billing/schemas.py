"""
Pydantic schemas for the billing API.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from dialer.billing.ledger import CreditStatusLevel


class CreditStatusResponse(BaseModel):
    """Spendable credit of one account."""

    account_id: UUID
    balance_cents: int
    reserved_cents: int
    available_cents: int
    status: CreditStatusLevel
    insufficient_credit: bool
    can_dispatch: bool


class AddCreditsRequest(BaseModel):
    """Credit purchase; the correlation key makes a resubmission a no-op."""

    amount_cents: int = Field(..., gt=0)
    correlation_key: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Idempotency key, e.g. the payment id",
    )
    description: str = Field(default="Credit purchase", max_length=255)


class CreditTransactionResponse(BaseModel):
    """A ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    type: str
    amount_cents: int
    balance_after_cents: int
    description: str | None = None
    correlation_key: str
    created_at: datetime


class ReservationRequest(BaseModel):
    amount_cents: int = Field(..., gt=0)
