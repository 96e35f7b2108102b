"""
SQLAlchemy models for the credit ledger.

credit_balances is a materialized cache of the credit_transactions log.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from dialer.shared.database import Base, utcnow


class TransactionType(str, Enum):
    """Kinds of ledger entries."""

    USAGE = "usage"
    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"


class CreditBalance(Base):
    """Per-account balance and reservation."""

    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("reserved_cents >= 0", name="ck_credit_balances_reserved"),
    )

    account_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    reserved_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_spent_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    markup_multiplier: Mapped[Decimal | None] = mapped_column(Numeric(6, 3), nullable=True)
    insufficient_credit_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class CreditTransaction(Base):
    """Append-only ledger entry."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("ix_credit_transactions_account_created", "account_id", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    extra_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    correlation_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
