"""
Atomic credit ledger operations.

Balance mutations are single guarded UPDATE ... RETURNING statements committed
together with their ledger entry. Each entry carries a unique correlation key,
so replaying an operation returns the original entry instead of applying it twice.
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_EVEN, Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dialer.billing.config import BillingConfig, get_billing_config
from dialer.billing.models import CreditBalance, CreditTransaction, TransactionType
from dialer.shared.database import utcnow
from dialer.shared.exceptions import AccountNotFoundError, ValidationError
from dialer.shared.logging import get_logger

logger = get_logger(__name__)

_TENTH_OF_CENT = Decimal("0.1")


def compute_user_cost(provider_cost_cents: int, markup_multiplier: Decimal | float | str) -> int:
    """Convert a provider cost into the amount charged to the account.

    The product is rounded to a tenth of a cent before rounding up, so the
    three-decimal markup does not add a cent of float noise
    (120 x 1.667 = 200.04 -> 200).
    """
    if provider_cost_cents <= 0:
        return 0
    product = Decimal(provider_cost_cents) * Decimal(str(markup_multiplier))
    product = product.quantize(_TENTH_OF_CENT, rounding=ROUND_HALF_EVEN)
    return int(product.to_integral_value(rounding=ROUND_CEILING))


class CreditStatusLevel(str, Enum):
    """Low-balance classification of an account."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    DEPLETED = "depleted"


@dataclass(frozen=True)
class CreditStatus:
    """Snapshot of an account's spendable credit."""

    account_id: UUID
    balance_cents: int
    reserved_cents: int
    available_cents: int
    status: CreditStatusLevel
    insufficient_credit: bool

    @property
    def can_dispatch(self) -> bool:
        """New calls may be placed for this account."""
        return self.status != CreditStatusLevel.DEPLETED and not self.insufficient_credit


@dataclass(frozen=True)
class DeductionResult:
    """Outcome of a call cost deduction."""

    success: bool
    cost_deducted: int
    previous_balance: int | None = None
    new_balance: int | None = None
    transaction_id: UUID | None = None
    duplicate: bool = False
    reason: str | None = None


class LedgerService:
    """Credit ledger operations for one database session.

    Every public mutation commits its own transaction.
    """

    def __init__(self, session: AsyncSession, config: BillingConfig | None = None) -> None:
        self._session = session
        self._config = config or get_billing_config()

    # ------------------------------------------------------------------ reads

    async def get_balance(self, account_id: UUID) -> CreditBalance:
        stmt = (
            select(CreditBalance)
            .where(CreditBalance.account_id == account_id)
            .execution_options(populate_existing=True)
        )
        balance = (await self._session.execute(stmt)).scalar_one_or_none()
        if balance is None:
            raise AccountNotFoundError(account_id)
        return balance

    async def get_credit_status(self, account_id: UUID) -> CreditStatus:
        """Classify the account's available credit against the configured thresholds."""
        balance = await self.get_balance(account_id)
        available = balance.balance_cents - balance.reserved_cents

        if available <= 0:
            level = CreditStatusLevel.DEPLETED
        elif available <= self._config.low_balance_critical_cents:
            level = CreditStatusLevel.CRITICAL
        elif available <= self._config.low_balance_warning_cents:
            level = CreditStatusLevel.WARNING
        else:
            level = CreditStatusLevel.NORMAL

        return CreditStatus(
            account_id=account_id,
            balance_cents=balance.balance_cents,
            reserved_cents=balance.reserved_cents,
            available_cents=available,
            status=level,
            insufficient_credit=balance.insufficient_credit_at is not None,
        )

    async def find_transaction(self, correlation_key: str) -> CreditTransaction | None:
        stmt = select(CreditTransaction).where(
            CreditTransaction.correlation_key == correlation_key
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def _markup_for(self, account_id: UUID) -> Decimal:
        stmt = select(CreditBalance.markup_multiplier).where(
            CreditBalance.account_id == account_id
        )
        override = (await self._session.execute(stmt)).scalar_one_or_none()
        return Decimal(str(override)) if override is not None else self._config.markup_multiplier

    # -------------------------------------------------------------- deduction

    async def deduct_call_cost(
        self,
        account_id: UUID,
        provider_cost_cents: int,
        correlation_key: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> DeductionResult:
        """Charge one billable call exactly once.

        Args:
            account_id: Account paying for the call.
            provider_cost_cents: Raw provider cost before markup.
            correlation_key: Stable key for the call (attempt or session id).
            description: Ledger entry description.
            metadata: Extra data stored on the ledger entry.

        Returns:
            DeductionResult. A repeated key returns the original entry with
            duplicate=True; an uncovered charge returns success=False and
            leaves the balance untouched.
        """
        if provider_cost_cents <= 0:
            logger.info(
                "Zero-cost call; no ledger entry",
                extra={"account_id": str(account_id), "correlation_key": correlation_key},
            )
            return DeductionResult(success=True, cost_deducted=0, reason="zero_cost")

        existing = await self.find_transaction(correlation_key)
        if existing is not None:
            return self._duplicate_result(existing)

        markup = await self._markup_for(account_id)
        charge = compute_user_cost(provider_cost_cents, markup)

        stmt = (
            update(CreditBalance)
            .where(
                CreditBalance.account_id == account_id,
                or_(
                    CreditBalance.balance_cents >= charge,
                    CreditBalance.reserved_cents >= charge,
                ),
            )
            .values(
                balance_cents=CreditBalance.balance_cents - charge,
                reserved_cents=case(
                    (CreditBalance.reserved_cents > charge, CreditBalance.reserved_cents - charge),
                    else_=0,
                ),
                total_spent_cents=CreditBalance.total_spent_cents + charge,
                updated_at=utcnow(),
            )
            .returning(CreditBalance.balance_cents)
            .execution_options(synchronize_session=False)
        )
        new_balance = (await self._session.execute(stmt)).scalar_one_or_none()

        if new_balance is None:
            await self._session.rollback()
            return await self._reject(account_id, charge, correlation_key)

        entry = CreditTransaction(
            account_id=account_id,
            type=TransactionType.USAGE.value,
            amount_cents=-charge,
            balance_after_cents=new_balance,
            description=description,
            extra_metadata={
                **(metadata or {}),
                "provider_cost_cents": provider_cost_cents,
                "markup_multiplier": str(markup),
                "user_cost_cents": charge,
            },
            correlation_key=correlation_key,
        )
        self._session.add(entry)
        try:
            await self._session.commit()
        except IntegrityError:
            # Concurrent delivery of the same call won the insert; our debit rolls back with it
            await self._session.rollback()
            existing = await self.find_transaction(correlation_key)
            if existing is None:
                raise
            return self._duplicate_result(existing)

        logger.info(
            "Call cost deducted",
            extra={
                "account_id": str(account_id),
                "correlation_key": correlation_key,
                "transaction_id": str(entry.id),
                "cost_deducted": charge,
                "new_balance": new_balance,
            },
        )
        return DeductionResult(
            success=True,
            cost_deducted=charge,
            previous_balance=new_balance + charge,
            new_balance=new_balance,
            transaction_id=entry.id,
        )

    async def _reject(self, account_id: UUID, charge: int, correlation_key: str) -> DeductionResult:
        stmt = (
            update(CreditBalance)
            .where(CreditBalance.account_id == account_id)
            .values(insufficient_credit_at=utcnow())
            .returning(CreditBalance.balance_cents)
            .execution_options(synchronize_session=False)
        )
        balance = (await self._session.execute(stmt)).scalar_one_or_none()
        if balance is None:
            await self._session.rollback()
            raise AccountNotFoundError(account_id)
        await self._session.commit()

        logger.warning(
            "Insufficient credit for call charge",
            extra={
                "account_id": str(account_id),
                "correlation_key": correlation_key,
                "charge_cents": charge,
                "balance_cents": balance,
            },
        )
        return DeductionResult(
            success=False,
            cost_deducted=0,
            previous_balance=balance,
            new_balance=balance,
            reason="insufficient_balance",
        )

    @staticmethod
    def _duplicate_result(entry: CreditTransaction) -> DeductionResult:
        charge = -entry.amount_cents
        return DeductionResult(
            success=True,
            cost_deducted=charge,
            previous_balance=entry.balance_after_cents + charge,
            new_balance=entry.balance_after_cents,
            transaction_id=entry.id,
            duplicate=True,
        )

    # ------------------------------------------------------- credits / holds

    async def add_credits(
        self,
        account_id: UUID,
        amount_cents: int,
        correlation_key: str,
        description: str = "Credit purchase",
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransaction:
        """Credit the account once per correlation key and clear the insufficient state."""
        if amount_cents <= 0:
            raise ValidationError("Credit amount must be positive")

        existing = await self.find_transaction(correlation_key)
        if existing is not None:
            return existing

        await self._ensure_balance_row(account_id)

        stmt = (
            update(CreditBalance)
            .where(CreditBalance.account_id == account_id)
            .values(
                balance_cents=CreditBalance.balance_cents + amount_cents,
                insufficient_credit_at=None,
                updated_at=utcnow(),
            )
            .returning(CreditBalance.balance_cents)
            .execution_options(synchronize_session=False)
        )
        new_balance = (await self._session.execute(stmt)).scalar_one()

        entry = CreditTransaction(
            account_id=account_id,
            type=TransactionType.PURCHASE.value,
            amount_cents=amount_cents,
            balance_after_cents=new_balance,
            description=description,
            extra_metadata=metadata or {},
            correlation_key=correlation_key,
        )
        self._session.add(entry)
        try:
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            existing = await self.find_transaction(correlation_key)
            if existing is None:
                raise
            return existing

        logger.info(
            "Credits added",
            extra={
                "account_id": str(account_id),
                "amount_cents": amount_cents,
                "new_balance": new_balance,
            },
        )
        return entry

    async def _ensure_balance_row(self, account_id: UUID) -> None:
        exists = await self._session.scalar(
            select(CreditBalance.account_id).where(CreditBalance.account_id == account_id)
        )
        if exists is not None:
            return
        self._session.add(CreditBalance(account_id=account_id))
        try:
            await self._session.commit()
        except IntegrityError:
            # Created concurrently
            await self._session.rollback()

    async def reserve_credits(self, account_id: UUID, amount_cents: int) -> bool:
        """Hold credit against the available balance; False when it is not available."""
        if amount_cents <= 0:
            raise ValidationError("Reservation amount must be positive")
        stmt = (
            update(CreditBalance)
            .where(
                CreditBalance.account_id == account_id,
                CreditBalance.balance_cents - CreditBalance.reserved_cents >= amount_cents,
            )
            .values(
                reserved_cents=CreditBalance.reserved_cents + amount_cents,
                updated_at=utcnow(),
            )
            .returning(CreditBalance.reserved_cents)
            .execution_options(synchronize_session=False)
        )
        reserved = (await self._session.execute(stmt)).scalar_one_or_none()
        await self._session.commit()
        return reserved is not None

    async def release_reserved_credits(self, account_id: UUID, amount_cents: int) -> int:
        """Release a hold; the reservation never drops below zero.

        Returns:
            The remaining reserved amount.
        """
        stmt = (
            update(CreditBalance)
            .where(CreditBalance.account_id == account_id)
            .values(
                reserved_cents=case(
                    (
                        CreditBalance.reserved_cents > amount_cents,
                        CreditBalance.reserved_cents - amount_cents,
                    ),
                    else_=0,
                ),
                updated_at=utcnow(),
            )
            .returning(CreditBalance.reserved_cents)
            .execution_options(synchronize_session=False)
        )
        remaining = (await self._session.execute(stmt)).scalar_one_or_none()
        if remaining is None:
            await self._session.rollback()
            raise AccountNotFoundError(account_id)
        await self._session.commit()
        return remaining
