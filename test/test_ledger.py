"""
Tests for the credit ledger: markup, idempotent deduction and holds.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import load_balance
from dialer.billing.config import BillingConfig
from dialer.billing.ledger import CreditStatusLevel, LedgerService, compute_user_cost
from dialer.billing.models import CreditTransaction
from dialer.shared.exceptions import AccountNotFoundError, ValidationError


async def transaction_count(session: AsyncSession) -> int:
    return int((await session.execute(select(func.count(CreditTransaction.id)))).scalar_one())


# ============================================================================
# Markup
# ============================================================================


class TestComputeUserCost:
    """Tests for compute_user_cost."""

    @pytest.mark.parametrize(
        "provider_cost,markup,expected",
        [
            (120, "1.667", 200),
            (100, "1.667", 167),
            (1, "1.667", 2),
            (3, "1.5", 5),
            (100, "1", 100),
            (0, "1.667", 0),
            (-5, "1.667", 0),
        ],
    )
    def test_rounding(self, provider_cost: int, markup: str, expected: int) -> None:
        assert compute_user_cost(provider_cost, Decimal(markup)) == expected

    def test_float_markup_has_no_float_noise(self) -> None:
        assert compute_user_cost(120, 1.667) == 200


# ============================================================================
# Deduction
# ============================================================================


class TestDeductCallCost:
    """Tests for LedgerService.deduct_call_cost."""

    @pytest.mark.asyncio
    async def test_charge_applies_markup(
        self, db_session: AsyncSession, billing_config: BillingConfig, make_balance
    ) -> None:
        account_id = await make_balance(1000)
        ledger = LedgerService(db_session, billing_config)

        result = await ledger.deduct_call_cost(account_id, 120, "attempt:a1", "Call to +1555 (60s)")

        assert result.success
        assert result.cost_deducted == 200
        assert result.previous_balance == 1000
        assert result.new_balance == 800
        balance = await load_balance(db_session, account_id)
        assert balance.balance_cents == 800
        assert balance.total_spent_cents == 200

        entry = await ledger.find_transaction("attempt:a1")
        assert entry is not None
        assert entry.amount_cents == -200
        assert entry.balance_after_cents == 800
        assert entry.type == "usage"
        assert entry.extra_metadata["provider_cost_cents"] == 120
        assert entry.extra_metadata["user_cost_cents"] == 200

    @pytest.mark.asyncio
    async def test_replay_returns_same_transaction(
        self, db_session: AsyncSession, billing_config: BillingConfig, make_balance
    ) -> None:
        account_id = await make_balance(1000)
        ledger = LedgerService(db_session, billing_config)

        first = await ledger.deduct_call_cost(account_id, 120, "attempt:a1", "Call")
        second = await ledger.deduct_call_cost(account_id, 120, "attempt:a1", "Call")

        assert second.success
        assert second.duplicate
        assert second.transaction_id == first.transaction_id
        assert second.cost_deducted == 200
        assert (await load_balance(db_session, account_id)).balance_cents == 800
        assert await transaction_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_zero_cost_writes_nothing(
        self, db_session: AsyncSession, billing_config: BillingConfig, make_balance
    ) -> None:
        account_id = await make_balance(1000)
        ledger = LedgerService(db_session, billing_config)

        result = await ledger.deduct_call_cost(account_id, 0, "attempt:a1", "Call")

        assert result.success
        assert result.cost_deducted == 0
        assert result.reason == "zero_cost"
        assert await transaction_count(db_session) == 0
        assert (await load_balance(db_session, account_id)).balance_cents == 1000

    @pytest.mark.asyncio
    async def test_uncovered_charge_rejected_and_balance_untouched(
        self, db_session: AsyncSession, billing_config: BillingConfig, make_balance
    ) -> None:
        account_id = await make_balance(150)
        ledger = LedgerService(db_session, billing_config)

        result = await ledger.deduct_call_cost(account_id, 120, "attempt:a1", "Call")

        assert not result.success
        assert result.reason == "insufficient_balance"
        assert result.new_balance == 150
        balance = await load_balance(db_session, account_id)
        assert balance.balance_cents == 150
        assert balance.insufficient_credit_at is not None
        assert await transaction_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_reservation_covers_charge(
        self, db_session: AsyncSession, billing_config: BillingConfig, make_balance
    ) -> None:
        account_id = await make_balance(150, reserved_cents=250)
        ledger = LedgerService(db_session, billing_config)

        result = await ledger.deduct_call_cost(account_id, 120, "attempt:a1", "Call")

        assert result.success
        balance = await load_balance(db_session, account_id)
        assert balance.balance_cents == -50
        assert balance.reserved_cents == 50

    @pytest.mark.asyncio
    async def test_account_markup_override(
        self, db_session: AsyncSession, billing_config: BillingConfig, make_balance
    ) -> None:
        account_id = await make_balance(1000, markup_multiplier=Decimal("2.000"))
        ledger = LedgerService(db_session, billing_config)

        result = await ledger.deduct_call_cost(account_id, 120, "attempt:a1", "Call")

        assert result.cost_deducted == 240

    @pytest.mark.asyncio
    async def test_unknown_account(self, db_session: AsyncSession, billing_config: BillingConfig) -> None:
        ledger = LedgerService(db_session, billing_config)

        with pytest.raises(AccountNotFoundError):
            await ledger.deduct_call_cost(uuid4(), 120, "attempt:a1", "Call")


# ============================================================================
# Credits, holds and status
# ============================================================================


class TestCreditsAndStatus:
    """Tests for add_credits, reservations and credit status."""

    @pytest.mark.asyncio
    async def test_add_credits_clears_insufficient_flag(
        self, db_session: AsyncSession, billing_config: BillingConfig, make_balance
    ) -> None:
        account_id = await make_balance(10)
        ledger = LedgerService(db_session, billing_config)
        await ledger.deduct_call_cost(account_id, 120, "attempt:a1", "Call")

        entry = await ledger.add_credits(account_id, 5000, "purchase:p1")
        replay = await ledger.add_credits(account_id, 5000, "purchase:p1")

        assert replay.id == entry.id
        balance = await load_balance(db_session, account_id)
        assert balance.balance_cents == 5010
        assert balance.insufficient_credit_at is None

    @pytest.mark.asyncio
    async def test_add_credits_creates_balance_row(
        self, db_session: AsyncSession, billing_config: BillingConfig
    ) -> None:
        account_id = uuid4()
        ledger = LedgerService(db_session, billing_config)

        await ledger.add_credits(account_id, 700, "purchase:p1")

        assert (await load_balance(db_session, account_id)).balance_cents == 700

    @pytest.mark.asyncio
    async def test_add_credits_requires_positive_amount(
        self, db_session: AsyncSession, billing_config: BillingConfig
    ) -> None:
        with pytest.raises(ValidationError):
            await LedgerService(db_session, billing_config).add_credits(uuid4(), 0, "purchase:p1")

    @pytest.mark.asyncio
    async def test_reserve_and_release(
        self, db_session: AsyncSession, billing_config: BillingConfig, make_balance
    ) -> None:
        account_id = await make_balance(1000)
        ledger = LedgerService(db_session, billing_config)

        assert await ledger.reserve_credits(account_id, 600)
        assert not await ledger.reserve_credits(account_id, 600)
        assert await ledger.release_reserved_credits(account_id, 100) == 500
        assert await ledger.release_reserved_credits(account_id, 10_000) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "balance_cents,reserved_cents,level",
        [
            (10_000, 0, CreditStatusLevel.NORMAL),
            (500, 0, CreditStatusLevel.WARNING),
            (100, 0, CreditStatusLevel.CRITICAL),
            (0, 0, CreditStatusLevel.DEPLETED),
            (1000, 1000, CreditStatusLevel.DEPLETED),
        ],
    )
    async def test_credit_status_levels(
        self,
        db_session: AsyncSession,
        billing_config: BillingConfig,
        make_balance,
        balance_cents: int,
        reserved_cents: int,
        level: CreditStatusLevel,
    ) -> None:
        account_id = await make_balance(balance_cents, reserved_cents=reserved_cents)

        status = await LedgerService(db_session, billing_config).get_credit_status(account_id)

        assert status.status == level
        assert status.available_cents == balance_cents - reserved_cents
        assert status.can_dispatch is (level != CreditStatusLevel.DEPLETED)
