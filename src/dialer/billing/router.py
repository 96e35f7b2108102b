"""
Billing API router.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from dialer.billing.config import BillingConfig, get_billing_config
from dialer.billing.ledger import CreditStatus, LedgerService
from dialer.billing.schemas import (
    AddCreditsRequest,
    CreditStatusResponse,
    CreditTransactionResponse,
    ReservationRequest,
)
from dialer.shared.database import get_db_session
from dialer.shared.exceptions import InsufficientCreditError
from dialer.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/accounts", tags=["billing"])


def get_ledger_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    config: Annotated[BillingConfig, Depends(get_billing_config)],
) -> LedgerService:
    """Dependency for ledger service."""
    return LedgerService(session, config)


def _credit_response(credit: CreditStatus) -> CreditStatusResponse:
    return CreditStatusResponse(
        account_id=credit.account_id,
        balance_cents=credit.balance_cents,
        reserved_cents=credit.reserved_cents,
        available_cents=credit.available_cents,
        status=credit.status,
        insufficient_credit=credit.insufficient_credit,
        can_dispatch=credit.can_dispatch,
    )


@router.get(
    "/{account_id}/credit-status",
    response_model=CreditStatusResponse,
    responses={404: {"description": "Account has no credit balance"}},
)
async def get_credit_status(
    account_id: UUID,
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
) -> CreditStatusResponse:
    """Current balance, reservation and low-balance level of an account."""
    return _credit_response(await ledger.get_credit_status(account_id))


@router.post(
    "/{account_id}/credits",
    response_model=CreditTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_credits(
    account_id: UUID,
    request: AddCreditsRequest,
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
) -> CreditTransactionResponse:
    """Top up an account.

    Clears the insufficient-credit state, so campaigns paused for credit
    resume on the next scheduler tick. Resubmitting the same correlation key
    returns the original entry.
    """
    entry = await ledger.add_credits(
        account_id,
        request.amount_cents,
        correlation_key=request.correlation_key,
        description=request.description,
    )
    return CreditTransactionResponse.model_validate(entry)


@router.post(
    "/{account_id}/reservations",
    response_model=CreditStatusResponse,
    responses={
        404: {"description": "Account has no credit balance"},
        409: {"description": "Available credit does not cover the hold"},
    },
)
async def reserve_credits(
    account_id: UUID,
    request: ReservationRequest,
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
) -> CreditStatusResponse:
    """Hold part of the balance; call charges may draw on the hold."""
    await ledger.get_balance(account_id)
    if not await ledger.reserve_credits(account_id, request.amount_cents):
        raise InsufficientCreditError(account_id, request.amount_cents)
    logger.info(
        "Credits reserved",
        extra={"account_id": str(account_id), "amount_cents": request.amount_cents},
    )
    return _credit_response(await ledger.get_credit_status(account_id))


@router.post(
    "/{account_id}/reservations/release",
    response_model=CreditStatusResponse,
    responses={404: {"description": "Account has no credit balance"}},
)
async def release_reserved_credits(
    account_id: UUID,
    request: ReservationRequest,
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
) -> CreditStatusResponse:
    """Release part of a hold; releasing more than is held clears it."""
    await ledger.release_reserved_credits(account_id, request.amount_cents)
    return _credit_response(await ledger.get_credit_status(account_id))
