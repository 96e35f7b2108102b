"""
Operator API for the webhook error queue.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dialer.config import Settings, get_settings
from dialer.shared.database import get_db_session
from dialer.webhook_errors.schemas import WebhookErrorListResponse, WebhookErrorResponse
from dialer.webhook_errors.service import ErrorState, WebhookErrorService

router = APIRouter(prefix="/api/webhook-errors", tags=["webhook-errors"])


def get_webhook_error_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> WebhookErrorService:
    """Dependency for webhook error service."""
    return WebhookErrorService(session, settings)


@router.get("", response_model=WebhookErrorListResponse)
async def list_webhook_errors(
    service: Annotated[WebhookErrorService, Depends(get_webhook_error_service)],
    state: Annotated[ErrorState | None, Query(description="Filter by record state")] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> WebhookErrorListResponse:
    """List stored webhook failures, newest first.

    Exhausted records are the ones awaiting manual follow-up.
    """
    records = await service.list_errors(state, limit)
    items = [WebhookErrorResponse.model_validate(r) for r in records]
    return WebhookErrorListResponse(items=items, total=len(items))
