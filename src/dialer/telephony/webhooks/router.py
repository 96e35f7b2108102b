"""
FastAPI router for inbound voice provider webhooks.

Signed requests are verified before anything is parsed. Processing failures
are written to the webhook error queue and acknowledged, so the provider does
not redeliver what the redrive sweep already owns.
"""

import json
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from dialer.billing.config import BillingConfig, get_billing_config
from dialer.billing.ledger import LedgerService
from dialer.config import Settings, get_settings
from dialer.shared.database import get_db_session
from dialer.shared.exceptions import ValidationError
from dialer.shared.logging import get_logger
from dialer.telephony.events import WEBHOOK_TYPE
from dialer.telephony.webhooks.processor import WebhookEventProcessor
from dialer.telephony.webhooks.signature import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    verify_webhook_signature,
)
from dialer.webhook_errors.service import WebhookErrorService

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks/voice", tags=["webhooks"])


def event_identity(raw: Any) -> tuple[str, str] | None:
    """(event_type, event_id) of a body, when it carries enough to be keyed."""
    if not isinstance(raw, dict):
        return None
    event = raw.get("event")
    call = raw.get("call")
    call_id = call.get("call_id") if isinstance(call, dict) else None
    if not isinstance(event, str) or not event or not isinstance(call_id, str) or not call_id:
        return None
    return event, f"{WEBHOOK_TYPE}:{event}:{call_id}"


def get_webhook_processor(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    billing: Annotated[BillingConfig, Depends(get_billing_config)],
) -> WebhookEventProcessor:
    return WebhookEventProcessor(session, LedgerService(session, billing), settings)


def get_webhook_error_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> WebhookErrorService:
    return WebhookErrorService(session, settings)


def _verify(request: Request, body: bytes, settings: Settings) -> None:
    if not settings.webhook_secret:
        logger.warning("Webhook secret not configured; signature verification skipped")
        return
    verify_webhook_signature(
        body,
        request.headers.get(SIGNATURE_HEADER),
        request.headers.get(TIMESTAMP_HEADER),
        settings.webhook_secret,
        settings.webhook_tolerance_seconds,
    )


@router.post("/events", status_code=status.HTTP_200_OK, response_model=None)
async def receive_webhook_event(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    processor: Annotated[WebhookEventProcessor, Depends(get_webhook_processor)],
    errors: Annotated[WebhookErrorService, Depends(get_webhook_error_service)],
) -> dict[str, Any] | JSONResponse:
    """Receive one call lifecycle event.

    Returns:
        200 with the processing status, or 202 once a failure is stored for
        redrive. Malformed or uncorrelated payloads, and events for
        unknown attempts, get 400. A bad signature gets 401.
    """
    body = await request.body()
    _verify(request, body, settings)

    try:
        raw = json.loads(body)
    except ValueError as e:
        raise ValidationError("Webhook body is not valid JSON") from e
    if not isinstance(raw, dict):
        raise ValidationError("Webhook body must be a JSON object")

    identity = event_identity(raw)

    try:
        result = await processor.process(raw)
    except Exception as e:
        await session.rollback()
        if identity is None:
            raise
        event_type, event_id = identity
        record = await errors.record_failure(WEBHOOK_TYPE, event_type, event_id, raw, e)
        if isinstance(e, ValidationError):
            raise
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={
                "status": "queued_for_retry" if record.next_retry_at is not None else "recorded",
                "event_id": event_id,
            },
        )

    if identity is not None:
        await errors.mark_resolved(identity[1])

    if result.ignored:
        return {"status": "ignored", "event": result.event}
    return {
        "status": "processed",
        "event": result.event,
        "applied": result.applied,
        "target": result.target,
        "target_id": str(result.target_id) if result.target_id else None,
    }
