"""
Webhook event processor for voice provider call events.

Events are correlated to a call attempt (or a standalone test-call session)
through the metadata attached at dispatch. Every handler is safe to replay:
status changes are guarded updates, the semaphore is released only by the
update that actually ends the call, and the ledger debit is keyed by the
attempt or session id.
"""

from dataclasses import dataclass
from typing import Any
from uuid import UUID

import pydantic
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dialer.billing.ledger import DeductionResult, LedgerService
from dialer.calls.models import BillingStatus, CallStatus
from dialer.calls.repository import CallAttemptRepository, WebCallSessionRepository
from dialer.campaigns.models import Campaign
from dialer.config import Settings, get_settings
from dialer.shared.database import utcnow
from dialer.shared.exceptions import (
    AttemptNotFoundError,
    UncorrelatedEventError,
    ValidationError,
)
from dialer.shared.logging import correlation_scope, get_logger
from dialer.telephony.events import ProviderCall, WebhookEventType, WebhookPayload
from dialer.telephony.webhooks.appointments import AppointmentData, extract_appointment

logger = get_logger(__name__)

NO_ANSWER_REASONS = frozenset({"user_not_answered", "dial_no_answer", "dial_busy"})
VOICEMAIL_REASONS = frozenset({"voicemail_reached", "in_voicemail"})
FAILED_REASONS = frozenset({"dial_failed", "invalid_destination", "telephony_provider_permission_denied"})
HANGUP_REASON = "user_hangup"

TARGET_ATTEMPT = "attempt"
TARGET_SESSION = "session"


def decide_final_status(
    disconnection_reason: str | None,
    duration_ms: int | None,
    short_call_threshold_ms: int,
    in_voicemail: bool | None = None,
) -> CallStatus:
    """Map the provider's end-of-call facts to an attempt status.

    The provider flags a call that reached voicemail whatever the hangup
    reason. A hangup shorter than the threshold is a no-answer: no
    conversation took place.
    """
    reason = (disconnection_reason or "").strip().lower()
    if reason in NO_ANSWER_REASONS:
        return CallStatus.NO_ANSWER
    if in_voicemail or reason in VOICEMAIL_REASONS:
        return CallStatus.VOICEMAIL
    if reason in FAILED_REASONS or reason.startswith("error"):
        return CallStatus.FAILED
    if reason == HANGUP_REASON and duration_ms is not None and duration_ms < short_call_threshold_ms:
        return CallStatus.NO_ANSWER
    return CallStatus.COMPLETED


def parse_payload(raw: dict[str, Any]) -> WebhookPayload:
    """Decode a webhook body.

    Raises:
        ValidationError: If the body does not match the event schema.
    """
    try:
        return WebhookPayload.model_validate(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Malformed webhook payload: {e.error_count()} error(s)") from e


@dataclass(frozen=True)
class ProcessingResult:
    """What processing one event did."""

    event: str
    call_id: str
    target: str | None = None
    target_id: UUID | None = None
    applied: bool = False
    ignored: bool = False
    final_status: CallStatus | None = None
    deduction: DeductionResult | None = None
    appointment: AppointmentData | None = None


class WebhookEventProcessor:
    """Applies provider call events to attempts, sessions and the ledger."""

    def __init__(
        self,
        session: AsyncSession,
        ledger: LedgerService,
        settings: Settings | None = None,
    ) -> None:
        """Initialize processor.

        Args:
            session: Async database session.
            ledger: Ledger used to bill ended calls.
            settings: Application settings (short-call threshold).
        """
        self._session = session
        self._ledger = ledger
        self._settings = settings or get_settings()
        self._attempts = CallAttemptRepository(session)
        self._sessions = WebCallSessionRepository(session)

    async def process(self, raw: dict[str, Any]) -> ProcessingResult:
        """Process one decoded webhook body.

        Raises:
            ValidationError: Malformed or uncorrelated payload.
            AttemptNotFoundError: Correlated attempt or session does not exist.
        """
        payload = parse_payload(raw)
        with correlation_scope(payload.call.call_id):
            return await self._process(payload, raw)

    async def _process(self, payload: WebhookPayload, raw: dict[str, Any]) -> ProcessingResult:
        call = payload.call
        event_type = payload.event_type
        if event_type is None:
            logger.info("Ignoring unsupported webhook event", extra={"event": payload.event})
            return ProcessingResult(event=payload.event, call_id=call.call_id, ignored=True)

        meta = call.metadata
        if meta.attempt_id is not None:
            target, target_id = TARGET_ATTEMPT, meta.attempt_id
        elif meta.web_call_session_id is not None:
            target, target_id = TARGET_SESSION, meta.web_call_session_id
        else:
            raise UncorrelatedEventError(call.call_id)

        logger.info(
            "Processing webhook event",
            extra={"event": payload.event, "target": target, "target_id": str(target_id)},
        )

        if target == TARGET_ATTEMPT:
            match event_type:
                case WebhookEventType.CALL_STARTED:
                    return await self._attempt_started(target_id, call)
                case WebhookEventType.CALL_ENDED:
                    return await self._attempt_ended(target_id, call, raw)
                case WebhookEventType.CALL_ANALYZED:
                    return await self._attempt_analyzed(target_id, call, raw)

        match event_type:
            case WebhookEventType.CALL_STARTED:
                return await self._session_started(target_id, call)
            case WebhookEventType.CALL_ENDED:
                return await self._session_ended(target_id, call, raw)
            case WebhookEventType.CALL_ANALYZED:
                return await self._session_analyzed(target_id, call, raw)

        raise ValidationError(f"Unhandled event type {payload.event}")

    # ----------------------------------------------------------------- shared

    def _final_status(self, call: ProviderCall) -> CallStatus:
        return decide_final_status(
            call.disconnection_reason,
            call.duration_ms,
            self._settings.short_call_threshold_ms,
            call.in_voicemail,
        )

    @staticmethod
    def _end_fields(call: ProviderCall) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "ended_at": call.ended_at or utcnow(),
            "duration_seconds": call.duration_seconds,
            "disconnection_reason": call.disconnection_reason,
            "provider_call_id": call.call_id,
        }
        if call.transcript is not None:
            fields["transcript"] = call.transcript
        if call.recording_url is not None:
            fields["recording_url"] = call.recording_url
        return fields

    @staticmethod
    def _analysis_fields(call: ProviderCall) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        analysis = call.call_analysis
        if analysis is not None:
            fields["call_summary"] = analysis.call_summary
            fields["call_successful"] = analysis.call_successful
            fields["custom_analysis"] = analysis.custom_analysis_data
        if call.transcript is not None:
            fields["transcript"] = call.transcript
        if call.recording_url is not None:
            fields["recording_url"] = call.recording_url
        return fields

    @staticmethod
    def _billing_status(deduction: DeductionResult) -> str:
        if not deduction.success:
            return BillingStatus.INSUFFICIENT_CREDIT.value
        if deduction.cost_deducted == 0:
            return BillingStatus.NOT_BILLABLE.value
        return BillingStatus.BILLED.value

    async def _charge(
        self,
        account_id: UUID,
        correlation_key: str,
        call: ProviderCall,
        description: str,
        metadata: dict[str, Any],
    ) -> DeductionResult:
        provider_cost = call.call_cost.provider_cost_cents if call.call_cost else 0
        return await self._ledger.deduct_call_cost(
            account_id=account_id,
            provider_cost_cents=provider_cost,
            correlation_key=correlation_key,
            description=description,
            metadata={
                **metadata,
                "provider_call_id": call.call_id,
                "duration_seconds": call.duration_seconds,
                "cost_breakdown": call.call_cost.model_dump() if call.call_cost else None,
            },
        )

    # --------------------------------------------------------------- attempts

    async def _require_attempt(self, attempt_id: UUID) -> None:
        if await self._attempts.get_by_id(attempt_id) is None:
            raise AttemptNotFoundError("Call attempt", attempt_id)

    async def _attempt_started(self, attempt_id: UUID, call: ProviderCall) -> ProcessingResult:
        await self._require_attempt(attempt_id)
        applied = await self._attempts.mark_started(
            attempt_id, call.call_id, call.started_at or utcnow()
        )
        await self._session.commit()
        if not applied:
            logger.info("Duplicate or late start event skipped", extra={"attempt_id": str(attempt_id)})
        return ProcessingResult(
            event=WebhookEventType.CALL_STARTED.value,
            call_id=call.call_id,
            target=TARGET_ATTEMPT,
            target_id=attempt_id,
            applied=applied,
            final_status=CallStatus.IN_PROGRESS if applied else None,
        )

    async def _attempt_ended(
        self,
        attempt_id: UUID,
        call: ProviderCall,
        raw: dict[str, Any],
    ) -> ProcessingResult:
        attempt = await self._attempts.get_by_id(attempt_id)
        if attempt is None:
            raise AttemptNotFoundError("Call attempt", attempt_id)
        campaign_id, contact_id = attempt.campaign_id, attempt.contact_id
        phone_number = attempt.phone_number

        final_status = self._final_status(call)
        fields = self._end_fields(call)
        fields["provider_call_data"] = raw.get("call")
        appointment = extract_appointment(raw)
        if appointment is not None:
            fields["appointment_data"] = appointment.model_dump()

        transitioned = await self._attempts.mark_ended(attempt_id, final_status, **fields)
        if transitioned is not None:
            await self._attempts.release_slots(campaign_id)
        else:
            transitioned = await self._attempts.mark_ended_after_expiry(
                attempt_id, final_status, **fields
            )
            if transitioned is not None:
                logger.warning(
                    "Late end event applied to expired attempt",
                    extra={"attempt_id": str(attempt_id), "final_status": final_status.value},
                )

        if transitioned is not None:
            if final_status == CallStatus.COMPLETED:
                cancelled = await self._attempts.cancel_pending_siblings(
                    campaign_id, contact_id, attempt_id
                )
                if cancelled:
                    logger.info(
                        "Pending sibling attempts cancelled",
                        extra={"attempt_id": str(attempt_id), "cancelled": cancelled},
                    )
        else:
            # Replay: the first delivery (or the analysis) already recorded the outcome
            await self._attempts.fill_missing(attempt_id, **fields)
        await self._session.commit()

        account_id = await self._session.scalar(
            select(Campaign.account_id).where(Campaign.id == campaign_id)
        )
        to_number = call.to_number or phone_number
        deduction = await self._charge(
            account_id,
            correlation_key=f"attempt:{attempt_id}",
            call=call,
            description=f"Call to {to_number} ({call.duration_seconds or 0}s)",
            metadata={
                "attempt_id": str(attempt_id),
                "campaign_id": str(campaign_id),
                "contact_id": str(contact_id),
                "to_number": to_number,
            },
        )
        await self._attempts.update_fields(
            attempt_id, billing_status=self._billing_status(deduction)
        )
        await self._session.commit()

        logger.info(
            "Call ended",
            extra={
                "attempt_id": str(attempt_id),
                "final_status": final_status.value,
                "transitioned": transitioned is not None,
                "cost_deducted": deduction.cost_deducted,
                "duplicate_charge": deduction.duplicate,
                "appointment_booked": appointment is not None,
            },
        )
        return ProcessingResult(
            event=WebhookEventType.CALL_ENDED.value,
            call_id=call.call_id,
            target=TARGET_ATTEMPT,
            target_id=attempt_id,
            applied=transitioned is not None,
            final_status=final_status,
            deduction=deduction,
            appointment=appointment,
        )

    async def _attempt_analyzed(
        self,
        attempt_id: UUID,
        call: ProviderCall,
        raw: dict[str, Any],
    ) -> ProcessingResult:
        await self._require_attempt(attempt_id)
        fields = self._analysis_fields(call)
        fields["provider_call_data"] = raw.get("call")
        appointment = extract_appointment(raw)
        if appointment is not None:
            fields["appointment_data"] = appointment.model_dump()

        applied = await self._attempts.update_fields(attempt_id, **fields)
        await self._session.commit()
        return ProcessingResult(
            event=WebhookEventType.CALL_ANALYZED.value,
            call_id=call.call_id,
            target=TARGET_ATTEMPT,
            target_id=attempt_id,
            applied=applied,
            appointment=appointment,
        )

    # --------------------------------------------------------------- sessions

    async def _session_started(self, session_id: UUID, call: ProviderCall) -> ProcessingResult:
        if await self._sessions.get_by_id(session_id) is None:
            raise AttemptNotFoundError("Web call session", session_id)
        applied = await self._sessions.mark_started(
            session_id, call.call_id, call.started_at or utcnow()
        )
        await self._session.commit()
        return ProcessingResult(
            event=WebhookEventType.CALL_STARTED.value,
            call_id=call.call_id,
            target=TARGET_SESSION,
            target_id=session_id,
            applied=applied,
            final_status=CallStatus.IN_PROGRESS if applied else None,
        )

    async def _session_ended(
        self,
        session_id: UUID,
        call: ProviderCall,
        raw: dict[str, Any],
    ) -> ProcessingResult:
        web_call = await self._sessions.get_by_id(session_id)
        if web_call is None:
            raise AttemptNotFoundError("Web call session", session_id)
        account_id = web_call.account_id

        final_status = self._final_status(call)
        fields = self._end_fields(call)
        appointment = extract_appointment(raw)
        if appointment is not None:
            fields["appointment_data"] = appointment.model_dump()

        applied = await self._sessions.mark_ended(session_id, final_status, **fields)
        if not applied:
            await self._sessions.fill_missing(session_id, **fields)
        await self._session.commit()

        deduction = await self._charge(
            account_id,
            correlation_key=f"session:{session_id}",
            call=call,
            description=f"Web test call ({call.duration_seconds or 0}s)",
            metadata={"web_call_session_id": str(session_id)},
        )
        await self._sessions.update_fields(
            session_id, billing_status=self._billing_status(deduction)
        )
        await self._session.commit()
        return ProcessingResult(
            event=WebhookEventType.CALL_ENDED.value,
            call_id=call.call_id,
            target=TARGET_SESSION,
            target_id=session_id,
            applied=applied,
            final_status=final_status,
            deduction=deduction,
            appointment=appointment,
        )

    async def _session_analyzed(
        self,
        session_id: UUID,
        call: ProviderCall,
        raw: dict[str, Any],
    ) -> ProcessingResult:
        if await self._sessions.get_by_id(session_id) is None:
            raise AttemptNotFoundError("Web call session", session_id)
        fields = self._analysis_fields(call)
        appointment = extract_appointment(raw)
        if appointment is not None:
            fields["appointment_data"] = appointment.model_dump()
        applied = await self._sessions.update_fields(session_id, **fields)
        await self._session.commit()
        return ProcessingResult(
            event=WebhookEventType.CALL_ANALYZED.value,
            call_id=call.call_id,
            target=TARGET_SESSION,
            target_id=session_id,
            applied=applied,
            appointment=appointment,
        )
