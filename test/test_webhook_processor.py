"""
Tests for the webhook event processor: status decisions, replay safety,
semaphore release, sibling cascade, billing and appointment capture.
"""

from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import load_attempt, load_balance, load_campaign
from dialer.billing.config import BillingConfig
from dialer.billing.ledger import LedgerService
from dialer.billing.models import CreditTransaction
from dialer.calls.models import BillingStatus, CallStatus, WebCallSession
from dialer.calls.repository import STALE_ATTEMPT_ERROR
from dialer.campaigns.models import CampaignStatus
from dialer.config import Settings
from dialer.shared.exceptions import AttemptNotFoundError, UncorrelatedEventError, ValidationError
from dialer.telephony.webhooks.processor import WebhookEventProcessor, decide_final_status

START_MS = 1_736_157_600_000


def event(
    name: str,
    attempt_id: UUID | None = None,
    session_id: UUID | None = None,
    call_id: str = "call_abc",
    **call_fields: Any,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {}
    if attempt_id is not None:
        metadata["attempt_id"] = str(attempt_id)
    if session_id is not None:
        metadata["web_call_session_id"] = str(session_id)
    call: dict[str, Any] = {"call_id": call_id, "metadata": metadata, "to_number": "+15551234567"}
    call.update(call_fields)
    return {"event": name, "call": call}


def ended(
    attempt_id: UUID | None = None,
    session_id: UUID | None = None,
    cost: float = 120,
    duration_ms: int = 60_000,
    call_id: str = "call_abc",
    **kw: Any,
) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "disconnection_reason": "user_hangup",
        "duration_ms": duration_ms,
        "start_timestamp": START_MS,
        "end_timestamp": START_MS + duration_ms,
        "call_cost": {"combined_cost": cost},
    }
    fields.update(kw)
    return event("call_ended", attempt_id=attempt_id, session_id=session_id, call_id=call_id, **fields)


def booking_call(time_text: str) -> dict[str, Any]:
    return {
        "role": "tool_call_invocation",
        "name": "book_appointment_cal",
        "tool_call_id": "tool_1",
        "arguments": f'{{"time": "{time_text}", "name": "Ada", "email": "ada@example.com"}}',
    }


async def transaction_count(session: AsyncSession) -> int:
    return int((await session.execute(select(func.count(CreditTransaction.id)))).scalar_one())


@pytest.fixture
def processor(
    db_session: AsyncSession, test_settings: Settings, billing_config: BillingConfig
) -> WebhookEventProcessor:
    return WebhookEventProcessor(db_session, LedgerService(db_session, billing_config), test_settings)


@pytest.fixture
def campaign_with_attempts(make_balance, make_campaign, make_contacts, make_attempt):
    """Campaign with one in-progress attempt per contact."""

    async def _make(
        attempts: int = 1,
        balance_cents: int = 1000,
        status: CampaignStatus = CampaignStatus.ACTIVE,
    ) -> tuple[UUID, UUID, list[UUID]]:
        account_id = await make_balance(balance_cents)
        group_id = uuid4()
        contact_ids = await make_contacts(group_id, count=attempts)
        campaign_id = await make_campaign(
            account_id=account_id,
            contact_group_id=group_id,
            total_contacts=attempts,
            status=status,
            concurrent_calls=max(attempts, 1) + 1,
            active_calls_count=attempts,
        )
        attempt_ids = [
            await make_attempt(campaign_id, contact_id, call_status=CallStatus.IN_PROGRESS)
            for contact_id in contact_ids
        ]
        return account_id, campaign_id, attempt_ids

    return _make


# ============================================================================
# Decision table
# ============================================================================


class TestDecideFinalStatus:
    """Tests for decide_final_status."""

    @pytest.mark.parametrize(
        "reason,duration_ms,expected",
        [
            ("user_not_answered", 0, CallStatus.NO_ANSWER),
            ("dial_no_answer", None, CallStatus.NO_ANSWER),
            ("dial_busy", 5000, CallStatus.NO_ANSWER),
            ("voicemail_reached", 40_000, CallStatus.VOICEMAIL),
            ("dial_failed", 0, CallStatus.FAILED),
            ("error_llm_websocket_open", 1000, CallStatus.FAILED),
            ("user_hangup", 29_999, CallStatus.NO_ANSWER),
            ("user_hangup", 30_000, CallStatus.COMPLETED),
            ("user_hangup", None, CallStatus.COMPLETED),
            ("agent_hangup", 5000, CallStatus.COMPLETED),
            (None, 90_000, CallStatus.COMPLETED),
        ],
    )
    def test_decision(self, reason: str | None, duration_ms: int | None, expected: CallStatus) -> None:
        assert decide_final_status(reason, duration_ms, 30_000) == expected

    @pytest.mark.parametrize(
        "reason,duration_ms,expected",
        [
            ("user_hangup", 45_000, CallStatus.VOICEMAIL),
            ("user_hangup", 10_000, CallStatus.VOICEMAIL),
            ("agent_hangup", 90_000, CallStatus.VOICEMAIL),
            (None, None, CallStatus.VOICEMAIL),
            ("user_not_answered", 0, CallStatus.NO_ANSWER),
        ],
    )
    def test_voicemail_flag(
        self, reason: str | None, duration_ms: int | None, expected: CallStatus
    ) -> None:
        assert decide_final_status(reason, duration_ms, 30_000, in_voicemail=True) == expected

    def test_voicemail_flag_false_falls_through(self) -> None:
        assert decide_final_status("user_hangup", 45_000, 30_000, in_voicemail=False) == (
            CallStatus.COMPLETED
        )


# ============================================================================
# Payload validation
# ============================================================================


class TestPayloadHandling:
    """Tests for malformed, unknown and uncorrelated events."""

    @pytest.mark.asyncio
    async def test_malformed_payload(self, processor: WebhookEventProcessor) -> None:
        with pytest.raises(ValidationError, match="Malformed"):
            await processor.process({"event": "call_ended"})

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, processor: WebhookEventProcessor) -> None:
        result = await processor.process(event("transcript_updated", attempt_id=uuid4()))
        assert result.ignored

    @pytest.mark.asyncio
    async def test_uncorrelated_event(self, processor: WebhookEventProcessor) -> None:
        with pytest.raises(UncorrelatedEventError):
            await processor.process(ended())

    @pytest.mark.asyncio
    async def test_unknown_attempt(self, processor: WebhookEventProcessor) -> None:
        with pytest.raises(AttemptNotFoundError):
            await processor.process(ended(uuid4()))


# ============================================================================
# Attempt lifecycle
# ============================================================================


class TestAttemptEvents:
    """Tests for started / ended / analyzed on campaign attempts."""

    @pytest.mark.asyncio
    async def test_started_applies_once(
        self, db_session: AsyncSession, processor, make_campaign, make_attempt
    ) -> None:
        campaign_id = await make_campaign(status=CampaignStatus.ACTIVE)
        attempt_id = await make_attempt(campaign_id, uuid4())

        first = await processor.process(event("call_started", attempt_id, start_timestamp=START_MS))
        second = await processor.process(event("call_started", attempt_id, start_timestamp=START_MS))

        assert first.applied
        assert not second.applied
        attempt = await load_attempt(db_session, attempt_id)
        assert attempt.call_status == CallStatus.IN_PROGRESS
        assert attempt.provider_call_id == "call_abc"

    @pytest.mark.asyncio
    async def test_replayed_end_bills_once(
        self, db_session: AsyncSession, processor, campaign_with_attempts
    ) -> None:
        account_id, campaign_id, [attempt_id] = await campaign_with_attempts()

        first = await processor.process(ended(attempt_id))
        replay = await processor.process(ended(attempt_id))

        assert first.applied
        assert first.final_status == CallStatus.COMPLETED
        assert first.deduction.cost_deducted == 200
        assert not replay.applied
        assert replay.deduction.duplicate
        assert replay.deduction.transaction_id == first.deduction.transaction_id
        assert await transaction_count(db_session) == 1
        assert (await load_balance(db_session, account_id)).balance_cents == 800
        assert (await load_campaign(db_session, campaign_id)).active_calls_count == 0

        attempt = await load_attempt(db_session, attempt_id)
        assert attempt.call_status == CallStatus.COMPLETED
        assert attempt.billing_status == BillingStatus.BILLED.value
        assert attempt.duration_seconds == 60

        entry = (await db_session.execute(select(CreditTransaction))).scalar_one()
        assert entry.correlation_key == f"attempt:{attempt_id}"
        assert entry.description == "Call to +15551234567 (60s)"

    @pytest.mark.asyncio
    async def test_replay_releases_slot_once(
        self, db_session: AsyncSession, processor, campaign_with_attempts
    ) -> None:
        _, campaign_id, attempt_ids = await campaign_with_attempts(attempts=2)

        await processor.process(ended(attempt_ids[0], call_id="call_1"))
        await processor.process(ended(attempt_ids[0], call_id="call_1"))

        assert (await load_campaign(db_session, campaign_id)).active_calls_count == 1

    @pytest.mark.asyncio
    async def test_short_hangup_is_no_answer(
        self, db_session: AsyncSession, processor, campaign_with_attempts
    ) -> None:
        _, _, [attempt_id] = await campaign_with_attempts()

        result = await processor.process(ended(attempt_id, duration_ms=8000))

        assert result.final_status == CallStatus.NO_ANSWER
        assert (await load_attempt(db_session, attempt_id)).call_status == CallStatus.NO_ANSWER

    @pytest.mark.asyncio
    async def test_zero_cost_not_billable(
        self, db_session: AsyncSession, processor, campaign_with_attempts
    ) -> None:
        _, _, [attempt_id] = await campaign_with_attempts()

        await processor.process(ended(attempt_id, cost=0, disconnection_reason="dial_no_answer"))

        attempt = await load_attempt(db_session, attempt_id)
        assert attempt.billing_status == BillingStatus.NOT_BILLABLE.value
        assert await transaction_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_insufficient_credit_recorded_on_attempt(
        self, db_session: AsyncSession, processor, campaign_with_attempts
    ) -> None:
        account_id, _, [attempt_id] = await campaign_with_attempts(balance_cents=50)

        result = await processor.process(ended(attempt_id))

        assert not result.deduction.success
        attempt = await load_attempt(db_session, attempt_id)
        assert attempt.call_status == CallStatus.COMPLETED
        assert attempt.billing_status == BillingStatus.INSUFFICIENT_CREDIT.value
        balance = await load_balance(db_session, account_id)
        assert balance.balance_cents == 50
        assert balance.insufficient_credit_at is not None

    @pytest.mark.asyncio
    async def test_late_completion_cancels_pending_retry(
        self,
        db_session: AsyncSession,
        processor,
        make_balance,
        make_campaign,
        make_attempt,
    ) -> None:
        account_id = await make_balance(1000)
        campaign_id = await make_campaign(
            account_id=account_id, status=CampaignStatus.ACTIVE, active_calls_count=1
        )
        contact_id = uuid4()
        expired_id = await make_attempt(
            campaign_id,
            contact_id,
            call_status=CallStatus.FAILED,
            error_message=STALE_ATTEMPT_ERROR,
        )
        retry_id = await make_attempt(
            campaign_id, contact_id, call_status=CallStatus.PENDING, attempt_day=1, attempt_number=2
        )

        result = await processor.process(ended(expired_id))

        assert result.applied
        assert (await load_attempt(db_session, expired_id)).call_status == CallStatus.COMPLETED
        retry = await load_attempt(db_session, retry_id)
        assert retry.call_status == CallStatus.CANCELLED
        assert (await load_campaign(db_session, campaign_id)).active_calls_count == 0
        assert await transaction_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_paused_campaign_in_flight_calls_finish_and_bill(
        self, db_session: AsyncSession, processor, campaign_with_attempts
    ) -> None:
        account_id, campaign_id, attempt_ids = await campaign_with_attempts(
            attempts=3, status=CampaignStatus.PAUSED, balance_cents=10_000
        )

        for i, attempt_id in enumerate(attempt_ids):
            await processor.process(ended(attempt_id, call_id=f"call_{i}"))
            await processor.process(ended(attempt_id, call_id=f"call_{i}"))

        for attempt_id in attempt_ids:
            attempt = await load_attempt(db_session, attempt_id)
            assert attempt.call_status == CallStatus.COMPLETED
            assert attempt.billing_status == BillingStatus.BILLED.value
        assert await transaction_count(db_session) == 3
        assert (await load_balance(db_session, account_id)).balance_cents == 10_000 - 3 * 200
        campaign = await load_campaign(db_session, campaign_id)
        assert campaign.status == CampaignStatus.PAUSED
        assert campaign.active_calls_count == 0

    @pytest.mark.asyncio
    async def test_analyzed_overwrites_appointment(
        self, db_session: AsyncSession, processor, campaign_with_attempts
    ) -> None:
        _, _, [attempt_id] = await campaign_with_attempts()
        await processor.process(ended(attempt_id))
        assert (await load_attempt(db_session, attempt_id)).appointment_data is None

        first = event(
            "call_analyzed",
            attempt_id,
            call_analysis={"call_summary": "Booked", "call_successful": True},
            transcript_with_tool_calls=[{"role": "agent", "content": "Hi"}, booking_call("Tue 3pm")],
        )
        second = event(
            "call_analyzed",
            attempt_id,
            transcript_with_tool_calls=[booking_call("Wed 10am")],
        )
        result = await processor.process(first)
        await processor.process(second)

        assert result.appointment is not None
        assert result.appointment.time_text == "Tue 3pm"
        attempt = await load_attempt(db_session, attempt_id)
        assert attempt.appointment_data["time_text"] == "Wed 10am"
        assert attempt.appointment_data["source"] == "provider_tool_call"
        assert attempt.call_summary == "Booked"
        assert attempt.provider_call_data["call_id"] == "call_abc"
        assert "transcript_with_tool_calls" in attempt.provider_call_data
        assert await transaction_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_voicemail_flag_overrides_long_hangup(
        self, db_session: AsyncSession, processor, campaign_with_attempts
    ) -> None:
        _, campaign_id, [attempt_id] = await campaign_with_attempts()

        result = await processor.process(ended(attempt_id, in_voicemail=True, duration_ms=45_000))

        assert result.final_status == CallStatus.VOICEMAIL
        assert (await load_attempt(db_session, attempt_id)).call_status == CallStatus.VOICEMAIL
        assert (await load_campaign(db_session, campaign_id)).active_calls_count == 0

    @pytest.mark.asyncio
    async def test_fractional_duration_accepted(
        self, db_session: AsyncSession, processor, campaign_with_attempts
    ) -> None:
        _, _, [attempt_id] = await campaign_with_attempts()

        result = await processor.process(ended(attempt_id, duration_ms=45_000.6))

        assert result.final_status == CallStatus.COMPLETED
        assert (await load_attempt(db_session, attempt_id)).duration_seconds == 46


# ============================================================================
# Replayed end events
# ============================================================================


class TestEndEventReplay:
    """A duplicate call_ended never changes what the first delivery recorded."""

    @pytest.mark.asyncio
    async def test_replay_keeps_analyzed_appointment(
        self, db_session: AsyncSession, processor, campaign_with_attempts
    ) -> None:
        _, _, [attempt_id] = await campaign_with_attempts()
        first_end = ended(attempt_id, transcript_with_tool_calls=[booking_call("Tuesday 3pm")])

        await processor.process(first_end)
        await processor.process(
            event(
                "call_analyzed",
                attempt_id,
                transcript_with_tool_calls=[booking_call("Wednesday 10am")],
            )
        )
        await processor.process(first_end)

        attempt = await load_attempt(db_session, attempt_id)
        assert attempt.appointment_data["time_text"] == "Wednesday 10am"

    @pytest.mark.asyncio
    async def test_end_after_analysis_keeps_appointment(
        self, db_session: AsyncSession, processor, campaign_with_attempts
    ) -> None:
        _, _, [attempt_id] = await campaign_with_attempts()

        await processor.process(
            event(
                "call_analyzed",
                attempt_id,
                transcript_with_tool_calls=[booking_call("Wednesday 10am")],
            )
        )
        result = await processor.process(
            ended(attempt_id, transcript_with_tool_calls=[booking_call("Tuesday 3pm")])
        )

        assert result.applied
        attempt = await load_attempt(db_session, attempt_id)
        assert attempt.call_status == CallStatus.COMPLETED
        assert attempt.appointment_data["time_text"] == "Wednesday 10am"

    @pytest.mark.asyncio
    async def test_replay_keeps_end_time_and_transcript(
        self, db_session: AsyncSession, processor, campaign_with_attempts
    ) -> None:
        _, _, [attempt_id] = await campaign_with_attempts()

        await processor.process(ended(attempt_id, end_timestamp=None, transcript="Agent: hello"))
        first = await load_attempt(db_session, attempt_id)
        ended_at, call_data = first.ended_at, first.provider_call_data

        await processor.process(
            ended(attempt_id, end_timestamp=None, transcript="Agent: hello again", duration_ms=5_000)
        )

        attempt = await load_attempt(db_session, attempt_id)
        assert attempt.ended_at == ended_at
        assert attempt.transcript == "Agent: hello"
        assert attempt.duration_seconds == 60
        assert attempt.provider_call_data == call_data
        assert attempt.call_status == CallStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_replay_fills_fields_missing_from_first_delivery(
        self, db_session: AsyncSession, processor, campaign_with_attempts
    ) -> None:
        _, _, [attempt_id] = await campaign_with_attempts()

        await processor.process(ended(attempt_id))
        await processor.process(ended(attempt_id, recording_url="https://rec.example.com/1.wav"))

        attempt = await load_attempt(db_session, attempt_id)
        assert attempt.recording_url == "https://rec.example.com/1.wav"


# ============================================================================
# Web call sessions
# ============================================================================


class TestWebCallSessions:
    """Tests for standalone test-call sessions."""

    @pytest.mark.asyncio
    async def test_session_lifecycle_bills_once(
        self, db_session: AsyncSession, processor, make_balance
    ) -> None:
        account_id = await make_balance(1000)
        web_call = WebCallSession(account_id=account_id, agent_id=uuid4())
        db_session.add(web_call)
        await db_session.commit()
        session_id = web_call.id

        started = await processor.process(event("call_started", session_id=session_id))
        first = await processor.process(ended(session_id=session_id))
        replay = await processor.process(ended(session_id=session_id))

        assert started.applied
        assert first.target == "session"
        assert first.applied
        assert not replay.applied
        assert replay.deduction.duplicate
        stored = (
            await db_session.execute(
                select(WebCallSession)
                .where(WebCallSession.id == session_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        assert stored.status == CallStatus.COMPLETED
        assert stored.billing_status == BillingStatus.BILLED.value
        entry = (await db_session.execute(select(CreditTransaction))).scalar_one()
        assert entry.correlation_key == f"session:{session_id}"
        assert (await load_balance(db_session, account_id)).balance_cents == 800

    @pytest.mark.asyncio
    async def test_session_replay_keeps_first_outcome(
        self, db_session: AsyncSession, processor, make_balance
    ) -> None:
        account_id = await make_balance(1000)
        web_call = WebCallSession(account_id=account_id, agent_id=uuid4())
        db_session.add(web_call)
        await db_session.commit()
        session_id = web_call.id

        await processor.process(
            ended(
                session_id=session_id,
                transcript="first",
                transcript_with_tool_calls=[booking_call("Tuesday 3pm")],
            )
        )
        await processor.process(
            ended(
                session_id=session_id,
                transcript="second",
                transcript_with_tool_calls=[booking_call("Friday 9am")],
            )
        )

        stored = (
            await db_session.execute(
                select(WebCallSession)
                .where(WebCallSession.id == session_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        assert stored.transcript == "first"
        assert stored.appointment_data["time_text"] == "Tuesday 3pm"
