"""
Call scheduler for outbound campaign dialing.

Each tick:
- resumes campaigns paused for insufficient credit once the account can pay
- fails in-flight attempts whose end event never arrived and frees their slots
- for each active campaign inside its calling window, claims free concurrency
  slots and dispatches the next eligible contacts to the voice provider
"""

import hashlib
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dialer.billing.ledger import LedgerService
from dialer.calls.models import IN_FLIGHT_STATUSES, CallAttempt, CallStatus
from dialer.calls.repository import CallAttemptRepository
from dialer.campaigns.models import Campaign, CampaignStatus, PausedReason
from dialer.campaigns.service import CampaignService
from dialer.contacts.models import Contact
from dialer.shared.database import as_utc, utcnow
from dialer.shared.exceptions import AccountNotFoundError, InvalidStatusTransitionError
from dialer.shared.logging import get_logger
from dialer.telephony.interface import CallDispatchRequest, VoiceProvider, VoiceProviderError

logger = get_logger(__name__)

# Index matches date.weekday()
WEEKDAY_NAMES = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
MINUTES_PER_DAY = 24 * 60
RETRY_SEGMENTS = 3

RETRYABLE_OUTCOMES = frozenset({CallStatus.NO_ANSWER, CallStatus.VOICEMAIL, CallStatus.FAILED})


@dataclass
class CallSchedulerConfig:
    """Configuration for the call scheduler."""

    interval_seconds: int = 60
    stale_attempt_minutes: int = 60
    default_from_number: str = ""


# ---------------------------------------------------------------------------
# Calling window
# ---------------------------------------------------------------------------


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


@dataclass(frozen=True)
class CallingWindow:
    """Local time-of-day range and weekdays during which calls may be placed."""

    start: time
    end: time
    active_days: frozenset[str]
    timezone: str

    @classmethod
    def from_campaign(cls, campaign: Campaign) -> "CallingWindow":
        return cls(
            start=campaign.calling_start,
            end=campaign.calling_end,
            active_days=frozenset(d.lower()[:3] for d in (campaign.active_days or [])),
            timezone=campaign.timezone,
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def duration_minutes(self) -> int:
        """Window length; an end before the start wraps past midnight."""
        length = (_minutes(self.end) - _minutes(self.start)) % MINUTES_PER_DAY
        return length or MINUTES_PER_DAY

    def local(self, now: datetime) -> datetime:
        return as_utc(now).astimezone(self.tz)

    def elapsed_minutes(self, now: datetime) -> int:
        """Minutes since today's window opened, modulo a day."""
        local = self.local(now)
        return (local.hour * 60 + local.minute - _minutes(self.start)) % MINUTES_PER_DAY

    def contains(self, now: datetime) -> bool:
        """True when now falls on an active weekday inside the hours (end inclusive)."""
        local = self.local(now)
        if WEEKDAY_NAMES[local.weekday()] not in self.active_days:
            return False
        return self.elapsed_minutes(now) <= self.duration_minutes


def is_within_calling_window(window: CallingWindow, now: datetime) -> bool:
    return window.contains(now)


def retry_slot_minutes(contact_id: UUID, attempt_day: int, window: CallingWindow) -> int:
    """Offset (minutes after window start) at which a retry day's call is placed.

    The window is split into three segments; attempt_day selects one in
    rotation so successive retries land at different times of day. The offset
    within the segment is derived from the contact and day, so every scheduler
    tick computes the same slot.
    """
    total = window.duration_minutes
    segment = max(total // RETRY_SEGMENTS, 1)
    index = attempt_day % RETRY_SEGMENTS
    seg_start = min(index * segment, total - 1)
    seg_len = segment if index < RETRY_SEGMENTS - 1 else max(total - seg_start, 1)

    digest = hashlib.blake2b(f"{contact_id}:{attempt_day}".encode("utf-8"), digest_size=8).digest()
    return seg_start + int.from_bytes(digest, "big") % seg_len


def retry_time_of_day(contact_id: UUID, attempt_day: int, window: CallingWindow) -> time:
    minutes = (_minutes(window.start) + retry_slot_minutes(contact_id, attempt_day, window)) % MINUTES_PER_DAY
    return time(minutes // 60, minutes % 60)


# ---------------------------------------------------------------------------
# Contact selection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContactSnapshot:
    contact_id: UUID
    phone_numbers: tuple[str, ...]


@dataclass(frozen=True)
class AttemptSnapshot:
    contact_id: UUID
    attempt_day: int
    phone_index: int
    call_status: CallStatus
    scheduled_at: datetime


@dataclass(frozen=True)
class DialPlan:
    """One contact chosen for dialing now."""

    contact_id: UUID
    phone_number: str
    phone_index: int
    total_phones: int
    attempt_day: int
    attempt_number: int
    scheduled_at: datetime


@dataclass(frozen=True)
class SelectionResult:
    plans: list[DialPlan]
    # Contacts still needing work (in flight, due later, or due now)
    remaining: int


def select_contacts(
    contacts: Sequence[ContactSnapshot],
    attempts: Iterable[AttemptSnapshot],
    window: CallingWindow,
    max_retry_days: int,
    now: datetime,
    limit: int,
) -> SelectionResult:
    """Pick up to ``limit`` contacts to dial now.

    Args:
        contacts: Contacts in creation order.
        attempts: Every attempt of the campaign, oldest first.
        window: Campaign calling window.
        max_retry_days: Last attempt_day a contact may be dialed on.
        now: Current time (aware).
        limit: Free concurrency slots.

    Returns:
        Dial plans in contact order and the count of unfinished contacts.
    """
    history: dict[UUID, list[AttemptSnapshot]] = {}
    for attempt in attempts:
        history.setdefault(attempt.contact_id, []).append(attempt)

    today = window.local(now).date()
    elapsed = window.elapsed_minutes(now)
    plans: list[DialPlan] = []
    remaining = 0

    for contact in contacts:
        if not contact.phone_numbers:
            continue
        past = history.get(contact.contact_id, [])

        if any(a.call_status == CallStatus.COMPLETED for a in past):
            continue
        if any(a.call_status in IN_FLIGHT_STATUSES for a in past):
            remaining += 1
            continue

        total_phones = len(contact.phone_numbers)
        if not past:
            remaining += 1
            if len(plans) < limit:
                plans.append(
                    DialPlan(
                        contact_id=contact.contact_id,
                        phone_number=contact.phone_numbers[0],
                        phone_index=0,
                        total_phones=total_phones,
                        attempt_day=0,
                        attempt_number=1,
                        scheduled_at=now,
                    )
                )
            continue

        last = past[-1]
        if last.call_status not in RETRYABLE_OUTCOMES:
            continue
        if last.attempt_day >= max_retry_days:
            # Exhausted
            continue

        remaining += 1
        if window.local(last.scheduled_at).date() >= today:
            continue

        next_day = last.attempt_day + 1
        slot = retry_slot_minutes(contact.contact_id, next_day, window)
        if elapsed < slot:
            continue
        if len(plans) >= limit:
            continue

        phone_index = (last.phone_index + 1) % total_phones
        plans.append(
            DialPlan(
                contact_id=contact.contact_id,
                phone_number=contact.phone_numbers[phone_index],
                phone_index=phone_index,
                total_phones=total_phones,
                attempt_day=next_day,
                attempt_number=len(past) + 1,
                scheduled_at=as_utc(now) - timedelta(minutes=elapsed - slot),
            )
        )

    return SelectionResult(plans=plans, remaining=remaining)


def build_dynamic_variables(contact: Contact) -> dict[str, str]:
    """Per-call variables handed to the voice agent."""
    variables = {
        "first_name": contact.first_name or "",
        "last_name": contact.last_name or "",
        "full_name": contact.full_name,
        "email": contact.email or "",
    }
    for key, value in (contact.custom_fields or {}).items():
        variables.setdefault(str(key), "" if value is None else str(value))
    return variables


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@dataclass
class SchedulerRunResult:
    """Counters for one scheduler tick."""

    campaigns_processed: int = 0
    dispatched: int = 0
    dispatch_failures: int = 0
    expired_attempts: int = 0
    paused: list[UUID] = field(default_factory=list)
    resumed: list[UUID] = field(default_factory=list)
    completed: list[UUID] = field(default_factory=list)


class CallScheduler:
    """Scheduler service for outbound campaign dialing."""

    def __init__(
        self,
        session: AsyncSession,
        provider: VoiceProvider,
        ledger: LedgerService,
        config: CallSchedulerConfig | None = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize scheduler.

        Args:
            session: Async database session.
            provider: Voice provider used to place calls.
            ledger: Ledger used to gate dispatch on available credit.
            config: Scheduler configuration.
            now_fn: Clock (tests).
        """
        self._session = session
        self._provider = provider
        self._ledger = ledger
        self._config = config or CallSchedulerConfig()
        self._now = now_fn
        self._attempts = CallAttemptRepository(session)
        self._campaigns = CampaignService(session)

    async def run_once(self, now: datetime | None = None) -> SchedulerRunResult:
        """Execute a single scheduling tick."""
        now = now or self._now()
        result = SchedulerRunResult()

        await self._resume_credit_paused(result)
        await self._expire_stale_attempts(now, result)

        for campaign_id in await self._active_campaign_ids():
            result.campaigns_processed += 1
            await self.process_campaign(campaign_id, now, result)

        logger.info(
            "Scheduler tick finished",
            extra={
                "campaigns_processed": result.campaigns_processed,
                "dispatched": result.dispatched,
                "dispatch_failures": result.dispatch_failures,
                "expired_attempts": result.expired_attempts,
                "paused": len(result.paused),
                "resumed": len(result.resumed),
                "completed": len(result.completed),
            },
        )
        return result

    async def _active_campaign_ids(self) -> list[UUID]:
        stmt = (
            select(Campaign.id)
            .where(Campaign.status == CampaignStatus.ACTIVE, Campaign.deleted_at.is_(None))
            .order_by(Campaign.created_at)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def _can_dispatch(self, account_id: UUID) -> bool:
        try:
            status = await self._ledger.get_credit_status(account_id)
        except AccountNotFoundError:
            return False
        return status.can_dispatch

    async def _resume_credit_paused(self, result: SchedulerRunResult) -> None:
        stmt = select(Campaign.id, Campaign.account_id).where(
            Campaign.status == CampaignStatus.PAUSED,
            Campaign.paused_reason == PausedReason.INSUFFICIENT_CREDITS.value,
            Campaign.deleted_at.is_(None),
        )
        for campaign_id, account_id in (await self._session.execute(stmt)).all():
            if not await self._can_dispatch(account_id):
                continue
            try:
                await self._campaigns.transition_status(campaign_id, CampaignStatus.ACTIVE)
            except InvalidStatusTransitionError as e:
                logger.warning(
                    "Credit-paused campaign could not resume",
                    extra={"campaign_id": str(campaign_id), "reason": e.reason},
                )
                continue
            result.resumed.append(campaign_id)

    async def _expire_stale_attempts(self, now: datetime, result: SchedulerRunResult) -> None:
        cutoff = as_utc(now) - timedelta(minutes=self._config.stale_attempt_minutes)
        expired = await self._attempts.expire_stale(cutoff)
        await self._session.commit()
        result.expired_attempts = sum(expired.values())
        if expired:
            logger.warning(
                "Stale in-flight attempts failed",
                extra={"per_campaign": {str(k): v for k, v in expired.items()}},
            )

    async def process_campaign(
        self,
        campaign_id: UUID,
        now: datetime,
        result: SchedulerRunResult | None = None,
    ) -> int:
        """Dispatch the next contacts of one active campaign.

        Returns:
            Number of calls handed to the provider.
        """
        result = result or SchedulerRunResult()
        campaign = await self._campaigns.get(campaign_id)
        if campaign.status != CampaignStatus.ACTIVE:
            return 0

        window = CallingWindow.from_campaign(campaign)
        if not window.contains(now):
            logger.debug(
                "Campaign outside calling window",
                extra={"campaign_id": str(campaign_id), "timezone": campaign.timezone},
            )
            return 0

        if not await self._can_dispatch(campaign.account_id):
            await self._pause_for_credit(campaign_id, result)
            return 0

        contacts = await self._load_contacts(campaign)
        attempts = await self._attempts.list_for_campaign(campaign_id)
        free_slots = max(campaign.concurrent_calls - campaign.active_calls_count, 0)

        selection = select_contacts(
            contacts=[
                ContactSnapshot(c.id, tuple(c.phone_numbers or ())) for c in contacts
            ],
            attempts=[_snapshot(a) for a in attempts],
            window=window,
            max_retry_days=campaign.max_retry_days,
            now=now,
            limit=free_slots,
        )

        if not selection.plans:
            if selection.remaining == 0 and await self._attempts.count_in_flight(campaign_id) == 0:
                await self._complete(campaign_id, result)
            return 0

        by_id = {c.id: c for c in contacts}
        dispatched = 0
        for plan in selection.plans:
            attempt = await self._attempts.create_with_slot(
                campaign_id,
                contact_id=plan.contact_id,
                phone_number=plan.phone_number,
                phone_index=plan.phone_index,
                total_phones=plan.total_phones,
                attempt_day=plan.attempt_day,
                attempt_number=plan.attempt_number,
                call_status=CallStatus.PENDING,
                scheduled_at=plan.scheduled_at,
            )
            if attempt is None:
                # Slots exhausted or campaign left active status
                break
            await self._session.commit()

            if await self._dispatch(campaign, attempt, by_id[plan.contact_id]):
                dispatched += 1
                result.dispatched += 1
            else:
                result.dispatch_failures += 1

        return dispatched

    async def _load_contacts(self, campaign: Campaign) -> Sequence[Contact]:
        if campaign.contact_group_id is None:
            return []
        stmt = (
            select(Contact)
            .where(
                Contact.contact_group_id == campaign.contact_group_id,
                Contact.is_active.is_(True),
            )
            .order_by(Contact.created_at, Contact.id)
        )
        return (await self._session.execute(stmt)).scalars().all()

    async def _dispatch(self, campaign: Campaign, attempt: CallAttempt, contact: Contact) -> bool:
        request = CallDispatchRequest(
            to_number=attempt.phone_number,
            from_number=campaign.from_number or self._config.default_from_number,
            agent_id=campaign.agent_id,
            attempt_id=attempt.id,
            campaign_id=campaign.id,
            contact_id=contact.id,
            dynamic_variables=build_dynamic_variables(contact),
        )
        try:
            response = await self._provider.create_phone_call(request)
        except VoiceProviderError as e:
            await self._attempts.mark_dispatch_failed(attempt.id, campaign.id, str(e))
            await self._session.commit()
            logger.error(
                "Call dispatch failed",
                extra={
                    "attempt_id": str(attempt.id),
                    "campaign_id": str(campaign.id),
                    "error_code": e.error_code,
                    "status_code": e.status_code,
                },
            )
            return False

        await self._attempts.mark_dispatched(attempt.id, response.provider_call_id)
        await self._session.commit()
        logger.info(
            "Call dispatched",
            extra={
                "attempt_id": str(attempt.id),
                "campaign_id": str(campaign.id),
                "contact_id": str(contact.id),
                "provider_call_id": response.provider_call_id,
                "attempt_day": attempt.attempt_day,
                "phone_index": attempt.phone_index,
            },
        )
        return True

    async def _pause_for_credit(self, campaign_id: UUID, result: SchedulerRunResult) -> None:
        try:
            await self._campaigns.transition_status(
                campaign_id, CampaignStatus.PAUSED, PausedReason.INSUFFICIENT_CREDITS
            )
        except InvalidStatusTransitionError as e:
            logger.warning(
                "Could not pause campaign for insufficient credit",
                extra={"campaign_id": str(campaign_id), "reason": e.reason},
            )
            return
        result.paused.append(campaign_id)

    async def _complete(self, campaign_id: UUID, result: SchedulerRunResult) -> None:
        try:
            await self._campaigns.transition_status(campaign_id, CampaignStatus.COMPLETED)
        except InvalidStatusTransitionError as e:
            logger.warning(
                "Could not complete campaign",
                extra={"campaign_id": str(campaign_id), "reason": e.reason},
            )
            return
        result.completed.append(campaign_id)


def _snapshot(attempt: CallAttempt) -> AttemptSnapshot:
    return AttemptSnapshot(
        contact_id=attempt.contact_id,
        attempt_day=attempt.attempt_day,
        phone_index=attempt.phone_index,
        call_status=CallStatus(attempt.call_status),
        scheduled_at=as_utc(attempt.scheduled_at),
    )
