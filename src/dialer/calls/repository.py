"""
Repository for call attempt database operations.

Status changes are guarded UPDATE ... RETURNING statements, so a replayed or
concurrent event can only move an attempt along a legal edge once. Nothing
here commits; callers own the transaction.
"""

from collections import Counter
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import case, func, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dialer.calls.models import IN_FLIGHT_STATUSES, CallAttempt, CallStatus, WebCallSession
from dialer.campaigns.models import Campaign, CampaignStatus
from dialer.shared.database import utcnow
from dialer.shared.logging import get_logger

logger = get_logger(__name__)

STALE_ATTEMPT_ERROR = "No end event received before timeout"

# Set by whichever event extracts it first; later end events never replace it
PRESERVED_FIELDS = frozenset({"appointment_data"})


def fill_missing_values(
    model: type[Any],
    fields: dict[str, Any],
    names: Iterable[str] | None = None,
) -> dict[str, Any]:
    """UPDATE values that only fill columns still NULL.

    Args:
        model: Mapped class the columns belong to.
        fields: Column values to write.
        names: Columns to guard; all of `fields` when omitted.
    """
    guarded = set(fields) if names is None else set(names)
    values: dict[str, Any] = {}
    for name, value in fields.items():
        if name in guarded:
            column = getattr(model, name)
            values[name] = func.coalesce(column, literal(value, column.type))
        else:
            values[name] = value
    return values


class CallAttemptRepository:
    """Repository for call attempt database operations."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def get_by_id(self, attempt_id: UUID) -> CallAttempt | None:
        stmt = (
            select(CallAttempt)
            .where(CallAttempt.id == attempt_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_campaign(self, campaign_id: UUID) -> Sequence[CallAttempt]:
        """All attempts of a campaign, oldest first."""
        stmt = (
            select(CallAttempt)
            .where(CallAttempt.campaign_id == campaign_id)
            .order_by(CallAttempt.created_at, CallAttempt.attempt_number)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count_in_flight(self, campaign_id: UUID) -> int:
        stmt = select(func.count(CallAttempt.id)).where(
            CallAttempt.campaign_id == campaign_id,
            CallAttempt.call_status.in_(tuple(IN_FLIGHT_STATUSES)),
        )
        return int((await self._session.execute(stmt)).scalar_one())

    # -------------------------------------------------------------- creation

    async def create_with_slot(self, campaign_id: UUID, **fields: Any) -> CallAttempt | None:
        """Claim a concurrency slot and insert the attempt in one transaction.

        The slot is claimed only while the campaign is active and below its
        concurrent_calls limit. On a lost race (no slot, or an in-flight
        attempt already exists for the contact) the transaction is rolled back.

        Returns:
            The new attempt, or None when no slot could be claimed.
        """
        claim = (
            update(Campaign)
            .where(
                Campaign.id == campaign_id,
                Campaign.status == CampaignStatus.ACTIVE,
                Campaign.deleted_at.is_(None),
                Campaign.active_calls_count < Campaign.concurrent_calls,
            )
            .values(active_calls_count=Campaign.active_calls_count + 1)
            .returning(Campaign.active_calls_count)
            .execution_options(synchronize_session=False)
        )
        claimed = (await self._session.execute(claim)).scalar_one_or_none()
        if claimed is None:
            await self._session.rollback()
            return None

        attempt = CallAttempt(campaign_id=campaign_id, **fields)
        self._session.add(attempt)
        try:
            await self._session.flush()
        except IntegrityError:
            await self._session.rollback()
            logger.info(
                "Attempt insert lost race; slot released",
                extra={"campaign_id": str(campaign_id), "contact_id": str(fields.get("contact_id"))},
            )
            return None
        return attempt

    async def release_slots(self, campaign_id: UUID, count: int = 1) -> None:
        """Decrement the campaign semaphore, never below zero."""
        if count <= 0:
            return
        stmt = (
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(
                active_calls_count=case(
                    (Campaign.active_calls_count > count, Campaign.active_calls_count - count),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    # ------------------------------------------------------------ transitions

    async def mark_dispatched(self, attempt_id: UUID, provider_call_id: str) -> None:
        stmt = (
            update(CallAttempt)
            .where(CallAttempt.id == attempt_id)
            .values(provider_call_id=provider_call_id, dispatched_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def mark_dispatch_failed(self, attempt_id: UUID, campaign_id: UUID, error: str) -> bool:
        """Fail a pending attempt the provider refused and free its slot."""
        stmt = (
            update(CallAttempt)
            .where(CallAttempt.id == attempt_id, CallAttempt.call_status == CallStatus.PENDING)
            .values(call_status=CallStatus.FAILED, error_message=error, ended_at=utcnow(), updated_at=utcnow())
            .returning(CallAttempt.id)
            .execution_options(synchronize_session=False)
        )
        changed = (await self._session.execute(stmt)).scalar_one_or_none() is not None
        if changed:
            await self.release_slots(campaign_id)
        return changed

    async def mark_started(
        self,
        attempt_id: UUID,
        provider_call_id: str,
        started_at: datetime,
    ) -> bool:
        """pending -> in-progress. Returns False when already in-progress or later."""
        stmt = (
            update(CallAttempt)
            .where(CallAttempt.id == attempt_id, CallAttempt.call_status == CallStatus.PENDING)
            .values(
                call_status=CallStatus.IN_PROGRESS,
                provider_call_id=provider_call_id,
                started_at=started_at,
                updated_at=utcnow(),
            )
            .returning(CallAttempt.id)
            .execution_options(synchronize_session=False)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none() is not None

    async def mark_ended(
        self,
        attempt_id: UUID,
        final_status: CallStatus,
        **fields: Any,
    ) -> tuple[UUID, UUID] | None:
        """Move an in-flight attempt to its final status.

        Returns:
            (campaign_id, contact_id) on the first transition, None on replay.
        """
        stmt = (
            update(CallAttempt)
            .where(
                CallAttempt.id == attempt_id,
                CallAttempt.call_status.in_(tuple(IN_FLIGHT_STATUSES)),
            )
            .values(
                call_status=final_status,
                updated_at=utcnow(),
                **fill_missing_values(CallAttempt, fields, PRESERVED_FIELDS),
            )
            .returning(CallAttempt.campaign_id, CallAttempt.contact_id)
            .execution_options(synchronize_session=False)
        )
        row = (await self._session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return row[0], row[1]

    async def mark_ended_after_expiry(
        self,
        attempt_id: UUID,
        final_status: CallStatus,
        **fields: Any,
    ) -> tuple[UUID, UUID] | None:
        """Apply a late end event to an attempt the stale sweep already failed.

        The sweep released the slot, so callers must not release it again.

        Returns:
            (campaign_id, contact_id) when the late event was applied.
        """
        stmt = (
            update(CallAttempt)
            .where(
                CallAttempt.id == attempt_id,
                CallAttempt.call_status == CallStatus.FAILED,
                CallAttempt.error_message == STALE_ATTEMPT_ERROR,
            )
            .values(
                call_status=final_status,
                error_message=None,
                updated_at=utcnow(),
                **fill_missing_values(CallAttempt, fields, PRESERVED_FIELDS),
            )
            .returning(CallAttempt.campaign_id, CallAttempt.contact_id)
            .execution_options(synchronize_session=False)
        )
        row = (await self._session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return row[0], row[1]

    async def update_fields(self, attempt_id: UUID, **fields: Any) -> bool:
        """Overwrite descriptive fields (analysis, transcript) without a status change."""
        if not fields:
            return False
        stmt = (
            update(CallAttempt)
            .where(CallAttempt.id == attempt_id)
            .values(updated_at=utcnow(), **fields)
            .returning(CallAttempt.id)
            .execution_options(synchronize_session=False)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none() is not None

    async def fill_missing(self, attempt_id: UUID, **fields: Any) -> bool:
        """Write end-of-call fields into columns that are still empty.

        Replayed end events go through here, so they never change the
        outcome recorded by the first delivery or by the analysis event.
        """
        if not fields:
            return False
        stmt = (
            update(CallAttempt)
            .where(CallAttempt.id == attempt_id)
            .values(**fill_missing_values(CallAttempt, fields))
            .returning(CallAttempt.id)
            .execution_options(synchronize_session=False)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none() is not None

    async def cancel_pending_siblings(
        self,
        campaign_id: UUID,
        contact_id: UUID,
        exclude_attempt_id: UUID,
    ) -> int:
        """Close out pending attempts of a contact whose call completed elsewhere."""
        stmt = (
            update(CallAttempt)
            .where(
                CallAttempt.campaign_id == campaign_id,
                CallAttempt.contact_id == contact_id,
                CallAttempt.id != exclude_attempt_id,
                CallAttempt.call_status == CallStatus.PENDING,
            )
            .values(call_status=CallStatus.CANCELLED, ended_at=utcnow(), updated_at=utcnow())
            .returning(CallAttempt.id)
            .execution_options(synchronize_session=False)
        )
        cancelled = len((await self._session.execute(stmt)).scalars().all())
        if cancelled:
            await self.release_slots(campaign_id, cancelled)
        return cancelled

    async def expire_stale(self, older_than: datetime) -> Counter[UUID]:
        """Fail in-flight attempts created before the cutoff and free their slots.

        Returns:
            Number of expired attempts per campaign.
        """
        stmt = (
            update(CallAttempt)
            .where(
                CallAttempt.call_status.in_(tuple(IN_FLIGHT_STATUSES)),
                CallAttempt.created_at < older_than,
            )
            .values(
                call_status=CallStatus.FAILED,
                error_message=STALE_ATTEMPT_ERROR,
                ended_at=utcnow(),
                updated_at=utcnow(),
            )
            .returning(CallAttempt.campaign_id)
            .execution_options(synchronize_session=False)
        )
        per_campaign = Counter((await self._session.execute(stmt)).scalars().all())
        for campaign_id, count in per_campaign.items():
            await self.release_slots(campaign_id, count)
        return per_campaign


class WebCallSessionRepository:
    """Guarded updates for standalone test-call sessions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, session_id: UUID) -> WebCallSession | None:
        stmt = (
            select(WebCallSession)
            .where(WebCallSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def mark_started(
        self,
        session_id: UUID,
        provider_call_id: str,
        started_at: datetime,
    ) -> bool:
        stmt = (
            update(WebCallSession)
            .where(WebCallSession.id == session_id, WebCallSession.status == CallStatus.PENDING)
            .values(
                status=CallStatus.IN_PROGRESS,
                provider_call_id=provider_call_id,
                started_at=started_at,
            )
            .returning(WebCallSession.id)
            .execution_options(synchronize_session=False)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none() is not None

    async def mark_ended(self, session_id: UUID, final_status: CallStatus, **fields: Any) -> bool:
        stmt = (
            update(WebCallSession)
            .where(
                WebCallSession.id == session_id,
                WebCallSession.status.in_(tuple(IN_FLIGHT_STATUSES)),
            )
            .values(
                status=final_status,
                **fill_missing_values(WebCallSession, fields, PRESERVED_FIELDS),
            )
            .returning(WebCallSession.id)
            .execution_options(synchronize_session=False)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none() is not None

    async def update_fields(self, session_id: UUID, **fields: Any) -> bool:
        if not fields:
            return False
        stmt = (
            update(WebCallSession)
            .where(WebCallSession.id == session_id)
            .values(**fields)
            .returning(WebCallSession.id)
            .execution_options(synchronize_session=False)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none() is not None

    async def fill_missing(self, session_id: UUID, **fields: Any) -> bool:
        if not fields:
            return False
        stmt = (
            update(WebCallSession)
            .where(WebCallSession.id == session_id)
            .values(**fill_missing_values(WebCallSession, fields))
            .returning(WebCallSession.id)
            .execution_options(synchronize_session=False)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none() is not None
