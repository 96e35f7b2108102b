"""
Webhook error queue: durable failure records and timestamp-driven redrive.

Backoff: next_retry_at = now + base * 2^retry_count, until retry_count
reaches max_retries. Exhausted records stay unresolved with no next_retry_at.
"""

import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dialer.config import Settings, get_settings
from dialer.shared.database import as_utc, utcnow
from dialer.shared.logging import get_logger
from dialer.webhook_errors.classification import is_retryable_error
from dialer.webhook_errors.models import WebhookErrorRecord

logger = get_logger(__name__)

MAX_ERROR_DETAIL_CHARS = 10_000
# A claimed record becomes due again if the sweep dies before settling it
SWEEP_LEASE = timedelta(minutes=5)

Redrive = Callable[[dict[str, Any]], Awaitable[Any]]


class ErrorState(str, Enum):
    """Listing filter for error records."""

    PENDING = "pending"
    EXHAUSTED = "exhausted"
    RESOLVED = "resolved"


@dataclass
class SweepResult:
    """Outcome of one redrive sweep."""

    claimed: int = 0
    resolved: list[str] = field(default_factory=list)
    rescheduled: list[str] = field(default_factory=list)
    exhausted: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Claimed:
    id: UUID
    event_id: str
    payload: dict[str, Any]
    retry_count: int
    max_retries: int


def _describe(error: BaseException) -> tuple[str, str]:
    message = f"{type(error).__name__}: {error}"
    detail = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return message, detail[-MAX_ERROR_DETAIL_CHARS:]


class WebhookErrorService:
    """Records processing failures and redrives them with backoff."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings or get_settings()

    def backoff(self, retry_count: int) -> timedelta:
        return timedelta(seconds=self._settings.webhook_retry_base_seconds * (2**retry_count))

    async def get(self, event_id: str) -> WebhookErrorRecord | None:
        stmt = (
            select(WebhookErrorRecord)
            .where(WebhookErrorRecord.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def record_failure(
        self,
        webhook_type: str,
        event_type: str,
        event_id: str,
        payload: dict[str, Any],
        error: BaseException,
        now: datetime | None = None,
    ) -> WebhookErrorRecord:
        """Create or update the record for a failed logical event.

        Args:
            webhook_type: Source of the webhook.
            event_type: Event name.
            event_id: Idempotency key of the logical event.
            payload: Decoded body, kept for redrive.
            error: The failure.
            now: Current time (tests).

        Returns:
            The stored record.
        """
        now = now or utcnow()
        retryable = is_retryable_error(error)
        message, detail = _describe(error)

        existing = await self.get(event_id)
        if existing is None:
            max_retries = self._settings.webhook_max_retries if retryable else 0
            record = WebhookErrorRecord(
                webhook_type=webhook_type,
                event_type=event_type,
                event_id=event_id,
                payload=payload,
                error_message=message,
                error_detail=detail,
                retryable=retryable,
                retry_count=0,
                max_retries=max_retries,
                next_retry_at=now + self.backoff(0) if max_retries > 0 else None,
                created_at=now,
                updated_at=now,
            )
            self._session.add(record)
            try:
                await self._session.commit()
            except IntegrityError:
                await self._session.rollback()
                existing = await self.get(event_id)
                if existing is None:
                    raise
            else:
                self._log_recorded(record)
                return record

        await self._register_failure(
            existing.id, existing.retry_count, existing.max_retries, retryable, message, detail, now
        )
        await self._session.commit()
        record = await self.get(event_id)
        assert record is not None
        self._log_recorded(record)
        return record

    def _log_recorded(self, record: WebhookErrorRecord) -> None:
        extra = {
            "event_id": record.event_id,
            "event_type": record.event_type,
            "retryable": record.retryable,
            "retry_count": record.retry_count,
            "max_retries": record.max_retries,
            "next_retry_at": record.next_retry_at,
            "error": record.error_message,
        }
        if record.exhausted:
            logger.error("Webhook event failed permanently; manual follow-up required", extra=extra)
        else:
            logger.warning("Webhook event failed; redrive scheduled", extra=extra)

    async def _register_failure(
        self,
        record_id: UUID,
        retry_count: int,
        max_retries: int,
        retryable: bool,
        message: str,
        detail: str,
        now: datetime,
    ) -> datetime | None:
        new_count = retry_count + 1
        if retryable and new_count < max_retries:
            next_retry_at: datetime | None = now + self.backoff(new_count)
        else:
            next_retry_at = None

        values: dict[str, Any] = {
            "retry_count": new_count,
            "next_retry_at": next_retry_at,
            "error_message": message,
            "error_detail": detail,
            "resolved_at": None,
            "updated_at": now,
        }
        if not retryable:
            values["retryable"] = False
        stmt = (
            update(WebhookErrorRecord)
            .where(WebhookErrorRecord.id == record_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        return next_retry_at

    async def mark_resolved(self, event_id: str, now: datetime | None = None) -> bool:
        """Resolve an open record after the event finally succeeded."""
        now = now or utcnow()
        stmt = (
            update(WebhookErrorRecord)
            .where(
                WebhookErrorRecord.event_id == event_id,
                WebhookErrorRecord.resolved_at.is_(None),
            )
            .values(resolved_at=now, next_retry_at=None, updated_at=now)
            .returning(WebhookErrorRecord.id)
            .execution_options(synchronize_session=False)
        )
        resolved = (await self._session.execute(stmt)).scalar_one_or_none() is not None
        await self._session.commit()
        if resolved:
            logger.info("Webhook error resolved", extra={"event_id": event_id})
        return resolved

    async def _claim_due(self, now: datetime) -> list[_Claimed]:
        due = (
            select(WebhookErrorRecord.id)
            .where(
                WebhookErrorRecord.resolved_at.is_(None),
                WebhookErrorRecord.next_retry_at.is_not(None),
                WebhookErrorRecord.next_retry_at <= now,
                WebhookErrorRecord.retry_count < WebhookErrorRecord.max_retries,
            )
            .order_by(WebhookErrorRecord.next_retry_at)
            .limit(self._settings.webhook_retry_batch_size)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(WebhookErrorRecord)
            .where(WebhookErrorRecord.id.in_(due))
            .values(next_retry_at=now + SWEEP_LEASE, updated_at=now)
            .returning(
                WebhookErrorRecord.id,
                WebhookErrorRecord.event_id,
                WebhookErrorRecord.payload,
                WebhookErrorRecord.retry_count,
                WebhookErrorRecord.max_retries,
            )
            .execution_options(synchronize_session=False)
        )
        rows = (await self._session.execute(stmt)).all()
        await self._session.commit()
        return [_Claimed(*row) for row in rows]

    async def sweep(self, redrive: Redrive, now: datetime | None = None) -> SweepResult:
        """Redrive every due record once.

        Args:
            redrive: Re-runs the original processing for a stored payload.
            now: Current time (tests).
        """
        now = now or utcnow()
        result = SweepResult()
        claimed = await self._claim_due(now)
        result.claimed = len(claimed)

        for item in claimed:
            try:
                await redrive(item.payload)
            except Exception as e:
                await self._session.rollback()
                message, detail = _describe(e)
                next_retry_at = await self._register_failure(
                    item.id,
                    item.retry_count,
                    item.max_retries,
                    is_retryable_error(e),
                    message,
                    detail,
                    now,
                )
                await self._session.commit()
                if next_retry_at is None:
                    result.exhausted.append(item.event_id)
                    logger.error(
                        "Webhook redrive exhausted; manual follow-up required",
                        extra={"event_id": item.event_id, "retry_count": item.retry_count + 1, "error": message},
                    )
                else:
                    result.rescheduled.append(item.event_id)
                    logger.warning(
                        "Webhook redrive failed; rescheduled",
                        extra={"event_id": item.event_id, "next_retry_at": next_retry_at, "error": message},
                    )
                continue

            await self.mark_resolved(item.event_id, now)
            result.resolved.append(item.event_id)

        if claimed:
            logger.info(
                "Webhook redrive sweep finished",
                extra={
                    "claimed": result.claimed,
                    "resolved": len(result.resolved),
                    "rescheduled": len(result.rescheduled),
                    "exhausted": len(result.exhausted),
                },
            )
        return result

    async def list_errors(
        self,
        state: ErrorState | None = None,
        limit: int = 100,
    ) -> Sequence[WebhookErrorRecord]:
        stmt = select(WebhookErrorRecord).order_by(WebhookErrorRecord.created_at.desc()).limit(limit)
        if state == ErrorState.RESOLVED:
            stmt = stmt.where(WebhookErrorRecord.resolved_at.is_not(None))
        elif state == ErrorState.PENDING:
            stmt = stmt.where(
                WebhookErrorRecord.resolved_at.is_(None),
                WebhookErrorRecord.next_retry_at.is_not(None),
            )
        elif state == ErrorState.EXHAUSTED:
            stmt = stmt.where(
                WebhookErrorRecord.resolved_at.is_(None),
                WebhookErrorRecord.next_retry_at.is_(None),
            )
        return (await self._session.execute(stmt)).scalars().all()

    async def purge_resolved(self, older_than_days: int | None = None, now: datetime | None = None) -> int:
        """Delete resolved records past retention. Unresolved records are kept."""
        days = older_than_days or self._settings.webhook_error_retention_days
        cutoff = as_utc(now or utcnow()) - timedelta(days=days)
        stmt = (
            delete(WebhookErrorRecord)
            .where(
                WebhookErrorRecord.resolved_at.is_not(None),
                WebhookErrorRecord.resolved_at < cutoff,
            )
            .returning(WebhookErrorRecord.id)
            .execution_options(synchronize_session=False)
        )
        deleted = len((await self._session.execute(stmt)).scalars().all())
        await self._session.commit()
        if deleted:
            logger.info("Resolved webhook errors purged", extra={"deleted": deleted})
        return deleted
