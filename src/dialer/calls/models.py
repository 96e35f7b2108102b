"""
SQLAlchemy models for call attempts and standalone test-call sessions.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from dialer.shared.database import Base, utcnow


class CallStatus(str, Enum):
    """Status of one call attempt."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no-answer"
    VOICEMAIL = "voicemail"
    # Closed out because another attempt for the same contact completed
    CANCELLED = "cancelled"


IN_FLIGHT_STATUSES: frozenset[CallStatus] = frozenset(
    {CallStatus.PENDING, CallStatus.IN_PROGRESS}
)

_IN_FLIGHT_SQL = text("call_status IN ('pending', 'in-progress')")


class BillingStatus(str, Enum):
    """Billing outcome recorded on an attempt or session."""

    NOT_BILLABLE = "not_billable"
    BILLED = "billed"
    INSUFFICIENT_CREDIT = "insufficient_credit"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _call_status_column() -> SQLEnum:
    return SQLEnum(
        CallStatus,
        name="call_status",
        native_enum=False,
        length=32,
        values_callable=_enum_values,
    )


class CallAttempt(Base):
    """One call to one contact on one calling day."""

    __tablename__ = "call_attempts"
    __table_args__ = (
        # At most one in-flight attempt per (campaign, contact)
        Index(
            "uq_call_attempts_in_flight",
            "campaign_id",
            "contact_id",
            unique=True,
            postgresql_where=_IN_FLIGHT_SQL,
            sqlite_where=_IN_FLIGHT_SQL,
        ),
        Index("ix_call_attempts_campaign_contact", "campaign_id", "contact_id"),
        Index("ix_call_attempts_campaign_status", "campaign_id", "call_status"),
        Index("ix_call_attempts_provider_call_id", "provider_call_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    campaign_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False
    )
    contact_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    phone_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_phones: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    attempt_day: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    call_status: Mapped[CallStatus] = mapped_column(
        _call_status_column(), nullable=False, default=CallStatus.PENDING
    )
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    provider_call_id: Mapped[str | None] = mapped_column(String(128))
    disconnection_reason: Mapped[str | None] = mapped_column(String(128))
    duration_seconds: Mapped[int | None] = mapped_column(Integer)
    recording_url: Mapped[str | None] = mapped_column(Text)
    transcript: Mapped[str | None] = mapped_column(Text)
    call_summary: Mapped[str | None] = mapped_column(Text)
    call_successful: Mapped[bool | None] = mapped_column(Boolean)
    custom_analysis: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True))
    appointment_data: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True))
    billing_status: Mapped[str | None] = mapped_column(String(32))
    error_message: Mapped[str | None] = mapped_column(Text)
    provider_call_data: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class WebCallSession(Base):
    """Browser test call against an agent, billed like a campaign call."""

    __tablename__ = "web_call_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    agent_id: Mapped[UUID | None] = mapped_column(Uuid)
    provider_call_id: Mapped[str | None] = mapped_column(String(128), index=True)
    status: Mapped[CallStatus] = mapped_column(
        _call_status_column(), nullable=False, default=CallStatus.PENDING
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_seconds: Mapped[int | None] = mapped_column(Integer)
    disconnection_reason: Mapped[str | None] = mapped_column(String(128))
    recording_url: Mapped[str | None] = mapped_column(Text)
    transcript: Mapped[str | None] = mapped_column(Text)
    call_summary: Mapped[str | None] = mapped_column(Text)
    call_successful: Mapped[bool | None] = mapped_column(Boolean)
    custom_analysis: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True))
    appointment_data: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True))
    billing_status: Mapped[str | None] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
