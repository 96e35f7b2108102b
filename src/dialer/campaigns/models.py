"""
SQLAlchemy models for campaigns.
"""

from datetime import datetime, time
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
    Time,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from dialer.shared.database import Base, utcnow

DEFAULT_TIMEZONE = "America/New_York"
DEFAULT_ACTIVE_DAYS = ["mon", "tue", "wed", "thu", "fri"]


class CampaignStatus(str, Enum):
    """Campaign lifecycle status."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class PausedReason(str, Enum):
    """Why a campaign was paused; system pauses are resumed automatically."""

    MANUAL = "manual"
    INSUFFICIENT_CREDITS = "insufficient_credits"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Campaign(Base):
    """Outbound calling campaign."""

    __tablename__ = "campaigns"
    __table_args__ = (
        CheckConstraint("concurrent_calls >= 1", name="ck_campaigns_concurrent_calls"),
        CheckConstraint("max_retry_days >= 0", name="ck_campaigns_max_retry_days"),
        CheckConstraint("active_calls_count >= 0", name="ck_campaigns_active_calls_count"),
        Index("ix_campaigns_status", "status"),
        Index("ix_campaigns_agent_id", "agent_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    agent_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    contact_group_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    total_contacts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[CampaignStatus] = mapped_column(
        SQLEnum(
            CampaignStatus,
            name="campaign_status",
            native_enum=False,
            length=32,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=CampaignStatus.DRAFT,
    )
    paused_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    concurrent_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_retry_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    calling_start: Mapped[time] = mapped_column(Time, nullable=False, default=time(9, 0))
    calling_end: Mapped[time] = mapped_column(Time, nullable=False, default=time(17, 0))
    active_days: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=lambda: list(DEFAULT_ACTIVE_DAYS)
    )
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default=DEFAULT_TIMEZONE)
    from_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    active_calls_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
