"""
SQLAlchemy model for failed webhook events.

Rows are never deleted while unresolved; they are the audit that no event
was dropped.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from dialer.shared.database import Base, utcnow

_UNRESOLVED_SQL = text("resolved_at IS NULL")


class WebhookErrorRecord(Base):
    """One logical webhook event that failed processing."""

    __tablename__ = "webhook_errors"
    __table_args__ = (
        Index(
            "ix_webhook_errors_next_retry_unresolved",
            "next_retry_at",
            postgresql_where=_UNRESOLVED_SQL,
            sqlite_where=_UNRESOLVED_SQL,
        ),
        Index("ix_webhook_errors_created_at", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    webhook_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    error_detail: Mapped[str | None] = mapped_column(Text)
    retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @property
    def exhausted(self) -> bool:
        return self.resolved_at is None and self.next_retry_at is None
