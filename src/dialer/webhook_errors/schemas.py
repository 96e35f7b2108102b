"""
Pydantic schemas for the webhook error API.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class WebhookErrorResponse(BaseModel):
    """A stored webhook failure."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    webhook_type: str
    event_type: str
    event_id: str
    error_message: str
    retryable: bool
    retry_count: int
    max_retries: int
    next_retry_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None
    exhausted: bool


class WebhookErrorListResponse(BaseModel):
    items: list[WebhookErrorResponse]
    total: int
