"""
Inbound voice provider webhook payload models.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class WebhookEventType(str, Enum):
    """Call lifecycle events reported by the provider."""

    CALL_STARTED = "call_started"
    CALL_ENDED = "call_ended"
    CALL_ANALYZED = "call_analyzed"


class CallMetadata(BaseModel):
    """Correlation metadata attached at dispatch and echoed back."""

    model_config = ConfigDict(frozen=True, extra="allow")

    attempt_id: UUID | None = None
    campaign_id: UUID | None = None
    contact_id: UUID | None = None
    web_call_session_id: UUID | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class CallCost(BaseModel):
    """Provider cost breakdown; combined_cost is in cents."""

    model_config = ConfigDict(frozen=True, extra="allow")

    combined_cost: float = 0.0
    total_duration_seconds: float | None = None

    @property
    def provider_cost_cents(self) -> int:
        return max(0, round(self.combined_cost))


class CallAnalysis(BaseModel):
    """Post-call analysis delivered with call_analyzed."""

    model_config = ConfigDict(frozen=True, extra="allow")

    call_summary: str | None = None
    call_successful: bool | None = None
    custom_analysis_data: dict[str, Any] | None = None


class ProviderCall(BaseModel):
    """Call object wrapped by every webhook event."""

    model_config = ConfigDict(frozen=True, extra="allow")

    call_id: str = Field(..., min_length=1, description="Provider call identifier")
    metadata: CallMetadata = Field(default_factory=CallMetadata)
    to_number: str | None = None
    from_number: str | None = None
    disconnection_reason: str | None = None
    in_voicemail: bool | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    start_timestamp: int | None = Field(default=None, description="Epoch milliseconds")
    end_timestamp: int | None = Field(default=None, description="Epoch milliseconds")
    call_cost: CallCost | None = None
    transcript: str | None = None
    recording_url: str | None = None
    call_analysis: CallAnalysis | None = None

    @field_validator("metadata", mode="before")
    @classmethod
    def _null_metadata(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("duration_ms", "start_timestamp", "end_timestamp", mode="before")
    @classmethod
    def _round_milliseconds(cls, v: Any) -> Any:
        # Millisecond figures may arrive fractional
        if isinstance(v, float) and math.isfinite(v):
            return round(v)
        return v

    @property
    def duration_seconds(self) -> int | None:
        """Billable duration, preferring the cost breakdown's figure."""
        if self.call_cost is not None and self.call_cost.total_duration_seconds is not None:
            return math.ceil(self.call_cost.total_duration_seconds)
        if self.duration_ms is not None:
            return math.ceil(self.duration_ms / 1000)
        return None

    @property
    def started_at(self) -> datetime | None:
        return _from_epoch_ms(self.start_timestamp)

    @property
    def ended_at(self) -> datetime | None:
        return _from_epoch_ms(self.end_timestamp)


class WebhookPayload(BaseModel):
    """Envelope of an inbound webhook."""

    model_config = ConfigDict(frozen=True, extra="allow")

    event: str = Field(..., min_length=1)
    call: ProviderCall

    @property
    def event_type(self) -> WebhookEventType | None:
        """Known event type, or None for events this service ignores."""
        try:
            return WebhookEventType(self.event)
        except ValueError:
            return None

    @property
    def event_id(self) -> str:
        """Idempotency key of the logical event (webhook type + event + call)."""
        return f"{WEBHOOK_TYPE}:{self.event}:{self.call.call_id}"


WEBHOOK_TYPE = "voice_provider"


def _from_epoch_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
