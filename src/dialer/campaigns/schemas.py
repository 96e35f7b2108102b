"""
Pydantic schemas for the campaign API.
"""

from datetime import datetime, time
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dialer.campaigns.models import CampaignStatus, PausedReason


class CampaignResponse(BaseModel):
    """Campaign as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    name: str
    status: CampaignStatus
    paused_reason: PausedReason | None = None
    agent_id: UUID | None = None
    contact_group_id: UUID | None = None
    total_contacts: int
    concurrent_calls: int
    max_retry_days: int
    calling_start: time
    calling_end: time
    active_days: list[str]
    timezone: str
    active_calls_count: int
    created_at: datetime
    updated_at: datetime


class TransitionsResponse(BaseModel):
    """Current status and the statuses reachable from it."""

    campaign_id: UUID
    status: CampaignStatus
    allowed_transitions: list[CampaignStatus]


class StatusChangeRequest(BaseModel):
    """Request to move a campaign to another status."""

    status: CampaignStatus = Field(..., description="Target status")
    reason: PausedReason | None = Field(
        None,
        description="Pause reason; only meaningful when pausing",
    )


class BindingsUpdateRequest(BaseModel):
    """Rebind agent and/or contact group. Omitted fields are left as they are."""

    agent_id: UUID | None = None
    contact_group_id: UUID | None = None

    @model_validator(mode="after")
    def require_one_field(self) -> "BindingsUpdateRequest":
        if not self.model_fields_set:
            raise ValueError("At least one of agent_id or contact_group_id is required")
        return self
