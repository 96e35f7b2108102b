"""
Campaign service: the single choke point for campaign status changes.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dialer.campaigns.models import Campaign, CampaignStatus, PausedReason
from dialer.campaigns.state_machine import (
    AGENT_BINDING_STATUSES,
    EDITABLE_STATUSES,
    CampaignSnapshot,
    allowed_transitions,
    can_delete_campaign,
    can_edit_campaign,
    check_agent_reassignment,
    validate_campaign_transition,
)
from dialer.contacts.models import Contact
from dialer.shared.database import utcnow
from dialer.shared.exceptions import (
    CampaignEditNotAllowedError,
    CampaignNotFoundError,
    InvalidStatusTransitionError,
)
from dialer.shared.logging import get_logger

logger = get_logger(__name__)

_UNSET: Any = object()


class CampaignService:
    """Applies campaign status changes and structural edits."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, campaign_id: UUID) -> Campaign:
        """Load a live (not deleted) campaign.

        Raises:
            CampaignNotFoundError: If missing or soft-deleted.
        """
        stmt = (
            select(Campaign)
            .where(Campaign.id == campaign_id, Campaign.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
        campaign = (await self._session.execute(stmt)).scalar_one_or_none()
        if campaign is None:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    async def count_contacts(self, contact_group_id: UUID | None) -> int:
        if contact_group_id is None:
            return 0
        stmt = select(func.count(Contact.id)).where(
            Contact.contact_group_id == contact_group_id,
            Contact.is_active.is_(True),
        )
        return int((await self._session.execute(stmt)).scalar_one())

    async def active_campaigns_count(
        self,
        agent_id: UUID,
        exclude_campaign_id: UUID | None = None,
    ) -> int:
        """Campaigns keeping the agent bound (active, paused or scheduled)."""
        stmt = select(func.count(Campaign.id)).where(
            Campaign.agent_id == agent_id,
            Campaign.status.in_(tuple(AGENT_BINDING_STATUSES)),
            Campaign.deleted_at.is_(None),
        )
        if exclude_campaign_id is not None:
            stmt = stmt.where(Campaign.id != exclude_campaign_id)
        return int((await self._session.execute(stmt)).scalar_one())

    async def transition_status(
        self,
        campaign_id: UUID,
        new_status: CampaignStatus,
        reason: PausedReason | None = None,
    ) -> Campaign:
        """Validate and apply a status change.

        The UPDATE is guarded by the status the validation observed, so a
        concurrent change makes this call fail instead of skipping the table.

        Args:
            campaign_id: Campaign to change.
            new_status: Target status.
            reason: Why the campaign is paused (only kept for PAUSED).

        Returns:
            The campaign after the change.

        Raises:
            CampaignNotFoundError: If the campaign does not exist.
            InvalidStatusTransitionError: If the edge or its precondition is rejected.
        """
        campaign = await self.get(campaign_id)
        current = CampaignStatus(campaign.status)

        values: dict[str, Any] = {
            "status": new_status,
            "paused_reason": (reason or PausedReason.MANUAL).value
            if new_status == CampaignStatus.PAUSED
            else None,
            "updated_at": utcnow(),
        }
        snapshot = CampaignSnapshot.of(campaign)
        if new_status == CampaignStatus.ACTIVE:
            # Precondition is checked against the live contact count
            live_count = await self.count_contacts(campaign.contact_group_id)
            snapshot = CampaignSnapshot.of(campaign, total_contacts=live_count)
            values["total_contacts"] = live_count

        check = validate_campaign_transition(snapshot, new_status)
        if not check.valid:
            logger.warning(
                "Campaign transition rejected",
                extra={
                    "campaign_id": str(campaign_id),
                    "from_status": current.value,
                    "to_status": new_status.value,
                    "reason": check.reason,
                },
            )
            raise InvalidStatusTransitionError(
                current, new_status, allowed_transitions(current), check.reason
            )

        stmt = (
            update(Campaign)
            .where(Campaign.id == campaign_id, Campaign.status == current)
            .values(**values)
            .returning(Campaign.id)
            .execution_options(synchronize_session=False)
        )
        applied = (await self._session.execute(stmt)).scalar_one_or_none()
        if applied is None:
            await self._session.rollback()
            raise InvalidStatusTransitionError(
                current,
                new_status,
                allowed_transitions(current),
                "Campaign status changed concurrently",
            )
        await self._session.commit()

        logger.info(
            "Campaign transition applied",
            extra={
                "campaign_id": str(campaign_id),
                "from_status": current.value,
                "to_status": new_status.value,
                "paused_reason": values["paused_reason"],
            },
        )
        return await self.get(campaign_id)

    async def update_bindings(
        self,
        campaign_id: UUID,
        agent_id: UUID | None = _UNSET,
        contact_group_id: UUID | None = _UNSET,
    ) -> Campaign:
        """Rebind the campaign's agent and/or contact group.

        Raises:
            CampaignEditNotAllowedError: Campaign already launched, or the new
                agent is bound to another non-terminal campaign.
        """
        campaign = await self.get(campaign_id)
        if not can_edit_campaign(CampaignStatus(campaign.status)):
            raise CampaignEditNotAllowedError(
                f"Campaign in status {campaign.status.value} cannot be edited"
            )

        values: dict[str, Any] = {"updated_at": utcnow()}
        if agent_id is not _UNSET and agent_id != campaign.agent_id:
            if agent_id is not None:
                in_use = await self.active_campaigns_count(agent_id, exclude_campaign_id=campaign_id)
                check = check_agent_reassignment(in_use)
                if not check.valid:
                    raise CampaignEditNotAllowedError(check.reason or "Agent is in use")
            values["agent_id"] = agent_id
        if contact_group_id is not _UNSET and contact_group_id != campaign.contact_group_id:
            values["contact_group_id"] = contact_group_id
            values["total_contacts"] = await self.count_contacts(contact_group_id)

        stmt = (
            update(Campaign)
            .where(
                Campaign.id == campaign_id,
                Campaign.status.in_(tuple(EDITABLE_STATUSES)),
            )
            .values(**values)
            .returning(Campaign.id)
            .execution_options(synchronize_session=False)
        )
        if (await self._session.execute(stmt)).scalar_one_or_none() is None:
            await self._session.rollback()
            raise CampaignEditNotAllowedError("Campaign status changed concurrently")
        await self._session.commit()
        return await self.get(campaign_id)

    async def delete_campaign(self, campaign_id: UUID) -> None:
        """Soft-delete a campaign that is not active."""
        campaign = await self.get(campaign_id)
        if not can_delete_campaign(CampaignStatus(campaign.status)):
            raise CampaignEditNotAllowedError("Active campaigns cannot be deleted")

        stmt = (
            update(Campaign)
            .where(Campaign.id == campaign_id, Campaign.status != CampaignStatus.ACTIVE)
            .values(deleted_at=utcnow(), updated_at=utcnow())
            .returning(Campaign.id)
            .execution_options(synchronize_session=False)
        )
        if (await self._session.execute(stmt)).scalar_one_or_none() is None:
            await self._session.rollback()
            raise CampaignEditNotAllowedError("Active campaigns cannot be deleted")
        await self._session.commit()
        logger.info("Campaign deleted", extra={"campaign_id": str(campaign_id)})
