"""
Campaign status and binding API router.
"""

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from dialer.campaigns.models import CampaignStatus
from dialer.campaigns.schemas import (
    BindingsUpdateRequest,
    CampaignResponse,
    StatusChangeRequest,
    TransitionsResponse,
)
from dialer.campaigns.service import CampaignService
from dialer.campaigns.state_machine import allowed_transitions
from dialer.shared.database import get_db_session
from dialer.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/campaigns", tags=["campaigns"])


def get_campaign_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> CampaignService:
    """Dependency for campaign service."""
    return CampaignService(session)


@router.get("/{campaign_id}/transitions", response_model=TransitionsResponse)
async def get_campaign_transitions(
    campaign_id: UUID,
    service: Annotated[CampaignService, Depends(get_campaign_service)],
) -> TransitionsResponse:
    """List the statuses a campaign may move to from where it is now."""
    campaign = await service.get(campaign_id)
    current = CampaignStatus(campaign.status)
    return TransitionsResponse(
        campaign_id=campaign.id,
        status=current,
        allowed_transitions=allowed_transitions(current),
    )


@router.post(
    "/{campaign_id}/status",
    response_model=CampaignResponse,
    responses={
        404: {"description": "Campaign not found"},
        409: {"description": "Transition not allowed"},
    },
)
async def change_campaign_status(
    campaign_id: UUID,
    request: StatusChangeRequest,
    service: Annotated[CampaignService, Depends(get_campaign_service)],
) -> CampaignResponse:
    """Move a campaign to another status.

    Args:
        campaign_id: Campaign UUID.
        request: Target status and optional pause reason.
        service: Campaign service.

    Returns:
        The campaign after the change.

    Raises:
        InvalidStatusTransitionError: 409 when the edge or its precondition
            is rejected; the campaign is left unchanged.
    """
    logger.info(
        "Campaign status change requested",
        extra={"campaign_id": str(campaign_id), "to_status": request.status.value},
    )
    campaign = await service.transition_status(campaign_id, request.status, request.reason)
    return CampaignResponse.model_validate(campaign)


@router.put(
    "/{campaign_id}/bindings",
    response_model=CampaignResponse,
    responses={
        404: {"description": "Campaign not found"},
        409: {"description": "Campaign not editable or agent in use"},
    },
)
async def update_campaign_bindings(
    campaign_id: UUID,
    request: BindingsUpdateRequest,
    service: Annotated[CampaignService, Depends(get_campaign_service)],
) -> CampaignResponse:
    """Rebind the agent and/or contact group of a campaign not yet launched."""
    changes: dict[str, Any] = {
        name: getattr(request, name) for name in request.model_fields_set
    }
    campaign = await service.update_bindings(campaign_id, **changes)
    return CampaignResponse.model_validate(campaign)


@router.delete(
    "/{campaign_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        404: {"description": "Campaign not found"},
        409: {"description": "Active campaigns cannot be deleted"},
    },
)
async def delete_campaign(
    campaign_id: UUID,
    service: Annotated[CampaignService, Depends(get_campaign_service)],
) -> Response:
    """Soft-delete a campaign."""
    await service.delete_campaign(campaign_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
