"""
Campaign status state machine.

Every campaign status change must go through a table-validated edge.
The table is keyed by CampaignStatus; completeness is asserted at import.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from dialer.campaigns.models import CampaignStatus

TERMINAL_STATUSES: frozenset[CampaignStatus] = frozenset({CampaignStatus.COMPLETED})

VALID_STATUS_TRANSITIONS: Mapping[CampaignStatus, frozenset[CampaignStatus]] = {
    CampaignStatus.DRAFT: frozenset({CampaignStatus.SCHEDULED, CampaignStatus.ACTIVE}),
    CampaignStatus.SCHEDULED: frozenset({CampaignStatus.ACTIVE, CampaignStatus.DRAFT}),
    CampaignStatus.ACTIVE: frozenset(
        {CampaignStatus.PAUSED, CampaignStatus.COMPLETED, CampaignStatus.FAILED}
    ),
    CampaignStatus.PAUSED: frozenset({CampaignStatus.ACTIVE, CampaignStatus.COMPLETED}),
    # Retry path
    CampaignStatus.FAILED: frozenset({CampaignStatus.DRAFT, CampaignStatus.ACTIVE}),
    CampaignStatus.COMPLETED: frozenset(),
}

EDITABLE_STATUSES: frozenset[CampaignStatus] = frozenset(
    {CampaignStatus.DRAFT, CampaignStatus.SCHEDULED}
)

# Statuses that keep an agent bound to a campaign
AGENT_BINDING_STATUSES: frozenset[CampaignStatus] = frozenset(
    {CampaignStatus.ACTIVE, CampaignStatus.PAUSED, CampaignStatus.SCHEDULED}
)


def check_transition_table(
    table: Mapping[CampaignStatus, frozenset[CampaignStatus]] = VALID_STATUS_TRANSITIONS,
) -> None:
    """Raise if the table misses a status or strands a non-terminal one."""
    missing = set(CampaignStatus) - set(table)
    if missing:
        raise RuntimeError(
            f"Transition table missing statuses: {sorted(s.value for s in missing)}"
        )
    for status, targets in table.items():
        if status in TERMINAL_STATUSES and targets:
            raise RuntimeError(f"Terminal status {status.value} has outgoing edges")
        if status not in TERMINAL_STATUSES and not targets:
            raise RuntimeError(f"Non-terminal status {status.value} has no outgoing edge")


check_transition_table()


class CampaignLike(Protocol):
    """Fields the transition validator reads from a campaign."""

    status: CampaignStatus
    agent_id: UUID | None
    contact_group_id: UUID | None
    total_contacts: int


@dataclass(frozen=True)
class CampaignSnapshot:
    """Detached copy of the fields validation reads."""

    status: CampaignStatus
    agent_id: UUID | None
    contact_group_id: UUID | None
    total_contacts: int

    @classmethod
    def of(cls, campaign: CampaignLike, total_contacts: int | None = None) -> "CampaignSnapshot":
        return cls(
            status=CampaignStatus(campaign.status),
            agent_id=campaign.agent_id,
            contact_group_id=campaign.contact_group_id,
            total_contacts=campaign.total_contacts if total_contacts is None else total_contacts,
        )


@dataclass(frozen=True)
class TransitionCheck:
    """Outcome of validating a transition."""

    valid: bool
    reason: str | None = None


def is_valid_transition(current: CampaignStatus, target: CampaignStatus) -> bool:
    """Pure lookup against the transition table."""
    return target in VALID_STATUS_TRANSITIONS.get(current, frozenset())


def allowed_transitions(current: CampaignStatus) -> list[CampaignStatus]:
    """Targets reachable from the given status, in declaration order."""
    targets = VALID_STATUS_TRANSITIONS.get(current, frozenset())
    return [status for status in CampaignStatus if status in targets]


def validate_campaign_transition(
    campaign: CampaignLike,
    new_status: CampaignStatus,
) -> TransitionCheck:
    """Validate a transition including the activation precondition.

    Args:
        campaign: Campaign (or any object with the same fields).
        new_status: Requested status.

    Returns:
        TransitionCheck with a human readable reason on rejection.
    """
    current = CampaignStatus(campaign.status)
    if not is_valid_transition(current, new_status):
        return TransitionCheck(
            valid=False,
            reason=f"Invalid state transition from {current.value} to {new_status.value}",
        )

    if new_status == CampaignStatus.ACTIVE:
        if campaign.agent_id is None:
            return TransitionCheck(False, "Cannot activate campaign without an agent")
        if campaign.contact_group_id is None:
            return TransitionCheck(False, "Cannot activate campaign without a contact group")
        if (campaign.total_contacts or 0) <= 0:
            return TransitionCheck(False, "Cannot activate campaign with no contacts")

    return TransitionCheck(valid=True)


def can_edit_campaign(status: CampaignStatus) -> bool:
    """Structural edits (rebinding agent or contacts) only before launch."""
    return status in EDITABLE_STATUSES


def can_delete_campaign(status: CampaignStatus) -> bool:
    return status != CampaignStatus.ACTIVE


def check_agent_reassignment(active_campaigns_count: int) -> TransitionCheck:
    """An agent bound to a non-terminal campaign cannot be rebound elsewhere."""
    if active_campaigns_count > 0:
        return TransitionCheck(
            valid=False,
            reason=(
                f"Agent is used by {active_campaigns_count} active, paused or "
                "scheduled campaign(s)"
            ),
        )
    return TransitionCheck(valid=True)
