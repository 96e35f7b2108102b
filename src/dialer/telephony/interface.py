"""
Voice provider interface definition.

The scheduler hands calls to a provider through this seam. Correlation
metadata placed on the request is echoed back on every webhook event.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class CallDispatchRequest:
    """Request to place an outbound call."""

    to_number: str
    from_number: str
    agent_id: UUID
    attempt_id: UUID
    campaign_id: UUID
    contact_id: UUID
    dynamic_variables: dict[str, str] = field(default_factory=dict)

    @property
    def metadata(self) -> dict[str, str]:
        """Correlation metadata echoed back by the provider."""
        return {
            "attempt_id": str(self.attempt_id),
            "campaign_id": str(self.campaign_id),
            "contact_id": str(self.contact_id),
        }


@dataclass(frozen=True)
class CallDispatchResponse:
    """Provider acknowledgement of a placed call."""

    provider_call_id: str
    status: str
    raw_response: dict[str, Any] = field(default_factory=dict)


class VoiceProviderError(Exception):
    """Voice provider request failed."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.provider_response = provider_response or {}


class VoiceProvider(ABC):
    """Abstract interface for voice call providers."""

    @abstractmethod
    async def create_phone_call(self, request: CallDispatchRequest) -> CallDispatchResponse:
        """Place an outbound call.

        Raises:
            VoiceProviderError: If the provider rejects or cannot be reached.
        """
        ...

    async def close(self) -> None:
        """Release provider resources."""
        return None
