"""
Retell-compatible voice provider adapter.
"""

from typing import Any

import httpx

from dialer.shared.logging import get_logger
from dialer.telephony.interface import (
    CallDispatchRequest,
    CallDispatchResponse,
    VoiceProvider,
    VoiceProviderError,
)

logger = get_logger(__name__)


class RetellAdapter(VoiceProvider):
    """Places phone calls through the Retell REST API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.retellai.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize adapter.

        Args:
            api_key: Provider API key.
            base_url: Provider API base URL.
            timeout: HTTP request timeout in seconds.
            transport: Optional httpx transport (tests).
        """
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def create_phone_call(self, request: CallDispatchRequest) -> CallDispatchResponse:
        """Place an outbound call.

        Args:
            request: Dispatch request with correlation metadata.

        Returns:
            Response with provider call ID.

        Raises:
            VoiceProviderError: If call creation fails.
        """
        client = await self._get_client()
        body: dict[str, Any] = {
            "from_number": request.from_number,
            "to_number": request.to_number,
            "override_agent_id": str(request.agent_id),
            "metadata": request.metadata,
            "retell_llm_dynamic_variables": request.dynamic_variables,
        }

        logger.info(
            "Placing provider call",
            extra={
                "attempt_id": str(request.attempt_id),
                "campaign_id": str(request.campaign_id),
                "to": request.to_number,
            },
        )

        try:
            response = await client.post("/v2/create-phone-call", json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            error_data: dict[str, Any] = {}
            try:
                error_data = e.response.json()
            except ValueError:
                error_data = {"body": e.response.text}

            logger.error(
                "Provider call creation failed",
                extra={
                    "attempt_id": str(request.attempt_id),
                    "status_code": e.response.status_code,
                    "error": error_data,
                },
            )
            raise VoiceProviderError(
                message=f"Provider API error: {e.response.status_code}",
                error_code=str(error_data.get("error_code", "unknown")),
                status_code=e.response.status_code,
                provider_response=error_data,
            ) from e
        except httpx.RequestError as e:
            logger.error(
                "Provider request failed",
                extra={"attempt_id": str(request.attempt_id), "error": str(e)},
            )
            raise VoiceProviderError(message=f"Provider request failed: {e}") from e

        return CallDispatchResponse(
            provider_call_id=data["call_id"],
            status=data.get("call_status", "registered"),
            raw_response=data,
        )
