"""
In-process voice provider for development and tests.
"""

from itertools import count

from dialer.telephony.interface import (
    CallDispatchRequest,
    CallDispatchResponse,
    VoiceProvider,
    VoiceProviderError,
)


class MockVoiceProvider(VoiceProvider):
    """Records dispatch requests and returns sequential call ids."""

    def __init__(self, fail_numbers: set[str] | None = None) -> None:
        self.requests: list[CallDispatchRequest] = []
        self._fail_numbers = fail_numbers or set()
        self._ids = count(1)

    async def create_phone_call(self, request: CallDispatchRequest) -> CallDispatchResponse:
        self.requests.append(request)
        if request.to_number in self._fail_numbers:
            raise VoiceProviderError("Mock dial failure", error_code="mock_failure", status_code=400)
        call_id = f"MOCK_CALL_{next(self._ids):06d}"
        return CallDispatchResponse(
            provider_call_id=call_id,
            status="registered",
            raw_response={"mock": True, "call_id": call_id, "metadata": request.metadata},
        )
