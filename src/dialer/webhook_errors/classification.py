"""
Retryable vs non-retryable failure classification.
"""

import asyncio

import httpx
import pydantic
from sqlalchemy import exc as sa_exc

from dialer.shared.exceptions import (
    AuthenticationError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from dialer.telephony.interface import VoiceProviderError

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


def _retryable_status(status_code: int | None) -> bool:
    if status_code is None:
        return False
    return status_code in RETRYABLE_STATUS_CODES or 500 <= status_code < 600


def is_retryable_error(error: BaseException) -> bool:
    """True for timeouts, rate limits, 5xx and transient store failures."""
    if isinstance(error, (ValidationError, AuthenticationError, NotFoundError, pydantic.ValidationError)):
        return False
    if isinstance(error, TransientError):
        return True
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return _retryable_status(error.response.status_code)
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, VoiceProviderError):
        # No status code means the request never got an answer
        return error.status_code is None or _retryable_status(error.status_code)
    if isinstance(error, (sa_exc.OperationalError, sa_exc.TimeoutError, sa_exc.DisconnectionError)):
        return True
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return True
    return False
