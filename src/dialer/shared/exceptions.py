"""
Custom exceptions for the application.
"""

from typing import Any
from uuid import UUID


class AppError(Exception):
    """Base exception for application errors."""

    def __init__(self, message: str, code: str = "APP_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(AppError):
    """Validation error."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "VALIDATION_ERROR")


class UncorrelatedEventError(ValidationError):
    """Webhook event carries no attempt or session correlation."""

    def __init__(self, call_id: str | None) -> None:
        super().__init__(f"Event for call {call_id} has no attempt or session metadata")
        self.code = "UNCORRELATED_EVENT"
        self.call_id = call_id


class AttemptNotFoundError(ValidationError):
    """Event correlates to a call attempt or test-call session that does not exist."""

    def __init__(self, kind: str, target_id: UUID) -> None:
        super().__init__(f"{kind} {target_id} not found")
        self.code = "ATTEMPT_NOT_FOUND"
        self.kind = kind
        self.target_id = target_id


# Authentication errors
class AuthenticationError(AppError):
    """Base authentication error."""

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(message, "AUTHENTICATION_ERROR")


class WebhookSignatureError(AuthenticationError):
    """Webhook signature missing, invalid or outside the tolerance window."""

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message)
        self.code = "INVALID_SIGNATURE"


# Lookup errors
class NotFoundError(AppError):
    """Requested entity does not exist."""

    def __init__(self, message: str, code: str = "NOT_FOUND") -> None:
        super().__init__(message, code)


class CampaignNotFoundError(NotFoundError):
    """Campaign not found."""

    def __init__(self, campaign_id: UUID) -> None:
        super().__init__(
            f"Campaign with ID {campaign_id} not found",
            "CAMPAIGN_NOT_FOUND",
        )
        self.campaign_id = campaign_id


class AccountNotFoundError(NotFoundError):
    """No credit balance exists for the account."""

    def __init__(self, account_id: UUID) -> None:
        super().__init__(
            f"No credit balance for account {account_id}",
            "ACCOUNT_NOT_FOUND",
        )
        self.account_id = account_id


# Campaign errors
class InvalidStatusTransitionError(AppError):
    """Invalid campaign status transition."""

    def __init__(
        self,
        current_status: Any,
        target_status: Any,
        valid_transitions: list[Any],
        reason: str | None = None,
    ) -> None:
        valid_str = ", ".join(s.value for s in valid_transitions) if valid_transitions else "none"
        message = reason or (
            f"Invalid state transition from {current_status.value} to {target_status.value}"
        )
        super().__init__(
            f"{message}. Valid transitions: {valid_str}",
            "INVALID_STATUS_TRANSITION",
        )
        self.current_status = current_status
        self.target_status = target_status
        self.valid_transitions = valid_transitions
        self.reason = message


class InsufficientCreditError(AppError):
    """Available credit does not cover the requested hold."""

    def __init__(self, account_id: UUID, amount_cents: int) -> None:
        super().__init__(
            f"Account {account_id} cannot hold {amount_cents} cents of credit",
            "INSUFFICIENT_CREDIT",
        )
        self.account_id = account_id
        self.amount_cents = amount_cents


class CampaignEditNotAllowedError(AppError):
    """Structural edit rejected for the campaign's current state."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "CAMPAIGN_EDIT_NOT_ALLOWED")


# Infrastructure errors
class TransientError(AppError):
    """Temporary infrastructure failure; the operation may succeed if retried."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "TRANSIENT_ERROR")
