"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from datetime import datetime
from uuid import UUID


class AccessError(Exception):
    """Base exception for all purchase-to-access errors."""

    pass


class NotFoundError(AccessError):
    """Raised when a referenced product, user, payment event or offer is missing."""

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class OwnershipError(AccessError):
    """Raised when ownership resolution rejects a caller. Security relevant."""

    reason: str = "ownership_rejected"

    def __init__(self, payment_id: str, caller_id: UUID | None, message: str) -> None:
        self.payment_id = payment_id
        self.caller_id = caller_id
        super().__init__(message)


class OwnerMismatchError(OwnershipError):
    """Raised when a caller tries to claim a payment declared for another user."""

    reason = "owner_mismatch"

    def __init__(self, payment_id: str, caller_id: UUID | None) -> None:
        super().__init__(
            payment_id, caller_id, f"Payment {payment_id} does not belong to caller {caller_id}"
        )


class EmailMismatchError(OwnershipError):
    """Raised when a caller's email differs from the email a purchase is bound to."""

    reason = "email_mismatch"

    def __init__(self, payment_id: str, caller_id: UUID | None) -> None:
        super().__init__(
            payment_id,
            caller_id,
            f"Caller {caller_id} email does not match purchase email for {payment_id}",
        )


class InvalidOwnerIdError(AccessError):
    """Raised when a declared owner id is present but not a valid user id."""

    def __init__(self, raw_value: str) -> None:
        self.raw_value = raw_value
        super().__init__(f"Invalid declared owner id: {raw_value!r}")


class AlreadyClaimedError(AccessError):
    """Raised when a guest purchase was claimed by a concurrent request."""

    def __init__(self, purchase_id: UUID) -> None:
        self.purchase_id = purchase_id
        super().__init__(f"Guest purchase {purchase_id} already claimed")


class AlreadyGrantedError(AccessError):
    """Raised when a payment event was already completed and processed."""

    def __init__(self, payment_id: str) -> None:
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} already processed")


class InvalidDurationError(AccessError):
    """Raised when an access duration is not a positive number of days."""

    def __init__(self, duration_days: int) -> None:
        self.duration_days = duration_days
        super().__init__(f"Access duration must be a positive number of days: {duration_days}")


class InvalidTransitionError(AccessError):
    """Raised when a payment status transition is not allowed."""

    def __init__(self, current: str, new: str) -> None:
        self.current = current
        self.new = new
        super().__init__(f"Invalid transition: {current} -> {new}")


class InvalidRefundError(AccessError):
    """Raised when a refund annotation is not valid for the payment."""

    def __init__(self, payment_id: str, message: str) -> None:
        self.payment_id = payment_id
        self.message = message
        super().__init__(f"Invalid refund for {payment_id}: {message}")


class ExpiredOfferError(AccessError):
    """Raised when a one-time offer is redeemed after its window closed."""

    def __init__(self, code: str, expired_at: datetime) -> None:
        self.code = code
        self.expired_at = expired_at
        super().__init__(f"Offer {code} expired at {expired_at.isoformat()}")


class UsageExhaustedError(AccessError):
    """Raised when a one-time offer was already consumed."""

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"Offer {code} has already been used")


class InternalError(AccessError):
    """Raised when a storage operation keeps failing after retry."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Internal error: {message}")


class WebhookVerificationError(AccessError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")
