"""
Ownership Resolver - Decides who may receive access from a payment event.

Security critical. Owner absence is normalized exactly once, in
normalize_owner_id(); everything downstream works with UUID | None and never
compares string sentinels again.
"""

from uuid import UUID

from purchase_access.exceptions import EmailMismatchError, InvalidOwnerIdError, OwnerMismatchError
from purchase_access.models.api import OwnershipRejection
from purchase_access.models.domain import (
    AuthenticatedCaller,
    OwnershipDecision,
    PaymentCompletion,
    PaymentEventData,
)
from purchase_access.observability.logging import get_logger
from purchase_access.observability.metrics import metrics
from purchase_access.services.guest_ledger import normalize_email

logger = get_logger(__name__)

# Values checkout clients have been seen to send for "no owner"
_ABSENT_OWNER_SENTINELS = frozenset({"", "null", "undefined", "none"})


def normalize_owner_id(raw: str | UUID | None) -> UUID | None:
    """
    Normalize a declared owner id from provider metadata.

    None, empty or whitespace-only strings and the literals "null",
    "undefined" and "none" (any case) all mean "no owner". Any other value
    must be a valid UUID.

    Raises:
        InvalidOwnerIdError: If the value is present but not a UUID
    """
    if raw is None:
        return None
    if isinstance(raw, UUID):
        return raw

    value = raw.strip()
    if value.lower() in _ABSENT_OWNER_SENTINELS:
        return None

    try:
        return UUID(value)
    except ValueError as exc:
        raise InvalidOwnerIdError(raw) from exc


def emails_match(left: str, right: str) -> bool:
    """
    Compare two emails under the same key the guest ledger stores.

    Uses lower() rather than casefold(): casefold maps distinct mailboxes
    such as "straße@" and "strasse@" onto one another.
    """
    return normalize_email(left) == normalize_email(right)


def resolve_ownership(
    event: PaymentEventData | PaymentCompletion,
    caller: AuthenticatedCaller | None,
) -> OwnershipDecision:
    """
    Decide whether the caller may receive access from this payment.

    Evaluated in order:
    1. Declared owner: only that owner (or an unauthenticated delivery such
       as a webhook) may receive it.
    2. Ownerless with a caller: the caller's email must match the
       purchase email.
    3. Ownerless without a caller: guest purchase, nobody is granted yet.

    Pure function; use ensure_allowed() to turn a rejection into an error.
    """
    owner_id = event.declared_user_id

    if owner_id is not None:
        if caller is None or caller.id == owner_id:
            return OwnershipDecision(allowed=True, grant_to_user_id=owner_id)
        return OwnershipDecision(
            allowed=False,
            grant_to_user_id=None,
            reason=OwnershipRejection.OWNER_MISMATCH,
        )

    if caller is not None:
        if emails_match(caller.email, event.customer_email):
            return OwnershipDecision(allowed=True, grant_to_user_id=caller.id)
        return OwnershipDecision(
            allowed=False,
            grant_to_user_id=None,
            reason=OwnershipRejection.EMAIL_MISMATCH,
        )

    return OwnershipDecision(allowed=True, grant_to_user_id=None)


def ensure_allowed(
    decision: OwnershipDecision,
    payment_id: str,
    caller: AuthenticatedCaller | None,
) -> OwnershipDecision:
    """
    Raise the matching ownership error for a rejected decision.

    Rejections are logged as security events and counted separately from
    generic failures. Never downgrade a rejection into a guest purchase.

    Raises:
        OwnerMismatchError: Caller is not the declared owner
        EmailMismatchError: Caller email differs from the purchase email
    """
    if decision.allowed:
        return decision

    caller_id = caller.id if caller else None
    reason = decision.reason or OwnershipRejection.OWNER_MISMATCH

    logger.warning(
        "ownership_rejected",
        security_event=True,
        payment_id=payment_id,
        caller_id=str(caller_id) if caller_id else None,
        reason=reason.value,
    )
    metrics.record_ownership_rejection(reason.value)

    if reason == OwnershipRejection.EMAIL_MISMATCH:
        raise EmailMismatchError(payment_id, caller_id)
    raise OwnerMismatchError(payment_id, caller_id)
