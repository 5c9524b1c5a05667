"""Payment event state machine: pending is the only non-terminal state."""

from purchase_access.exceptions import InvalidTransitionError
from purchase_access.models.api import PaymentStatus

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.ABANDONED,
            PaymentStatus.EXPIRED,
        }
    ),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.ABANDONED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
}


def validate_transition(current: PaymentStatus, new: PaymentStatus) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, new.value)
