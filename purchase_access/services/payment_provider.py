"""
Payment Provider Protocol - Provider-agnostic webhook boundary.

NO DICTIONARIES - All data uses strongly typed models.

Only provider-issued identifiers and provider-side metadata are trusted for
ownership; nothing here comes from the browser.
"""

from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID

from purchase_access.models.domain import PaymentCompletion, PaymentMetadata
from purchase_access.services.ownership import normalize_owner_id


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    declared_owner is the raw metadata value; it is normalized when the
    event is turned into a PaymentCompletion.
    """

    event_id: str
    event_type: str
    payment_id: str
    status: str
    amount_minor: int | None = None
    currency: str | None = None
    customer_email: str | None = None
    product_id: UUID | None = None
    declared_owner: str | None = None
    metadata: PaymentMetadata = field(default_factory=PaymentMetadata)
    payment_intent_id: str | None = None
    refunded_amount_minor: int | None = None

    @property
    def has_purchase_details(self) -> bool:
        return (
            self.product_id is not None
            and bool(self.customer_email)
            and self.amount_minor is not None
            and self.amount_minor > 0
            and bool(self.currency)
        )


def build_completion(event: WebhookEvent) -> PaymentCompletion:
    """
    Turn a verified completion webhook into a PaymentCompletion.

    Raises:
        InvalidOwnerIdError: Declared owner present but malformed
        ValueError: Purchase details missing or malformed
    """
    if not event.has_purchase_details:
        raise ValueError(f"Webhook {event.event_id} is missing purchase details")

    return PaymentCompletion(
        provider_payment_id=event.payment_id,
        product_id=event.product_id,  # type: ignore[arg-type]
        customer_email=event.customer_email,  # type: ignore[arg-type]
        amount_minor=event.amount_minor,  # type: ignore[arg-type]
        currency=event.currency,  # type: ignore[arg-type]
        declared_user_id=normalize_owner_id(event.declared_owner),
        metadata=event.metadata,
        payment_intent_id=event.payment_intent_id,
    )


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any payment provider must implement this interface so the reconciler
    stays provider-agnostic.
    """

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse webhook event from provider.

        Args:
            payload: Raw webhook payload
            signature: Webhook signature for verification

        Returns:
            Parsed webhook event

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...
