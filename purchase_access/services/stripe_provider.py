"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.

Checkout sessions carry the purchase metadata (product_id, user_id,
bump_product_id, coupon_code, terms_accepted) on the session; embedded
payments carry it on the PaymentIntent.
"""

from typing import Any

import stripe

from purchase_access.exceptions import WebhookVerificationError
from purchase_access.models.domain import PaymentMetadata, parse_uuid
from purchase_access.observability.logging import get_logger
from purchase_access.services.payment_provider import WebhookEvent

logger = get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
CHECKOUT_EXPIRED = "checkout.session.expired"
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
CHARGE_REFUNDED = "charge.refunded"

COMPLETION_EVENTS = frozenset({CHECKOUT_COMPLETED, CHECKOUT_ASYNC_SUCCEEDED, PAYMENT_SUCCEEDED})


def _get(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    return obj.get(key)


def _upper(value: str | None) -> str | None:
    return value.upper() if value else None


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe webhooks.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.api_key = api_key

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a Stripe webhook event.

        Raises:
            WebhookVerificationError: If signature verification or parsing fails
        """
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)
        return self.parse_event(event.id, event.type, event.data.object)

    def parse_event(self, event_id: str, event_type: str, obj: Any) -> WebhookEvent:
        """Map a Stripe event object onto a provider-agnostic WebhookEvent."""
        if event_type.startswith("checkout.session."):
            return self._parse_checkout_session(event_id, event_type, obj)
        if event_type == CHARGE_REFUNDED:
            return self._parse_charge(event_id, event_type, obj)
        return self._parse_payment_intent(event_id, event_type, obj)

    def _parse_checkout_session(self, event_id: str, event_type: str, session: Any) -> WebhookEvent:
        metadata = _get(session, "metadata") or {}
        customer_email = _get(_get(session, "customer_details"), "email") or _get(
            session, "customer_email"
        )
        return WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            payment_id=session.get("id"),
            # "paid", "unpaid" or "no_payment_required"
            status=_get(session, "payment_status") or _get(session, "status") or "",
            amount_minor=_get(session, "amount_total"),
            currency=_upper(_get(session, "currency")),
            customer_email=customer_email,
            product_id=parse_uuid(_get(metadata, "product_id")),
            declared_owner=_get(metadata, "user_id"),
            metadata=PaymentMetadata.from_provider(metadata),
            payment_intent_id=_get(session, "payment_intent"),
        )

    def _parse_payment_intent(self, event_id: str, event_type: str, intent: Any) -> WebhookEvent:
        metadata = _get(intent, "metadata") or {}
        return WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            payment_id=intent.get("id"),
            status=_get(intent, "status") or "",
            amount_minor=_get(intent, "amount_received") or _get(intent, "amount"),
            currency=_upper(_get(intent, "currency")),
            customer_email=_get(intent, "receipt_email") or _get(metadata, "customer_email"),
            product_id=parse_uuid(_get(metadata, "product_id")),
            declared_owner=_get(metadata, "user_id"),
            metadata=PaymentMetadata.from_provider(metadata),
            payment_intent_id=intent.get("id"),
        )

    def _parse_charge(self, event_id: str, event_type: str, charge: Any) -> WebhookEvent:
        payment_intent_id = _get(charge, "payment_intent")
        return WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            payment_id=payment_intent_id or charge.get("id"),
            status=_get(charge, "status") or "",
            amount_minor=_get(charge, "amount"),
            currency=_upper(_get(charge, "currency")),
            payment_intent_id=payment_intent_id,
            refunded_amount_minor=_get(charge, "amount_refunded"),
        )
