"""
API Routes - FastAPI endpoints for purchase-to-access reconciliation.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from purchase_access.api.dependencies import (
    get_authenticated_caller,
    get_optional_caller,
    require_internal_api_key,
)
from purchase_access.config import settings
from purchase_access.db.session import get_read_db, get_write_db
from purchase_access.exceptions import (
    EmailMismatchError,
    ExpiredOfferError,
    InvalidOwnerIdError,
    InvalidRefundError,
    InvalidTransitionError,
    NotFoundError,
    OwnershipError,
    UsageExhaustedError,
    WebhookVerificationError,
)
from purchase_access.models.api import (
    AbandonedCartStatsResponse,
    AccessGrantResponse,
    ClaimRequest,
    ClaimResponse,
    HealthResponse,
    OtoOfferResponse,
    PaymentEventResponse,
    PendingCheckoutRequest,
    RedeemOtoRequest,
    SweepResponse,
    VerifyPaymentResponse,
    WebhookAckResponse,
)
from purchase_access.models.domain import (
    AccessGrantData,
    AuthenticatedCaller,
    BumpMetadata,
    ClaimResult,
    CouponMetadata,
    OtoOfferData,
    PaymentEventData,
    PaymentMetadata,
    PaymentMetadataEntry,
    PendingPaymentIntent,
    TermsMetadata,
)
from purchase_access.observability.logging import get_logger, log_context
from purchase_access.services import stripe_provider as stripe_events
from purchase_access.services.claims import ClaimReconciler
from purchase_access.services.oto import OtoService
from purchase_access.services.ownership import normalize_owner_id
from purchase_access.services.payment_events import PaymentEventService
from purchase_access.services.payment_provider import PaymentProvider, build_completion
from purchase_access.services.reconciler import PurchaseReconciler
from purchase_access.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

router = APIRouter()


def get_payment_provider() -> PaymentProvider:
    """Payment provider used to verify webhooks (overridable in tests)."""
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
    )


# =============================================================================
# Response Mapping
# =============================================================================


def _grant_response(grant: AccessGrantData) -> AccessGrantResponse:
    return AccessGrantResponse(
        user_id=grant.user_id,
        product_id=grant.product_id,
        access_granted_at=grant.access_granted_at.isoformat(),
        access_duration_days=grant.access_duration_days,
        access_expires_at=grant.access_expires_at.isoformat() if grant.access_expires_at else None,
    )


def _offer_response(offer: OtoOfferData) -> OtoOfferResponse:
    return OtoOfferResponse(
        code=offer.code,
        customer_email=offer.customer_email,
        target_product_id=offer.target_product_id,
        discount_type=offer.discount.discount_type,
        discount_value=offer.discount.value,
        expires_at=offer.expires_at.isoformat(),
        usage_limit=offer.usage_limit,
        usage_count=offer.usage_count,
    )


def _event_response(event: PaymentEventData) -> PaymentEventResponse:
    return PaymentEventResponse(
        provider_payment_id=event.provider_payment_id,
        product_id=event.product_id,
        customer_email=event.customer_email,
        amount_minor=event.amount_minor,
        currency=event.currency,
        status=event.status,
        expires_at=event.expires_at.isoformat() if event.expires_at else None,
        abandoned_at=event.abandoned_at.isoformat() if event.abandoned_at else None,
    )


def _claim_response(result: ClaimResult) -> ClaimResponse:
    return ClaimResponse(
        claimed_count=result.claimed_count,
        grants=[_grant_response(g) for g in result.grants],
    )


def _ownership_denied(exc: OwnershipError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"error": exc.reason, "message": "This purchase belongs to another account"},
    )


# =============================================================================
# Payment Provider Webhooks
# =============================================================================


@router.post("/v1/webhooks/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> WebhookAckResponse:
    """
    Handle Stripe webhook events.

    Completions are reconciled into access. A leg that could not be
    fulfilled answers 503 so Stripe redelivers; the retry only runs
    unfulfilled legs.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        webhook_event = await provider.verify_webhook(payload, signature)
    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        ) from exc

    with log_context(event_id=webhook_event.event_id, payment_id=webhook_event.payment_id):
        logger.info("stripe_webhook_received", event_type=webhook_event.event_type)
        event_type = webhook_event.event_type
        events = PaymentEventService(db)

        if event_type in stripe_events.COMPLETION_EVENTS:
            if webhook_event.status == "unpaid":
                # Delayed payment method; completion arrives as async_payment_succeeded
                return WebhookAckResponse(status="pending", event_id=webhook_event.event_id)

            if not webhook_event.has_purchase_details:
                logger.warning("stripe_webhook_missing_metadata")
                return WebhookAckResponse(status="ignored", event_id=webhook_event.event_id)

            try:
                completion = build_completion(webhook_event)
            except InvalidOwnerIdError as exc:
                logger.warning(
                    "stripe_webhook_invalid_owner", security_event=True, raw_value=exc.raw_value
                )
                return WebhookAckResponse(status="rejected", event_id=webhook_event.event_id)
            except ValueError as exc:
                # Signed but malformed; redelivery would fail the same way
                logger.warning("stripe_webhook_invalid_payment", error=str(exc))
                return WebhookAckResponse(status="rejected", event_id=webhook_event.event_id)

            try:
                outcome = await PurchaseReconciler(db).process_completed_payment(completion)
            except InvalidTransitionError as exc:
                # Paid after abandonment/expiry: needs manual recovery
                logger.error(
                    "stripe_completion_for_closed_payment",
                    current_status=exc.current,
                    needs_manual_recovery=True,
                )
                return WebhookAckResponse(status="rejected", event_id=webhook_event.event_id)

            if outcome.has_failures:
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail="Fulfilment incomplete, retry later",
                )
            return WebhookAckResponse(status="success", event_id=webhook_event.event_id)

        if event_type in (stripe_events.PAYMENT_FAILED, stripe_events.CHECKOUT_EXPIRED):
            try:
                if event_type == stripe_events.PAYMENT_FAILED:
                    await events.mark_failed(webhook_event.payment_id)
                else:
                    await events.mark_expired(webhook_event.payment_id)
            except (NotFoundError, InvalidTransitionError) as exc:
                logger.info("stripe_status_update_skipped", reason=str(exc))
                return WebhookAckResponse(status="ignored", event_id=webhook_event.event_id)
            return WebhookAckResponse(status="acknowledged", event_id=webhook_event.event_id)

        if event_type == stripe_events.CHARGE_REFUNDED:
            if not webhook_event.refunded_amount_minor:
                return WebhookAckResponse(status="ignored", event_id=webhook_event.event_id)
            try:
                await events.record_refund(
                    webhook_event.payment_id, webhook_event.refunded_amount_minor
                )
            except (NotFoundError, InvalidRefundError) as exc:
                logger.warning("stripe_refund_skipped", reason=str(exc))
                return WebhookAckResponse(status="ignored", event_id=webhook_event.event_id)
            return WebhookAckResponse(status="acknowledged", event_id=webhook_event.event_id)

        logger.info("stripe_webhook_ignored", event_type=event_type)
        return WebhookAckResponse(status="ignored", event_id=webhook_event.event_id)


# =============================================================================
# Checkout
# =============================================================================


@router.post(
    "/v1/checkout/pending",
    response_model=PaymentEventResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_api_key)],
)
async def create_pending_checkout(
    request: PendingCheckoutRequest,
    db: AsyncSession = Depends(get_write_db),
) -> PaymentEventResponse:
    """
    Record a checkout session as pending.

    Called by the checkout service when it creates the provider session.
    Idempotent on provider_payment_id.
    """
    try:
        declared_user_id = normalize_owner_id(request.user_id)
    except InvalidOwnerIdError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    entries: list[PaymentMetadataEntry] = []
    if request.coupon_code:
        entries.append(CouponMetadata(code=request.coupon_code))
    if request.bump_product_id:
        entries.append(BumpMetadata(bump_product_id=request.bump_product_id))
    if request.terms_accepted is not None:
        entries.append(TermsMetadata(accepted=request.terms_accepted))

    expires_at = None
    if request.expires_in_minutes:
        expires_at = datetime.now(UTC) + timedelta(minutes=request.expires_in_minutes)

    intent = PendingPaymentIntent(
        provider_payment_id=request.provider_payment_id,
        product_id=request.product_id,
        customer_email=request.customer_email,
        amount_minor=request.amount_minor,
        currency=request.currency,
        declared_user_id=declared_user_id,
        metadata=PaymentMetadata(entries=tuple(entries)),
        expires_at=expires_at,
    )
    event = await PaymentEventService(db).create_pending(intent)
    return _event_response(event)


# =============================================================================
# Payment Verification
# =============================================================================


@router.post("/v1/payments/{provider_payment_id}/verify", response_model=VerifyPaymentResponse)
async def verify_payment(
    provider_payment_id: str,
    db: AsyncSession = Depends(get_write_db),
    caller: AuthenticatedCaller | None = Depends(get_optional_caller),
) -> VerifyPaymentResponse:
    """
    Check a payment from the payment status page and reconcile it for the caller.

    Auth: optional Bearer token. Anonymous callers see guest outcomes only.
    """
    try:
        event, outcome = await PurchaseReconciler(db).verify_payment(provider_payment_id, caller)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except OwnershipError as exc:
        raise _ownership_denied(exc) from exc

    if outcome is None:
        return VerifyPaymentResponse(payment_id=provider_payment_id, status=event.status)

    return VerifyPaymentResponse(
        payment_id=provider_payment_id,
        status=event.status,
        scenario=outcome.scenario,
        access_granted=outcome.access_granted,
        is_guest_purchase=outcome.send_magic_link,
        send_magic_link=outcome.send_magic_link,
        grants=[_grant_response(g) for g in outcome.grants],
        oto_offer=_offer_response(outcome.oto_offer) if outcome.oto_offer else None,
    )


# =============================================================================
# Guest Purchase Claims
# =============================================================================


@router.post(
    "/v1/auth/events/claim",
    response_model=ClaimResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def claim_on_auth_event(
    request: ClaimRequest,
    db: AsyncSession = Depends(get_write_db),
) -> ClaimResponse:
    """
    Auth provider hook: a user registered or logged in.

    May fire any number of times for the same user.
    """
    result = await ClaimReconciler(db).claim_guest_purchases(request.user_id, request.email)
    return _claim_response(result)


@router.post("/v1/me/claim", response_model=ClaimResponse)
async def claim_my_purchases(
    db: AsyncSession = Depends(get_write_db),
    caller: AuthenticatedCaller = Depends(get_authenticated_caller),
) -> ClaimResponse:
    """Claim guest purchases made with the logged-in caller's email."""
    result = await ClaimReconciler(db).claim_guest_purchases(caller.id, caller.email)
    return _claim_response(result)


# =============================================================================
# One-Time Offers
# =============================================================================


@router.post(
    "/v1/oto/redeem",
    response_model=OtoOfferResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def redeem_oto_offer(
    request: RedeemOtoRequest,
    db: AsyncSession = Depends(get_write_db),
) -> OtoOfferResponse:
    """Consume a one-time offer during a follow-up checkout."""
    try:
        offer = await OtoService(db).redeem_oto_offer(
            request.code, request.customer_email, request.product_id
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except EmailMismatchError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Offer is bound to a different email",
        ) from exc
    except ExpiredOfferError as exc:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(exc)) from exc
    except UsageExhaustedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return _offer_response(offer)


# =============================================================================
# Maintenance and Reporting
# =============================================================================


@router.post(
    "/v1/maintenance/expire-pending",
    response_model=SweepResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def expire_pending_payments(db: AsyncSession = Depends(get_write_db)) -> SweepResponse:
    """Scheduled sweep: abandon pending payments past their expiry."""
    count = await PaymentEventService(db).mark_expired_pending()
    return SweepResponse(abandoned_count=count)


@router.get(
    "/v1/reports/abandoned-carts/stats",
    response_model=AbandonedCartStatsResponse,
    dependencies=[Depends(require_internal_api_key)],
)
async def abandoned_cart_stats(
    days: int = Query(7, ge=1, le=365),
    db: AsyncSession = Depends(get_read_db),
) -> AbandonedCartStatsResponse:
    """Pending and abandoned checkout summary for the admin dashboard."""
    stats = await PaymentEventService(db).abandoned_cart_stats(days)
    return AbandonedCartStatsResponse(
        total_pending=stats.total_pending,
        total_abandoned=stats.total_abandoned,
        total_value_minor=stats.total_value_minor,
        average_value_minor=stats.average_value_minor,
        period_days=stats.period_days,
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
