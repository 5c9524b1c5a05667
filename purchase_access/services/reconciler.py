"""
Purchase Reconciler - Turns a completed payment into access.

Flow:
    record completion -> resolve ownership -> main leg + bump leg
    -> commit -> one-time offer -> claim earlier guest purchases (self-claim)

Each leg runs in its own savepoint guarded by its fulfilment marker, so a
duplicate delivery is a no-op and a failed leg is retried by the next
delivery or verify call without touching the leg that succeeded.
"""

from collections.abc import Awaitable, Callable
from dataclasses import replace
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from purchase_access.exceptions import AccessError, AlreadyGrantedError, NotFoundError
from purchase_access.models.api import FulfilmentLeg, PaymentStatus, PurchaseScenario
from purchase_access.models.domain import (
    AccessGrantData,
    AuthenticatedCaller,
    GuestPurchaseData,
    OtoOfferData,
    OwnershipDecision,
    PaymentCompletion,
    PaymentEventData,
    PurchaseOutcome,
)
from purchase_access.observability.logging import get_logger, log_context
from purchase_access.observability.metrics import metrics
from purchase_access.services.access_grant import AccessGrantService
from purchase_access.services.catalog import CatalogService
from purchase_access.services.claims import ClaimReconciler
from purchase_access.services.guest_ledger import GuestPurchaseLedger
from purchase_access.services.order_bump import OrderBumpService
from purchase_access.services.oto import OtoService
from purchase_access.services.ownership import ensure_allowed, resolve_ownership
from purchase_access.services.payment_events import PaymentEventService

logger = get_logger(__name__)

LegResult = AccessGrantData | GuestPurchaseData | None


class PurchaseReconciler:
    """Orchestrates ownership, grants, guest ledger, bumps, offers and claims."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.events = PaymentEventService(session)
        self.catalog = CatalogService(session)
        self.grants = AccessGrantService(session)
        self.ledger = GuestPurchaseLedger(session)
        self.bumps = OrderBumpService(session)
        self.otos = OtoService(session)
        self.claims = ClaimReconciler(session)

    async def process_completed_payment(
        self,
        completion: PaymentCompletion,
        caller: AuthenticatedCaller | None = None,
    ) -> PurchaseOutcome:
        """
        Handle a provider-confirmed payment.

        A duplicate delivery is absorbed: only legs that have not been
        fulfilled yet are run again.

        Raises:
            OwnershipError: Caller may not receive this purchase
            InvalidTransitionError: Payment already ended as failed/abandoned/expired
        """
        with log_context(payment_id=completion.provider_payment_id):
            already_processed = False
            try:
                event = await self.events.record_completion(completion)
            except AlreadyGrantedError:
                already_processed = True
                existing = await self.events.get_by_provider_id(completion.provider_payment_id)
                if existing is None:
                    raise NotFoundError("payment_event", completion.provider_payment_id)
                event = existing
                logger.info("payment_already_processed")

            return await self._fulfil(event, caller, already_processed)

    async def verify_payment(
        self,
        provider_payment_id: str,
        caller: AuthenticatedCaller | None,
    ) -> tuple[PaymentEventData, PurchaseOutcome | None]:
        """
        Caller-driven check of a payment, e.g. from the payment status page.

        Returns the event and, once it is completed, the reconciliation
        outcome for this caller. Non-completed events return no outcome.

        Raises:
            NotFoundError: Unknown payment
            OwnershipError: Caller may not receive this purchase
        """
        event = await self.events.get_by_provider_id(provider_payment_id)
        if event is None:
            raise NotFoundError("payment_event", provider_payment_id)

        if event.status != PaymentStatus.COMPLETED:
            return event, None

        with log_context(payment_id=provider_payment_id):
            outcome = await self._fulfil(event, caller, already_processed=True)

        if not outcome.grants:
            owner_id = resolve_ownership(event, caller).grant_to_user_id
            if owner_id is not None:
                current = await self.grants.get_access(owner_id, event.product_id)
                if current is not None:
                    outcome = replace(outcome, grants=(current,))
        return event, outcome

    # ========================================================================
    # Private Helpers
    # ========================================================================

    async def _fulfil(
        self,
        event: PaymentEventData,
        caller: AuthenticatedCaller | None,
        already_processed: bool,
    ) -> PurchaseOutcome:
        decision = resolve_ownership(event, caller)
        ensure_allowed(decision, event.provider_payment_id, caller)
        owner_id = decision.grant_to_user_id

        if owner_id is not None and event.user_id != owner_id:
            await self.events.set_resolved_owner(event.event_id, owner_id)

        grants: list[AccessGrantData] = []
        guest_purchases: list[GuestPurchaseData] = []
        failed_legs: list[FulfilmentLeg] = []
        ran_legs = 0

        legs: list[tuple[FulfilmentLeg, Callable[[], Awaitable[LegResult]]]] = [
            (FulfilmentLeg.MAIN, lambda: self._fulfil_main(event, decision)),
        ]
        if event.metadata.bump is not None:
            legs.append((FulfilmentLeg.BUMP, lambda: self.bumps.apply_bump_grant(event, decision)))

        for leg, action in legs:
            if event.is_fulfilled(leg):
                continue
            ran_legs += 1
            try:
                result = await self._run_leg(event.event_id, leg, action)
            except AccessError as e:
                failed_legs.append(leg)
                metrics.fulfilment_leg_failures_total.labels(leg=leg.value).inc()
                logger.error(
                    "fulfilment_leg_failed",
                    leg=leg.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            if isinstance(result, AccessGrantData):
                grants.append(result)
            elif isinstance(result, GuestPurchaseData):
                guest_purchases.append(result)

        await self.session.commit()

        oto_offer = await self._generate_offer(event, owner_id)

        if (
            caller is not None
            and owner_id == caller.id
            and event.declared_user_id is None
        ):
            # Self-claim: also convert earlier guest purchases under this email
            claimed = await self.claims.claim_guest_purchases(caller.id, caller.email)
            grants.extend(claimed.grants)

        scenario = self._scenario(decision, caller, already_processed and ran_legs == 0)
        logger.info(
            "payment_reconciled",
            scenario=scenario.value,
            owner_id=str(owner_id) if owner_id else None,
            grants=len(grants),
            guest_purchases=len(guest_purchases),
            failed_legs=[leg.value for leg in failed_legs],
        )
        return PurchaseOutcome(
            payment_id=event.provider_payment_id,
            scenario=scenario,
            grants=tuple(grants),
            guest_purchases=tuple(guest_purchases),
            oto_offer=oto_offer,
            send_magic_link=owner_id is None,
            failed_legs=tuple(failed_legs),
        )

    async def _run_leg(
        self,
        event_id: UUID,
        leg: FulfilmentLeg,
        action: Callable[[], Awaitable[LegResult]],
    ) -> LegResult:
        async with self.session.begin_nested():
            if not await self.events.claim_leg(event_id, leg):
                logger.info("fulfilment_leg_already_claimed", leg=leg.value)
                return None
            return await action()

    async def _fulfil_main(
        self, event: PaymentEventData, decision: OwnershipDecision
    ) -> AccessGrantData | GuestPurchaseData:
        product = await self.catalog.get_active_product(event.product_id)
        duration_days = product.auto_grant_duration_days

        if decision.grant_to_user_id is not None:
            return await self.grants.grant_access(
                decision.grant_to_user_id, event.product_id, duration_days
            )

        return await self.ledger.record_guest_purchase(
            event.customer_email,
            event.product_id,
            event.provider_payment_id,
            event.amount_minor,
            duration_days,
        )

    async def _generate_offer(
        self, event: PaymentEventData, owner_id: UUID | None
    ) -> OtoOfferData | None:
        try:
            return await self.otos.generate_oto_offer(event, owner_id)
        except (AccessError, SQLAlchemyError) as e:
            await self.session.rollback()
            metrics.record_error(type(e).__name__, "generate_oto_offer")
            logger.error("oto_generation_failed", error=str(e), error_type=type(e).__name__)
            return None

    def _scenario(
        self,
        decision: OwnershipDecision,
        caller: AuthenticatedCaller | None,
        nothing_to_do: bool,
    ) -> PurchaseScenario:
        if nothing_to_do:
            return PurchaseScenario.ALREADY_PROCESSED
        if decision.grant_to_user_id is None:
            return PurchaseScenario.GUEST_PURCHASE
        if caller is not None and caller.id == decision.grant_to_user_id:
            return PurchaseScenario.LOGGED_IN_USER
        return PurchaseScenario.DECLARED_OWNER
