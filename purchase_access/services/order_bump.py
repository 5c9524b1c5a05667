"""
Order Bump Service - Grants the bump product bought alongside a main product.

The bump leg runs independently of the main leg: the reconciler gives each
leg its own savepoint and fulfilment marker.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from purchase_access.models.domain import (
    AccessGrantData,
    GuestPurchaseData,
    OrderBumpData,
    OwnershipDecision,
    PaymentEventData,
    ProductData,
)
from purchase_access.observability.logging import get_logger
from purchase_access.services.access_grant import AccessGrantService
from purchase_access.services.catalog import CatalogService
from purchase_access.services.guest_ledger import GuestPurchaseLedger

logger = get_logger(__name__)


def bump_duration_days(bump: OrderBumpData, product: ProductData) -> int | None:
    """The bump's own override wins over the bump product's default duration."""
    if bump.access_duration_days is not None:
        return bump.access_duration_days
    return product.auto_grant_duration_days


class OrderBumpService:
    """Applies the order bump named in payment metadata."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.catalog = CatalogService(session)
        self.grants = AccessGrantService(session)
        self.ledger = GuestPurchaseLedger(session)

    async def get_configured_bump(self, event: PaymentEventData) -> OrderBumpData | None:
        """Active order bump for the bump product named in the event metadata, if any."""
        bump_entry = event.metadata.bump
        if bump_entry is None:
            return None

        bump = await self.catalog.get_order_bump(event.product_id, bump_entry.bump_product_id)
        if bump is None:
            logger.warning(
                "order_bump_not_configured",
                payment_id=event.provider_payment_id,
                main_product_id=str(event.product_id),
                bump_product_id=str(bump_entry.bump_product_id),
            )
        return bump

    async def apply_bump_grant(
        self,
        event: PaymentEventData,
        decision: OwnershipDecision,
    ) -> AccessGrantData | GuestPurchaseData | None:
        """
        Grant the bump product to the resolved owner, or record it as a guest purchase.

        Returns None when the metadata names no bump or the bump is not
        configured for the main product.

        Raises:
            NotFoundError: Bump product missing/inactive, or owner missing
            InternalError: Grant kept failing
        """
        bump = await self.get_configured_bump(event)
        if bump is None:
            return None

        product = await self.catalog.get_active_product(bump.bump_product_id)
        duration_days = bump_duration_days(bump, product)

        if decision.grant_to_user_id is not None:
            grant = await self.grants.grant_access(
                decision.grant_to_user_id, bump.bump_product_id, duration_days
            )
            logger.info(
                "order_bump_granted",
                payment_id=event.provider_payment_id,
                user_id=str(decision.grant_to_user_id),
                bump_product_id=str(bump.bump_product_id),
                duration_days=duration_days,
            )
            return grant

        purchase = await self.ledger.record_guest_purchase(
            event.customer_email,
            bump.bump_product_id,
            event.provider_payment_id,
            bump.bump_price_minor,
            duration_days,
        )
        logger.info(
            "order_bump_recorded_for_guest",
            payment_id=event.provider_payment_id,
            bump_product_id=str(bump.bump_product_id),
        )
        return purchase
