"""
Guest Purchase Ledger - Purchases made without an authenticated account.

Keyed by lower-cased customer email. Idempotent on
(customer_email, product_id, payment_event_id) so retried webhook deliveries
never create a second row.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from purchase_access.db.models import GuestPurchase
from purchase_access.exceptions import AlreadyClaimedError, InternalError
from purchase_access.models.domain import GuestPurchaseData
from purchase_access.observability.logging import get_logger
from purchase_access.observability.metrics import metrics

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class GuestPurchaseLedger:
    """Guest purchase ledger. Only flushes; callers own the transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record_guest_purchase(
        self,
        email: str,
        product_id: UUID,
        payment_event_id: str,
        amount_minor: int,
        duration_days: int | None,
    ) -> GuestPurchaseData:
        """
        Record a guest purchase, returning the existing row on a retry.

        Args:
            email: Customer email (stored lower-cased)
            product_id: Product purchased
            payment_event_id: Provider payment identifier
            amount_minor: Amount attributed to this product
            duration_days: Duration policy to apply when claimed (None = unlimited)
        """
        customer_email = normalize_email(email)

        stmt = (
            pg_insert(GuestPurchase)
            .values(
                id=uuid4(),
                customer_email=customer_email,
                product_id=product_id,
                payment_event_id=payment_event_id,
                amount_minor=amount_minor,
                access_duration_days=duration_days,
                created_at=_utc_now(),
            )
            .on_conflict_do_nothing(
                index_elements=["customer_email", "product_id", "payment_event_id"]
            )
            .returning(GuestPurchase)
        )
        result = await self.session.execute(stmt)
        inserted = result.scalar_one_or_none()

        if inserted is not None:
            metrics.guest_purchases_total.labels(outcome="created").inc()
            logger.info(
                "guest_purchase_recorded",
                customer_email=customer_email,
                product_id=str(product_id),
                payment_id=payment_event_id,
                amount_minor=amount_minor,
            )
            return self._purchase_to_domain(inserted)

        # Retry delivery: the unique constraint already holds a row
        existing = await self._find_purchase(customer_email, product_id, payment_event_id)
        if existing is None:
            raise InternalError(
                f"Guest purchase conflict for {payment_event_id} but no row found"
            )

        metrics.guest_purchases_total.labels(outcome="existing").inc()
        logger.info(
            "guest_purchase_idempotent_hit",
            customer_email=customer_email,
            product_id=str(product_id),
            payment_id=payment_event_id,
        )
        return self._purchase_to_domain(existing)

    async def list_unclaimed(self, email: str) -> list[GuestPurchaseData]:
        """List unclaimed purchases for an email, oldest first."""
        stmt = (
            select(GuestPurchase)
            .where(
                GuestPurchase.customer_email == normalize_email(email),
                GuestPurchase.claimed_at.is_(None),
            )
            .order_by(GuestPurchase.created_at)
        )
        result = await self.session.execute(stmt)
        return [self._purchase_to_domain(p) for p in result.scalars().all()]

    async def has_purchased(self, email: str, product_id: UUID) -> bool:
        """Whether any guest purchase (claimed or not) exists for email and product."""
        stmt = (
            select(GuestPurchase.id)
            .where(
                GuestPurchase.customer_email == normalize_email(email),
                GuestPurchase.product_id == product_id,
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def mark_claimed(self, purchase_id: UUID, user_id: UUID) -> GuestPurchaseData:
        """
        Mark a purchase claimed by user_id.

        Compare-and-set on claimed_at IS NULL.

        Raises:
            AlreadyClaimedError: If another request claimed it first
        """
        stmt = (
            update(GuestPurchase)
            .where(
                GuestPurchase.id == purchase_id,
                GuestPurchase.claimed_at.is_(None),
            )
            .values(claimed_by_user_id=user_id, claimed_at=_utc_now())
            .returning(GuestPurchase)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        claimed = result.scalar_one_or_none()
        if claimed is None:
            raise AlreadyClaimedError(purchase_id)
        return self._purchase_to_domain(claimed)

    # ========================================================================
    # Private Helpers
    # ========================================================================

    async def _find_purchase(
        self, customer_email: str, product_id: UUID, payment_event_id: str
    ) -> GuestPurchase | None:
        stmt = select(GuestPurchase).where(
            GuestPurchase.customer_email == customer_email,
            GuestPurchase.product_id == product_id,
            GuestPurchase.payment_event_id == payment_event_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _purchase_to_domain(self, purchase: GuestPurchase) -> GuestPurchaseData:
        return GuestPurchaseData(
            purchase_id=purchase.id,
            customer_email=purchase.customer_email,
            product_id=purchase.product_id,
            payment_event_id=purchase.payment_event_id,
            amount_minor=purchase.amount_minor,
            access_duration_days=purchase.access_duration_days,
            claimed_by_user_id=purchase.claimed_by_user_id,
            claimed_at=purchase.claimed_at,
            created_at=purchase.created_at,
        )
