"""
Claim Reconciler - Converts a user's guest purchases into access grants.

Triggered by the auth provider on registration or login, and by a logged-in
user asking to claim. Safe to run any number of times: only rows with
claimed_at IS NULL are touched, and each row is claimed at most once.
"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from purchase_access.exceptions import AccessError, AlreadyClaimedError
from purchase_access.models.domain import AccessGrantData, ClaimResult
from purchase_access.observability.logging import get_logger
from purchase_access.observability.metrics import metrics
from purchase_access.services.access_grant import AccessGrantService
from purchase_access.services.guest_ledger import GuestPurchaseLedger

logger = get_logger(__name__)


class ClaimReconciler:
    """Claims unclaimed guest purchases for an authenticated user."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.ledger = GuestPurchaseLedger(session)
        self.grants = AccessGrantService(session)

    async def claim_guest_purchases(self, user_id: UUID, user_email: str) -> ClaimResult:
        """
        Claim every unclaimed guest purchase matching user_email.

        Each row is claimed and granted inside its own savepoint: a failed
        grant rolls back that row's claim only and leaves it for the next
        trigger. Commits once at the end.
        """
        unclaimed = await self.ledger.list_unclaimed(user_email)
        if not unclaimed:
            logger.debug("no_guest_purchases_to_claim", user_id=str(user_id))
            return ClaimResult(claimed_count=0)

        grants: list[AccessGrantData] = []
        for purchase in unclaimed:
            try:
                async with self.session.begin_nested():
                    await self.ledger.mark_claimed(purchase.purchase_id, user_id)
                    grant = await self.grants.grant_access(
                        user_id, purchase.product_id, purchase.access_duration_days
                    )
            except AlreadyClaimedError:
                metrics.record_claim("skipped")
                logger.info(
                    "guest_purchase_already_claimed",
                    purchase_id=str(purchase.purchase_id),
                    user_id=str(user_id),
                )
                continue
            except AccessError as e:
                metrics.record_claim("failed")
                logger.error(
                    "guest_purchase_claim_failed",
                    purchase_id=str(purchase.purchase_id),
                    product_id=str(purchase.product_id),
                    user_id=str(user_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            metrics.record_claim("claimed")
            grants.append(grant)

        await self.session.commit()

        logger.info(
            "guest_purchases_claimed",
            user_id=str(user_id),
            found=len(unclaimed),
            claimed_count=len(grants),
        )
        return ClaimResult(claimed_count=len(grants), grants=tuple(grants))
