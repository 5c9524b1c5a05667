"""
One-Time Offer Service - Post-purchase, email-bound, single-use coupons.

At most one offer per payment event (unique payment_event_id). Offers are
never deleted: once expired or consumed they stay for audit.
"""

import secrets
import string
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from purchase_access.config import settings
from purchase_access.db.models import OtoOffer
from purchase_access.exceptions import (
    EmailMismatchError,
    ExpiredOfferError,
    InternalError,
    NotFoundError,
    UsageExhaustedError,
)
from purchase_access.models.api import DiscountType, PaymentStatus
from purchase_access.models.domain import Discount, OtoOfferData, PaymentEventData
from purchase_access.observability.logging import get_logger
from purchase_access.observability.metrics import metrics
from purchase_access.services.access_grant import AccessGrantService
from purchase_access.services.catalog import CatalogService
from purchase_access.services.guest_ledger import GuestPurchaseLedger, normalize_email
from purchase_access.services.ownership import emails_match

logger = get_logger(__name__)

OTO_CODE_PREFIX = "OTO-"
OTO_CODE_LENGTH = 8
_CODE_ALPHABET = string.ascii_uppercase + string.digits
_MAX_CODE_ATTEMPTS = 3


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_oto_code() -> str:
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(OTO_CODE_LENGTH))
    return f"{OTO_CODE_PREFIX}{suffix}"


def clamp_duration_minutes(minutes: int | None) -> int:
    """Offer window in minutes: configured value or default, within [1, max]."""
    if minutes is None:
        minutes = settings.oto_default_duration_minutes
    return max(1, min(minutes, settings.oto_max_duration_minutes))


class OtoService:
    """Generates and redeems one-time offers."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.catalog = CatalogService(session)
        self.grants = AccessGrantService(session)
        self.ledger = GuestPurchaseLedger(session)

    async def generate_oto_offer(
        self,
        event: PaymentEventData,
        owner_id: UUID | None = None,
    ) -> OtoOfferData | None:
        """
        Generate the one-time offer for a completed payment.

        Args:
            event: Completed payment event
            owner_id: User the purchase was granted to, None for guests

        Returns:
            The offer (existing one on retry), or None when the product has no
            offer configured or the customer already owns the offer product
        """
        if event.status != PaymentStatus.COMPLETED:
            return None

        config = await self.catalog.get_oto_config(event.product_id)
        if config is None:
            return None

        existing = await self._find_by_payment_event(event.provider_payment_id)
        if existing is not None:
            metrics.record_oto("existing")
            return self._offer_to_domain(existing)

        if await self._customer_owns(config.oto_product_id, owner_id, event.customer_email):
            metrics.record_oto("skipped_owned")
            logger.info(
                "oto_skipped_already_owned",
                payment_id=event.provider_payment_id,
                oto_product_id=str(config.oto_product_id),
            )
            return None

        now = _utc_now()
        duration_minutes = clamp_duration_minutes(config.duration_minutes)
        expires_at = now + timedelta(minutes=duration_minutes)

        for _ in range(_MAX_CODE_ATTEMPTS):
            created = await self._insert_offer(
                event, config.oto_product_id, config.discount, expires_at, now
            )
            if created is not None:
                await self.session.commit()
                metrics.record_oto("created")
                logger.info(
                    "oto_offer_created",
                    payment_id=event.provider_payment_id,
                    code=created.code,
                    oto_product_id=str(config.oto_product_id),
                    expires_at=expires_at.isoformat(),
                )
                return self._offer_to_domain(created)

            # Conflict: a concurrent delivery created it, or the code collided
            existing = await self._find_by_payment_event(event.provider_payment_id)
            if existing is not None:
                metrics.record_oto("existing")
                return self._offer_to_domain(existing)

        raise InternalError(f"Could not allocate a unique offer code for {event.provider_payment_id}")

    async def redeem_oto_offer(self, code: str, email: str, product_id: UUID) -> OtoOfferData:
        """
        Consume an offer in a follow-up checkout.

        Raises:
            NotFoundError: Unknown code, or the offer targets another product
            EmailMismatchError: Offer is bound to a different email
            ExpiredOfferError: Offer window has closed
            UsageExhaustedError: Offer was already used
        """
        normalized_code = code.strip().upper()
        offer = await self._find_by_code(normalized_code)
        if offer is None or offer.target_product_id != product_id:
            raise NotFoundError("oto_offer", normalized_code)

        if not emails_match(offer.customer_email, email):
            logger.warning(
                "oto_redeem_email_mismatch",
                security_event=True,
                code=normalized_code,
                payment_id=offer.payment_event_id,
            )
            metrics.record_ownership_rejection("oto_email_mismatch")
            raise EmailMismatchError(offer.payment_event_id, None)

        now = _utc_now()
        self._check_redeemable(offer, now)

        stmt = (
            update(OtoOffer)
            .where(
                OtoOffer.id == offer.id,
                OtoOffer.usage_count < OtoOffer.usage_limit,
                OtoOffer.expires_at > now,
            )
            .values(usage_count=OtoOffer.usage_count + 1, consumed_at=now)
            .returning(OtoOffer)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        consumed = result.scalar_one_or_none()

        if consumed is None:
            # Lost the race against a concurrent redemption or the clock
            refreshed = await self._find_by_code(normalized_code)
            self._check_redeemable(refreshed or offer, now)
            raise UsageExhaustedError(normalized_code)

        await self.session.commit()
        metrics.record_oto("redeemed")
        logger.info("oto_offer_redeemed", code=normalized_code, payment_id=offer.payment_event_id)
        return self._offer_to_domain(consumed)

    # ========================================================================
    # Private Helpers
    # ========================================================================

    async def _customer_owns(
        self, oto_product_id: UUID, owner_id: UUID | None, email: str
    ) -> bool:
        if owner_id is not None and await self.grants.has_active_access(owner_id, oto_product_id):
            return True

        email_user_id = await self.catalog.find_user_id_by_email(email)
        if (
            email_user_id is not None
            and email_user_id != owner_id
            and await self.grants.has_active_access(email_user_id, oto_product_id)
        ):
            return True

        return await self.ledger.has_purchased(email, oto_product_id)

    def _check_redeemable(self, offer: OtoOffer, now: datetime) -> None:
        if offer.expires_at <= now:
            raise ExpiredOfferError(offer.code, offer.expires_at)
        if offer.usage_count >= offer.usage_limit:
            raise UsageExhaustedError(offer.code)

    async def _insert_offer(
        self,
        event: PaymentEventData,
        oto_product_id: UUID,
        discount: Discount,
        expires_at: datetime,
        now: datetime,
    ) -> OtoOffer | None:
        stmt = (
            pg_insert(OtoOffer)
            .values(
                id=uuid4(),
                code=generate_oto_code(),
                customer_email=normalize_email(event.customer_email),
                payment_event_id=event.provider_payment_id,
                source_product_id=event.product_id,
                target_product_id=oto_product_id,
                discount_type=discount.discount_type.value,
                discount_value=discount.value,
                expires_at=expires_at,
                usage_limit=1,
                usage_count=0,
                created_at=now,
            )
            .on_conflict_do_nothing()
            .returning(OtoOffer)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_by_payment_event(self, payment_event_id: str) -> OtoOffer | None:
        stmt = select(OtoOffer).where(OtoOffer.payment_event_id == payment_event_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_by_code(self, code: str) -> OtoOffer | None:
        stmt = select(OtoOffer).where(OtoOffer.code == code)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _offer_to_domain(self, offer: OtoOffer) -> OtoOfferData:
        return OtoOfferData(
            offer_id=offer.id,
            code=offer.code,
            customer_email=offer.customer_email,
            payment_event_id=offer.payment_event_id,
            source_product_id=offer.source_product_id,
            target_product_id=offer.target_product_id,
            discount=Discount(
                discount_type=DiscountType(offer.discount_type),
                value=offer.discount_value,
            ),
            expires_at=offer.expires_at,
            usage_limit=offer.usage_limit,
            usage_count=offer.usage_count,
            consumed_at=offer.consumed_at,
            created_at=offer.created_at,
        )
