"""
Payment Event Service - Lifecycle of a provider payment.

NO DICTIONARIES - All operations use strongly typed domain models.

States: pending -> {completed, failed, abandoned, expired}. Every transition
is a conditional UPDATE on the current status, so concurrent deliveries
cannot both move the same row. Terminal rows only change through refund
annotation and fulfilment markers.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from purchase_access.config import settings
from purchase_access.db.models import PaymentEvent
from purchase_access.exceptions import (
    AlreadyGrantedError,
    InternalError,
    InvalidRefundError,
    NotFoundError,
)
from purchase_access.models.api import FulfilmentLeg, PaymentStatus
from purchase_access.models.domain import (
    AbandonedCartStats,
    PaymentCompletion,
    PaymentEventData,
    PaymentMetadata,
    PendingPaymentIntent,
)
from purchase_access.observability.logging import get_logger
from purchase_access.observability.metrics import metrics
from purchase_access.services.payment_state import validate_transition

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class PaymentEventService:
    """
    Payment event store and state machine.

    create_pending, mark_failed, mark_expired, mark_expired_pending and
    record_refund commit. record_completion, set_resolved_owner and
    claim_leg only flush so the reconciler can group them with grants.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ========================================================================
    # Creation / Completion
    # ========================================================================

    async def create_pending(self, intent: PendingPaymentIntent) -> PaymentEventData:
        """
        Record a checkout session as pending.

        Idempotent on provider_payment_id: a repeat call returns the existing
        row whatever its status.
        """
        now = _utc_now()
        expires_at = intent.expires_at or now + timedelta(hours=settings.pending_payment_ttl_hours)

        stmt = (
            pg_insert(PaymentEvent)
            .values(
                id=uuid4(),
                provider_payment_id=intent.provider_payment_id,
                product_id=intent.product_id,
                declared_user_id=intent.declared_user_id,
                customer_email=intent.customer_email,
                amount_minor=intent.amount_minor,
                currency=intent.currency,
                status=PaymentStatus.PENDING.value,
                expires_at=expires_at,
                refunded_amount_minor=0,
                payment_metadata=intent.metadata.to_json(),
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["provider_payment_id"])
            .returning(PaymentEvent)
        )
        result = await self.session.execute(stmt)
        created = result.scalar_one_or_none()

        if created is None:
            existing = await self._find_by_provider_id(intent.provider_payment_id)
            if existing is None:
                raise InternalError(
                    f"Payment {intent.provider_payment_id} conflicted but was not found"
                )
            logger.info(
                "pending_payment_idempotent_hit",
                payment_id=intent.provider_payment_id,
                status=existing.status,
            )
            return self._event_to_domain(existing)

        await self.session.commit()
        logger.info(
            "pending_payment_created",
            payment_id=intent.provider_payment_id,
            product_id=str(intent.product_id),
            amount_minor=intent.amount_minor,
            expires_at=expires_at.isoformat(),
        )
        return self._event_to_domain(created)

    async def record_completion(self, completion: PaymentCompletion) -> PaymentEventData:
        """
        Move a payment to completed, creating the row if no checkout recorded it.

        Raises:
            AlreadyGrantedError: Payment was already completed (duplicate delivery)
            InvalidTransitionError: Payment already ended as failed/abandoned/expired
        """
        for _ in range(2):
            event = await self._complete_pending(completion)
            if event is not None:
                metrics.record_transition(PaymentStatus.PENDING.value, PaymentStatus.COMPLETED.value)
                break

            event = await self._insert_completed(completion)
            if event is not None:
                metrics.record_transition("none", PaymentStatus.COMPLETED.value)
                break

            existing = await self._find_by_provider_id(completion.provider_payment_id)
            if existing is None:
                continue

            current = PaymentStatus(existing.status)
            if current == PaymentStatus.COMPLETED:
                raise AlreadyGrantedError(completion.provider_payment_id)
            if current == PaymentStatus.PENDING:
                # Inserted as pending between our update and insert
                continue

            logger.error(
                "payment_completion_rejected",
                payment_id=completion.provider_payment_id,
                current_status=current.value,
            )
            validate_transition(current, PaymentStatus.COMPLETED)
        else:
            raise InternalError(
                f"Could not record completion for {completion.provider_payment_id}"
            )

        metrics.payment_amount_minor.observe(completion.amount_minor)
        logger.info(
            "payment_completed",
            payment_id=completion.provider_payment_id,
            product_id=str(completion.product_id),
            amount_minor=completion.amount_minor,
            currency=completion.currency,
        )
        return self._event_to_domain(event)

    async def set_resolved_owner(self, event_id: UUID, user_id: UUID) -> None:
        """Record which user the payment's access was granted to."""
        stmt = (
            update(PaymentEvent)
            .where(PaymentEvent.id == event_id)
            .values(user_id=user_id, updated_at=_utc_now())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def claim_leg(self, event_id: UUID, leg: FulfilmentLeg) -> bool:
        """
        Set a leg's fulfilment marker if it is still unset.

        Returns True when this caller won the marker and must fulfil the leg.
        Callers run this in the same savepoint as the grant so a failed grant
        clears the marker again.
        """
        column = (
            PaymentEvent.main_fulfilled_at
            if leg == FulfilmentLeg.MAIN
            else PaymentEvent.bump_fulfilled_at
        )
        stmt = (
            update(PaymentEvent)
            .where(PaymentEvent.id == event_id, column.is_(None))
            .values({column: _utc_now()})
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # ========================================================================
    # Terminal Transitions
    # ========================================================================

    async def mark_failed(self, provider_payment_id: str) -> PaymentEventData:
        """Provider reported the payment as failed."""
        return await self._transition(provider_payment_id, PaymentStatus.FAILED)

    async def mark_expired(self, provider_payment_id: str) -> PaymentEventData:
        """Provider reported the checkout session as expired."""
        return await self._transition(provider_payment_id, PaymentStatus.EXPIRED)

    async def mark_expired_pending(self, now: datetime | None = None) -> int:
        """
        Sweep pending payments past their expiry into abandoned.

        Safe to run on any schedule: rows that are not pending or not yet
        expired are never touched, so a second run affects zero rows.

        Returns:
            Number of payments transitioned
        """
        now = now or _utc_now()
        stmt = (
            update(PaymentEvent)
            .where(
                PaymentEvent.status == PaymentStatus.PENDING.value,
                PaymentEvent.expires_at.is_not(None),
                PaymentEvent.expires_at < now,
            )
            .values(
                status=PaymentStatus.ABANDONED.value,
                abandoned_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        count = result.rowcount or 0
        await self.session.commit()

        if count:
            metrics.payments_abandoned_total.inc(count)
            metrics.payment_transitions_total.labels(
                from_status=PaymentStatus.PENDING.value,
                to_status=PaymentStatus.ABANDONED.value,
            ).inc(count)
        logger.info("pending_payments_swept", abandoned_count=count)
        return count

    async def record_refund(
        self, provider_payment_id: str, refunded_total_minor: int
    ) -> PaymentEventData:
        """
        Annotate a completed payment with its cumulative refunded amount.

        provider_payment_id may also be the payment intent behind a checkout
        session, which is what charge refunds reference.

        The provider reports the running total, so replays and out-of-order
        deliveries with a smaller total leave the row unchanged.

        Raises:
            NotFoundError: Unknown payment
            InvalidRefundError: Payment not completed, or total exceeds the amount
        """
        if refunded_total_minor <= 0:
            raise InvalidRefundError(provider_payment_id, "refund amount must be positive")

        now = _utc_now()
        stmt = (
            update(PaymentEvent)
            .where(
                or_(
                    PaymentEvent.provider_payment_id == provider_payment_id,
                    PaymentEvent.payment_intent_id == provider_payment_id,
                ),
                PaymentEvent.status == PaymentStatus.COMPLETED.value,
                PaymentEvent.amount_minor >= refunded_total_minor,
                PaymentEvent.refunded_amount_minor <= refunded_total_minor,
            )
            .values(refunded_amount_minor=refunded_total_minor, refunded_at=now, updated_at=now)
            .returning(PaymentEvent)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        updated = result.scalar_one_or_none()

        if updated is None:
            existing = await self._find_for_refund(provider_payment_id)
            if existing is None:
                raise NotFoundError("payment_event", provider_payment_id)
            if existing.status != PaymentStatus.COMPLETED.value:
                raise InvalidRefundError(
                    provider_payment_id, f"payment is {existing.status}, not completed"
                )
            if refunded_total_minor > existing.amount_minor:
                raise InvalidRefundError(
                    provider_payment_id,
                    f"refund {refunded_total_minor} exceeds amount {existing.amount_minor}",
                )
            logger.info(
                "refund_stale_total_ignored",
                payment_id=provider_payment_id,
                refunded_total_minor=refunded_total_minor,
                recorded_total_minor=existing.refunded_amount_minor,
            )
            return self._event_to_domain(existing)

        await self.session.commit()
        logger.info(
            "payment_refund_recorded",
            payment_id=provider_payment_id,
            refunded_total_minor=refunded_total_minor,
        )
        return self._event_to_domain(updated)

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_by_provider_id(self, provider_payment_id: str) -> PaymentEventData | None:
        event = await self._find_by_provider_id(provider_payment_id)
        return self._event_to_domain(event) if event else None

    async def abandoned_cart_stats(self, days: int = 7) -> AbandonedCartStats:
        """Counts and values of pending and abandoned payments created in the last `days` days."""
        since = _utc_now() - timedelta(days=days)
        open_statuses = (PaymentStatus.PENDING.value, PaymentStatus.ABANDONED.value)

        stmt = select(
            func.count().filter(PaymentEvent.status == PaymentStatus.PENDING.value),
            func.count().filter(PaymentEvent.status == PaymentStatus.ABANDONED.value),
            func.coalesce(func.sum(PaymentEvent.amount_minor), 0),
            func.coalesce(func.avg(PaymentEvent.amount_minor), 0),
        ).where(
            PaymentEvent.status.in_(open_statuses),
            PaymentEvent.created_at > since,
        )
        result = await self.session.execute(stmt)
        total_pending, total_abandoned, total_value, average_value = result.one()

        return AbandonedCartStats(
            total_pending=int(total_pending),
            total_abandoned=int(total_abandoned),
            total_value_minor=int(total_value),
            average_value_minor=int(round(average_value)),
            period_days=days,
        )

    # ========================================================================
    # Private Helpers
    # ========================================================================

    async def _transition(
        self, provider_payment_id: str, new_status: PaymentStatus
    ) -> PaymentEventData:
        now = _utc_now()
        values: dict[str, Any] = {"status": new_status.value, "updated_at": now}
        if new_status == PaymentStatus.FAILED:
            values["failed_at"] = now

        stmt = (
            update(PaymentEvent)
            .where(
                PaymentEvent.provider_payment_id == provider_payment_id,
                PaymentEvent.status == PaymentStatus.PENDING.value,
            )
            .values(**values)
            .returning(PaymentEvent)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        updated = result.scalar_one_or_none()

        if updated is None:
            existing = await self._find_by_provider_id(provider_payment_id)
            if existing is None:
                raise NotFoundError("payment_event", provider_payment_id)
            current = PaymentStatus(existing.status)
            if current == new_status:
                logger.info(
                    "payment_transition_idempotent_hit",
                    payment_id=provider_payment_id,
                    status=current.value,
                )
                return self._event_to_domain(existing)
            validate_transition(current, new_status)

        await self.session.commit()
        metrics.record_transition(PaymentStatus.PENDING.value, new_status.value)
        logger.info(
            "payment_status_changed",
            payment_id=provider_payment_id,
            from_status=PaymentStatus.PENDING.value,
            to_status=new_status.value,
        )
        return self._event_to_domain(updated)

    async def _complete_pending(self, completion: PaymentCompletion) -> PaymentEvent | None:
        now = _utc_now()
        values: dict[str, Any] = {
            "status": PaymentStatus.COMPLETED.value,
            "completed_at": now,
            "expires_at": None,
            "customer_email": completion.customer_email,
            "amount_minor": completion.amount_minor,
            "currency": completion.currency,
            "updated_at": now,
        }
        if completion.payment_intent_id is not None:
            values["payment_intent_id"] = completion.payment_intent_id
        # Provider metadata wins, but never erase what checkout recorded
        if completion.declared_user_id is not None:
            values["declared_user_id"] = completion.declared_user_id
        if completion.metadata.entries:
            values["payment_metadata"] = completion.metadata.to_json()

        stmt = (
            update(PaymentEvent)
            .where(
                PaymentEvent.provider_payment_id == completion.provider_payment_id,
                PaymentEvent.status == PaymentStatus.PENDING.value,
            )
            .values(**values)
            .returning(PaymentEvent)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _insert_completed(self, completion: PaymentCompletion) -> PaymentEvent | None:
        now = _utc_now()
        stmt = (
            pg_insert(PaymentEvent)
            .values(
                id=uuid4(),
                provider_payment_id=completion.provider_payment_id,
                payment_intent_id=completion.payment_intent_id,
                product_id=completion.product_id,
                declared_user_id=completion.declared_user_id,
                customer_email=completion.customer_email,
                amount_minor=completion.amount_minor,
                currency=completion.currency,
                status=PaymentStatus.COMPLETED.value,
                completed_at=now,
                refunded_amount_minor=0,
                payment_metadata=completion.metadata.to_json(),
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["provider_payment_id"])
            .returning(PaymentEvent)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_by_provider_id(self, provider_payment_id: str) -> PaymentEvent | None:
        stmt = select(PaymentEvent).where(PaymentEvent.provider_payment_id == provider_payment_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_for_refund(self, payment_id: str) -> PaymentEvent | None:
        stmt = (
            select(PaymentEvent)
            .where(
                or_(
                    PaymentEvent.provider_payment_id == payment_id,
                    PaymentEvent.payment_intent_id == payment_id,
                )
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _event_to_domain(self, event: PaymentEvent) -> PaymentEventData:
        return PaymentEventData(
            event_id=event.id,
            provider_payment_id=event.provider_payment_id,
            product_id=event.product_id,
            declared_user_id=event.declared_user_id,
            user_id=event.user_id,
            customer_email=event.customer_email,
            amount_minor=event.amount_minor,
            currency=event.currency,
            status=PaymentStatus(event.status),
            metadata=PaymentMetadata.from_json(event.payment_metadata),
            expires_at=event.expires_at,
            completed_at=event.completed_at,
            abandoned_at=event.abandoned_at,
            refunded_amount_minor=event.refunded_amount_minor,
            main_fulfilled_at=event.main_fulfilled_at,
            bump_fulfilled_at=event.bump_fulfilled_at,
            created_at=event.created_at,
        )
