"""
Tests for the payment event service.

Covers pending creation, completion, terminal transitions, the abandoned
sweep, refund annotation and reporting.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from purchase_access.exceptions import (
    AlreadyGrantedError,
    InternalError,
    InvalidRefundError,
    InvalidTransitionError,
    NotFoundError,
)
from purchase_access.models.api import FulfilmentLeg, PaymentStatus
from purchase_access.models.domain import BumpMetadata, PaymentMetadata, PendingPaymentIntent
from purchase_access.services.payment_events import PaymentEventService
from tests.conftest import create_mock_payment_event, make_result


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


@pytest.fixture
def intent() -> PendingPaymentIntent:
    return PendingPaymentIntent(
        provider_payment_id="cs_test_pending",
        product_id=uuid4(),
        customer_email="cart@example.com",
        amount_minor=2500,
        currency="USD",
        metadata=PaymentMetadata(entries=(BumpMetadata(bump_product_id=uuid4()),)),
    )


class TestCreatePending:
    """Tests for create_pending."""

    async def test_creates_and_commits(self, db_session, intent):
        row = create_mock_payment_event(
            provider_payment_id=intent.provider_payment_id,
            status=PaymentStatus.PENDING,
            metadata=intent.metadata.to_json(),
        )
        db_session.execute.return_value = make_result(scalar=row)
        service = PaymentEventService(db_session)

        event = await service.create_pending(intent)

        assert event.status == PaymentStatus.PENDING
        assert event.metadata.bump == intent.metadata.bump
        db_session.commit.assert_awaited_once()

    async def test_repeat_returns_existing(self, db_session, intent):
        existing = create_mock_payment_event(
            provider_payment_id=intent.provider_payment_id, status=PaymentStatus.COMPLETED
        )
        db_session.execute.side_effect = [make_result(scalar=None), make_result(scalar=existing)]
        service = PaymentEventService(db_session)

        event = await service.create_pending(intent)

        assert event.status == PaymentStatus.COMPLETED
        db_session.commit.assert_not_called()


class TestRecordCompletion:
    """Tests for record_completion."""

    async def test_pending_row_completed(self, db_session, completion):
        row = create_mock_payment_event(provider_payment_id=completion.provider_payment_id)
        service = PaymentEventService(db_session)

        with (
            patch.object(service, "_complete_pending", new_callable=AsyncMock, return_value=row),
            patch.object(service, "_insert_completed", new_callable=AsyncMock) as mock_insert,
        ):
            event = await service.record_completion(completion)

        assert event.status == PaymentStatus.COMPLETED
        mock_insert.assert_not_called()
        # Completion joins the reconciler's transaction
        db_session.commit.assert_not_called()

    async def test_unknown_payment_inserted_completed(self, db_session, completion):
        row = create_mock_payment_event(provider_payment_id=completion.provider_payment_id)
        service = PaymentEventService(db_session)

        with (
            patch.object(service, "_complete_pending", new_callable=AsyncMock, return_value=None),
            patch.object(service, "_insert_completed", new_callable=AsyncMock, return_value=row),
        ):
            event = await service.record_completion(completion)

        assert event.provider_payment_id == completion.provider_payment_id

    async def test_duplicate_delivery_raises_already_granted(self, db_session, completion):
        existing = create_mock_payment_event(status=PaymentStatus.COMPLETED)
        service = PaymentEventService(db_session)

        with (
            patch.object(service, "_complete_pending", new_callable=AsyncMock, return_value=None),
            patch.object(service, "_insert_completed", new_callable=AsyncMock, return_value=None),
            patch.object(
                service, "_find_by_provider_id", new_callable=AsyncMock, return_value=existing
            ),
        ):
            with pytest.raises(AlreadyGrantedError):
                await service.record_completion(completion)

    @pytest.mark.parametrize(
        "status", [PaymentStatus.ABANDONED, PaymentStatus.EXPIRED, PaymentStatus.FAILED]
    )
    async def test_completion_after_terminal_state_rejected(self, db_session, completion, status):
        existing = create_mock_payment_event(status=status)
        service = PaymentEventService(db_session)

        with (
            patch.object(service, "_complete_pending", new_callable=AsyncMock, return_value=None),
            patch.object(service, "_insert_completed", new_callable=AsyncMock, return_value=None),
            patch.object(
                service, "_find_by_provider_id", new_callable=AsyncMock, return_value=existing
            ),
        ):
            with pytest.raises(InvalidTransitionError):
                await service.record_completion(completion)

    async def test_race_with_pending_insert_retries(self, db_session, completion):
        """A pending row appearing between update and insert is completed on the retry."""
        racing = create_mock_payment_event(status=PaymentStatus.PENDING)
        completed = create_mock_payment_event(provider_payment_id=completion.provider_payment_id)
        service = PaymentEventService(db_session)

        with (
            patch.object(service, "_complete_pending", new_callable=AsyncMock) as mock_complete,
            patch.object(service, "_insert_completed", new_callable=AsyncMock, return_value=None),
            patch.object(
                service, "_find_by_provider_id", new_callable=AsyncMock, return_value=racing
            ),
        ):
            mock_complete.side_effect = [None, completed]
            event = await service.record_completion(completion)

        assert event.status == PaymentStatus.COMPLETED
        assert mock_complete.await_count == 2

    async def test_persistent_race_raises_internal_error(self, db_session, completion):
        service = PaymentEventService(db_session)

        with (
            patch.object(service, "_complete_pending", new_callable=AsyncMock, return_value=None),
            patch.object(service, "_insert_completed", new_callable=AsyncMock, return_value=None),
            patch.object(service, "_find_by_provider_id", new_callable=AsyncMock, return_value=None),
        ):
            with pytest.raises(InternalError):
                await service.record_completion(completion)


class TestFulfilmentMarkers:
    """Tests for claim_leg."""

    async def test_first_claim_wins(self, db_session):
        db_session.execute.return_value = make_result(rowcount=1)
        service = PaymentEventService(db_session)

        assert await service.claim_leg(uuid4(), FulfilmentLeg.MAIN) is True
        assert "main_fulfilled_at IS NULL" in _sql(db_session.execute.await_args.args[0])

    async def test_already_fulfilled_leg(self, db_session):
        db_session.execute.return_value = make_result(rowcount=0)
        service = PaymentEventService(db_session)

        assert await service.claim_leg(uuid4(), FulfilmentLeg.BUMP) is False
        assert "bump_fulfilled_at IS NULL" in _sql(db_session.execute.await_args.args[0])


class TestTerminalTransitions:
    """Tests for mark_failed and mark_expired."""

    async def test_pending_marked_failed(self, db_session):
        row = create_mock_payment_event(status=PaymentStatus.FAILED)
        db_session.execute.return_value = make_result(scalar=row)
        service = PaymentEventService(db_session)

        event = await service.mark_failed(row.provider_payment_id)

        assert event.status == PaymentStatus.FAILED
        db_session.commit.assert_awaited_once()

    async def test_repeat_is_idempotent(self, db_session):
        existing = create_mock_payment_event(status=PaymentStatus.EXPIRED)
        db_session.execute.side_effect = [make_result(scalar=None), make_result(scalar=existing)]
        service = PaymentEventService(db_session)

        event = await service.mark_expired(existing.provider_payment_id)

        assert event.status == PaymentStatus.EXPIRED
        db_session.commit.assert_not_called()

    async def test_completed_cannot_fail(self, db_session):
        existing = create_mock_payment_event(status=PaymentStatus.COMPLETED)
        db_session.execute.side_effect = [make_result(scalar=None), make_result(scalar=existing)]
        service = PaymentEventService(db_session)

        with pytest.raises(InvalidTransitionError):
            await service.mark_failed(existing.provider_payment_id)

    async def test_unknown_payment(self, db_session):
        db_session.execute.side_effect = [make_result(scalar=None), make_result(scalar=None)]
        service = PaymentEventService(db_session)

        with pytest.raises(NotFoundError):
            await service.mark_expired("cs_missing")


class TestAbandonedSweep:
    """Tests for mark_expired_pending."""

    async def test_sweeps_expired_pending(self, db_session):
        now = datetime(2026, 10, 18, tzinfo=UTC)
        db_session.execute.return_value = make_result(rowcount=3)
        service = PaymentEventService(db_session)

        count = await service.mark_expired_pending(now)

        assert count == 3
        db_session.commit.assert_awaited_once()
        sql = _sql(db_session.execute.await_args.args[0])
        assert "payment_events.status = " in sql
        assert "payment_events.expires_at < " in sql

    async def test_only_pending_rows_are_swept(self, db_session):
        """Terminal rows never match, so a repeated sweep changes nothing."""
        now = datetime(2026, 10, 18, tzinfo=UTC)
        service = PaymentEventService(db_session)

        count = await service.mark_expired_pending(now)

        assert count == 0
        compiled = db_session.execute.await_args.args[0].compile(dialect=postgresql.dialect())
        where = str(compiled).split(" WHERE ", 1)[1]
        assert "payment_events.status = %(status_1)s" in where
        assert "payment_events.expires_at IS NOT NULL" in where
        assert compiled.params["status_1"] == PaymentStatus.PENDING.value
        assert compiled.params["status"] == PaymentStatus.ABANDONED.value
        assert compiled.params["expires_at_1"] == now


class TestRecordRefund:
    """Tests for record_refund."""

    @pytest.mark.parametrize("amount", [0, -100])
    async def test_non_positive_refund_rejected(self, db_session, amount):
        service = PaymentEventService(db_session)

        with pytest.raises(InvalidRefundError):
            await service.record_refund("cs_test_123", amount)

        db_session.execute.assert_not_called()

    async def test_refund_recorded(self, db_session):
        row = create_mock_payment_event(refunded_amount_minor=1000)
        db_session.execute.return_value = make_result(scalar=row)
        service = PaymentEventService(db_session)

        event = await service.record_refund("pi_test_123", 1000)

        assert event.refunded_amount_minor == 1000
        # Access is untouched; only the payment is annotated
        assert event.status == PaymentStatus.COMPLETED
        db_session.commit.assert_awaited_once()

    async def test_unknown_payment(self, db_session):
        db_session.execute.side_effect = [make_result(scalar=None), make_result(scalar=None)]
        service = PaymentEventService(db_session)

        with pytest.raises(NotFoundError):
            await service.record_refund("pi_missing", 100)

    async def test_refund_of_pending_rejected(self, db_session):
        existing = create_mock_payment_event(status=PaymentStatus.PENDING)
        db_session.execute.side_effect = [make_result(scalar=None), make_result(scalar=existing)]
        service = PaymentEventService(db_session)

        with pytest.raises(InvalidRefundError, match="not completed"):
            await service.record_refund(existing.provider_payment_id, 100)

    async def test_refund_exceeding_amount_rejected(self, db_session):
        existing = create_mock_payment_event(amount_minor=4900)
        db_session.execute.side_effect = [make_result(scalar=None), make_result(scalar=existing)]
        service = PaymentEventService(db_session)

        with pytest.raises(InvalidRefundError, match="exceeds"):
            await service.record_refund(existing.provider_payment_id, 5000)

    async def test_stale_total_leaves_row_unchanged(self, db_session):
        existing = create_mock_payment_event(refunded_amount_minor=3000)
        db_session.execute.side_effect = [make_result(scalar=None), make_result(scalar=existing)]
        service = PaymentEventService(db_session)

        event = await service.record_refund(existing.provider_payment_id, 1000)

        assert event.refunded_amount_minor == 3000
        db_session.commit.assert_not_called()


class TestReads:
    async def test_get_by_provider_id_missing(self, db_session):
        service = PaymentEventService(db_session)

        assert await service.get_by_provider_id("cs_missing") is None

    async def test_abandoned_cart_stats(self, db_session):
        db_session.execute.return_value = make_result(one=(2, 3, 12500, 2500.4))
        service = PaymentEventService(db_session)

        stats = await service.abandoned_cart_stats(days=14)

        assert stats.total_pending == 2
        assert stats.total_abandoned == 3
        assert stats.total_value_minor == 12500
        assert stats.average_value_minor == 2500
        assert stats.period_days == 14
