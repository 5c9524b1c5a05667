"""
Tests for the access grant primitive.

Covers expiry arithmetic, the insert/extend paths, the retry policy and
input validation.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st
from sqlalchemy.exc import DBAPIError

from purchase_access.exceptions import InternalError, InvalidDurationError, NotFoundError
from purchase_access.services.access_grant import (
    AccessGrantService,
    _VersionConflict,
    compute_extended_expiry,
    compute_initial_expiry,
)
from tests.conftest import create_mock_grant, make_grant_data, make_result

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

aware_datetimes = st.datetimes(
    min_value=datetime(2020, 1, 1),
    max_value=datetime(2035, 1, 1),
    timezones=st.just(UTC),
)


# ============================================================================
# Expiry Arithmetic
# ============================================================================


class TestComputeExpiry:
    """Tests for compute_initial_expiry and compute_extended_expiry."""

    def test_initial_expiry_limited(self):
        assert compute_initial_expiry(30, NOW) == NOW + timedelta(days=30)

    def test_initial_expiry_unlimited(self):
        assert compute_initial_expiry(None, NOW) is None

    def test_extend_active_grant_stacks_on_expiry(self):
        existing = NOW + timedelta(days=10)
        assert compute_extended_expiry(existing, 30, NOW) == existing + timedelta(days=30)

    def test_extend_lapsed_grant_starts_from_now(self):
        existing = NOW - timedelta(days=10)
        assert compute_extended_expiry(existing, 30, NOW) == NOW + timedelta(days=30)

    def test_unlimited_existing_stays_unlimited(self):
        assert compute_extended_expiry(None, 30, NOW) is None

    def test_unlimited_duration_makes_unlimited(self):
        assert compute_extended_expiry(NOW + timedelta(days=5), None, NOW) is None

    @given(
        existing=st.one_of(st.none(), aware_datetimes),
        duration=st.one_of(st.none(), st.integers(min_value=1, max_value=3650)),
        now=aware_datetimes,
    )
    def test_expiry_never_moves_backward(self, existing, duration, now):
        """Property: re-granting never shortens access."""
        new_expiry = compute_extended_expiry(existing, duration, now)

        if new_expiry is None:
            return
        assert existing is not None
        assert new_expiry > existing
        assert new_expiry >= now + timedelta(days=duration)


# ============================================================================
# grant_access
# ============================================================================


@pytest.fixture
def grant_service(db_session):
    service = AccessGrantService(db_session)
    service.catalog.get_active_product = AsyncMock()
    service.catalog.user_exists = AsyncMock(return_value=True)
    return service


class TestGrantAccessValidation:
    """Tests for grant_access input validation."""

    @pytest.mark.parametrize("duration", [0, -1, -30])
    async def test_non_positive_duration_rejected(self, grant_service, duration):
        with pytest.raises(InvalidDurationError) as exc_info:
            await grant_service.grant_access(uuid4(), uuid4(), duration)

        assert exc_info.value.duration_days == duration
        grant_service.catalog.get_active_product.assert_not_called()

    async def test_missing_product_propagates(self, grant_service):
        product_id = uuid4()
        grant_service.catalog.get_active_product.side_effect = NotFoundError(
            "product", str(product_id)
        )

        with pytest.raises(NotFoundError) as exc_info:
            await grant_service.grant_access(uuid4(), product_id, 30)

        assert exc_info.value.resource == "product"

    async def test_missing_user_rejected(self, grant_service, db_session):
        grant_service.catalog.user_exists.return_value = False

        with pytest.raises(NotFoundError) as exc_info:
            await grant_service.grant_access(uuid4(), uuid4(), 30)

        assert exc_info.value.resource == "user"
        db_session.begin_nested.assert_not_called()


class TestGrantAccessUpsert:
    """Tests for the insert and extend paths."""

    async def test_first_grant_inserts(self, grant_service, db_session):
        user_id, product_id = uuid4(), uuid4()
        row = create_mock_grant(user_id, product_id, expires_at=NOW + timedelta(days=30))
        db_session.execute.return_value = make_result(scalar=row)

        grant = await grant_service.grant_access(user_id, product_id, 30)

        assert grant.created is True
        assert grant.user_id == user_id
        assert grant.access_expires_at == row.access_expires_at
        db_session.begin_nested.assert_called_once()
        # Insert only, no lock or update
        assert db_session.execute.await_count == 1

    async def test_existing_grant_extended(self, grant_service):
        user_id, product_id = uuid4(), uuid4()
        existing = create_mock_grant(user_id, product_id, expires_at=NOW + timedelta(days=5))
        updated = create_mock_grant(user_id, product_id, expires_at=NOW + timedelta(days=35))

        with (
            patch.object(grant_service, "_insert_if_absent", new_callable=AsyncMock) as mock_insert,
            patch.object(grant_service, "_lock_grant", new_callable=AsyncMock) as mock_lock,
            patch.object(grant_service, "_compare_and_set", new_callable=AsyncMock) as mock_cas,
        ):
            mock_insert.return_value = None
            mock_lock.return_value = existing
            mock_cas.return_value = updated

            grant = await grant_service.grant_access(user_id, product_id, 30)

        assert grant.created is False
        assert grant.access_expires_at == updated.access_expires_at
        cas_args = mock_cas.await_args.args
        assert cas_args[0] is existing
        # New expiry stacks on the existing one
        assert cas_args[1] == existing.access_expires_at + timedelta(days=30)

    async def test_unlimited_existing_grant_stays_unlimited(self, grant_service):
        existing = create_mock_grant(expires_at=None, duration_days=None)
        updated = create_mock_grant(expires_at=None, duration_days=None)

        with (
            patch.object(grant_service, "_insert_if_absent", new_callable=AsyncMock, return_value=None),
            patch.object(grant_service, "_lock_grant", new_callable=AsyncMock, return_value=existing),
            patch.object(
                grant_service, "_compare_and_set", new_callable=AsyncMock, return_value=updated
            ) as mock_cas,
        ):
            grant = await grant_service.grant_access(existing.user_id, existing.product_id, 30)

        assert grant.is_unlimited
        assert mock_cas.await_args.args[1] is None


class TestGrantAccessRetry:
    """Tests for the retry policy."""

    async def test_lost_compare_and_set_retried(self, grant_service, db_session):
        expected = make_grant_data(created=False)

        with patch.object(grant_service, "_upsert_grant", new_callable=AsyncMock) as mock_upsert:
            mock_upsert.side_effect = [_VersionConflict(), expected]

            grant = await grant_service.grant_access(expected.user_id, expected.product_id, 30)

        assert grant is expected
        assert mock_upsert.await_count == 2
        assert db_session.begin_nested.call_count == 2

    async def test_transient_database_error_retried(self, grant_service):
        expected = make_grant_data()
        db_error = DBAPIError("INSERT", {}, Exception("deadlock detected"))

        with patch.object(grant_service, "_upsert_grant", new_callable=AsyncMock) as mock_upsert:
            mock_upsert.side_effect = [db_error, expected]

            grant = await grant_service.grant_access(expected.user_id, expected.product_id, 30)

        assert grant is expected

    async def test_persistent_failure_raises_internal_error(self, grant_service):
        with patch.object(grant_service, "_upsert_grant", new_callable=AsyncMock) as mock_upsert:
            mock_upsert.side_effect = _VersionConflict()

            with pytest.raises(InternalError):
                await grant_service.grant_access(uuid4(), uuid4(), 30)

        assert mock_upsert.await_count == 2

    async def test_vanished_row_is_a_conflict(self, grant_service):
        """Row deleted between insert and lock re-runs the attempt."""
        inserted = create_mock_grant()

        with (
            patch.object(grant_service, "_insert_if_absent", new_callable=AsyncMock) as mock_insert,
            patch.object(grant_service, "_lock_grant", new_callable=AsyncMock, return_value=None),
        ):
            mock_insert.side_effect = [None, inserted]

            grant = await grant_service.grant_access(inserted.user_id, inserted.product_id, 30)

        assert grant.created is True


class TestGetAccess:
    """Tests for get_access and has_active_access."""

    async def test_no_grant(self, grant_service, db_session):
        db_session.execute.return_value = make_result(scalar=None)

        assert await grant_service.get_access(uuid4(), uuid4()) is None
        assert await grant_service.has_active_access(uuid4(), uuid4()) is False

    async def test_active_grant(self, grant_service, db_session):
        row = create_mock_grant(expires_at=datetime.now(UTC) + timedelta(days=1))
        db_session.execute.return_value = make_result(scalar=row)

        assert await grant_service.has_active_access(row.user_id, row.product_id) is True

    async def test_lapsed_grant_inactive(self, grant_service, db_session):
        row = create_mock_grant(expires_at=datetime.now(UTC) - timedelta(days=1))
        db_session.execute.return_value = make_result(scalar=row)

        assert await grant_service.has_active_access(row.user_id, row.product_id) is False

    async def test_unlimited_grant_active(self, grant_service, db_session):
        row = create_mock_grant(expires_at=None, duration_days=None)
        db_session.execute.return_value = make_result(scalar=row)

        grant = await grant_service.get_access(row.user_id, row.product_id)

        assert grant.is_unlimited
        assert grant.is_active(datetime.now(UTC)) is True
