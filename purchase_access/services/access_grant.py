"""
Access Grant Service - Creates or extends a user's access to a product.

NO DICTIONARIES - All operations use strongly typed domain models.

Concurrency:
    1. INSERT ... ON CONFLICT (user_id, product_id) DO NOTHING
    2. On conflict: SELECT ... FOR UPDATE, compute the new expiry
    3. UPDATE ... WHERE version = <read version> (compare-and-set)

Each attempt runs in its own savepoint. A lost compare-and-set or a
transient database error re-runs the read-modify-write path; once
settings.grant_max_attempts is used up the failure surfaces as InternalError.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from purchase_access.config import settings
from purchase_access.db.models import AccessGrant
from purchase_access.exceptions import InternalError, InvalidDurationError, NotFoundError
from purchase_access.models.domain import AccessGrantData
from purchase_access.observability.logging import get_logger
from purchase_access.observability.metrics import metrics
from purchase_access.services.catalog import CatalogService

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def compute_extended_expiry(
    existing_expires_at: datetime | None,
    duration_days: int | None,
    now: datetime,
) -> datetime | None:
    """
    Compute the expiry after re-granting an existing grant.

    Unlimited wins: an unlimited existing grant or an unlimited new duration
    yields None. Otherwise the duration is added to whichever is later of
    the existing expiry and now, so expiry never moves backward.
    """
    if existing_expires_at is None or duration_days is None:
        return None
    return max(existing_expires_at, now) + timedelta(days=duration_days)


def compute_initial_expiry(duration_days: int | None, now: datetime) -> datetime | None:
    if duration_days is None:
        return None
    return now + timedelta(days=duration_days)


class _VersionConflict(Exception):
    """Row changed between the locked read and the compare-and-set."""


class AccessGrantService:
    """
    Access Grant Primitive.

    Only flushes; the orchestrating caller owns the transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.catalog = CatalogService(session)

    async def grant_access(
        self,
        user_id: UUID,
        product_id: UUID,
        duration_days: int | None,
    ) -> AccessGrantData:
        """
        Create or extend access for (user_id, product_id).

        Args:
            user_id: Registered user receiving access
            product_id: Active product being granted
            duration_days: Positive number of days, or None for unlimited

        Returns:
            AccessGrantData with created=True when a new row was inserted

        Raises:
            InvalidDurationError: If duration_days is not positive
            NotFoundError: If the product is missing/inactive or the user is missing
            InternalError: If the write keeps failing after retry
        """
        if duration_days is not None and duration_days <= 0:
            raise InvalidDurationError(duration_days)

        await self.catalog.get_active_product(product_id)
        if not await self.catalog.user_exists(user_id):
            raise NotFoundError("user", str(user_id))

        last_error: Exception | None = None
        for attempt in range(1, settings.grant_max_attempts + 1):
            try:
                async with self.session.begin_nested():
                    grant = await self._upsert_grant(user_id, product_id, duration_days)
            except (_VersionConflict, DBAPIError) as e:
                last_error = e
                metrics.access_grant_retries_total.inc()
                logger.warning(
                    "access_grant_attempt_failed",
                    user_id=str(user_id),
                    product_id=str(product_id),
                    attempt=attempt,
                    error=type(e).__name__,
                )
                continue

            metrics.record_grant("created" if grant.created else "extended")
            logger.info(
                "access_granted",
                user_id=str(user_id),
                product_id=str(product_id),
                created=grant.created,
                duration_days=duration_days,
                expires_at=grant.access_expires_at.isoformat() if grant.access_expires_at else None,
            )
            return grant

        metrics.record_grant("failed")
        metrics.record_error("InternalError", "grant_access")
        logger.error(
            "access_grant_failed",
            user_id=str(user_id),
            product_id=str(product_id),
            attempts=settings.grant_max_attempts,
            error=str(last_error),
        )
        raise InternalError(
            f"Could not grant product {product_id} to user {user_id} "
            f"after {settings.grant_max_attempts} attempts"
        )

    async def get_access(self, user_id: UUID, product_id: UUID) -> AccessGrantData | None:
        """Get the access grant for (user_id, product_id), if any."""
        stmt = select(AccessGrant).where(
            AccessGrant.user_id == user_id,
            AccessGrant.product_id == product_id,
        )
        result = await self.session.execute(stmt)
        grant = result.scalar_one_or_none()
        return self._grant_to_domain(grant) if grant else None

    async def has_active_access(self, user_id: UUID, product_id: UUID) -> bool:
        grant = await self.get_access(user_id, product_id)
        return grant is not None and grant.is_active(_utc_now())

    # ========================================================================
    # Private Helpers
    # ========================================================================

    async def _upsert_grant(
        self, user_id: UUID, product_id: UUID, duration_days: int | None
    ) -> AccessGrantData:
        now = _utc_now()

        inserted = await self._insert_if_absent(user_id, product_id, duration_days, now)
        if inserted is not None:
            return self._grant_to_domain(inserted, created=True)

        existing = await self._lock_grant(user_id, product_id)
        if existing is None:
            # Conflicting row vanished (revoked) between insert and lock
            raise _VersionConflict()

        new_expiry = compute_extended_expiry(existing.access_expires_at, duration_days, now)
        updated = await self._compare_and_set(existing, new_expiry, duration_days, now)
        if updated is None:
            raise _VersionConflict()
        return self._grant_to_domain(updated, created=False)

    async def _insert_if_absent(
        self,
        user_id: UUID,
        product_id: UUID,
        duration_days: int | None,
        now: datetime,
    ) -> AccessGrant | None:
        stmt = (
            pg_insert(AccessGrant)
            .values(
                id=uuid4(),
                user_id=user_id,
                product_id=product_id,
                access_granted_at=now,
                access_duration_days=duration_days,
                access_expires_at=compute_initial_expiry(duration_days, now),
                version=1,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "product_id"])
            .returning(AccessGrant)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_grant(self, user_id: UUID, product_id: UUID) -> AccessGrant | None:
        stmt = (
            select(AccessGrant)
            .where(
                AccessGrant.user_id == user_id,
                AccessGrant.product_id == product_id,
            )
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _compare_and_set(
        self,
        existing: AccessGrant,
        new_expiry: datetime | None,
        duration_days: int | None,
        now: datetime,
    ) -> AccessGrant | None:
        stmt = (
            update(AccessGrant)
            .where(
                AccessGrant.id == existing.id,
                AccessGrant.version == existing.version,
            )
            .values(
                access_expires_at=new_expiry,
                access_duration_days=None if new_expiry is None else duration_days,
                version=existing.version + 1,
                updated_at=now,
            )
            .returning(AccessGrant)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _grant_to_domain(self, grant: AccessGrant, created: bool = False) -> AccessGrantData:
        return AccessGrantData(
            grant_id=grant.id,
            user_id=grant.user_id,
            product_id=grant.product_id,
            access_granted_at=grant.access_granted_at,
            access_duration_days=grant.access_duration_days,
            access_expires_at=grant.access_expires_at,
            created=created,
        )
