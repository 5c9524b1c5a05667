"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


# ============================================================================
# Collaborator tables (owned by the catalog and the auth provider)
# ============================================================================


class Product(Base):
    """
    ORM model for products table.

    Only the columns the access core reads.
    """

    __tablename__ = "products"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # NULL = unlimited access
    auto_grant_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "auto_grant_duration_days IS NULL OR auto_grant_duration_days > 0",
            name="ck_products_duration_positive",
        ),
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, name={self.name}, active={self.is_active})>"


class User(Base):
    """
    ORM model for users table.

    Mirror of the auth provider's user records (id + email).
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("email", name="uq_users_email"),
        Index("idx_users_email_lower", text("lower(email)"), unique=True),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class OrderBump(Base):
    """ORM model for order_bumps table."""

    __tablename__ = "order_bumps"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    main_product_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    bump_product_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )

    # Overrides the bump product's own duration when set
    access_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bump_price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("main_product_id", "bump_product_id", name="uq_order_bumps_pair"),
        CheckConstraint("main_product_id <> bump_product_id", name="ck_order_bumps_distinct"),
    )


class OtoConfig(Base):
    """ORM model for oto_configs table (one-time offer set up on a source product)."""

    __tablename__ = "oto_configs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    source_product_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    oto_product_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    discount_type: Mapped[str] = mapped_column(String(20), nullable=False, default="percentage")
    discount_value: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=15)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("discount_type IN ('percentage', 'fixed')", name="ck_oto_configs_type"),
        CheckConstraint("discount_value > 0", name="ck_oto_configs_value_positive"),
        CheckConstraint("duration_minutes > 0", name="ck_oto_configs_duration_positive"),
        Index(
            "uq_oto_configs_active_source",
            "source_product_id",
            unique=True,
            postgresql_where=(is_active.is_(True)),
        ),
    )


# ============================================================================
# Access core tables
# ============================================================================


class PaymentEvent(Base):
    """
    ORM model for payment_events table.

    One row per provider payment. Terminal rows are immutable except for
    refund annotation and fulfilment markers.
    """

    __tablename__ = "payment_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Provider-issued identifier (checkout session / payment intent)
    provider_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # Underlying payment intent when the provider id is a checkout session
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    product_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)

    # Owner declared by the checkout (normalized, NULL = none)
    declared_user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    # Owner access was actually granted to
    user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)

    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    # Lifecycle timestamps
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    abandoned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Refund annotation
    refunded_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Tagged metadata entries (coupon, bump, terms)
    payment_metadata: Mapped[list[dict[str, Any]]] = mapped_column(
        "metadata", JSONB, nullable=False, default=list
    )

    # Fulfilment markers, one per grant leg
    main_fulfilled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    bump_fulfilled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("provider_payment_id", name="uq_payment_events_provider_id"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'abandoned', 'expired')",
            name="ck_payment_events_status",
        ),
        CheckConstraint("amount_minor > 0", name="ck_payment_events_amount_positive"),
        CheckConstraint(
            "refunded_amount_minor >= 0 AND refunded_amount_minor <= amount_minor",
            name="ck_payment_events_refund_bounds",
        ),
        Index("idx_payment_events_customer_email", "customer_email"),
        Index("idx_payment_events_payment_intent_id", "payment_intent_id"),
        Index("idx_payment_events_status_created", "status", "created_at"),
        Index(
            "idx_payment_events_pending_expiry",
            "expires_at",
            postgresql_where=(status == "pending"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentEvent(id={self.id}, provider_payment_id={self.provider_payment_id}, "
            f"status={self.status})>"
        )


class AccessGrant(Base):
    """
    ORM model for user_product_access table.

    At most one row per (user, product); repeat purchases extend the row.
    """

    __tablename__ = "user_product_access"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )

    access_granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    # NULL = unlimited
    access_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    access_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Optimistic locking counter
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_user_product_access"),
        CheckConstraint(
            "access_duration_days IS NULL OR access_duration_days > 0",
            name="ck_user_product_access_duration_positive",
        ),
        Index("idx_user_product_access_product_id", "product_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AccessGrant(user_id={self.user_id}, product_id={self.product_id}, "
            f"expires_at={self.access_expires_at})>"
        )


class GuestPurchase(Base):
    """
    ORM model for guest_purchases table.

    Completed purchases with no authenticated owner, waiting to be claimed.
    """

    __tablename__ = "guest_purchases"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Stored lower-cased
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    payment_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Duration policy captured at purchase time (NULL = unlimited)
    access_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    claimed_by_user_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint(
            "customer_email",
            "product_id",
            "payment_event_id",
            name="uq_guest_purchases_email_product_payment",
        ),
        CheckConstraint("amount_minor >= 0", name="ck_guest_purchases_amount_non_negative"),
        Index(
            "idx_guest_purchases_unclaimed_email",
            "customer_email",
            postgresql_where=(claimed_at.is_(None)),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<GuestPurchase(id={self.id}, email={self.customer_email}, "
            f"product_id={self.product_id}, claimed_at={self.claimed_at})>"
        )


class OtoOffer(Base):
    """
    ORM model for oto_offers table.

    Single-use, email-bound, short-lived coupons. Never deleted.
    """

    __tablename__ = "oto_offers"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)

    # One offer per payment event
    payment_event_id: Mapped[str] = mapped_column(String(255), nullable=False)

    source_product_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    target_product_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)

    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    discount_value: Mapped[int] = mapped_column(Integer, nullable=False)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    usage_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("code", name="uq_oto_offers_code"),
        UniqueConstraint("payment_event_id", name="uq_oto_offers_payment_event"),
        CheckConstraint("usage_count >= 0", name="ck_oto_offers_usage_non_negative"),
        CheckConstraint("usage_count <= usage_limit", name="ck_oto_offers_usage_within_limit"),
        Index("idx_oto_offers_customer_email", "customer_email"),
    )

    def __repr__(self) -> str:
        return f"<OtoOffer(code={self.code}, email={self.customer_email}, used={self.usage_count})>"
