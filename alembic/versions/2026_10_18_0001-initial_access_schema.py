"""Initial purchase-to-access schema.

Revision ID: 2026_10_18_0001
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_18_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )


def upgrade() -> None:
    """Create catalog mirror tables and the access core tables."""
    # Collaborator tables (read-only for the access core)
    op.create_table(
        "products",
        _uuid_pk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("auto_grant_duration_days", sa.Integer, nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "auto_grant_duration_days IS NULL OR auto_grant_duration_days > 0",
            name="ck_products_duration_positive",
        ),
    )

    op.create_table(
        "users",
        _uuid_pk(),
        sa.Column("email", sa.String(255), nullable=False),
        _created_at(),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("idx_users_email_lower", "users", [sa.text("lower(email)")], unique=True)

    op.create_table(
        "order_bumps",
        _uuid_pk(),
        sa.Column(
            "main_product_id",
            UUID(as_uuid=True),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "bump_product_id",
            UUID(as_uuid=True),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("access_duration_days", sa.Integer, nullable=True),
        sa.Column("bump_price_minor", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
        sa.UniqueConstraint("main_product_id", "bump_product_id", name="uq_order_bumps_pair"),
        sa.CheckConstraint("main_product_id <> bump_product_id", name="ck_order_bumps_distinct"),
    )

    op.create_table(
        "oto_configs",
        _uuid_pk(),
        sa.Column(
            "source_product_id",
            UUID(as_uuid=True),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "oto_product_id",
            UUID(as_uuid=True),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("discount_type", sa.String(20), nullable=False, server_default="percentage"),
        sa.Column("discount_value", sa.Integer, nullable=False, server_default="20"),
        sa.Column("duration_minutes", sa.Integer, nullable=False, server_default="15"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
        sa.CheckConstraint("discount_type IN ('percentage', 'fixed')", name="ck_oto_configs_type"),
        sa.CheckConstraint("discount_value > 0", name="ck_oto_configs_value_positive"),
        sa.CheckConstraint("duration_minutes > 0", name="ck_oto_configs_duration_positive"),
    )
    op.create_index(
        "uq_oto_configs_active_source",
        "oto_configs",
        ["source_product_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    # Payment events
    op.create_table(
        "payment_events",
        _uuid_pk(),
        sa.Column("provider_payment_id", sa.String(255), nullable=False),
        sa.Column("payment_intent_id", sa.String(255), nullable=True),
        sa.Column("product_id", UUID(as_uuid=True), nullable=False),
        sa.Column("declared_user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("customer_email", sa.String(255), nullable=False),
        sa.Column("amount_minor", sa.BigInteger, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("abandoned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_amount_minor", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("main_fulfilled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("bump_fulfilled_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("provider_payment_id", name="uq_payment_events_provider_id"),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'abandoned', 'expired')",
            name="ck_payment_events_status",
        ),
        sa.CheckConstraint("amount_minor > 0", name="ck_payment_events_amount_positive"),
        sa.CheckConstraint(
            "refunded_amount_minor >= 0 AND refunded_amount_minor <= amount_minor",
            name="ck_payment_events_refund_bounds",
        ),
    )
    op.create_index("idx_payment_events_customer_email", "payment_events", ["customer_email"])
    op.create_index("idx_payment_events_payment_intent_id", "payment_events", ["payment_intent_id"])
    op.create_index(
        "idx_payment_events_status_created", "payment_events", ["status", "created_at"]
    )
    op.create_index(
        "idx_payment_events_pending_expiry",
        "payment_events",
        ["expires_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )

    # Access grants - one row per (user, product)
    op.create_table(
        "user_product_access",
        _uuid_pk(),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "product_id",
            UUID(as_uuid=True),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "access_granted_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("access_duration_days", sa.Integer, nullable=True),
        sa.Column("access_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("user_id", "product_id", name="uq_user_product_access"),
        sa.CheckConstraint(
            "access_duration_days IS NULL OR access_duration_days > 0",
            name="ck_user_product_access_duration_positive",
        ),
    )
    op.create_index(
        "idx_user_product_access_product_id", "user_product_access", ["product_id"]
    )

    # Guest purchases awaiting claim
    op.create_table(
        "guest_purchases",
        _uuid_pk(),
        sa.Column("customer_email", sa.String(255), nullable=False),
        sa.Column(
            "product_id",
            UUID(as_uuid=True),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("payment_event_id", sa.String(255), nullable=False),
        sa.Column("amount_minor", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("access_duration_days", sa.Integer, nullable=True),
        sa.Column(
            "claimed_by_user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint(
            "customer_email",
            "product_id",
            "payment_event_id",
            name="uq_guest_purchases_email_product_payment",
        ),
        sa.CheckConstraint("amount_minor >= 0", name="ck_guest_purchases_amount_non_negative"),
        sa.CheckConstraint(
            "customer_email = lower(customer_email)", name="ck_guest_purchases_email_lower"
        ),
    )
    op.create_index(
        "idx_guest_purchases_unclaimed_email",
        "guest_purchases",
        ["customer_email"],
        postgresql_where=sa.text("claimed_at IS NULL"),
    )

    # One-time offers
    op.create_table(
        "oto_offers",
        _uuid_pk(),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("customer_email", sa.String(255), nullable=False),
        sa.Column("payment_event_id", sa.String(255), nullable=False),
        sa.Column("source_product_id", UUID(as_uuid=True), nullable=False),
        sa.Column("target_product_id", UUID(as_uuid=True), nullable=False),
        sa.Column("discount_type", sa.String(20), nullable=False),
        sa.Column("discount_value", sa.Integer, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("usage_limit", sa.Integer, nullable=False, server_default="1"),
        sa.Column("usage_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint("code", name="uq_oto_offers_code"),
        sa.UniqueConstraint("payment_event_id", name="uq_oto_offers_payment_event"),
        sa.CheckConstraint("usage_count >= 0", name="ck_oto_offers_usage_non_negative"),
        sa.CheckConstraint("usage_count <= usage_limit", name="ck_oto_offers_usage_within_limit"),
    )
    op.create_index("idx_oto_offers_customer_email", "oto_offers", ["customer_email"])


def downgrade() -> None:
    """Drop all access tables."""
    op.drop_table("oto_offers")
    op.drop_table("guest_purchases")
    op.drop_table("user_product_access")
    op.drop_table("payment_events")
    op.drop_table("oto_configs")
    op.drop_table("order_bumps")
    op.drop_index("idx_users_email_lower", table_name="users")
    op.drop_table("users")
    op.drop_table("products")
