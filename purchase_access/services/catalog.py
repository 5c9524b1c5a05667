"""
Catalog Service - Read-only lookups against collaborator tables.

Products, users, order bumps and OTO configs are owned elsewhere; the access
core only reads them.
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from purchase_access.db.models import OrderBump, OtoConfig, Product, User
from purchase_access.exceptions import NotFoundError
from purchase_access.models.api import DiscountType
from purchase_access.models.domain import Discount, OrderBumpData, OtoConfigData, ProductData


class CatalogService:
    """Lookups for products, users, order bumps and one-time offer configs."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_product(self, product_id: UUID) -> ProductData | None:
        stmt = select(Product).where(Product.id == product_id)
        result = await self.session.execute(stmt)
        product = result.scalar_one_or_none()
        if product is None:
            return None
        return ProductData(
            product_id=product.id,
            name=product.name,
            is_active=product.is_active,
            auto_grant_duration_days=product.auto_grant_duration_days,
        )

    async def get_active_product(self, product_id: UUID) -> ProductData:
        """
        Get a product that can be granted.

        Raises:
            NotFoundError: If the product does not exist or is inactive
        """
        product = await self.get_product(product_id)
        if product is None or not product.is_active:
            raise NotFoundError("product", str(product_id))
        return product

    async def user_exists(self, user_id: UUID) -> bool:
        stmt = select(User.id).where(User.id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def find_user_id_by_email(self, email: str) -> UUID | None:
        """Find a registered user by email (case-insensitive)."""
        stmt = (
            select(User.id)
            .where(func.lower(User.email) == email.strip().lower())
            .order_by(User.created_at)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_order_bump(
        self, main_product_id: UUID, bump_product_id: UUID
    ) -> OrderBumpData | None:
        """Get the active order bump pairing main_product_id with bump_product_id."""
        stmt = select(OrderBump).where(
            OrderBump.main_product_id == main_product_id,
            OrderBump.bump_product_id == bump_product_id,
            OrderBump.is_active.is_(True),
        )
        result = await self.session.execute(stmt)
        bump = result.scalar_one_or_none()
        if bump is None:
            return None
        return OrderBumpData(
            bump_id=bump.id,
            main_product_id=bump.main_product_id,
            bump_product_id=bump.bump_product_id,
            access_duration_days=bump.access_duration_days,
            bump_price_minor=bump.bump_price_minor,
        )

    async def get_oto_config(self, source_product_id: UUID) -> OtoConfigData | None:
        """Get the active one-time offer configured on a source product."""
        stmt = select(OtoConfig).where(
            OtoConfig.source_product_id == source_product_id,
            OtoConfig.is_active.is_(True),
        )
        result = await self.session.execute(stmt)
        config = result.scalar_one_or_none()
        if config is None:
            return None
        return OtoConfigData(
            config_id=config.id,
            source_product_id=config.source_product_id,
            oto_product_id=config.oto_product_id,
            discount=Discount(
                discount_type=DiscountType(config.discount_type),
                value=config.discount_value,
            ),
            duration_minutes=config.duration_minutes,
        )
