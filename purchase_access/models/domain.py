"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Payment metadata is a tagged union of the shapes the checkout actually writes.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from purchase_access.models.api import (
    DiscountType,
    FulfilmentLeg,
    OwnershipRejection,
    PaymentStatus,
    PurchaseScenario,
)


def parse_uuid(value: Any) -> UUID | None:
    """Parse a UUID from provider metadata, returning None for anything else."""
    if isinstance(value, UUID):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return UUID(value.strip())
    except ValueError:
        return None


# ============================================================================
# Payment Metadata (tagged union)
# ============================================================================


@dataclass(frozen=True)
class CouponMetadata:
    """Coupon applied at checkout."""

    code: str
    kind: Literal["coupon"] = field(default="coupon", init=False)

    def __post_init__(self) -> None:
        if not self.code:
            raise ValueError("Coupon code cannot be empty")


@dataclass(frozen=True)
class BumpMetadata:
    """Order bump product added at checkout."""

    bump_product_id: UUID
    kind: Literal["bump"] = field(default="bump", init=False)


@dataclass(frozen=True)
class TermsMetadata:
    """Terms-of-sale acceptance flag."""

    accepted: bool
    kind: Literal["terms"] = field(default="terms", init=False)


PaymentMetadataEntry = CouponMetadata | BumpMetadata | TermsMetadata


@dataclass(frozen=True)
class PaymentMetadata:
    """Typed view of the metadata attached to a payment event."""

    entries: tuple[PaymentMetadataEntry, ...] = ()

    @property
    def coupon(self) -> CouponMetadata | None:
        return next((e for e in self.entries if isinstance(e, CouponMetadata)), None)

    @property
    def bump(self) -> BumpMetadata | None:
        return next((e for e in self.entries if isinstance(e, BumpMetadata)), None)

    @property
    def terms(self) -> TermsMetadata | None:
        return next((e for e in self.entries if isinstance(e, TermsMetadata)), None)

    @classmethod
    def from_provider(cls, raw: Mapping[str, Any] | None) -> "PaymentMetadata":
        """
        Build metadata from the provider's flat string map.

        Recognised keys: coupon_code, bump_product_id, terms_accepted.
        Unknown keys and unparseable values are dropped.
        """
        if not raw:
            return cls()

        entries: list[PaymentMetadataEntry] = []

        coupon_code = raw.get("coupon_code")
        if isinstance(coupon_code, str) and coupon_code.strip():
            entries.append(CouponMetadata(code=coupon_code.strip()))

        bump_product_id = parse_uuid(raw.get("bump_product_id"))
        if bump_product_id is not None:
            entries.append(BumpMetadata(bump_product_id=bump_product_id))

        terms = raw.get("terms_accepted")
        if terms is not None:
            accepted = terms is True or str(terms).strip().lower() in ("true", "1", "yes")
            entries.append(TermsMetadata(accepted=accepted))

        return cls(entries=tuple(entries))

    def to_json(self) -> list[dict[str, Any]]:
        """Serialize for the JSONB column."""
        serialized: list[dict[str, Any]] = []
        for entry in self.entries:
            if isinstance(entry, CouponMetadata):
                serialized.append({"kind": entry.kind, "code": entry.code})
            elif isinstance(entry, BumpMetadata):
                serialized.append({"kind": entry.kind, "bump_product_id": str(entry.bump_product_id)})
            else:
                serialized.append({"kind": entry.kind, "accepted": entry.accepted})
        return serialized

    @classmethod
    def from_json(cls, data: list[dict[str, Any]] | None) -> "PaymentMetadata":
        """Restore from the JSONB column, skipping unknown kinds."""
        entries: list[PaymentMetadataEntry] = []
        for item in data or []:
            kind = item.get("kind")
            if kind == "coupon" and item.get("code"):
                entries.append(CouponMetadata(code=item["code"]))
            elif kind == "bump":
                bump_product_id = parse_uuid(item.get("bump_product_id"))
                if bump_product_id is not None:
                    entries.append(BumpMetadata(bump_product_id=bump_product_id))
            elif kind == "terms":
                entries.append(TermsMetadata(accepted=bool(item.get("accepted"))))
        return cls(entries=tuple(entries))


# ============================================================================
# Callers and Ownership
# ============================================================================


@dataclass(frozen=True)
class AuthenticatedCaller:
    """Logged-in user as supplied by the auth provider."""

    id: UUID
    email: str

    def __post_init__(self) -> None:
        if not self.email or "@" not in self.email:
            raise ValueError(f"Invalid caller email: {self.email!r}")


@dataclass(frozen=True)
class OwnershipDecision:
    """Result of ownership resolution for a payment event."""

    allowed: bool
    grant_to_user_id: UUID | None
    reason: OwnershipRejection | None = None


# ============================================================================
# Payment Events
# ============================================================================


def _validate_payment_fields(amount_minor: int, currency: str, customer_email: str) -> None:
    if amount_minor <= 0:
        raise ValueError(f"Payment amount must be positive: {amount_minor}")
    if len(currency) != 3:
        raise ValueError(f"Invalid currency code: {currency}")
    if not customer_email or "@" not in customer_email:
        raise ValueError(f"Invalid customer email: {customer_email!r}")


@dataclass(frozen=True)
class PendingPaymentIntent:
    """Checkout session that has been created but not yet paid."""

    provider_payment_id: str
    product_id: UUID
    customer_email: str
    amount_minor: int
    currency: str
    declared_user_id: UUID | None = None
    metadata: PaymentMetadata = field(default_factory=PaymentMetadata)
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.provider_payment_id:
            raise ValueError("provider_payment_id cannot be empty")
        _validate_payment_fields(self.amount_minor, self.currency, self.customer_email)


@dataclass(frozen=True)
class PaymentCompletion:
    """Provider-confirmed completion of a payment."""

    provider_payment_id: str
    product_id: UUID
    customer_email: str
    amount_minor: int
    currency: str
    declared_user_id: UUID | None = None
    metadata: PaymentMetadata = field(default_factory=PaymentMetadata)
    payment_intent_id: str | None = None

    def __post_init__(self) -> None:
        if not self.provider_payment_id:
            raise ValueError("provider_payment_id cannot be empty")
        _validate_payment_fields(self.amount_minor, self.currency, self.customer_email)


@dataclass(frozen=True)
class PaymentEventData:
    """Immutable snapshot of a persisted payment event."""

    event_id: UUID
    provider_payment_id: str
    product_id: UUID
    declared_user_id: UUID | None
    user_id: UUID | None
    customer_email: str
    amount_minor: int
    currency: str
    status: PaymentStatus
    metadata: PaymentMetadata
    expires_at: datetime | None
    completed_at: datetime | None
    abandoned_at: datetime | None
    refunded_amount_minor: int
    main_fulfilled_at: datetime | None
    bump_fulfilled_at: datetime | None
    created_at: datetime

    def is_fulfilled(self, leg: FulfilmentLeg) -> bool:
        if leg == FulfilmentLeg.MAIN:
            return self.main_fulfilled_at is not None
        return self.bump_fulfilled_at is not None


# ============================================================================
# Access, Guest Purchases, Claims
# ============================================================================


@dataclass(frozen=True)
class AccessGrantData:
    """Immutable access grant after persistence."""

    grant_id: UUID
    user_id: UUID
    product_id: UUID
    access_granted_at: datetime
    access_duration_days: int | None
    access_expires_at: datetime | None
    created: bool = False

    @property
    def is_unlimited(self) -> bool:
        return self.access_expires_at is None

    def is_active(self, now: datetime) -> bool:
        return self.access_expires_at is None or self.access_expires_at > now


@dataclass(frozen=True)
class GuestPurchaseData:
    """Immutable guest purchase ledger entry."""

    purchase_id: UUID
    customer_email: str
    product_id: UUID
    payment_event_id: str
    amount_minor: int
    access_duration_days: int | None
    claimed_by_user_id: UUID | None
    claimed_at: datetime | None
    created_at: datetime

    @property
    def is_claimed(self) -> bool:
        return self.claimed_at is not None


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of reconciling guest purchases for a user."""

    claimed_count: int
    grants: tuple[AccessGrantData, ...] = ()


# ============================================================================
# Catalog (collaborator data)
# ============================================================================


@dataclass(frozen=True)
class ProductData:
    """Product as seen by the access core."""

    product_id: UUID
    name: str
    is_active: bool
    auto_grant_duration_days: int | None


@dataclass(frozen=True)
class OrderBumpData:
    """Active order bump between a main product and a bump product."""

    bump_id: UUID
    main_product_id: UUID
    bump_product_id: UUID
    access_duration_days: int | None
    bump_price_minor: int = 0


@dataclass(frozen=True)
class Discount:
    """Discount descriptor for an offer."""

    discount_type: DiscountType
    value: int

    def __post_init__(self) -> None:
        if self.value <= 0:
            raise ValueError(f"Discount value must be positive: {self.value}")
        if self.discount_type == DiscountType.PERCENTAGE and self.value > 100:
            raise ValueError(f"Percentage discount cannot exceed 100: {self.value}")


@dataclass(frozen=True)
class OtoConfigData:
    """One-time offer configuration on a source product."""

    config_id: UUID
    source_product_id: UUID
    oto_product_id: UUID
    discount: Discount
    duration_minutes: int


# ============================================================================
# One-Time Offers
# ============================================================================


@dataclass(frozen=True)
class OtoOfferData:
    """Immutable one-time offer coupon."""

    offer_id: UUID
    code: str
    customer_email: str
    payment_event_id: str
    source_product_id: UUID
    target_product_id: UUID
    discount: Discount
    expires_at: datetime
    usage_limit: int
    usage_count: int
    consumed_at: datetime | None
    created_at: datetime

    @property
    def is_exhausted(self) -> bool:
        return self.usage_count >= self.usage_limit


# ============================================================================
# Reconciliation Outcome
# ============================================================================


@dataclass(frozen=True)
class PurchaseOutcome:
    """Observable result of reconciling a completed payment."""

    payment_id: str
    scenario: PurchaseScenario
    grants: tuple[AccessGrantData, ...] = ()
    guest_purchases: tuple[GuestPurchaseData, ...] = ()
    oto_offer: OtoOfferData | None = None
    send_magic_link: bool = False
    failed_legs: tuple[FulfilmentLeg, ...] = ()

    @property
    def access_granted(self) -> bool:
        return len(self.grants) > 0

    @property
    def has_failures(self) -> bool:
        return len(self.failed_legs) > 0


@dataclass(frozen=True)
class AbandonedCartStats:
    """Pending/abandoned payment summary for reporting."""

    total_pending: int
    total_abandoned: int
    total_value_minor: int
    average_value_minor: int
    period_days: int
