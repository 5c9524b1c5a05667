"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class PaymentStatus(str, Enum):
    """Payment event status enumeration."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"
    EXPIRED = "expired"


class OwnershipRejection(str, Enum):
    """Why ownership resolution denied a caller."""

    OWNER_MISMATCH = "owner_mismatch"
    EMAIL_MISMATCH = "email_mismatch"


class DiscountType(str, Enum):
    """Discount type enumeration."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


class FulfilmentLeg(str, Enum):
    """Independent grant legs of a single payment."""

    MAIN = "main"
    BUMP = "bump"


class PurchaseScenario(str, Enum):
    """How a completed payment was turned into access."""

    LOGGED_IN_USER = "logged_in_user"
    DECLARED_OWNER = "declared_owner"
    GUEST_PURCHASE = "guest_purchase"
    ALREADY_PROCESSED = "already_processed"


# ============================================================================
# Shared Response Models
# ============================================================================


class AccessGrantResponse(BaseModel):
    """Access grant as returned by the API."""

    user_id: UUID
    product_id: UUID
    access_granted_at: str
    access_duration_days: int | None
    access_expires_at: str | None


class GuestPurchaseResponse(BaseModel):
    """Guest purchase ledger entry as returned by the API."""

    purchase_id: UUID
    customer_email: str
    product_id: UUID
    payment_event_id: str
    claimed: bool


class OtoOfferResponse(BaseModel):
    """One-time offer as returned by the API."""

    code: str
    customer_email: str
    target_product_id: UUID
    discount_type: DiscountType
    discount_value: int
    expires_at: str
    usage_limit: int
    usage_count: int


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the payment provider."""

    status: str
    event_id: str


# ============================================================================
# Checkout Models
# ============================================================================


class PendingCheckoutRequest(BaseModel):
    """POST /v1/checkout/pending request body."""

    provider_payment_id: str = Field(..., min_length=1, max_length=255)
    product_id: UUID
    customer_email: str = Field(..., min_length=3, max_length=255)
    amount_minor: int = Field(..., gt=0, le=99_999_999)
    currency: str = Field(..., min_length=3, max_length=3)
    user_id: str | None = Field(None, max_length=255, description="Declared owner, if logged in")
    bump_product_id: UUID | None = None
    coupon_code: str | None = Field(None, max_length=100)
    terms_accepted: bool | None = None
    expires_in_minutes: int | None = Field(None, gt=0, le=7 * 24 * 60)

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("customer_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError("customer_email must be an email address")
        return v.strip()


class PaymentEventResponse(BaseModel):
    """Payment event snapshot."""

    provider_payment_id: str
    product_id: UUID
    customer_email: str
    amount_minor: int
    currency: str
    status: PaymentStatus
    expires_at: str | None
    abandoned_at: str | None


# ============================================================================
# Verification Models
# ============================================================================


class VerifyPaymentResponse(BaseModel):
    """POST /v1/payments/{id}/verify response body."""

    payment_id: str
    status: PaymentStatus
    scenario: PurchaseScenario | None = None
    access_granted: bool = False
    is_guest_purchase: bool = False
    send_magic_link: bool = False
    grants: list[AccessGrantResponse] = Field(default_factory=list)
    oto_offer: OtoOfferResponse | None = None


# ============================================================================
# Claim Models
# ============================================================================


class ClaimRequest(BaseModel):
    """POST /v1/auth/events/claim request body (auth provider hook)."""

    user_id: UUID
    email: str = Field(..., min_length=3, max_length=255)


class ClaimResponse(BaseModel):
    """Result of claiming guest purchases."""

    claimed_count: int
    grants: list[AccessGrantResponse] = Field(default_factory=list)


# ============================================================================
# OTO Models
# ============================================================================


class RedeemOtoRequest(BaseModel):
    """POST /v1/oto/redeem request body."""

    code: str = Field(..., min_length=4, max_length=64)
    customer_email: str = Field(..., min_length=3, max_length=255)
    product_id: UUID


# ============================================================================
# Maintenance / Reporting Models
# ============================================================================


class SweepResponse(BaseModel):
    """POST /v1/maintenance/expire-pending response body."""

    abandoned_count: int


class AbandonedCartStatsResponse(BaseModel):
    """GET /v1/reports/abandoned-carts/stats response body."""

    total_pending: int
    total_abandoned: int
    total_value_minor: int
    average_value_minor: int
    period_days: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    timestamp: str
