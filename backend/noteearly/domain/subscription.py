"""
Subscription Domain Models

Domain models for subscription management following Clean Architecture.
Enums, DTOs, and domain entities for the billing bounded context, plus the
pure mapping rules shared by the reconciler and the decision service.
"""

import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from noteearly.domain.gateway import GatewayInvoice, GatewayPrice, GatewayProduct


logger = logging.getLogger(__name__)


class PlanTier(str, Enum):
    """Subscription tier levels, ordered free < home < pro."""
    FREE = "free"
    HOME = "home"
    PRO = "pro"

    @property
    def rank(self) -> int:
        return list(PlanTier).index(self)

    @property
    def is_paid(self) -> bool:
        return self is not PlanTier.FREE


class SubscriptionStatus(str, Enum):
    """Local subscription lifecycle status."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    UNPAID = "unpaid"


class ProfileBillingStatus(str, Enum):
    """Billing status mirrored onto the user profile."""
    FREE = "free"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    UNPAID = "unpaid"

    @classmethod
    def from_subscription(cls, status: SubscriptionStatus) -> "ProfileBillingStatus":
        return cls(status.value)


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    STUDENT = "STUDENT"
    SUPER_ADMIN = "SUPER_ADMIN"


# Statuses that count as a live, paying subscription for re-checkout checks
LIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

# Statuses of a subscription the user still holds, payment overdue or not
HELD_STATUSES = LIVE_STATUSES | {SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID}

# Invoice billing_reason marking a renewal (the first invoice is subscription_create)
CYCLE_RENEWAL_REASON = "subscription_cycle"

# Catalog defaults applied when product metadata is missing or invalid
DEFAULT_PLAN_TIER = PlanTier.FREE
DEFAULT_STUDENT_LIMIT = 3
DEFAULT_MODULE_LIMIT = 3
DEFAULT_CUSTOM_MODULE_LIMIT = 1
DEFAULT_INTERVAL = "month"


# =============================================================================
# Domain Entities
# =============================================================================

class SubscriptionPlan(BaseModel):
    """A billing tier; the id mirrors the Stripe price id."""
    id: str
    name: str
    description: Optional[str] = None
    price: Decimal = Decimal("0")
    interval: str = DEFAULT_INTERVAL
    tier: PlanTier = PlanTier.FREE
    student_limit: int = DEFAULT_STUDENT_LIMIT
    module_limit: int = DEFAULT_MODULE_LIMIT
    custom_module_limit: int = DEFAULT_CUSTOM_MODULE_LIMIT
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


class CustomerSubscription(BaseModel):
    """Local mirror of one Stripe subscription; the id is Stripe's."""
    id: str
    user_id: UUID
    plan_id: str
    stripe_customer_id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    custom_modules_created_this_period: int = 0
    usage_reset_invoice_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BillingProfile(BaseModel):
    """The billing-relevant slice of a user profile."""
    id: UUID
    role: UserRole = UserRole.ADMIN
    email: Optional[str] = None
    full_name: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    subscription_status: ProfileBillingStatus = ProfileBillingStatus.FREE
    subscription_plan: PlanTier = PlanTier.FREE
    subscription_renewal_date: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PaymentRecord(BaseModel):
    """One row of the append-only payment ledger."""
    id: str
    user_id: UUID
    subscription_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: PaymentStatus
    payment_method: Optional[str] = None
    receipt_url: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SubscriptionSync(BaseModel):
    """Fields the reconciler copies from a Stripe subscription onto the local row."""
    status: SubscriptionStatus
    plan_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


class BillingMirrorUpdate(BaseModel):
    """
    Profile mirror write. Only explicitly set fields are written, so
    ``subscription_renewal_date=None`` clears the date while leaving it
    unset keeps the stored value.
    """
    subscription_status: ProfileBillingStatus
    subscription_plan: Optional[PlanTier] = None
    subscription_renewal_date: Optional[datetime] = None

    def to_columns(self) -> dict:
        columns = {}
        for field, value in self.model_dump(exclude_unset=True).items():
            if field == "subscription_plan" and value is None:
                continue
            columns[field] = value.value if isinstance(value, Enum) else value
        return columns


# =============================================================================
# Request/Response DTOs
# =============================================================================

class CurrentSubscription(BaseModel):
    """What plan a user is on, and the subscription row backing it (if any)."""
    plan: SubscriptionPlan
    subscription: Optional[CustomerSubscription] = None


class CreateCheckoutRequest(BaseModel):
    """Request DTO for creating a checkout session."""
    plan_id: str = Field(..., min_length=1, alias="planId", description="Stripe price id of the plan")

    model_config = ConfigDict(populate_by_name=True)


class CheckoutSession(BaseModel):
    session_id: str
    url: Optional[str] = None


class PortalSession(BaseModel):
    url: str


class PaymentHistoryItem(BaseModel):
    """A payment as reported by Stripe, in major currency units."""
    id: str
    amount: Decimal
    currency: str
    status: str
    created_at: Optional[datetime] = None
    description: Optional[str] = None


class ModuleAllowance(BaseModel):
    """Outcome of a custom-module limit check that passed."""
    tier: PlanTier
    limit: int
    used: int
    counts_against_period: bool = Field(
        description="Whether creating a module increments the per-period counter"
    )

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


# =============================================================================
# Mapping Rules
# =============================================================================

def map_gateway_status(gateway_status: Optional[str]) -> SubscriptionStatus:
    """
    Map a Stripe subscription status onto the local enumeration.

    trialing counts as active; local statuses pass through; anything else
    (paused, incomplete_expired, future statuses) becomes incomplete.
    """
    if gateway_status == "trialing":
        return SubscriptionStatus.ACTIVE
    try:
        return SubscriptionStatus(gateway_status)
    except ValueError:
        logger.warning(
            f"Unhandled Stripe subscription status {gateway_status!r} received. "
            f"Mapping to 'incomplete'."
        )
        return SubscriptionStatus.INCOMPLETE


def payment_record_id(invoice: GatewayInvoice, fallback_prefix: str) -> str:
    """
    Ledger key: the payment intent id, else a stable id derived from the invoice.

    Stripe retries a failed invoice on the same payment intent, and the ledger
    is insert-only. A failed attempt that later succeeds therefore stays
    recorded as failed; the profile mirror and Stripe's own history carry the
    recovery.
    """
    if invoice.payment_intent:
        return invoice.payment_intent
    return f"{fallback_prefix}-{invoice.id}"


def minor_to_major(amount: Optional[int]) -> Decimal:
    """Convert an amount in the smallest currency unit (cents) to major units."""
    return Decimal(amount or 0) / Decimal(100)


def _metadata_int(metadata: dict[str, str], key: str, default: int) -> int:
    raw = metadata.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid product metadata {key}={raw!r}; using default {default}")
        return default


def _metadata_tier(product: GatewayProduct) -> PlanTier:
    raw = product.metadata.get("tier")
    if not raw:
        return DEFAULT_PLAN_TIER
    try:
        return PlanTier(raw)
    except ValueError:
        logger.warning(
            f"Stripe Product {product.id} has invalid metadata.tier: {raw!r}. "
            f"Defaulting to '{DEFAULT_PLAN_TIER.value}'. "
            f"Allowed values: {', '.join(t.value for t in PlanTier)}"
        )
        return DEFAULT_PLAN_TIER


def plan_from_gateway_price(price: GatewayPrice) -> Optional[SubscriptionPlan]:
    """
    Build a catalog plan from a Stripe price with its product expanded.

    Returns None for inactive prices and for unexpanded or deleted products.
    """
    product = price.product
    if not price.active or product is None or isinstance(product, str) or product.deleted:
        return None

    metadata = product.metadata
    return SubscriptionPlan(
        id=price.id,
        name=product.name,
        description=product.description or None,
        price=minor_to_major(price.unit_amount),
        interval=(price.recurring.interval if price.recurring else None) or DEFAULT_INTERVAL,
        tier=_metadata_tier(product),
        student_limit=_metadata_int(metadata, "studentLimit", DEFAULT_STUDENT_LIMIT),
        module_limit=_metadata_int(metadata, "moduleLimit", DEFAULT_MODULE_LIMIT),
        custom_module_limit=_metadata_int(metadata, "customModuleLimit", DEFAULT_CUSTOM_MODULE_LIMIT),
        is_active=price.active,
    )
