"""
Stripe Payload Models

Typed views over the Stripe objects this service reads: webhook events,
subscriptions, invoices, checkout sessions and catalog prices.

Webhook events are parsed into a closed set of tagged variants keyed by the
event ``type``. Kinds outside that set parse to ``UnhandledEvent``.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Mapping, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


def _expandable_id(value: Any) -> Any:
    """Stripe expandable fields arrive as an id or as the expanded object."""
    if isinstance(value, Mapping):
        return value.get("id")
    return value


def to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe unix timestamp to an aware UTC datetime."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class GatewayModel(BaseModel):
    """Base for Stripe payload views. Unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# =============================================================================
# Subscriptions
# =============================================================================

class GatewayPriceRef(GatewayModel):
    id: str


class GatewaySubscriptionItem(GatewayModel):
    price: Optional[GatewayPriceRef] = None
    # Newer API versions carry the billing period on the item
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class GatewaySubscriptionItems(GatewayModel):
    data: list[GatewaySubscriptionItem] = Field(default_factory=list)


class GatewaySubscription(GatewayModel):
    """A Stripe subscription as delivered in ``customer.subscription.*`` events."""

    id: str
    customer: Optional[str] = None
    status: str
    items: GatewaySubscriptionItems = Field(default_factory=GatewaySubscriptionItems)
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("customer", mode="before")
    @classmethod
    def _customer_id(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def first_item(self) -> Optional[GatewaySubscriptionItem]:
        return self.items.data[0] if self.items.data else None

    @property
    def price_id(self) -> Optional[str]:
        item = self.first_item
        if item and item.price:
            return item.price.id
        return None

    @property
    def period_start(self) -> Optional[datetime]:
        start = self.current_period_start
        if start is None and self.first_item:
            start = self.first_item.current_period_start
        return to_datetime(start)

    @property
    def period_end(self) -> Optional[datetime]:
        end = self.current_period_end
        if end is None and self.first_item:
            end = self.first_item.current_period_end
        return to_datetime(end)


# =============================================================================
# Invoices and Checkout
# =============================================================================

class GatewayInvoice(GatewayModel):
    """A Stripe invoice as delivered in ``invoice.*`` events."""

    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    payment_intent: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = "usd"
    collection_method: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    billing_reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _subscription_from_parent(cls, data: Any) -> Any:
        # API versions from 2025 move the subscription under parent.subscription_details
        if isinstance(data, Mapping) and not data.get("subscription"):
            parent = data.get("parent") or {}
            details = parent.get("subscription_details") or {}
            if details.get("subscription"):
                data = {**data, "subscription": details["subscription"]}
        return data

    @field_validator("customer", "subscription", "payment_intent", mode="before")
    @classmethod
    def _expanded_ids(cls, value: Any) -> Any:
        return _expandable_id(value)


class GatewayCustomerDetails(GatewayModel):
    email: Optional[str] = None


class GatewayCheckoutSession(GatewayModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    customer_email: Optional[str] = None
    customer_details: Optional[GatewayCustomerDetails] = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def _expanded_ids(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def email(self) -> Optional[str]:
        if self.customer_email:
            return self.customer_email
        if self.customer_details:
            return self.customer_details.email
        return None


# =============================================================================
# Catalog and Payments
# =============================================================================

class GatewayProduct(GatewayModel):
    id: str
    name: str = ""
    description: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    deleted: bool = False


class GatewayRecurring(GatewayModel):
    interval: Optional[str] = None


class GatewayPrice(GatewayModel):
    """A recurring price with its product expanded."""

    id: str
    active: bool = False
    unit_amount: Optional[int] = None
    recurring: Optional[GatewayRecurring] = None
    product: Optional[Union[GatewayProduct, str]] = None


class GatewayPaymentIntent(GatewayModel):
    id: str
    amount: int = 0
    currency: str = "usd"
    status: str
    created: Optional[int] = None
    description: Optional[str] = None


# =============================================================================
# Webhook Events
# =============================================================================

class _EventBase(GatewayModel):
    id: str
    type: str

    @property
    def payload(self):
        return self.data.obj


class CheckoutSessionData(GatewayModel):
    obj: GatewayCheckoutSession = Field(alias="object")


class SubscriptionData(GatewayModel):
    obj: GatewaySubscription = Field(alias="object")


class InvoiceData(GatewayModel):
    obj: GatewayInvoice = Field(alias="object")


class CheckoutSessionCompleted(_EventBase):
    type: Literal["checkout.session.completed"]
    data: CheckoutSessionData


class SubscriptionCreated(_EventBase):
    type: Literal["customer.subscription.created"]
    data: SubscriptionData


class SubscriptionUpdated(_EventBase):
    type: Literal["customer.subscription.updated"]
    data: SubscriptionData


class SubscriptionDeleted(_EventBase):
    type: Literal["customer.subscription.deleted"]
    data: SubscriptionData


class InvoicePaid(_EventBase):
    type: Literal["invoice.paid"]
    data: InvoiceData


class InvoicePaymentFailed(_EventBase):
    type: Literal["invoice.payment_failed"]
    data: InvoiceData


class UnhandledEvent(GatewayModel):
    """Any event kind the reconciler does not model."""

    id: Optional[str] = None
    type: str


BILLING_EVENT_CLASSES = (
    CheckoutSessionCompleted,
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaid,
    InvoicePaymentFailed,
)

BillingEvent = Annotated[
    Union[
        CheckoutSessionCompleted,
        SubscriptionCreated,
        SubscriptionUpdated,
        SubscriptionDeleted,
        InvoicePaid,
        InvoicePaymentFailed,
    ],
    Field(discriminator="type"),
]

MODELLED_EVENT_TYPES = frozenset(
    get_args(cls.model_fields["type"].annotation)[0] for cls in BILLING_EVENT_CLASSES
)

_billing_event_adapter = TypeAdapter(BillingEvent)


def parse_billing_event(raw: Mapping[str, Any]) -> Union[BillingEvent, UnhandledEvent]:
    """
    Parse a verified Stripe event into its typed variant.

    Raises:
        pydantic.ValidationError: a modelled kind with a malformed payload
    """
    event_type = raw.get("type")
    if event_type not in MODELLED_EVENT_TYPES:
        return UnhandledEvent(id=raw.get("id"), type=str(event_type))
    return _billing_event_adapter.validate_python(raw)
