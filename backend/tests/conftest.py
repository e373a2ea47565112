"""
Test configuration and fixtures for NoteEarly Billing.

Provides shared fixtures for unit and integration tests:
- in-memory repositories with the same async interface and write semantics
  as the SQL repositories (upsert, update-only-if-found, atomic counter)
- a Stripe service double built with MagicMock(spec=StripeService)
- builders for Stripe webhook event payloads
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional
from unittest.mock import MagicMock
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient

from noteearly.config.settings import Settings
from noteearly.domain.gateway import GatewaySubscription
from noteearly.domain.subscription import (
    BillingMirrorUpdate,
    BillingProfile,
    CustomerSubscription,
    HELD_STATUSES,
    LIVE_STATUSES,
    PaymentRecord,
    PlanTier,
    SubscriptionPlan,
    SubscriptionStatus,
    SubscriptionSync,
    UserRole,
)
from noteearly.infrastructure.payments.stripe_service import StripeService
from noteearly.infrastructure.services.subscription_service import SubscriptionService
from noteearly.infrastructure.services.webhook_service import WebhookService


PERIOD_START = 1767225600  # 2026-01-01T00:00:00Z
PERIOD_END = 1769904000    # 2026-02-01T00:00:00Z


# =============================================================================
# In-memory Repositories
# =============================================================================

class InMemoryBillingStore:
    """Shared tables behind the in-memory repositories."""

    def __init__(self):
        self.plans: Dict[str, SubscriptionPlan] = {}
        self.subscriptions: Dict[str, CustomerSubscription] = {}
        self.profiles: Dict[UUID, BillingProfile] = {}
        self.payments: Dict[str, PaymentRecord] = {}
        self.processed_events: Dict[str, str] = {}

    def touch_subscription(self, subscription: CustomerSubscription) -> None:
        # Re-insert so dict order doubles as updated_at order
        self.subscriptions.pop(subscription.id, None)
        self.subscriptions[subscription.id] = subscription.model_copy(
            update={"updated_at": datetime.now(timezone.utc)}
        )


class InMemoryPlanRepository:
    def __init__(self, store: InMemoryBillingStore):
        self.store = store

    async def list_active(self) -> List[SubscriptionPlan]:
        plans = [p for p in self.store.plans.values() if p.is_active]
        return sorted(plans, key=lambda p: (p.price, p.id))

    async def get_by_id(self, plan_id: str) -> Optional[SubscriptionPlan]:
        return self.store.plans.get(plan_id)

    async def get_free_plan(self) -> Optional[SubscriptionPlan]:
        for plan in sorted(self.store.plans.values(), key=lambda p: p.id):
            if plan.tier is PlanTier.FREE and plan.is_active:
                return plan
        return None

    async def upsert(self, plan: SubscriptionPlan) -> None:
        self.store.plans[plan.id] = plan


class InMemorySubscriptionRepository:
    def __init__(self, store: InMemoryBillingStore):
        self.store = store

    async def get_by_id(self, subscription_id: str) -> Optional[CustomerSubscription]:
        return self.store.subscriptions.get(subscription_id)

    async def get_by_user_id(self, user_id: UUID) -> Optional[CustomerSubscription]:
        # Dict order is updated_at order; live rows first, then held ones
        rows = [s for s in reversed(list(self.store.subscriptions.values())) if s.user_id == user_id]
        for statuses in (LIVE_STATUSES, HELD_STATUSES):
            for subscription in rows:
                if subscription.status in statuses:
                    return subscription
        return rows[0] if rows else None

    async def upsert_from_gateway(self, subscription: CustomerSubscription) -> CustomerSubscription:
        existing = self.store.subscriptions.get(subscription.id)
        if existing:
            subscription = subscription.model_copy(
                update={
                    "user_id": existing.user_id,
                    "custom_modules_created_this_period": existing.custom_modules_created_this_period,
                    "usage_reset_invoice_id": existing.usage_reset_invoice_id,
                    "created_at": existing.created_at,
                }
            )
        else:
            subscription = subscription.model_copy(update={"created_at": datetime.now(timezone.utc)})
        self.store.touch_subscription(subscription)
        return self.store.subscriptions[subscription.id]

    async def apply_gateway_update(self, subscription_id: str, changes: SubscriptionSync) -> Optional[UUID]:
        existing = self.store.subscriptions.get(subscription_id)
        if existing is None:
            return None
        values = changes.model_dump(exclude={"plan_id"})
        if changes.plan_id:
            values["plan_id"] = changes.plan_id
        self.store.touch_subscription(existing.model_copy(update=values))
        return existing.user_id

    async def mark_deleted(self, subscription_id: str, status: SubscriptionStatus) -> Optional[UUID]:
        existing = self.store.subscriptions.get(subscription_id)
        if existing is None:
            return None
        self.store.touch_subscription(
            existing.model_copy(
                update={
                    "status": status,
                    "current_period_start": None,
                    "current_period_end": None,
                    "cancel_at_period_end": False,
                }
            )
        )
        return existing.user_id

    async def set_status_for_customer(
        self, subscription_id: str, stripe_customer_id: str, status: SubscriptionStatus
    ) -> bool:
        existing = self.store.subscriptions.get(subscription_id)
        if existing is None or existing.stripe_customer_id != stripe_customer_id:
            return False
        self.store.touch_subscription(existing.model_copy(update={"status": status}))
        return True

    async def reset_usage_counter(self, subscription_id: str, invoice_id: str) -> bool:
        existing = self.store.subscriptions.get(subscription_id)
        if existing is None or existing.usage_reset_invoice_id == invoice_id:
            return False
        self.store.touch_subscription(
            existing.model_copy(
                update={"custom_modules_created_this_period": 0, "usage_reset_invoice_id": invoice_id}
            )
        )
        return True

    async def increment_usage_counter(self, subscription_id: str) -> Optional[int]:
        existing = self.store.subscriptions.get(subscription_id)
        if existing is None:
            return None
        count = existing.custom_modules_created_this_period + 1
        self.store.touch_subscription(
            existing.model_copy(update={"custom_modules_created_this_period": count})
        )
        return count


class InMemoryProfileRepository:
    def __init__(self, store: InMemoryBillingStore):
        self.store = store

    async def get_by_id(self, user_id: UUID) -> Optional[BillingProfile]:
        return self.store.profiles.get(user_id)

    async def get_by_email(self, email: str) -> Optional[BillingProfile]:
        for profile in self.store.profiles.values():
            if profile.email and profile.email.lower() == email.lower():
                return profile
        return None

    async def get_by_stripe_customer_id(self, customer_id: str) -> Optional[BillingProfile]:
        for profile in self.store.profiles.values():
            if profile.stripe_customer_id == customer_id:
                return profile
        return None

    async def set_stripe_customer_id(self, user_id: UUID, customer_id: str) -> bool:
        return self._apply(user_id, {"stripe_customer_id": customer_id})

    async def update_billing_mirror(self, user_id: UUID, mirror: BillingMirrorUpdate) -> bool:
        return self._apply(user_id, mirror.to_columns())

    def _apply(self, user_id: UUID, columns: dict) -> bool:
        profile = self.store.profiles.get(user_id)
        if profile is None:
            return False
        self.store.profiles[user_id] = BillingProfile.model_validate(
            {**profile.model_dump(), **columns}
        )
        return True


class InMemoryPaymentRepository:
    def __init__(self, store: InMemoryBillingStore):
        self.store = store

    async def record(self, payment: PaymentRecord) -> bool:
        if payment.id in self.store.payments:
            return False
        self.store.payments[payment.id] = payment
        return True


class InMemoryProcessedEventRepository:
    def __init__(self, store: InMemoryBillingStore):
        self.store = store

    async def is_processed(self, event_id: str) -> bool:
        return event_id in self.store.processed_events

    async def mark_processed(self, event_id: str, event_type: str) -> None:
        self.store.processed_events.setdefault(event_id, event_type)


# =============================================================================
# Stripe Event Builders
# =============================================================================

class StripeEvents:
    """Builds webhook event dicts shaped like Stripe's."""

    def __init__(self):
        self._seq = 0

    def _event(self, event_type: str, obj: dict) -> dict:
        self._seq += 1
        return {
            "id": f"evt_{self._seq:04d}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }

    def subscription_object(
        self,
        subscription_id: str = "sub_123",
        customer: str = "cus_123",
        price: str = "price_home",
        status: str = "active",
        period_start: Optional[int] = PERIOD_START,
        period_end: Optional[int] = PERIOD_END,
        cancel_at_period_end: bool = False,
    ) -> dict:
        return {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "items": {"object": "list", "data": [{"id": "si_1", "price": {"id": price}}]},
            "current_period_start": period_start,
            "current_period_end": period_end,
            "cancel_at_period_end": cancel_at_period_end,
            "metadata": {},
        }

    def subscription(self, kind: str = "created", **kwargs) -> dict:
        return self._event(f"customer.subscription.{kind}", self.subscription_object(**kwargs))

    def invoice(
        self,
        kind: str = "paid",
        invoice_id: str = "in_123",
        customer: Optional[str] = "cus_123",
        subscription: Optional[str] = "sub_123",
        payment_intent: Optional[str] = "pi_123",
        billing_reason: str = "subscription_cycle",
        amount: int = 1999,
    ) -> dict:
        event_type = "invoice.paid" if kind == "paid" else "invoice.payment_failed"
        return self._event(
            event_type,
            {
                "id": invoice_id,
                "object": "invoice",
                "customer": customer,
                "subscription": subscription,
                "payment_intent": payment_intent,
                "amount_paid": amount if kind == "paid" else 0,
                "amount_due": amount,
                "currency": "usd",
                "collection_method": "charge_automatically",
                "hosted_invoice_url": f"https://invoice.stripe.com/i/{invoice_id}",
                "billing_reason": billing_reason,
            },
        )

    def checkout_completed(
        self,
        customer: Optional[str] = "cus_123",
        subscription: Optional[str] = "sub_123",
        email: Optional[str] = "admin@school.org",
    ) -> dict:
        return self._event(
            "checkout.session.completed",
            {
                "id": "cs_test_123",
                "object": "checkout.session",
                "customer": customer,
                "subscription": subscription,
                "customer_email": email,
            },
        )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store() -> InMemoryBillingStore:
    """Billing store seeded with a free, home and pro plan."""
    store = InMemoryBillingStore()
    for plan in (
        SubscriptionPlan(id="price_free", name="Free", price=Decimal("0"), tier=PlanTier.FREE,
                         student_limit=3, module_limit=3, custom_module_limit=1),
        SubscriptionPlan(id="price_home", name="Home", price=Decimal("9.99"), tier=PlanTier.HOME,
                         student_limit=5, module_limit=20, custom_module_limit=5),
        SubscriptionPlan(id="price_pro", name="Pro", price=Decimal("29.99"), tier=PlanTier.PRO,
                         student_limit=40, module_limit=100, custom_module_limit=20),
    ):
        store.plans[plan.id] = plan
    return store


@pytest.fixture
def user_id(store) -> UUID:
    """An admin profile already linked to Stripe customer cus_123."""
    uid = uuid4()
    store.profiles[uid] = BillingProfile(
        id=uid,
        role=UserRole.ADMIN,
        email="admin@school.org",
        full_name="Ada Admin",
        stripe_customer_id="cus_123",
    )
    return uid


@pytest.fixture
def plan_repo(store):
    return InMemoryPlanRepository(store)


@pytest.fixture
def subscription_repo(store):
    return InMemorySubscriptionRepository(store)


@pytest.fixture
def profile_repo(store):
    return InMemoryProfileRepository(store)


@pytest.fixture
def payment_repo(store):
    return InMemoryPaymentRepository(store)


@pytest.fixture
def processed_event_repo(store):
    return InMemoryProcessedEventRepository(store)


@pytest.fixture
def events() -> StripeEvents:
    return StripeEvents()


@pytest.fixture
def mock_stripe(events):
    """Stripe double; async methods are AsyncMocks via spec=StripeService."""
    mock = MagicMock(spec=StripeService)
    mock.retrieve_subscription.return_value = GatewaySubscription.model_validate(
        events.subscription_object()
    )
    mock.create_customer.return_value = "cus_new"
    mock.create_checkout_session.return_value = MagicMock(
        id="cs_test_123", url="https://checkout.stripe.com/c/pay/cs_test_123"
    )
    mock.create_portal_session.return_value = MagicMock(
        url="https://billing.stripe.com/p/session/test_123"
    )
    mock.list_payment_intents.return_value = []
    mock.list_recurring_prices.return_value = []
    return mock


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        environment="testing",
        client_url="https://app.noteearly.com",
        frontend_url="https://app.noteearly.com",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test_123",
        jwt_secret="test-jwt-secret",
    )


@pytest.fixture
def webhook_service(mock_stripe, subscription_repo, plan_repo, profile_repo, payment_repo):
    return WebhookService(
        stripe_service=mock_stripe,
        subscriptions=subscription_repo,
        plans=plan_repo,
        profiles=profile_repo,
        payments=payment_repo,
    )


@pytest.fixture
def subscription_service(mock_stripe, plan_repo, subscription_repo, profile_repo, test_settings):
    return SubscriptionService(
        stripe_service=mock_stripe,
        plans=plan_repo,
        subscriptions=subscription_repo,
        profiles=profile_repo,
        settings=test_settings,
    )


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app():
    """Get the FastAPI application."""
    from noteearly.main import app
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Get synchronous test client."""
    return TestClient(app)
