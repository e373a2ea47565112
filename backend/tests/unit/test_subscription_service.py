"""
Unit tests for SubscriptionService.

Covers catalog reads, current-plan resolution, checkout rules, cancel and
reactivate preconditions, the billing portal, payment history and the
custom-module allowance.
"""

from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from noteearly.domain.gateway import GatewayPaymentIntent, GatewayPrice
from noteearly.domain.subscription import (
    BillingProfile,
    CustomerSubscription,
    PlanTier,
    SubscriptionStatus,
    UserRole,
)
from noteearly.infrastructure.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    UpstreamServiceError,
)


def _subscribe(store, user_id, plan_id="price_home", status=SubscriptionStatus.ACTIVE, **extra):
    subscription = CustomerSubscription(
        id=extra.pop("id", "sub_123"),
        user_id=user_id,
        plan_id=plan_id,
        stripe_customer_id=extra.pop("stripe_customer_id", "cus_123"),
        status=status,
        **extra,
    )
    store.touch_subscription(subscription)
    return subscription


def _set_tier(store, user_id, tier: PlanTier):
    store.profiles[user_id] = store.profiles[user_id].model_copy(update={"subscription_plan": tier})


class TestPlans:

    @pytest.mark.asyncio
    async def test_returns_stored_plans_by_price(self, subscription_service, mock_stripe):
        plans = await subscription_service.get_plans()

        assert [p.id for p in plans] == ["price_free", "price_home", "price_pro"]
        mock_stripe.list_recurring_prices.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_catalog_syncs_from_stripe(self, subscription_service, store, mock_stripe):
        store.plans.clear()
        mock_stripe.list_recurring_prices.return_value = [
            GatewayPrice.model_validate({
                "id": "price_free", "active": True, "unit_amount": 0,
                "recurring": {"interval": "month"},
                "product": {"id": "prod_free", "name": "Free", "metadata": {"tier": "free"}},
            }),
            GatewayPrice.model_validate({"id": "price_loose", "active": True, "product": "prod_x"}),
        ]

        plans = await subscription_service.get_plans()

        assert [p.id for p in plans] == ["price_free"]
        assert store.plans["price_free"].tier is PlanTier.FREE

    @pytest.mark.asyncio
    async def test_sync_failure_is_wrapped(self, subscription_service, store, mock_stripe):
        store.plans.clear()
        mock_stripe.list_recurring_prices.side_effect = RuntimeError("stripe down")

        with pytest.raises(UpstreamServiceError) as exc:
            await subscription_service.get_plans()

        assert exc.value.details["operation"] == "sync_plans"
        assert isinstance(exc.value.original_error, RuntimeError)


class TestCurrentSubscription:

    @pytest.mark.asyncio
    async def test_no_row_means_free_plan(self, subscription_service, user_id):
        current = await subscription_service.get_current_subscription(user_id)

        assert current.plan.id == "price_free"
        assert current.subscription is None

    @pytest.mark.asyncio
    async def test_no_free_plan(self, subscription_service, store, user_id):
        del store.plans["price_free"]

        with pytest.raises(NotFoundError, match="Free plan not found"):
            await subscription_service.get_current_subscription(user_id)

    @pytest.mark.asyncio
    async def test_row_resolves_its_plan(self, subscription_service, store, user_id):
        _subscribe(store, user_id, plan_id="price_pro")

        current = await subscription_service.get_current_subscription(user_id)

        assert current.plan.tier is PlanTier.PRO
        assert current.subscription.id == "sub_123"

    @pytest.mark.asyncio
    async def test_newest_row_wins(self, subscription_service, store, user_id):
        _subscribe(store, user_id, plan_id="price_home", id="sub_old", status=SubscriptionStatus.CANCELED)
        _subscribe(store, user_id, plan_id="price_pro", id="sub_new")

        current = await subscription_service.get_current_subscription(user_id)

        assert current.subscription.id == "sub_new"

    @pytest.mark.asyncio
    async def test_held_row_outranks_later_write_to_ended_row(self, subscription_service, store, user_id):
        _subscribe(store, user_id, plan_id="price_home", id="sub_A")
        _subscribe(store, user_id, plan_id="price_pro", id="sub_B", status=SubscriptionStatus.PAST_DUE)
        _subscribe(store, user_id, plan_id="price_home", id="sub_A", status=SubscriptionStatus.CANCELED)

        current = await subscription_service.get_current_subscription(user_id)

        assert current.subscription.id == "sub_B"
        assert current.plan.tier is PlanTier.PRO

    @pytest.mark.asyncio
    async def test_plan_switch_gates_on_new_tier(self, subscription_service, store, user_id):
        _subscribe(store, user_id, plan_id="price_home", id="sub_A", custom_modules_created_this_period=5)
        _subscribe(store, user_id, plan_id="price_pro", id="sub_B")
        _subscribe(
            store, user_id, plan_id="price_home", id="sub_A",
            status=SubscriptionStatus.CANCELED, custom_modules_created_this_period=5,
        )
        _set_tier(store, user_id, PlanTier.PRO)

        allowance = await subscription_service.check_custom_module_allowance(user_id, 3)

        assert allowance.limit == 20
        assert allowance.used == 0

    @pytest.mark.asyncio
    async def test_row_with_missing_plan(self, subscription_service, store, user_id):
        _subscribe(store, user_id, plan_id="price_retired")

        with pytest.raises(NotFoundError) as exc:
            await subscription_service.get_current_subscription(user_id)

        assert exc.value.details["plan_id"] == "price_retired"


class TestCheckout:

    @pytest.mark.asyncio
    async def test_uses_profile_customer(self, subscription_service, user_id, mock_stripe):
        session = await subscription_service.create_checkout_session(user_id, "price_home")

        assert session.session_id == "cs_test_123"
        assert session.url.startswith("https://checkout.stripe.com/")
        kwargs = mock_stripe.create_checkout_session.await_args.kwargs
        assert kwargs["customer_id"] == "cus_123"
        assert kwargs["price_id"] == "price_home"
        assert kwargs["user_id"] == str(user_id)
        assert kwargs["success_url"] == (
            "https://app.noteearly.com/subscription/success?session_id={CHECKOUT_SESSION_ID}"
        )
        assert kwargs["cancel_url"] == "https://app.noteearly.com/subscription/cancel"
        mock_stripe.create_customer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_plan(self, subscription_service, user_id, mock_stripe):
        with pytest.raises(NotFoundError):
            await subscription_service.create_checkout_session(user_id, "price_nope")
        mock_stripe.create_checkout_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_profile(self, subscription_service):
        with pytest.raises(NotFoundError, match="User profile not found"):
            await subscription_service.create_checkout_session(uuid4(), "price_home")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING])
    async def test_live_subscription_to_same_plan_conflicts(
        self, subscription_service, store, user_id, status
    ):
        _subscribe(store, user_id, status=status)

        with pytest.raises(ConflictError):
            await subscription_service.create_checkout_session(user_id, "price_home")

    @pytest.mark.asyncio
    async def test_incomplete_subscription_may_retry(self, subscription_service, store, user_id, mock_stripe):
        _subscribe(store, user_id, status=SubscriptionStatus.INCOMPLETE, stripe_customer_id="cus_sub")

        await subscription_service.create_checkout_session(user_id, "price_home")

        assert mock_stripe.create_checkout_session.await_args.kwargs["customer_id"] == "cus_sub"

    @pytest.mark.asyncio
    async def test_active_subscription_may_change_plan(self, subscription_service, store, user_id):
        _subscribe(store, user_id, plan_id="price_home")

        session = await subscription_service.create_checkout_session(user_id, "price_pro")

        assert session.session_id == "cs_test_123"

    @pytest.mark.asyncio
    async def test_creates_customer_with_fallback_email(self, subscription_service, store, mock_stripe):
        uid = uuid4()
        store.profiles[uid] = BillingProfile(id=uid, full_name="No Mail")

        await subscription_service.create_checkout_session(uid, "price_home")

        mock_stripe.create_customer.assert_awaited_once_with(
            user_id=str(uid), email=f"user+{uid}@noteearly.com", name="No Mail"
        )
        assert store.profiles[uid].stripe_customer_id == "cus_new"
        assert mock_stripe.create_checkout_session.await_args.kwargs["customer_id"] == "cus_new"

    @pytest.mark.asyncio
    async def test_stripe_failure_is_wrapped(self, subscription_service, user_id, mock_stripe):
        mock_stripe.create_checkout_session.side_effect = RuntimeError("boom")

        with pytest.raises(UpstreamServiceError) as exc:
            await subscription_service.create_checkout_session(user_id, "price_home")

        assert exc.value.details == {
            "operation": "create_checkout_session",
            "user_id": str(user_id),
        }


class TestCancelReactivate:

    @pytest.mark.asyncio
    async def test_cancel_active(self, subscription_service, store, user_id, mock_stripe):
        _subscribe(store, user_id)

        await subscription_service.cancel_subscription(user_id)

        mock_stripe.set_cancel_at_period_end.assert_awaited_once_with("sub_123", True)
        # Status changes arrive through webhooks
        assert store.subscriptions["sub_123"].cancel_at_period_end is False

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(self, subscription_service, user_id):
        with pytest.raises(NotFoundError):
            await subscription_service.cancel_subscription(user_id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE,
    ])
    async def test_cancel_requires_active(self, subscription_service, store, user_id, mock_stripe, status):
        _subscribe(store, user_id, status=status)

        with pytest.raises(InvalidStateError) as exc:
            await subscription_service.cancel_subscription(user_id)

        assert exc.value.details["current_status"] == status.value
        mock_stripe.set_cancel_at_period_end.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reactivate_scheduled_cancellation(self, subscription_service, store, user_id, mock_stripe):
        _subscribe(store, user_id, cancel_at_period_end=True)

        await subscription_service.reactivate_subscription(user_id)

        mock_stripe.set_cancel_at_period_end.assert_awaited_once_with("sub_123", False)

    @pytest.mark.asyncio
    async def test_reactivate_requires_scheduled_cancellation(self, subscription_service, store, user_id):
        _subscribe(store, user_id, cancel_at_period_end=False)

        with pytest.raises(InvalidStateError):
            await subscription_service.reactivate_subscription(user_id)

    @pytest.mark.asyncio
    async def test_reactivate_requires_active(self, subscription_service, store, user_id):
        _subscribe(store, user_id, status=SubscriptionStatus.PAST_DUE, cancel_at_period_end=True)

        with pytest.raises(InvalidStateError):
            await subscription_service.reactivate_subscription(user_id)


class TestPortal:

    @pytest.mark.asyncio
    async def test_admin_gets_portal(self, subscription_service, user_id, mock_stripe):
        session = await subscription_service.create_portal_session(user_id)

        assert session.url == "https://billing.stripe.com/p/session/test_123"
        mock_stripe.create_portal_session.assert_awaited_once_with(
            customer_id="cus_123",
            return_url="https://app.noteearly.com/admin/settings/subscription",
        )

    @pytest.mark.asyncio
    async def test_student_is_forbidden(self, subscription_service, store):
        uid = uuid4()
        store.profiles[uid] = BillingProfile(id=uid, role=UserRole.STUDENT, stripe_customer_id="cus_9")

        with pytest.raises(ForbiddenError):
            await subscription_service.create_portal_session(uid)

    @pytest.mark.asyncio
    async def test_no_customer(self, subscription_service, store):
        uid = uuid4()
        store.profiles[uid] = BillingProfile(id=uid)

        with pytest.raises(NotFoundError, match="No billing account"):
            await subscription_service.create_portal_session(uid)

    @pytest.mark.asyncio
    async def test_no_profile(self, subscription_service):
        with pytest.raises(NotFoundError):
            await subscription_service.create_portal_session(uuid4())


class TestPaymentHistory:

    @pytest.mark.asyncio
    async def test_no_customer_means_empty(self, subscription_service, store, mock_stripe):
        uid = uuid4()
        store.profiles[uid] = BillingProfile(id=uid)

        assert await subscription_service.get_payment_history(uid) == []
        mock_stripe.list_payment_intents.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_maps_payment_intents(self, subscription_service, store, user_id, mock_stripe):
        _subscribe(store, user_id, stripe_customer_id="cus_sub")
        mock_stripe.list_payment_intents.return_value = [
            GatewayPaymentIntent(
                id="pi_1", amount=2999, currency="usd", status="succeeded",
                created=1767225600, description="Subscription update",
            )
        ]

        history = await subscription_service.get_payment_history(user_id)

        mock_stripe.list_payment_intents.assert_awaited_once_with("cus_sub", limit=10)
        assert len(history) == 1
        assert history[0].amount == Decimal("29.99")
        assert history[0].created_at.year == 2026

    @pytest.mark.asyncio
    async def test_falls_back_to_profile_customer(self, subscription_service, user_id, mock_stripe):
        await subscription_service.get_payment_history(user_id)

        mock_stripe.list_payment_intents.assert_awaited_once_with("cus_123", limit=10)


class TestCustomModuleAllowance:

    @pytest.mark.asyncio
    async def test_free_tier_under_lifetime_limit(self, subscription_service, user_id):
        allowance = await subscription_service.check_custom_module_allowance(user_id, 0)

        assert allowance.tier is PlanTier.FREE
        assert allowance.limit == 1
        assert allowance.remaining == 1
        assert allowance.counts_against_period is False

    @pytest.mark.asyncio
    async def test_free_tier_at_limit(self, subscription_service, user_id):
        with pytest.raises(ForbiddenError) as exc:
            await subscription_service.check_custom_module_allowance(user_id, 1)

        assert exc.value.details == {"tier": "free", "limit": 1, "used": 1}

    @pytest.mark.asyncio
    async def test_free_tier_without_custom_modules(self, subscription_service, store, user_id):
        store.plans["price_free"] = store.plans["price_free"].model_copy(update={"custom_module_limit": 0})

        with pytest.raises(ForbiddenError, match="does not include custom modules"):
            await subscription_service.check_custom_module_allowance(user_id, 0)

    @pytest.mark.asyncio
    async def test_paid_tier_counts_period_usage(self, subscription_service, store, user_id):
        _set_tier(store, user_id, PlanTier.HOME)
        _subscribe(store, user_id, custom_modules_created_this_period=2)

        allowance = await subscription_service.check_custom_module_allowance(user_id, 40)

        assert allowance.used == 2
        assert allowance.limit == 5
        assert allowance.remaining == 3
        assert allowance.counts_against_period is True

    @pytest.mark.asyncio
    async def test_paid_tier_at_period_limit(self, subscription_service, store, user_id):
        _set_tier(store, user_id, PlanTier.HOME)
        _subscribe(store, user_id, custom_modules_created_this_period=5)

        with pytest.raises(ForbiddenError, match="for this billing period"):
            await subscription_service.check_custom_module_allowance(user_id, 0)

    @pytest.mark.asyncio
    async def test_paid_tier_without_row(self, subscription_service, store, user_id):
        _set_tier(store, user_id, PlanTier.PRO)

        with pytest.raises(UpstreamServiceError):
            await subscription_service.check_custom_module_allowance(user_id, 0)

    @pytest.mark.asyncio
    async def test_unknown_profile(self, subscription_service):
        with pytest.raises(NotFoundError):
            await subscription_service.check_custom_module_allowance(uuid4(), 0)


class TestRecordCustomModule:

    @pytest.mark.asyncio
    async def test_paid_tier_increments(self, subscription_service, store, user_id):
        _set_tier(store, user_id, PlanTier.HOME)
        _subscribe(store, user_id, custom_modules_created_this_period=2)

        assert await subscription_service.record_custom_module_created(user_id) == 3
        assert store.subscriptions["sub_123"].custom_modules_created_this_period == 3

    @pytest.mark.asyncio
    async def test_free_tier_is_not_counted(self, subscription_service, store, user_id):
        _subscribe(store, user_id, status=SubscriptionStatus.CANCELED)

        assert await subscription_service.record_custom_module_created(user_id) is None
        assert store.subscriptions["sub_123"].custom_modules_created_this_period == 0

    @pytest.mark.asyncio
    async def test_repository_failure_is_wrapped(self, subscription_service, store, user_id, subscription_repo):
        _set_tier(store, user_id, PlanTier.HOME)
        _subscribe(store, user_id)
        subscription_repo.increment_usage_counter = AsyncMock(side_effect=RuntimeError("deadlock"))

        with pytest.raises(UpstreamServiceError):
            await subscription_service.record_custom_module_created(user_id)
