"""
Subscription Service

Answers what plan a user is on and what it entitles them to, and requests
checkout, cancellation, reactivation and portal sessions from Stripe.

This service never writes subscription status itself. Stripe is the single
writer of status transitions; the webhook reconciler brings them back.
"""

import functools
import logging
from typing import List, Optional
from uuid import UUID

from noteearly.config.settings import Settings, get_settings
from noteearly.domain.gateway import to_datetime
from noteearly.domain.subscription import (
    LIVE_STATUSES,
    BillingProfile,
    CheckoutSession,
    CurrentSubscription,
    CustomerSubscription,
    ModuleAllowance,
    PaymentHistoryItem,
    PortalSession,
    SubscriptionPlan,
    SubscriptionStatus,
    UserRole,
    minor_to_major,
    plan_from_gateway_price,
)
from noteearly.infrastructure.db.repositories import (
    CustomerSubscriptionRepository,
    SubscriptionPlanRepository,
    UserProfileRepository,
)
from noteearly.infrastructure.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NoteEarlyError,
    NotFoundError,
    UpstreamServiceError,
)
from noteearly.infrastructure.payments.stripe_service import StripeService


logger = logging.getLogger(__name__)


def _wrap_unexpected(operation: str):
    """Let typed errors through; log anything else and raise UpstreamServiceError."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except NoteEarlyError:
                raise
            except Exception as e:
                user_id = args[0] if args else kwargs.get("user_id")
                logger.exception(f"Unexpected error in {operation} for user {user_id}")
                raise UpstreamServiceError(
                    f"Failed to {operation.replace('_', ' ')}",
                    operation=operation,
                    user_id=str(user_id) if user_id else None,
                    original_error=e,
                )

        return wrapper

    return decorator


class SubscriptionService:
    """
    Subscription read/decision service.

    Args:
        stripe_service: Stripe client wrapper
        plans: Plan catalog
        subscriptions: Customer subscription rows
        profiles: Profile lookups
        settings: Redirect URLs and fallback email domain
    """

    def __init__(
        self,
        stripe_service: StripeService,
        plans: SubscriptionPlanRepository,
        subscriptions: CustomerSubscriptionRepository,
        profiles: UserProfileRepository,
        settings: Optional[Settings] = None,
    ):
        self._stripe = stripe_service
        self._plans = plans
        self._subscriptions = subscriptions
        self._profiles = profiles
        self._settings = settings or get_settings()

    # =========================================================================
    # Plan Catalog
    # =========================================================================

    @_wrap_unexpected("get_plans")
    async def get_plans(self) -> List[SubscriptionPlan]:
        """
        Active plans. An empty catalog triggers one sync from Stripe.

        Concurrent callers may both sync; the upsert makes that harmless.
        """
        plans = await self._plans.list_active()
        if plans:
            return plans

        logger.info("No plans stored locally; syncing catalog from Stripe")
        await self.sync_plans_from_gateway()
        return await self._plans.list_active()

    @_wrap_unexpected("sync_plans")
    async def sync_plans_from_gateway(self) -> List[SubscriptionPlan]:
        """
        Upsert every active recurring Stripe price as a plan.

        Returns:
            The plans that were written
        """
        prices = await self._stripe.list_recurring_prices()
        synced = []
        for price in prices:
            plan = plan_from_gateway_price(price)
            if plan is None:
                logger.info(f"Skipping Stripe price {price.id}: inactive or product unavailable")
                continue
            await self._plans.upsert(plan)
            synced.append(plan)

        logger.info(f"Synced {len(synced)} of {len(prices)} Stripe prices into the plan catalog")
        return synced

    # =========================================================================
    # Current Subscription
    # =========================================================================

    @_wrap_unexpected("get_current_subscription")
    async def get_current_subscription(self, user_id: UUID) -> CurrentSubscription:
        """
        The user's plan and the subscription row backing it.

        Users without a row are on the free plan.

        Raises:
            NotFoundError: the free plan (or the row's plan) is missing from
                the catalog
        """
        subscription = await self._subscriptions.get_by_user_id(user_id)
        if subscription is None:
            return CurrentSubscription(plan=await self._require_free_plan(), subscription=None)

        plan = await self._plans.get_by_id(subscription.plan_id)
        if plan is None:
            raise NotFoundError(
                "Subscription plan not found",
                details={"plan_id": subscription.plan_id, "subscription_id": subscription.id},
            )
        return CurrentSubscription(plan=plan, subscription=subscription)

    # =========================================================================
    # Checkout
    # =========================================================================

    @_wrap_unexpected("create_checkout_session")
    async def create_checkout_session(self, user_id: UUID, plan_id: str) -> CheckoutSession:
        """
        Start a hosted checkout for a plan.

        A live (active or trialing) subscription to the same plan is a
        conflict. A subscription to the same plan stuck in any other status
        may be checked out again.

        Raises:
            NotFoundError: plan or profile missing
            ConflictError: already subscribed to this plan
        """
        plan = await self._plans.get_by_id(plan_id)
        if plan is None:
            raise NotFoundError("Subscription plan not found", details={"plan_id": plan_id})

        profile = await self._profiles.get_by_id(user_id)
        if profile is None:
            raise NotFoundError("User profile not found", details={"user_id": str(user_id)})

        existing = await self._subscriptions.get_by_user_id(user_id)
        if existing and existing.plan_id == plan_id and existing.status in LIVE_STATUSES:
            raise ConflictError(
                "You are already subscribed to this plan",
                details={"plan_id": plan_id, "subscription_id": existing.id},
            )

        customer_id = await self._resolve_customer_id(profile, existing)

        session = await self._stripe.create_checkout_session(
            customer_id=customer_id,
            price_id=plan.id,
            success_url=self._settings.checkout_success_url,
            cancel_url=self._settings.checkout_cancel_url,
            user_id=str(user_id),
        )
        return CheckoutSession(session_id=session.id, url=session.url)

    async def _resolve_customer_id(
        self,
        profile: BillingProfile,
        existing: Optional[CustomerSubscription],
    ) -> str:
        # Precedence: existing subscription row, then profile, then a new customer
        if existing and existing.stripe_customer_id:
            return existing.stripe_customer_id
        if profile.stripe_customer_id:
            return profile.stripe_customer_id

        email = profile.email or f"user+{profile.id}@{self._settings.billing_fallback_email_domain}"
        customer_id = await self._stripe.create_customer(
            user_id=str(profile.id),
            email=email,
            name=profile.full_name,
        )
        if not await self._profiles.set_stripe_customer_id(profile.id, customer_id):
            logger.warning(f"Profile {profile.id} vanished before customer {customer_id} was stored")
        return customer_id

    # =========================================================================
    # Cancel / Reactivate
    # =========================================================================

    @_wrap_unexpected("cancel_subscription")
    async def cancel_subscription(self, user_id: UUID) -> None:
        """
        Ask Stripe to cancel at the end of the current period.

        Raises:
            NotFoundError: no subscription
            InvalidStateError: subscription is not active
        """
        subscription = await self._require_subscription(user_id)
        if subscription.status is not SubscriptionStatus.ACTIVE:
            raise InvalidStateError(
                "Only active subscriptions can be canceled",
                current_status=subscription.status.value,
            )

        await self._stripe.set_cancel_at_period_end(subscription.id, True)
        logger.info(f"Cancellation requested for subscription {subscription.id} (user {user_id})")

    @_wrap_unexpected("reactivate_subscription")
    async def reactivate_subscription(self, user_id: UUID) -> None:
        """
        Withdraw a scheduled cancellation.

        Raises:
            NotFoundError: no subscription
            InvalidStateError: not active, or not scheduled to cancel
        """
        subscription = await self._require_subscription(user_id)
        if subscription.status is not SubscriptionStatus.ACTIVE or not subscription.cancel_at_period_end:
            raise InvalidStateError(
                "Only active subscriptions scheduled for cancellation can be reactivated",
                current_status=subscription.status.value,
            )

        await self._stripe.set_cancel_at_period_end(subscription.id, False)
        logger.info(f"Reactivation requested for subscription {subscription.id} (user {user_id})")

    # =========================================================================
    # Portal and Payments
    # =========================================================================

    @_wrap_unexpected("create_portal_session")
    async def create_portal_session(self, user_id: UUID) -> PortalSession:
        """
        Raises:
            NotFoundError: profile or Stripe customer missing
            ForbiddenError: students cannot manage billing
        """
        profile = await self._profiles.get_by_id(user_id)
        if profile is None:
            raise NotFoundError("User profile not found", details={"user_id": str(user_id)})
        if profile.role is UserRole.STUDENT:
            raise ForbiddenError("Students cannot manage billing")
        if not profile.stripe_customer_id:
            raise NotFoundError("No billing account found for this user")

        session = await self._stripe.create_portal_session(
            customer_id=profile.stripe_customer_id,
            return_url=self._settings.portal_return_url,
        )
        return PortalSession(url=session.url)

    @_wrap_unexpected("get_payment_history")
    async def get_payment_history(self, user_id: UUID) -> List[PaymentHistoryItem]:
        """Recent Stripe payments. No Stripe customer means an empty history."""
        customer_id = None
        subscription = await self._subscriptions.get_by_user_id(user_id)
        if subscription:
            customer_id = subscription.stripe_customer_id
        else:
            profile = await self._profiles.get_by_id(user_id)
            customer_id = profile.stripe_customer_id if profile else None

        if not customer_id:
            return []

        intents = await self._stripe.list_payment_intents(customer_id, limit=10)
        return [
            PaymentHistoryItem(
                id=intent.id,
                amount=minor_to_major(intent.amount),
                currency=intent.currency,
                status=intent.status,
                created_at=to_datetime(intent.created),
                description=intent.description,
            )
            for intent in intents
        ]

    # =========================================================================
    # Plan Limits
    # =========================================================================

    @_wrap_unexpected("check_custom_module_allowance")
    async def check_custom_module_allowance(
        self,
        user_id: UUID,
        existing_custom_modules: int,
    ) -> ModuleAllowance:
        """
        Decide whether the user may create another custom module.

        Free tier limits the lifetime total of custom modules. Paid tiers
        limit modules created in the current billing period.

        Args:
            user_id: Profile ID
            existing_custom_modules: Custom modules the user owns today

        Raises:
            ForbiddenError: the limit is reached
            UpstreamServiceError: a paid tier without a subscription row
        """
        profile = await self._profiles.get_by_id(user_id)
        if profile is None:
            raise NotFoundError("User profile not found", details={"user_id": str(user_id)})

        tier = profile.subscription_plan
        if not tier.is_paid:
            plan = await self._require_free_plan()
            limit = plan.custom_module_limit
            if limit <= 0:
                raise ForbiddenError(
                    "Your plan does not include custom modules. Upgrade to create them.",
                    details={"tier": tier.value, "limit": limit},
                )
            if existing_custom_modules >= limit:
                raise ForbiddenError(
                    f"You have reached the limit of {limit} custom module(s) on the free plan.",
                    details={"tier": tier.value, "limit": limit, "used": existing_custom_modules},
                )
            return ModuleAllowance(
                tier=tier, limit=limit, used=existing_custom_modules, counts_against_period=False
            )

        subscription = await self._subscriptions.get_by_user_id(user_id)
        if subscription is None:
            logger.error(f"User {user_id} is on tier {tier.value} but has no subscription record")
            raise UpstreamServiceError(
                "Subscription record missing for paid plan",
                operation="check_custom_module_allowance",
                user_id=str(user_id),
            )

        plan = await self._plans.get_by_id(subscription.plan_id)
        if plan is None:
            raise NotFoundError(
                "Subscription plan not found",
                details={"plan_id": subscription.plan_id, "subscription_id": subscription.id},
            )

        used = subscription.custom_modules_created_this_period
        if used >= plan.custom_module_limit:
            raise ForbiddenError(
                f"You have reached the limit of {plan.custom_module_limit} custom module(s) "
                f"for this billing period.",
                details={"tier": tier.value, "limit": plan.custom_module_limit, "used": used},
            )
        return ModuleAllowance(
            tier=tier, limit=plan.custom_module_limit, used=used, counts_against_period=True
        )

    @_wrap_unexpected("record_custom_module_created")
    async def record_custom_module_created(self, user_id: UUID) -> Optional[int]:
        """
        Count a created custom module against the current period.

        Free-tier creations are not counted per period.

        Returns:
            The new period count, or None when nothing was counted
        """
        profile = await self._profiles.get_by_id(user_id)
        if profile is None or not profile.subscription_plan.is_paid:
            return None

        subscription = await self._subscriptions.get_by_user_id(user_id)
        if subscription is None:
            logger.warning(f"No subscription record to count custom module for user {user_id}")
            return None

        count = await self._subscriptions.increment_usage_counter(subscription.id)
        logger.info(f"Custom modules this period for subscription {subscription.id}: {count}")
        return count

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _require_free_plan(self) -> SubscriptionPlan:
        plan = await self._plans.get_free_plan()
        if plan is None:
            logger.error("No active free plan in the catalog")
            raise NotFoundError("Free plan not found")
        return plan

    async def _require_subscription(self, user_id: UUID) -> CustomerSubscription:
        subscription = await self._subscriptions.get_by_user_id(user_id)
        if subscription is None:
            raise NotFoundError("No subscription found", details={"user_id": str(user_id)})
        return subscription
