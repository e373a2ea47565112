"""
Subscription API Routes

REST API endpoints for plans, checkout, cancellation and billing history.
Errors raised by SubscriptionService are NoteEarlyError subclasses and are
turned into JSON responses by the app's exception handlers.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from noteearly.api.dependencies import get_current_user_id, get_subscription_service
from noteearly.domain.subscription import CreateCheckoutRequest
from noteearly.infrastructure.exceptions import ForbiddenError
from noteearly.infrastructure.services.subscription_service import SubscriptionService


logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Plans and Current Subscription
# =============================================================================

@router.get("/subscriptions/plans")
async def get_plans(
    service: SubscriptionService = Depends(get_subscription_service),
):
    """List active subscription plans."""
    plans = await service.get_plans()
    return {"status": "success", "data": plans}


@router.get("/subscriptions/current")
async def get_current_subscription(
    user_id: UUID = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Get the current user's plan and subscription.

    Users without a subscription are reported on the free plan with
    ``subscription: null``.
    """
    current = await service.get_current_subscription(user_id)
    return {"status": "success", "data": current}


# =============================================================================
# Checkout and Portal
# =============================================================================

@router.post("/subscriptions/checkout")
async def create_checkout_session(
    request: CreateCheckoutRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Create a Stripe Checkout session for a plan.

    The subscription itself is recorded when Stripe confirms it via webhook.
    """
    session = await service.create_checkout_session(user_id, request.plan_id)
    logger.info(f"Created checkout session {session.session_id} for user {user_id}")
    return {
        "status": "success",
        "data": {"sessionId": session.session_id, "url": session.url},
    }


@router.post("/subscriptions/portal")
async def create_portal_session(
    user_id: UUID = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Create a Stripe Customer Portal session."""
    session = await service.create_portal_session(user_id)
    return {"status": "success", "data": session}


# =============================================================================
# Cancel / Reactivate
# =============================================================================

@router.post("/subscriptions/cancel")
async def cancel_subscription(
    user_id: UUID = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await service.cancel_subscription(user_id)
    return {
        "status": "success",
        "message": "Subscription cancellation requested successfully.",
    }


@router.post("/subscriptions/reactivate")
async def reactivate_subscription(
    user_id: UUID = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    await service.reactivate_subscription(user_id)
    return {
        "status": "success",
        "message": "Subscription reactivation requested successfully.",
    }


# =============================================================================
# Payments and Usage
# =============================================================================

@router.get("/subscriptions/payments")
async def get_payment_history(
    user_id: UUID = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Recent payments from Stripe; empty when the user was never billed."""
    payments = await service.get_payment_history(user_id)
    return {"status": "success", "data": payments}


@router.get("/subscriptions/limits/custom-modules")
async def get_custom_module_allowance(
    existing: int = Query(0, ge=0, description="Custom modules the user currently owns"),
    user_id: UUID = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Report whether the user may create another custom module.

    A reached limit is reported as ``allowed: false`` rather than an error.
    """
    try:
        allowance = await service.check_custom_module_allowance(user_id, existing)
    except ForbiddenError as e:
        return {
            "status": "success",
            "data": {"allowed": False, "reason": e.message, **e.details},
        }

    return {
        "status": "success",
        "data": {
            "allowed": True,
            "tier": allowance.tier,
            "limit": allowance.limit,
            "used": allowance.used,
            "remaining": allowance.remaining,
            "countsAgainstPeriod": allowance.counts_against_period,
        },
    }
