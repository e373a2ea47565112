"""
Payments Infrastructure Module

Stripe client wrapper used by the subscription and webhook services.
"""

from noteearly.infrastructure.payments.stripe_service import (
    StripeService,
    StripeServiceError,
    get_stripe_service,
)

__all__ = ["StripeService", "StripeServiceError", "get_stripe_service"]
