"""
Stripe Payment Service

Infrastructure service for every call NoteEarly makes to Stripe:
customers, hosted checkout, the billing portal, subscription changes,
payment history, the price catalog and webhook verification.

The service wraps an explicitly constructed ``stripe.StripeClient`` instead of
the SDK's module-level globals, so tests and scripts can inject their own
instance. API calls go through the SDK's ``*_async`` methods over an httpx
transport.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import stripe
from stripe import StripeError

from noteearly.config.settings import get_settings
from noteearly.domain.gateway import (
    GatewayPaymentIntent,
    GatewayPrice,
    GatewaySubscription,
)
from noteearly.infrastructure.exceptions import (
    ConfigurationError,
    UpstreamServiceError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)


class StripeServiceError(UpstreamServiceError):
    """A Stripe API call failed."""


def _to_plain(obj: Any) -> Dict[str, Any]:
    """StripeObject to a plain recursive dict."""
    return obj.to_dict()


class StripeService:
    """
    Stripe payment processing service.

    Args:
        api_key: Stripe secret key. Calls fail with ConfigurationError when
            it is missing.
        webhook_secret: Signing secret of the webhook endpoint
        api_version: Pinned Stripe API version
        max_network_retries: Retries the SDK performs on network errors
    """

    def __init__(
        self,
        api_key: Optional[str],
        webhook_secret: Optional[str],
        api_version: Optional[str] = None,
        max_network_retries: int = 2,
    ):
        self._webhook_secret = webhook_secret
        self._client: Optional[stripe.StripeClient] = None
        if api_key:
            self._client = stripe.StripeClient(
                api_key,
                stripe_version=api_version,
                max_network_retries=max_network_retries,
                http_client=stripe.HTTPXClient(),
            )

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            raise ConfigurationError(
                "Stripe is not configured",
                missing_keys=["STRIPE_SECRET_KEY"],
            )
        return self._client

    # =========================================================================
    # Customer Management
    # =========================================================================

    async def create_customer(
        self,
        user_id: str,
        email: str,
        name: Optional[str] = None,
    ) -> str:
        """
        Create a new Stripe customer.

        Args:
            user_id: Internal user ID (stored in metadata as userId)
            email: Customer email for receipts
            name: Optional customer name

        Returns:
            The new Stripe customer id
        """
        params: Dict[str, Any] = {"email": email, "metadata": {"userId": user_id}}
        if name:
            params["name"] = name

        try:
            customer = await self.client.customers.create_async(params=params)
            logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
            return customer.id

        except StripeError as e:
            logger.error(f"Failed to create Stripe customer for user {user_id}: {e}")
            raise StripeServiceError(
                f"Failed to create customer: {e}",
                operation="create_customer",
                user_id=user_id,
                original_error=e,
            )

    # =========================================================================
    # Checkout Session
    # =========================================================================

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        user_id: str,
    ) -> stripe.checkout.Session:
        """
        Create a hosted Checkout Session for a subscription to one price.

        The user id is stored on both the session and the subscription it
        creates.

        Returns:
            stripe.checkout.Session with checkout URL
        """
        try:
            session = await self.client.checkout.sessions.create_async(
                params={
                    "customer": customer_id,
                    "mode": "subscription",
                    "payment_method_types": ["card"],
                    "line_items": [{"price": price_id, "quantity": 1}],
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "metadata": {"userId": user_id, "planId": price_id},
                    "subscription_data": {"metadata": {"userId": user_id, "planId": price_id}},
                }
            )

            logger.info(
                f"Created checkout session {session.id} for user {user_id}, "
                f"price={price_id}, customer={customer_id}"
            )
            return session

        except StripeError as e:
            logger.error(f"Failed to create checkout session for user {user_id}: {e}")
            raise StripeServiceError(
                f"Failed to create checkout: {e}",
                operation="create_checkout_session",
                user_id=user_id,
                original_error=e,
            )

    # =========================================================================
    # Customer Portal
    # =========================================================================

    async def create_portal_session(
        self,
        customer_id: str,
        return_url: str,
    ) -> stripe.billing_portal.Session:
        """
        Create a Billing Portal session for self-service management.

        Args:
            customer_id: Stripe customer ID
            return_url: URL to return to after portal session

        Returns:
            stripe.billing_portal.Session with portal URL
        """
        try:
            session = await self.client.billing_portal.sessions.create_async(
                params={"customer": customer_id, "return_url": return_url}
            )

            logger.info(f"Created portal session for customer {customer_id}")
            return session

        except StripeError as e:
            logger.error(f"Failed to create portal session for customer {customer_id}: {e}")
            raise StripeServiceError(
                f"Failed to create portal: {e}",
                operation="create_portal_session",
                original_error=e,
            )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        """
        Retrieve the live state of a subscription.

        Raises:
            StripeServiceError: Stripe rejected the call or is unreachable
        """
        try:
            subscription = await self.client.subscriptions.retrieve_async(subscription_id)
            return GatewaySubscription.model_validate(_to_plain(subscription))

        except StripeError as e:
            logger.error(f"Failed to retrieve subscription {subscription_id}: {e}")
            raise StripeServiceError(
                f"Failed to retrieve subscription: {e}",
                operation="retrieve_subscription",
                original_error=e,
            )

    async def set_cancel_at_period_end(
        self,
        subscription_id: str,
        cancel_at_period_end: bool,
    ) -> GatewaySubscription:
        """
        Schedule (True) or withdraw (False) cancellation at period end.

        Local state is not touched here; the resulting
        customer.subscription.updated event carries the change back.
        """
        try:
            subscription = await self.client.subscriptions.update_async(
                subscription_id,
                params={"cancel_at_period_end": cancel_at_period_end},
            )

            logger.info(
                f"Requested cancel_at_period_end={cancel_at_period_end} "
                f"for subscription {subscription_id}"
            )
            return GatewaySubscription.model_validate(_to_plain(subscription))

        except StripeError as e:
            logger.error(f"Failed to update subscription {subscription_id}: {e}")
            raise StripeServiceError(
                f"Failed to update subscription: {e}",
                operation="set_cancel_at_period_end",
                original_error=e,
            )

    # =========================================================================
    # Payments and Catalog
    # =========================================================================

    async def list_payment_intents(
        self,
        customer_id: str,
        limit: int = 10,
    ) -> List[GatewayPaymentIntent]:
        """Most recent payment intents of a customer, newest first."""
        try:
            result = await self.client.payment_intents.list_async(
                params={"customer": customer_id, "limit": limit}
            )
            return [GatewayPaymentIntent.model_validate(_to_plain(pi)) for pi in result.data]

        except StripeError as e:
            logger.error(f"Failed to list payment intents for customer {customer_id}: {e}")
            raise StripeServiceError(
                f"Failed to list payments: {e}",
                operation="list_payment_intents",
                original_error=e,
            )

    async def list_recurring_prices(self) -> List[GatewayPrice]:
        """All active recurring prices, with their products expanded."""
        try:
            prices = await self.client.prices.list_async(
                params={
                    "active": True,
                    "type": "recurring",
                    "expand": ["data.product"],
                    "limit": 100,
                }
            )
            return [
                GatewayPrice.model_validate(_to_plain(price))
                async for price in prices.auto_paging_iter()
            ]

        except StripeError as e:
            logger.error(f"Failed to list Stripe prices: {e}")
            raise StripeServiceError(
                f"Failed to list prices: {e}",
                operation="list_recurring_prices",
                original_error=e,
            )

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify a webhook signature and return the event as a plain dict.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            The verified event payload

        Raises:
            WebhookSignatureError: signature or payload is invalid
            ConfigurationError: no webhook secret configured
        """
        if not self._webhook_secret:
            raise ConfigurationError(
                "Stripe webhook secret is not configured",
                missing_keys=["STRIPE_WEBHOOK_SECRET"],
            )

        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}", original_error=e)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid signature: {e}", original_error=e)

        return json.loads(payload)


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_stripe_service_instance: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get or create Stripe service singleton from settings."""
    global _stripe_service_instance

    if _stripe_service_instance is None:
        settings = get_settings()
        _stripe_service_instance = StripeService(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_version=settings.stripe_api_version,
            max_network_retries=settings.stripe_max_network_retries,
        )

    return _stripe_service_instance
