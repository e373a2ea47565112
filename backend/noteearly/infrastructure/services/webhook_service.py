"""
Webhook Service

Reconciles local billing state with the Stripe event stream.

Each verified event is parsed into a typed variant and handed to exactly one
handler. Handlers tolerate redelivery and reordering:
- creation is an upsert keyed by the Stripe subscription id
- updates only touch rows that exist (an update never creates)
- payment ledger inserts are no-ops when the id is already recorded

The profile mirror is written as a separate step after the subscription
write. If it fails the error is logged and the subscription write stands.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Type
from uuid import UUID

from pydantic import ValidationError

from noteearly.domain.gateway import (
    BILLING_EVENT_CLASSES,
    CheckoutSessionCompleted,
    GatewayInvoice,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
    parse_billing_event,
)
from noteearly.domain.subscription import (
    CYCLE_RENEWAL_REASON,
    HELD_STATUSES,
    BillingMirrorUpdate,
    BillingProfile,
    CustomerSubscription,
    PaymentRecord,
    PaymentStatus,
    PlanTier,
    ProfileBillingStatus,
    SubscriptionStatus,
    SubscriptionSync,
    map_gateway_status,
    minor_to_major,
    payment_record_id,
)
from noteearly.infrastructure.db.repositories import (
    CustomerSubscriptionRepository,
    PaymentHistoryRepository,
    SubscriptionPlanRepository,
    UserProfileRepository,
)
from noteearly.infrastructure.payments.stripe_service import StripeService


logger = logging.getLogger(__name__)


EventHandler = Callable[[Any], Awaitable[None]]


class WebhookService:
    """
    Billing event reconciler.

    Args:
        stripe_service: Used to re-fetch live subscription details on invoice.paid
        subscriptions: Customer subscription rows
        plans: Plan catalog
        profiles: Profile lookups and billing mirror
        payments: Payment ledger
    """

    def __init__(
        self,
        stripe_service: StripeService,
        subscriptions: CustomerSubscriptionRepository,
        plans: SubscriptionPlanRepository,
        profiles: UserProfileRepository,
        payments: PaymentHistoryRepository,
    ):
        self._stripe = stripe_service
        self._subscriptions = subscriptions
        self._plans = plans
        self._profiles = profiles
        self._payments = payments

        self._handlers: Dict[Type, EventHandler] = {
            CheckoutSessionCompleted: self._handle_checkout_completed,
            SubscriptionCreated: self._handle_subscription_created,
            SubscriptionUpdated: self._handle_subscription_updated,
            SubscriptionDeleted: self._handle_subscription_deleted,
            InvoicePaid: self._handle_invoice_paid,
            InvoicePaymentFailed: self._handle_invoice_payment_failed,
        }
        missing = [cls.__name__ for cls in BILLING_EVENT_CLASSES if cls not in self._handlers]
        if missing:
            raise TypeError(f"No webhook handler registered for: {', '.join(missing)}")

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def process_event(self, raw_event: Mapping[str, Any]) -> None:
        """
        Apply one verified Stripe event to local state.

        Never raises: unknown kinds are ignored, malformed payloads and
        handler failures are logged.
        """
        event_type = raw_event.get("type")
        event_id = raw_event.get("id")

        try:
            event = parse_billing_event(raw_event)
        except ValidationError as e:
            logger.error(f"Malformed {event_type} event {event_id}: {e}")
            return

        if isinstance(event, UnhandledEvent):
            logger.info(f"Unhandled event type: {event.type}")
            return

        logger.info(f"Processing webhook event: {event.type} ({event.id})")
        handler = self._handlers[type(event)]
        try:
            await handler(event)
        except Exception:
            logger.exception(f"Error processing webhook {event.type} ({event.id})")

    # =========================================================================
    # Checkout
    # =========================================================================

    async def _handle_checkout_completed(self, event: CheckoutSessionCompleted) -> None:
        session = event.payload
        logger.info(f"Checkout session completed: {session.id}")

        if not session.customer or not session.subscription:
            logger.error(f"Missing customer or subscription in checkout session {session.id}")
            return
        if not session.email:
            logger.error(f"Missing customer email in checkout session {session.id}")
            return

        user = await self._profiles.get_by_email(session.email)
        if not user:
            logger.error(f"User not found with email {session.email} (session {session.id})")
            return

        # The subscription row is written when customer.subscription.created arrives
        logger.info(
            f"User {user.id} completed checkout for subscription {session.subscription} "
            f"(customer {session.customer})"
        )

    # =========================================================================
    # Subscription Lifecycle
    # =========================================================================

    async def _handle_subscription_created(self, event: SubscriptionCreated) -> None:
        subscription = event.payload
        logger.info(f"Subscription created: {subscription.id}")

        price_id = subscription.price_id
        if not price_id:
            logger.error(f"Missing price ID in subscription {subscription.id}")
            return
        if not subscription.customer:
            logger.error(f"Missing customer in subscription {subscription.id}")
            return

        user = await self._profiles.get_by_stripe_customer_id(subscription.customer)
        if not user:
            logger.error(
                f"User not found with Stripe customer ID {subscription.customer} "
                f"(subscription {subscription.id})"
            )
            return

        plan = await self._plans.get_by_id(price_id)
        if not plan:
            logger.error(
                f"Plan not found with Stripe price ID {price_id} "
                f"(subscription {subscription.id}, user {user.id})"
            )
            return

        status = map_gateway_status(subscription.status)
        await self._subscriptions.upsert_from_gateway(
            CustomerSubscription(
                id=subscription.id,
                user_id=user.id,
                plan_id=plan.id,
                stripe_customer_id=subscription.customer,
                status=status,
                current_period_start=subscription.period_start,
                current_period_end=subscription.period_end,
                cancel_at_period_end=subscription.cancel_at_period_end,
            )
        )
        logger.info(f"Stored subscription {subscription.id} for user {user.id}")

        await self._mirror_profile(
            user.id,
            subscription.id,
            BillingMirrorUpdate(
                subscription_status=ProfileBillingStatus.from_subscription(status),
                subscription_plan=plan.tier,
                subscription_renewal_date=subscription.period_end,
            ),
        )

    async def _handle_subscription_updated(self, event: SubscriptionUpdated) -> None:
        subscription = event.payload
        logger.info(f"Subscription updated: {subscription.id}")

        plan_id: Optional[str] = None
        tier: Optional[PlanTier] = None
        price_id = subscription.price_id
        if price_id:
            plan = await self._plans.get_by_id(price_id)
            if plan:
                plan_id, tier = plan.id, plan.tier
            else:
                logger.warning(
                    f"Plan not found with Stripe price ID {price_id} "
                    f"during update of subscription {subscription.id}"
                )
        else:
            logger.warning(f"Missing price ID in update of subscription {subscription.id}")

        status = map_gateway_status(subscription.status)
        user_id = await self._subscriptions.apply_gateway_update(
            subscription.id,
            SubscriptionSync(
                status=status,
                plan_id=plan_id,
                current_period_start=subscription.period_start,
                current_period_end=subscription.period_end,
                cancel_at_period_end=subscription.cancel_at_period_end,
            ),
        )
        if user_id is None:
            logger.warning(
                f"Subscription {subscription.id} updated event received, "
                f"but no existing record found; dropping"
            )
            return

        logger.info(f"Updated subscription {subscription.id} for user {user_id}")

        held = await self._held_elsewhere(user_id, subscription.id)
        if held:
            logger.info(
                f"User {user_id} holds subscription {held.id}; "
                f"profile not mirrored from {subscription.id}"
            )
            return

        await self._mirror_profile(
            user_id,
            subscription.id,
            BillingMirrorUpdate(
                subscription_status=ProfileBillingStatus.from_subscription(status),
                subscription_plan=tier,
                subscription_renewal_date=subscription.period_end,
            ),
        )

    async def _handle_subscription_deleted(self, event: SubscriptionDeleted) -> None:
        subscription = event.payload
        logger.info(f"Subscription deleted: {subscription.id}")

        status = map_gateway_status(subscription.status)
        user_id = await self._subscriptions.mark_deleted(subscription.id, status)
        if user_id is None:
            logger.warning(
                f"Subscription {subscription.id} deleted event received, "
                f"but no existing record found"
            )
            return

        logger.info(f"Marked subscription {subscription.id} as {status.value} for user {user_id}")

        held = await self._held_elsewhere(user_id, subscription.id)
        if held:
            logger.info(
                f"User {user_id} still holds subscription {held.id}; "
                f"profile kept on it after {subscription.id} ended"
            )
            return

        profile_status = (
            ProfileBillingStatus.CANCELED
            if status is SubscriptionStatus.CANCELED
            else ProfileBillingStatus.FREE
        )
        await self._mirror_profile(
            user_id,
            subscription.id,
            BillingMirrorUpdate(
                subscription_status=profile_status,
                subscription_plan=PlanTier.FREE,
                subscription_renewal_date=None,
            ),
        )

    # =========================================================================
    # Invoices
    # =========================================================================

    async def _handle_invoice_paid(self, event: InvoicePaid) -> None:
        invoice = event.payload
        logger.info(f"Invoice paid: {invoice.id}")

        user = await self._invoice_owner(invoice)
        if not user:
            return

        payment_id = payment_record_id(invoice, "invoice")
        recorded = await self._payments.record(
            PaymentRecord(
                id=payment_id,
                user_id=user.id,
                subscription_id=invoice.subscription,
                amount=minor_to_major(invoice.amount_paid),
                currency=invoice.currency,
                status=PaymentStatus.SUCCEEDED,
                payment_method=invoice.collection_method or "unknown",
                receipt_url=invoice.hosted_invoice_url,
            )
        )
        if recorded:
            logger.info(f"Recorded payment for invoice {invoice.id}, user {user.id}")
        else:
            logger.info(f"Payment {payment_id} already in the ledger (invoice {invoice.id})")

        if invoice.billing_reason == CYCLE_RENEWAL_REASON:
            await self._reset_usage_for_renewal(invoice)

        try:
            live = await self._stripe.retrieve_subscription(invoice.subscription)
            renewal_date = live.period_end
            if renewal_date is None:
                raise ValueError(f"Subscription {live.id} has no current_period_end")

            tier: Optional[PlanTier] = None
            if live.price_id:
                plan = await self._plans.get_by_id(live.price_id)
                if plan:
                    tier = plan.tier
                else:
                    logger.warning(
                        f"Plan not found with Stripe price ID {live.price_id} "
                        f"during invoice.paid handling (invoice {invoice.id})"
                    )

            await self._profiles.update_billing_mirror(
                user.id,
                BillingMirrorUpdate(
                    subscription_status=ProfileBillingStatus.ACTIVE,
                    subscription_plan=tier,
                    subscription_renewal_date=renewal_date,
                ),
            )
            logger.info(f"Updated profile {user.id} status to active following invoice {invoice.id}")
        except Exception:
            logger.exception(
                f"Failed to update profile {user.id} after invoice payment "
                f"(invoice {invoice.id}, subscription {invoice.subscription})"
            )

    async def _handle_invoice_payment_failed(self, event: InvoicePaymentFailed) -> None:
        invoice = event.payload
        logger.info(f"Invoice payment failed: {invoice.id}")

        user = await self._invoice_owner(invoice)
        if not user:
            return

        await self._payments.record(
            PaymentRecord(
                id=payment_record_id(invoice, "failed"),
                user_id=user.id,
                subscription_id=invoice.subscription,
                amount=minor_to_major(invoice.amount_due),
                currency=invoice.currency,
                status=PaymentStatus.FAILED,
                payment_method=invoice.collection_method or "unknown",
                receipt_url=invoice.hosted_invoice_url,
            )
        )
        logger.info(f"Recorded failed payment for invoice {invoice.id}, user {user.id}")

        updated = await self._subscriptions.set_status_for_customer(
            invoice.subscription,
            invoice.customer,
            SubscriptionStatus.PAST_DUE,
        )
        if updated:
            logger.warning(f"Payment failed for subscription {invoice.subscription}, set to past_due")
        else:
            logger.warning(
                f"Payment failed for unknown subscription {invoice.subscription} "
                f"(customer {invoice.customer})"
            )

        await self._mirror_profile(
            user.id,
            invoice.subscription,
            BillingMirrorUpdate(subscription_status=ProfileBillingStatus.PAST_DUE),
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _reset_usage_for_renewal(self, invoice: GatewayInvoice) -> None:
        if await self._subscriptions.reset_usage_counter(invoice.subscription, invoice.id):
            logger.info(f"Reset custom module counter for subscription {invoice.subscription}")
        elif await self._subscriptions.get_by_id(invoice.subscription):
            logger.info(
                f"Counter for subscription {invoice.subscription} already reset "
                f"for renewal invoice {invoice.id}; redelivered renewal"
            )
        else:
            logger.warning(
                f"Renewal invoice {invoice.id} for unknown subscription "
                f"{invoice.subscription}; counter not reset"
            )

    async def _held_elsewhere(self, user_id: UUID, subscription_id: str) -> Optional[CustomerSubscription]:
        """Return the user's current row when it is another subscription they still hold."""
        current = await self._subscriptions.get_by_user_id(user_id)
        if current and current.id != subscription_id and current.status in HELD_STATUSES:
            return current
        return None

    async def _invoice_owner(self, invoice: GatewayInvoice) -> Optional[BillingProfile]:
        if not invoice.customer or not invoice.subscription:
            logger.error(f"Missing customer or subscription in invoice {invoice.id}")
            return None

        user = await self._profiles.get_by_stripe_customer_id(invoice.customer)
        if not user:
            logger.error(
                f"User not found with Stripe customer ID {invoice.customer} "
                f"(invoice {invoice.id}, subscription {invoice.subscription})"
            )
        return user

    async def _mirror_profile(
        self,
        user_id: UUID,
        subscription_id: Optional[str],
        mirror: BillingMirrorUpdate,
    ) -> None:
        try:
            if await self._profiles.update_billing_mirror(user_id, mirror):
                logger.info(
                    f"Updated profile {user_id} from subscription {subscription_id}: "
                    f"{mirror.to_columns()}"
                )
            else:
                logger.warning(f"Profile {user_id} not found while mirroring subscription {subscription_id}")
        except Exception:
            logger.exception(
                f"Failed to update profile {user_id} after change to subscription {subscription_id}"
            )
