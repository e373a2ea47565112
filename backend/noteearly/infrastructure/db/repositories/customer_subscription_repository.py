"""
Customer Subscription Repository

Data access layer for the local mirror of Stripe subscriptions.

Every write is a single atomic statement: creation is an upsert keyed by the
Stripe subscription id, updates are conditional on the row existing
(UPDATE ... WHERE id = ... RETURNING), and the usage counter is incremented
in SQL. No method reads a row and then writes it back.
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from noteearly.infrastructure.db.models.base import utcnow
from noteearly.infrastructure.db.models.customer_subscription import CustomerSubscriptionModel
from noteearly.infrastructure.db.repositories.base_repository import SessionScopedRepository
from noteearly.domain.subscription import (
    HELD_STATUSES,
    LIVE_STATUSES,
    CustomerSubscription,
    SubscriptionStatus,
    SubscriptionSync,
)


logger = logging.getLogger(__name__)

LIVE_STATUS_VALUES = sorted(s.value for s in LIVE_STATUSES)
HELD_STATUS_VALUES = sorted(s.value for s in HELD_STATUSES)


class CustomerSubscriptionRepository(SessionScopedRepository):
    """
    Repository for customer subscription data access.

    Implements queries and atomic commands with domain model mapping.
    """

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_id(self, subscription_id: str) -> Optional[CustomerSubscription]:
        """
        Get subscription by Stripe subscription ID.

        Args:
            subscription_id: Stripe subscription ID (local primary key)

        Returns:
            CustomerSubscription domain model or None
        """
        async with self._session_context() as session:
            model = await session.get(CustomerSubscriptionModel, subscription_id)
            return self._to_domain(model) if model else None

    async def get_by_user_id(self, user_id: UUID) -> Optional[CustomerSubscription]:
        """
        Get the user's current subscription.

        A user may hold several rows over time (each Stripe subscription id
        gets its own). Live rows come first, then past_due/unpaid ones, then
        the rest; within a group the most recently updated wins. A late write
        to an ended subscription does not displace the one the user holds.

        Args:
            user_id: Profile ID

        Returns:
            CustomerSubscription domain model or None
        """
        async with self._session_context() as session:
            statement = (
                select(CustomerSubscriptionModel)
                .where(CustomerSubscriptionModel.user_id == user_id)
                .order_by(
                    case(
                        (CustomerSubscriptionModel.status.in_(LIVE_STATUS_VALUES), 0),
                        (CustomerSubscriptionModel.status.in_(HELD_STATUS_VALUES), 1),
                        else_=2,
                    ),
                    CustomerSubscriptionModel.updated_at.desc(),
                    CustomerSubscriptionModel.created_at.desc(),
                )
                .limit(1)
            )
            result = await session.execute(statement)
            model = result.scalars().first()
            return self._to_domain(model) if model else None

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def upsert_from_gateway(self, subscription: CustomerSubscription) -> CustomerSubscription:
        """
        Insert a subscription confirmed by Stripe, or refresh it if the row exists.

        Redelivered creation events land in the conflict branch. The usage
        counter is never touched there; only renewals reset it.

        Args:
            subscription: Subscription built from the Stripe payload

        Returns:
            The stored subscription
        """
        async with self._session_context() as session:
            now = utcnow()
            stmt = pg_insert(CustomerSubscriptionModel).values(
                id=subscription.id,
                user_id=subscription.user_id,
                plan_id=subscription.plan_id,
                stripe_customer_id=subscription.stripe_customer_id,
                status=subscription.status.value,
                current_period_start=subscription.current_period_start,
                current_period_end=subscription.current_period_end,
                cancel_at_period_end=subscription.cancel_at_period_end,
                custom_modules_created_this_period=subscription.custom_modules_created_this_period,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    "plan_id": stmt.excluded.plan_id,
                    "stripe_customer_id": stmt.excluded.stripe_customer_id,
                    "status": stmt.excluded.status,
                    "current_period_start": stmt.excluded.current_period_start,
                    "current_period_end": stmt.excluded.current_period_end,
                    "cancel_at_period_end": stmt.excluded.cancel_at_period_end,
                    "updated_at": now,
                },
            )
            await session.execute(stmt)

        logger.info(f"Upserted subscription {subscription.id} for user {subscription.user_id}")
        return await self.get_by_id(subscription.id)

    async def apply_gateway_update(
        self,
        subscription_id: str,
        changes: SubscriptionSync,
    ) -> Optional[UUID]:
        """
        Copy Stripe's view of a subscription onto an existing row.

        Args:
            subscription_id: Stripe subscription ID
            changes: Status, period and cancel flag; plan_id is only written
                when set

        Returns:
            The owning user id, or None when no row matched (nothing written)
        """
        values = {
            "status": changes.status.value,
            "current_period_start": changes.current_period_start,
            "current_period_end": changes.current_period_end,
            "cancel_at_period_end": changes.cancel_at_period_end,
            "updated_at": utcnow(),
        }
        if changes.plan_id:
            values["plan_id"] = changes.plan_id

        return await self._update_returning_user(
            CustomerSubscriptionModel.id == subscription_id,
            values,
        )

    async def mark_deleted(
        self,
        subscription_id: str,
        status: SubscriptionStatus,
    ) -> Optional[UUID]:
        """
        Record a subscription Stripe has ended: clear the period and cancel flag.

        Returns:
            The owning user id, or None when no row matched
        """
        return await self._update_returning_user(
            CustomerSubscriptionModel.id == subscription_id,
            {
                "status": status.value,
                "current_period_start": None,
                "current_period_end": None,
                "cancel_at_period_end": False,
                "updated_at": utcnow(),
            },
        )

    async def set_status_for_customer(
        self,
        subscription_id: str,
        stripe_customer_id: str,
        status: SubscriptionStatus,
    ) -> bool:
        """
        Set the status of a subscription, matching on both id and customer.

        Returns:
            True if a row was updated
        """
        user_id = await self._update_returning_user(
            (CustomerSubscriptionModel.id == subscription_id)
            & (CustomerSubscriptionModel.stripe_customer_id == stripe_customer_id),
            {"status": status.value, "updated_at": utcnow()},
        )
        return user_id is not None

    async def reset_usage_counter(self, subscription_id: str, invoice_id: str) -> bool:
        """
        Zero the per-period custom module counter for one renewal invoice.

        The invoice id is stored with the reset, and a row already reset for
        that invoice is left alone. Redelivered or concurrently delivered
        invoice.paid events for the same renewal therefore reset it once.

        Args:
            subscription_id: Stripe subscription ID
            invoice_id: Stripe invoice ID of the renewal

        Returns:
            True if the counter was zeroed by this call
        """
        user_id = await self._update_returning_user(
            (CustomerSubscriptionModel.id == subscription_id)
            & CustomerSubscriptionModel.usage_reset_invoice_id.is_distinct_from(invoice_id),
            {
                "custom_modules_created_this_period": 0,
                "usage_reset_invoice_id": invoice_id,
                "updated_at": utcnow(),
            },
        )
        return user_id is not None

    async def increment_usage_counter(self, subscription_id: str) -> Optional[int]:
        """
        Atomically add one to the per-period custom module counter.

        Returns:
            The new counter value, or None when no row matched
        """
        async with self._session_context() as session:
            counter = CustomerSubscriptionModel.custom_modules_created_this_period
            stmt = (
                update(CustomerSubscriptionModel)
                .where(CustomerSubscriptionModel.id == subscription_id)
                .values(custom_modules_created_this_period=counter + 1, updated_at=utcnow())
                .returning(counter)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def _update_returning_user(self, condition, values: dict) -> Optional[UUID]:
        async with self._session_context() as session:
            stmt = (
                update(CustomerSubscriptionModel)
                .where(condition)
                .values(**values)
                .returning(CustomerSubscriptionModel.user_id)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            return result.scalars().first()

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _to_domain(self, model: CustomerSubscriptionModel) -> CustomerSubscription:
        """Convert database model to domain entity."""
        return CustomerSubscription.model_validate(model)
