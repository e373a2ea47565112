"""
Subscription Plan Repository

Data access for the plan catalog. Plans are written only by the Stripe
catalog sync; everything else reads.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert

from noteearly.infrastructure.db.models.base import utcnow
from noteearly.infrastructure.db.models.subscription_plan import SubscriptionPlanModel
from noteearly.infrastructure.db.repositories.base_repository import SessionScopedRepository
from noteearly.domain.subscription import PlanTier, SubscriptionPlan


logger = logging.getLogger(__name__)


class SubscriptionPlanRepository(SessionScopedRepository):
    """Repository for the subscription plan catalog."""

    async def list_active(self) -> List[SubscriptionPlan]:
        """Active plans, cheapest first."""
        async with self._session_context() as session:
            statement = (
                select(SubscriptionPlanModel)
                .where(SubscriptionPlanModel.is_active.is_(True))
                .order_by(SubscriptionPlanModel.price, SubscriptionPlanModel.id)
            )
            result = await session.execute(statement)
            return [self._to_domain(m) for m in result.scalars().all()]

    async def get_by_id(self, plan_id: str) -> Optional[SubscriptionPlan]:
        async with self._session_context() as session:
            model = await session.get(SubscriptionPlanModel, plan_id)
            return self._to_domain(model) if model else None

    async def get_free_plan(self) -> Optional[SubscriptionPlan]:
        """The active plan with tier 'free', if the catalog has one."""
        async with self._session_context() as session:
            statement = (
                select(SubscriptionPlanModel)
                .where(
                    SubscriptionPlanModel.tier == PlanTier.FREE.value,
                    SubscriptionPlanModel.is_active.is_(True),
                )
                .order_by(SubscriptionPlanModel.id)
                .limit(1)
            )
            result = await session.execute(statement)
            model = result.scalars().first()
            return self._to_domain(model) if model else None

    async def upsert(self, plan: SubscriptionPlan) -> None:
        """
        Insert or refresh a plan keyed by its Stripe price id.

        Args:
            plan: Plan mapped from a Stripe price and product
        """
        async with self._session_context() as session:
            now = utcnow()
            values = {
                "name": plan.name,
                "description": plan.description,
                "price": plan.price,
                "interval": plan.interval,
                "tier": plan.tier.value,
                "student_limit": plan.student_limit,
                "module_limit": plan.module_limit,
                "custom_module_limit": plan.custom_module_limit,
                "is_active": plan.is_active,
            }
            stmt = pg_insert(SubscriptionPlanModel).values(
                id=plan.id, created_at=now, updated_at=now, **values
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={**values, "updated_at": now},
            )
            await session.execute(stmt)

        logger.info(f"Upserted plan {plan.id} ({plan.tier.value})")

    def _to_domain(self, model: SubscriptionPlanModel) -> SubscriptionPlan:
        return SubscriptionPlan.model_validate(model)
