"""
UserProfile Repository for NoteEarly Billing

Reads the billing slice of user profiles and writes the two things billing
owns there: the Stripe customer id and the subscription mirror.
"""

from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update

from noteearly.infrastructure.db.models.base import utcnow
from noteearly.infrastructure.db.models.user_profile import UserProfile
from noteearly.infrastructure.db.repositories.base_repository import SessionScopedRepository
from noteearly.domain.subscription import BillingMirrorUpdate, BillingProfile


class UserProfileRepository(SessionScopedRepository):
    """
    Repository for profile billing fields.

    Lookups:
    - get_by_id: authenticated user id
    - get_by_email: checkout completion linkage
    - get_by_stripe_customer_id: subscription and invoice events
    """

    async def get_by_id(self, user_id: UUID) -> Optional[BillingProfile]:
        async with self._session_context() as session:
            profile = await session.get(UserProfile, user_id)
            return self._to_domain(profile) if profile else None

    async def get_by_email(self, email: str) -> Optional[BillingProfile]:
        """
        Find a profile by email (case-insensitive).

        Args:
            email: Customer email reported by Stripe

        Returns:
            BillingProfile or None if not found
        """
        async with self._session_context() as session:
            stmt = select(UserProfile).where(func.lower(UserProfile.email) == email.lower())
            result = await session.execute(stmt)
            profile = result.scalars().first()
            return self._to_domain(profile) if profile else None

    async def get_by_stripe_customer_id(self, customer_id: str) -> Optional[BillingProfile]:
        """
        Find the profile linked to a Stripe customer.

        Args:
            customer_id: Stripe customer id (cus_...)

        Returns:
            BillingProfile or None if no profile carries this customer id
        """
        async with self._session_context() as session:
            stmt = select(UserProfile).where(UserProfile.stripe_customer_id == customer_id)
            result = await session.execute(stmt)
            profile = result.scalar_one_or_none()
            return self._to_domain(profile) if profile else None

    async def set_stripe_customer_id(self, user_id: UUID, customer_id: str) -> bool:
        """
        Persist the Stripe customer created for this user.

        Returns:
            True if the profile exists and was updated
        """
        return await self._update(user_id, {"stripe_customer_id": customer_id})

    async def update_billing_mirror(self, user_id: UUID, mirror: BillingMirrorUpdate) -> bool:
        """
        Write the denormalized subscription status, tier and renewal date.

        Returns:
            True if the profile exists and was updated
        """
        return await self._update(user_id, mirror.to_columns())

    async def _update(self, user_id: UUID, values: dict) -> bool:
        async with self._session_context() as session:
            stmt = (
                update(UserProfile)
                .where(UserProfile.id == user_id)
                .values(**values, updated_at=utcnow())
                .returning(UserProfile.id)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    def _to_domain(self, profile: UserProfile) -> BillingProfile:
        return BillingProfile.model_validate(profile)
