"""
UserProfile SQLModel for NoteEarly

Database model for the 'profiles' table. Only the identity and billing
columns are modelled here; reading-progress columns belong to other services.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime
from sqlmodel import Field

from noteearly.infrastructure.db.models.base import TimestampMixin


class UserProfile(TimestampMixin, table=True):
    """
    UserProfile database table model.

    The subscription_* columns are a denormalized mirror of the user's
    customer subscription and plan, kept in step by the webhook reconciler.
    """

    __tablename__ = "profiles"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    role: str = Field(default="ADMIN", max_length=20, nullable=False)
    full_name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = Field(default=None, max_length=255, unique=True, index=True)

    # Billing mirror
    stripe_customer_id: Optional[str] = Field(default=None, max_length=255, unique=True, index=True)
    subscription_status: str = Field(default="free", max_length=20, nullable=False)
    subscription_plan: str = Field(default="free", max_length=20, nullable=False)
    subscription_renewal_date: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
