"""
Subscription Plan Database Model

Catalog of billing tiers, keyed by Stripe price id.
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import Numeric
from sqlmodel import Field

from noteearly.infrastructure.db.models.base import TimestampMixin


class SubscriptionPlanModel(TimestampMixin, table=True):
    """
    Maps to the 'subscription_plans' table.

    Rows are written by the Stripe catalog sync and never deleted;
    retired plans are deactivated.
    """

    __tablename__ = "subscription_plans"

    id: str = Field(primary_key=True, max_length=255, description="Stripe price id")
    name: str = Field(nullable=False)
    description: Optional[str] = Field(default=None)
    price: Decimal = Field(default=Decimal("0"), sa_type=Numeric(10, 2), nullable=False)
    interval: str = Field(default="month", max_length=20, nullable=False)
    tier: str = Field(default="free", max_length=20, index=True, nullable=False)

    # Per-tier limits
    student_limit: int = Field(default=3, nullable=False)
    module_limit: int = Field(default=3, nullable=False)
    custom_module_limit: int = Field(default=1, nullable=False)

    is_active: bool = Field(default=True, index=True, nullable=False)
