"""
Customer Subscription Database Model

SQLModel table mirroring Stripe subscriptions.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import DateTime
from sqlmodel import Field

from noteearly.infrastructure.db.models.base import TimestampMixin


class CustomerSubscriptionModel(TimestampMixin, table=True):
    """
    Maps to the 'customer_subscriptions' table.

    The primary key is the Stripe subscription id, which makes creation
    idempotent under redelivered webhook events.
    """

    __tablename__ = "customer_subscriptions"

    id: str = Field(primary_key=True, max_length=255, description="Stripe subscription id")
    user_id: UUID = Field(foreign_key="profiles.id", index=True, nullable=False)
    plan_id: str = Field(foreign_key="subscription_plans.id", nullable=False)

    # Stripe IDs
    stripe_customer_id: str = Field(index=True, max_length=255, nullable=False)

    # Subscription details
    status: str = Field(default="incomplete", max_length=20, nullable=False)

    # Billing period dates
    current_period_start: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    current_period_end: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    cancel_at_period_end: bool = Field(default=False, nullable=False)

    # Usage tracking, reset on each renewal invoice
    custom_modules_created_this_period: int = Field(default=0, nullable=False)
    usage_reset_invoice_id: Optional[str] = Field(
        default=None, max_length=255, description="Renewal invoice that last zeroed the counter"
    )
