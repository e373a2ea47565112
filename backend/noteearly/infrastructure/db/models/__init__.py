"""
SQLModel ORM Models for NoteEarly

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from noteearly.infrastructure.db.models.base import TimestampMixin, utcnow
from noteearly.infrastructure.db.models.user_profile import UserProfile
from noteearly.infrastructure.db.models.subscription_plan import SubscriptionPlanModel
from noteearly.infrastructure.db.models.customer_subscription import CustomerSubscriptionModel
from noteearly.infrastructure.db.models.payment_history import PaymentHistoryModel
from noteearly.infrastructure.db.models.processed_webhook_event import ProcessedWebhookEventModel


__all__ = [
    # Base
    "TimestampMixin",
    "utcnow",
    # Tables
    "UserProfile",
    "SubscriptionPlanModel",
    "CustomerSubscriptionModel",
    "PaymentHistoryModel",
    "ProcessedWebhookEventModel",
]
