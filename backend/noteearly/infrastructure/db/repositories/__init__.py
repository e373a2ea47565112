"""
Repository Layer for NoteEarly Billing

Exports all repository classes for dependency injection.
"""

from noteearly.infrastructure.db.repositories.base_repository import (
    SessionContextFactory,
    SessionScopedRepository,
)
from noteearly.infrastructure.db.repositories.customer_subscription_repository import (
    CustomerSubscriptionRepository,
)
from noteearly.infrastructure.db.repositories.payment_history_repository import (
    PaymentHistoryRepository,
)
from noteearly.infrastructure.db.repositories.processed_event_repository import (
    ProcessedEventRepository,
)
from noteearly.infrastructure.db.repositories.subscription_plan_repository import (
    SubscriptionPlanRepository,
)
from noteearly.infrastructure.db.repositories.user_profile_repository import (
    UserProfileRepository,
)


__all__ = [
    # Base
    "SessionContextFactory",
    "SessionScopedRepository",
    # Repositories
    "CustomerSubscriptionRepository",
    "PaymentHistoryRepository",
    "ProcessedEventRepository",
    "SubscriptionPlanRepository",
    "UserProfileRepository",
]
