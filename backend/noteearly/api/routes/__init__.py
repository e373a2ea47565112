# API Routes Module
from noteearly.api.routes import (
    subscriptions,
    webhooks,
)

__all__ = [
    "subscriptions",
    "webhooks",
]
