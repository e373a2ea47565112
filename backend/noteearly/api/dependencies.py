"""
API Dependencies

FastAPI dependency injection for authentication and the billing services.

Security: tokens are issued by the NoteEarly auth service and verified here
with the shared HS256 secret. Never decode without verification.
"""

import logging
from functools import lru_cache
from typing import Optional
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from noteearly.config.settings import get_settings
from noteearly.infrastructure.db.repositories import (
    CustomerSubscriptionRepository,
    PaymentHistoryRepository,
    ProcessedEventRepository,
    SubscriptionPlanRepository,
    UserProfileRepository,
)
from noteearly.infrastructure.payments.stripe_service import get_stripe_service
from noteearly.infrastructure.services.subscription_service import SubscriptionService
from noteearly.infrastructure.services.webhook_service import WebhookService


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def _decode_with_secret(token: str, secret: str, algorithm: str) -> dict:
    """Verify JWT using the shared symmetric secret."""
    return jwt.decode(
        token,
        secret,
        algorithms=[algorithm],
        options={"require": ["exp", "sub"]},
    )


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> UUID:
    """
    Extract and verify the user ID from a bearer JWT.

    Returns:
        Authenticated user ID (``sub`` claim) as a UUID.

    Raises:
        HTTPException 401: token missing, expired, or invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    settings = get_settings()
    if not settings.jwt_secret:
        logger.error("JWT_SECRET is not configured; rejecting authenticated request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )

    try:
        payload = _decode_with_secret(
            credentials.credentials, settings.jwt_secret, settings.jwt_algorithm
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError as e:
        logger.warning("JWT verification failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )

    try:
        return UUID(str(payload["sub"]))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: malformed user ID",
        )


# =============================================================================
# Service Providers
# Cached per process; tests replace them via app.dependency_overrides.
# =============================================================================

@lru_cache
def get_subscription_service() -> SubscriptionService:
    return SubscriptionService(
        stripe_service=get_stripe_service(),
        plans=SubscriptionPlanRepository(),
        subscriptions=CustomerSubscriptionRepository(),
        profiles=UserProfileRepository(),
        settings=get_settings(),
    )


@lru_cache
def get_webhook_service() -> WebhookService:
    return WebhookService(
        stripe_service=get_stripe_service(),
        subscriptions=CustomerSubscriptionRepository(),
        plans=SubscriptionPlanRepository(),
        profiles=UserProfileRepository(),
        payments=PaymentHistoryRepository(),
    )


@lru_cache
def get_processed_event_repository() -> ProcessedEventRepository:
    return ProcessedEventRepository()
