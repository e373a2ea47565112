"""
Stripe Webhook Handler

Verifies Stripe webhook deliveries and hands them to the reconciler.

Exact redeliveries (same event id) are acknowledged from the processed-event
ledger without running the handlers again. The handlers are idempotent on
their own, so a delivery that slips past the ledger is still harmless.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from noteearly.api.dependencies import (
    get_processed_event_repository,
    get_webhook_service,
)
from noteearly.infrastructure.db.repositories import ProcessedEventRepository
from noteearly.infrastructure.exceptions import WebhookSignatureError
from noteearly.infrastructure.payments.stripe_service import (
    StripeService,
    get_stripe_service,
)
from noteearly.infrastructure.services.webhook_service import WebhookService


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_service: StripeService = Depends(get_stripe_service),
    webhook_service: WebhookService = Depends(get_webhook_service),
    processed_events: ProcessedEventRepository = Depends(get_processed_event_repository),
):
    """
    Handle Stripe webhook events.

    Returns 200 once the event is verified, even if a handler failed:
    handler failures are logged by the reconciler and a retry would not
    fix them.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature"
        )

    try:
        event = stripe_service.construct_event(payload, signature)
    except WebhookSignatureError as e:
        logger.error(f"Webhook signature verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )

    event_id = event.get("id")
    event_type = event.get("type")

    if event_id and await processed_events.is_processed(event_id):
        logger.info(f"Event {event_id} already processed, skipping")
        return {"status": "already_processed"}

    await webhook_service.process_event(event)

    if event_id:
        await processed_events.mark_processed(event_id, str(event_type))

    return {"status": "success"}
