"""
Processed Webhook Event Repository

Ledger of Stripe event ids the webhook endpoint has already handled.
"""

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert

from noteearly.infrastructure.db.models.base import utcnow
from noteearly.infrastructure.db.models.processed_webhook_event import ProcessedWebhookEventModel
from noteearly.infrastructure.db.repositories.base_repository import SessionScopedRepository


class ProcessedEventRepository(SessionScopedRepository):

    async def is_processed(self, event_id: str) -> bool:
        """Check whether an event id has already been handled."""
        async with self._session_context() as session:
            stmt = select(ProcessedWebhookEventModel.event_id).where(
                ProcessedWebhookEventModel.event_id == event_id
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    async def mark_processed(self, event_id: str, event_type: str) -> None:
        """Record an event id. Concurrent duplicates are ignored."""
        async with self._session_context() as session:
            stmt = (
                pg_insert(ProcessedWebhookEventModel)
                .values(event_id=event_id, event_type=event_type, processed_at=utcnow())
                .on_conflict_do_nothing(index_elements=["event_id"])
            )
            await session.execute(stmt)
