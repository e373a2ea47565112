"""
Payment History Repository

Append-only ledger writes. A redelivered invoice event carries the same
payment intent id, so the insert is a no-op on conflict.
"""

import logging

from sqlalchemy.dialects.postgresql import insert as pg_insert

from noteearly.infrastructure.db.models.base import utcnow
from noteearly.infrastructure.db.models.payment_history import PaymentHistoryModel
from noteearly.infrastructure.db.repositories.base_repository import SessionScopedRepository
from noteearly.domain.subscription import PaymentRecord


logger = logging.getLogger(__name__)


class PaymentHistoryRepository(SessionScopedRepository):

    async def record(self, payment: PaymentRecord) -> bool:
        """
        Insert a payment row unless one with the same id exists.

        Returns:
            True if a row was inserted, False if it was already recorded
        """
        async with self._session_context() as session:
            stmt = (
                pg_insert(PaymentHistoryModel)
                .values(
                    id=payment.id,
                    user_id=payment.user_id,
                    subscription_id=payment.subscription_id,
                    amount=payment.amount,
                    currency=payment.currency,
                    status=payment.status.value,
                    payment_method=payment.payment_method,
                    receipt_url=payment.receipt_url,
                    created_at=payment.created_at or utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["id"])
                .returning(PaymentHistoryModel.id)
            )
            result = await session.execute(stmt)
            inserted = result.scalar_one_or_none() is not None

        if not inserted:
            logger.info(f"Payment {payment.id} already recorded; skipping")
        return inserted
