"""
Payment History Database Model

Append-only ledger of Stripe payment attempts.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import DateTime, Numeric
from sqlmodel import Field, SQLModel

from noteearly.infrastructure.db.models.base import utcnow


class PaymentHistoryModel(SQLModel, table=True):
    """Maps to the 'payment_history' table. Rows are never updated."""

    __tablename__ = "payment_history"

    id: str = Field(primary_key=True, max_length=255, description="Stripe payment intent id or invoice fallback")
    user_id: UUID = Field(foreign_key="profiles.id", index=True, nullable=False)
    subscription_id: Optional[str] = Field(default=None, index=True, max_length=255)
    amount: Decimal = Field(sa_type=Numeric(10, 2), nullable=False)
    currency: str = Field(max_length=3, nullable=False)
    status: str = Field(max_length=20, nullable=False)
    payment_method: Optional[str] = Field(default=None, max_length=50)
    receipt_url: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), nullable=False)
