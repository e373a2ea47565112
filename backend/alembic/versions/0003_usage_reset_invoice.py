"""add usage_reset_invoice_id to customer_subscriptions

Revision ID: 0003_usage_reset_invoice
Revises: 0002_processed_webhook_events
Create Date: 2026-04-02

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0003_usage_reset_invoice'
down_revision: Union[str, None] = '0002_processed_webhook_events'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Renewal invoice that last zeroed the usage counter; a retried or
    # redelivered invoice.paid for the same invoice must not zero it again
    op.add_column(
        'customer_subscriptions',
        sa.Column('usage_reset_invoice_id', sa.String(255), nullable=True),
    )


def downgrade() -> None:
    op.drop_column('customer_subscriptions', 'usage_reset_invoice_id')
