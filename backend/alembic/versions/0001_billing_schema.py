"""Billing schema: profiles billing columns, plans, subscriptions, payments

Revision ID: 0001_billing_schema
Revises:
Create Date: 2026-03-02

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_billing_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the billing tables."""

    op.create_table(
        'profiles',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('role', sa.String(20), server_default='ADMIN', nullable=False),
        sa.Column('full_name', sa.String(100)),
        sa.Column('email', sa.String(255), unique=True, index=True),

        # Billing mirror
        sa.Column('stripe_customer_id', sa.String(255), unique=True, index=True),
        sa.Column('subscription_status', sa.String(20), server_default='free', nullable=False),
        sa.Column('subscription_plan', sa.String(20), server_default='free', nullable=False),
        sa.Column('subscription_renewal_date', sa.DateTime(timezone=True)),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('name', sa.String, nullable=False),
        sa.Column('description', sa.String),
        sa.Column('price', sa.Numeric(10, 2), server_default='0', nullable=False),
        sa.Column('interval', sa.String(20), server_default='month', nullable=False),
        sa.Column('tier', sa.String(20), server_default='free', nullable=False, index=True),

        # Per-tier limits
        sa.Column('student_limit', sa.Integer, server_default='3', nullable=False),
        sa.Column('module_limit', sa.Integer, server_default='3', nullable=False),
        sa.Column('custom_module_limit', sa.Integer, server_default='1', nullable=False),

        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False, index=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # One row per Stripe subscription; a user may accumulate several over time
    op.create_table(
        'customer_subscriptions',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('profiles.id'), nullable=False, index=True),
        sa.Column('plan_id', sa.String(255), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('stripe_customer_id', sa.String(255), nullable=False, index=True),
        sa.Column('status', sa.String(20), server_default='incomplete', nullable=False),

        # Billing period dates
        sa.Column('current_period_start', sa.DateTime(timezone=True)),
        sa.Column('current_period_end', sa.DateTime(timezone=True)),
        sa.Column('cancel_at_period_end', sa.Boolean, server_default='false', nullable=False),

        # Usage tracking
        sa.Column('custom_modules_created_this_period', sa.Integer, server_default='0', nullable=False),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Current-subscription lookup orders by updated_at within a user
    op.create_index(
        'ix_customer_subscriptions_user_updated',
        'customer_subscriptions',
        ['user_id', 'updated_at'],
    )

    op.create_table(
        'payment_history',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('profiles.id'), nullable=False, index=True),
        sa.Column('subscription_id', sa.String(255), index=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('payment_method', sa.String(50)),
        sa.Column('receipt_url', sa.String),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    """Drop the billing tables."""
    op.drop_table('payment_history')
    op.drop_index('ix_customer_subscriptions_user_updated', table_name='customer_subscriptions')
    op.drop_table('customer_subscriptions')
    op.drop_table('subscription_plans')
    op.drop_table('profiles')
