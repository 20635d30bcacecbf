"""Initial renewal engine schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('owner_id', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('interval_count', sa.Integer(), nullable=False),
        sa.Column('interval_unit', sa.String(length=10), nullable=False),
        sa.Column('trial_interval_count', sa.Integer(), nullable=True),
        sa.Column('trial_interval_unit', sa.String(length=10), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('signup_fee', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('next_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('max_payments', sa.Integer(), nullable=False),
        sa.Column('payments_made', sa.Integer(), nullable=False),
        sa.Column('max_retry_attempts', sa.Integer(), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), nullable=False),
        sa.Column('user_cancel_allowed', sa.Boolean(), nullable=False),
        sa.Column('grace_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('suspended_reason', sa.String(length=64), nullable=True),
        sa.Column('trashed_from_status', sa.String(length=32), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
    op.create_index('ix_subscriptions_owner_id', 'subscriptions', ['owner_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_next_date', 'subscriptions', ['next_date'])

    op.create_table(
        'subscription_notes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(),
                  sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('activity', sa.String(length=100), nullable=False),
        sa.Column('activity_type', sa.String(length=50), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_subscription_notes_id', 'subscription_notes', ['id'])
    op.create_index('ix_subscription_notes_subscription_id', 'subscription_notes', ['subscription_id'])
    op.create_index('ix_subscription_notes_activity_type', 'subscription_notes', ['activity_type'])

    op.create_table(
        'order_relations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(),
                  sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('order_item_id', sa.Integer(), nullable=True),
        sa.Column('relation_type', sa.String(length=10), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_order_relations_id', 'order_relations', ['id'])
    op.create_index('ix_order_relations_subscription_id', 'order_relations', ['subscription_id'])
    op.create_index('ix_order_relations_order_id', 'order_relations', ['order_id'])
    # Exactly one 'new' relation per subscription
    op.create_index(
        'uq_order_relations_one_new', 'order_relations', ['subscription_id'], unique=True,
        postgresql_where=sa.text("relation_type = 'new'"),
        sqlite_where=sa.text("relation_type = 'new'"),
    )

    op.create_table(
        'renewal_orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(),
                  sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('gateway_id', sa.String(length=50), nullable=True),
        sa.Column('gateway_transaction_id', sa.String(length=255), nullable=True),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_renewal_orders_id', 'renewal_orders', ['id'])
    op.create_index('ix_renewal_orders_subscription_id', 'renewal_orders', ['subscription_id'])
    op.create_index('ix_renewal_orders_status', 'renewal_orders', ['status'])
    op.create_index('ix_renewal_orders_gateway_transaction_id', 'renewal_orders', ['gateway_transaction_id'])

    op.create_table(
        'payment_methods',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(),
                  sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('gateway_id', sa.String(length=50), nullable=False),
        sa.Column('encrypted_token', sa.Text(), nullable=False),
        sa.Column('customer_id', sa.String(length=100), nullable=False),
        sa.Column('gateway_customer_id', sa.String(length=100), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('subscription_id', 'gateway_id', name='uq_payment_methods_subscription_gateway'),
    )
    op.create_index('ix_payment_methods_id', 'payment_methods', ['id'])
    op.create_index('ix_payment_methods_subscription_id', 'payment_methods', ['subscription_id'])
    op.create_index('ix_payment_methods_gateway_id', 'payment_methods', ['gateway_id'])
    op.create_index('ix_payment_methods_customer_id', 'payment_methods', ['customer_id'])
    # At most one default per subscription
    op.create_index(
        'uq_payment_methods_one_default', 'payment_methods', ['subscription_id'], unique=True,
        postgresql_where=sa.text('is_default'),
        sqlite_where=sa.text('is_default = 1'),
    )

    op.create_table(
        'retry_states',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(),
                  sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('next_retry_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_retry_states_id', 'retry_states', ['id'])
    # One retry row per subscription: single-flight retries
    op.create_index('ix_retry_states_subscription_id', 'retry_states', ['subscription_id'], unique=True)
    op.create_index('ix_retry_states_next_retry_time', 'retry_states', ['next_retry_time'])
    op.create_index('ix_retry_states_status', 'retry_states', ['status'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('gateway_id', sa.String(length=50), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        # Idempotency boundary for webhook deliveries
        sa.UniqueConstraint('gateway_id', 'event_id', name='uq_webhook_events_gateway_event'),
    )
    op.create_index('ix_webhook_events_id', 'webhook_events', ['id'])
    op.create_index('ix_webhook_events_gateway_id', 'webhook_events', ['gateway_id'])
    op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
    op.create_index('ix_webhook_events_event_id', 'webhook_events', ['event_id'])
    op.create_index('ix_webhook_events_subscription_id', 'webhook_events', ['subscription_id'])
    op.create_index('ix_webhook_events_processed', 'webhook_events', ['processed'])


def downgrade() -> None:
    op.drop_table('webhook_events')
    op.drop_table('retry_states')
    op.drop_table('payment_methods')
    op.drop_table('renewal_orders')
    op.drop_table('order_relations')
    op.drop_table('subscription_notes')
    op.drop_table('subscriptions')
