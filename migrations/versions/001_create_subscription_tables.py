"""
create hospitals, doctors, subscriptions and subscription_history

Revision ID: 001_subscription_tables
Revises:
Create Date: 2026-09-28

subscription_history holds renewal attempts (one pending per subscription
at a time) plus expiry and cancellation events. Rows are never deleted.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_subscription_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'hospitals',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('admin_email', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'doctors',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('hospital_id', sa.Uuid(), sa.ForeignKey('hospitals.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_doctors_hospital_id', 'doctors', ['hospital_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), sa.ForeignKey('hospitals.id', ondelete='CASCADE'), nullable=False),
        sa.Column('doctor_count', sa.Integer(), nullable=False),
        sa.Column('billing_cycle', sa.String(10), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('payment_status', sa.String(20), nullable=False),
        sa.Column('total_price', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_notified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_subscriptions_tenant_id', 'subscriptions', ['tenant_id'], unique=True)
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_end_date', 'subscriptions', ['end_date'])

    op.create_table(
        'subscription_history',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('subscription_id', sa.Uuid(), sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('event_type', sa.String(20), nullable=False, server_default='renewal'),
        sa.Column('doctor_count', sa.Integer(), nullable=False),
        sa.Column('billing_cycle', sa.String(10), nullable=False),
        sa.Column('total_price', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('amount_minor', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('price_breakdown', sa.JSON(), nullable=True),
        sa.Column('payment_status', sa.String(20), nullable=True),
        sa.Column('gateway_order_id', sa.String(64), nullable=True),
        sa.Column('gateway_payment_id', sa.String(64), nullable=True),
        sa.Column('receipt', sa.String(40), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.String(64), nullable=True),
        sa.Column('requires_admin_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('review_reason', sa.String(64), nullable=True),
        sa.Column('flagged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_subscription_history_subscription_id', 'subscription_history', ['subscription_id'])
    op.create_index('ix_subscription_history_tenant_id', 'subscription_history', ['tenant_id'])
    op.create_index('ix_subscription_history_payment_status', 'subscription_history', ['payment_status'])
    op.create_index('ix_subscription_history_gateway_order_id', 'subscription_history', ['gateway_order_id'], unique=True)
    op.create_index('ix_subscription_history_requires_admin_review', 'subscription_history', ['requires_admin_review'])
    op.create_index('ix_subscription_history_created_at', 'subscription_history', ['created_at'])

    # Stale-pending scan used by the reconciliation sweeper
    op.create_index(
        'ix_subscription_history_pending_created',
        'subscription_history',
        ['created_at'],
        postgresql_where=sa.text("payment_status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_table('subscription_history')
    op.drop_table('subscriptions')
    op.drop_table('doctors')
    op.drop_table('hospitals')
