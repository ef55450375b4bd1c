"""Billing models migration.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates academy_subscriptions and subscription_invoices. The academy member,
classroom and attachment tables belong to the platform schema and are only
read here.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create academy_subscriptions table
    op.create_table(
        'academy_subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('academy_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('plan_tier', sa.String(50), nullable=False, server_default='free'),
        sa.Column('status', sa.String(50), nullable=False, server_default='active'),
        sa.Column('billing_cycle', sa.String(20), nullable=False, server_default='monthly'),
        sa.Column('monthly_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('current_period_start', sa.Date(), nullable=False),
        sa.Column('current_period_end', sa.Date(), nullable=False),
        sa.Column('next_billing_date', sa.Date(), nullable=True),
        sa.Column('billing_anchor_day', sa.Integer(), nullable=True),
        sa.Column('trial_ends_at', sa.Date(), nullable=True),
        sa.Column('last_payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('billing_key', sa.String(255), nullable=True),
        sa.Column('billing_key_issued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('student_limit', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('teacher_limit', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('classroom_limit', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('storage_limit_gb', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('features_enabled', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('additional_students', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('additional_teachers', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('additional_storage_gb', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('additional_ai_cards', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pending_additional_students', sa.Integer(), nullable=True),
        sa.Column('pending_additional_teachers', sa.Integer(), nullable=True),
        sa.Column('pending_additional_storage_gb', sa.Integer(), nullable=True),
        sa.Column('pending_additional_ai_cards', sa.Integer(), nullable=True),
        sa.Column('pending_addons_effective_date', sa.Date(), nullable=True),
        sa.Column('pending_tier', sa.String(50), nullable=True),
        sa.Column('pending_monthly_amount', sa.Integer(), nullable=True),
        sa.Column('pending_change_effective_date', sa.Date(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('academy_id'),
    )
    op.create_index('ix_academy_subscriptions_academy_id', 'academy_subscriptions', ['academy_id'])
    op.create_index('ix_academy_subscriptions_plan_tier', 'academy_subscriptions', ['plan_tier'])
    op.create_index('ix_academy_subscriptions_status', 'academy_subscriptions', ['status'])
    op.create_index(
        'ix_academy_subscriptions_next_billing_date', 'academy_subscriptions', ['next_billing_date']
    )

    # Create subscription_invoices table
    op.create_table(
        'subscription_invoices',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('academy_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('subscription_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('invoice_type', sa.String(50), nullable=False, server_default='recurring'),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='KRW'),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('billing_period_start', sa.Date(), nullable=False),
        sa.Column('billing_period_end', sa.Date(), nullable=False),
        sa.Column('plan_tier', sa.String(50), nullable=False),
        sa.Column('billing_cycle', sa.String(20), nullable=False),
        sa.Column('payment_id', sa.String(255), nullable=True),
        sa.Column('legacy_transaction_id', sa.String(255), nullable=True),
        sa.Column('receipt_url', sa.String(1000), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['subscription_id'], ['academy_subscriptions.id'], ondelete='SET NULL'
        ),
        sa.UniqueConstraint('payment_id'),
    )
    op.create_index('ix_subscription_invoices_academy_id', 'subscription_invoices', ['academy_id'])
    op.create_index(
        'ix_subscription_invoices_subscription_id', 'subscription_invoices', ['subscription_id']
    )
    op.create_index('ix_subscription_invoices_status', 'subscription_invoices', ['status'])
    op.create_index(
        'ix_subscription_invoices_academy_created',
        'subscription_invoices',
        ['academy_id', 'created_at'],
    )


def downgrade() -> None:
    op.drop_table('subscription_invoices')
    op.drop_table('academy_subscriptions')
