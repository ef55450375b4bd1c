"""Payment gateway models migration.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 00:00:00.000000

Creates the webhook event log and the settlement and payout mirrors.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create webhook_events table
    op.create_table(
        'webhook_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('webhook_id', sa.String(255), nullable=True),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('entity_id', sa.String(255), nullable=False),
        sa.Column('partner_id', sa.String(255), nullable=True),
        sa.Column('payment_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('event_timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('raw_data', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('entity_id', 'event_type', name='uq_webhook_events_entity_event'),
    )
    op.create_index('ix_webhook_events_webhook_id', 'webhook_events', ['webhook_id'])
    op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
    op.create_index('ix_webhook_events_entity_id', 'webhook_events', ['entity_id'])
    op.create_index('ix_webhook_events_partner_id', 'webhook_events', ['partner_id'])
    op.create_index('ix_webhook_events_processed', 'webhook_events', ['processed'])
    op.create_index(
        'ix_webhook_events_source_received', 'webhook_events', ['source', 'received_at']
    )

    # Create settlements table
    op.create_table(
        'settlements',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('settlement_id', sa.String(255), nullable=False),
        sa.Column('partner_id', sa.String(255), nullable=True),
        sa.Column('payment_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('order_amount', sa.Integer(), nullable=True),
        sa.Column('settlement_amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('settlement_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_event_type', sa.String(100), nullable=True),
        sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('settlement_id'),
    )
    op.create_index('ix_settlements_partner_id', 'settlements', ['partner_id'])
    op.create_index('ix_settlements_status', 'settlements', ['status'])

    # Create payouts table
    op.create_table(
        'payouts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('payout_id', sa.String(255), nullable=False),
        sa.Column('partner_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payout_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('last_event_type', sa.String(100), nullable=True),
        sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payout_id'),
    )
    op.create_index('ix_payouts_partner_id', 'payouts', ['partner_id'])
    op.create_index('ix_payouts_status', 'payouts', ['status'])


def downgrade() -> None:
    op.drop_table('payouts')
    op.drop_table('settlements')
    op.drop_table('webhook_events')
