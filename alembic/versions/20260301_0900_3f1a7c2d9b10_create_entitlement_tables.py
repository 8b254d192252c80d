"""create_entitlement_tables

Revision ID: 3f1a7c2d9b10
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1a7c2d9b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'user_subscriptions',
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('tier', sa.TEXT(), nullable=False, server_default='free'),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='active'),
        sa.Column('external_customer_id', sa.TEXT(), nullable=True),
        sa.Column('external_subscription_id', sa.TEXT(), nullable=True),
        sa.Column('period_end', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_event_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('version', sa.BIGINT(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('user_id'),
        sa.UniqueConstraint('external_subscription_id', name='uq_user_subscriptions_ext_sub'),
        sa.CheckConstraint(
            "status IN ('active', 'past_due', 'canceled', 'unpaid')",
            name='ck_user_subscriptions_status',
        ),
    )
    op.create_index('idx_user_subscriptions_customer', 'user_subscriptions', ['external_customer_id'])

    op.create_table(
        'billing_event_ledger',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('external_event_id', sa.TEXT(), nullable=False),
        sa.Column('provider_type', sa.TEXT(), nullable=True),
        sa.Column('canonical_type', sa.TEXT(), nullable=True),
        sa.Column('received_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('outcome', sa.TEXT(), nullable=True),
        sa.Column('raw_payload_digest', sa.TEXT(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('user_id', sa.TEXT(), nullable=True),
        sa.Column('attempts', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.TEXT(), nullable=True),
        sa.Column('next_attempt_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_event_id', name='uq_billing_event_ledger_event_id'),
        sa.CheckConstraint(
            "outcome IS NULL OR outcome IN ('applied', 'no_op', 'rejected', 'dead_lettered')",
            name='ck_billing_event_ledger_outcome',
        ),
    )
    op.create_index('idx_billing_event_ledger_pending', 'billing_event_ledger', ['outcome', 'next_attempt_at'])

    op.create_table(
        'rate_limit_counters',
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('action', sa.TEXT(), nullable=False),
        sa.Column('window_start', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('window_seconds', sa.INTEGER(), nullable=False),
        sa.Column('count', sa.INTEGER(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('user_id', 'action', 'window_start'),
    )
    op.create_index('idx_rate_limit_counters_window', 'rate_limit_counters', ['window_start'])


def downgrade() -> None:
    op.drop_index('idx_rate_limit_counters_window', table_name='rate_limit_counters')
    op.drop_table('rate_limit_counters')
    op.drop_index('idx_billing_event_ledger_pending', table_name='billing_event_ledger')
    op.drop_table('billing_event_ledger')
    op.drop_index('idx_user_subscriptions_customer', table_name='user_subscriptions')
    op.drop_table('user_subscriptions')
