"""Add user subscriptions

Revision ID: 0002
Revises: 0001_subscription_tiers
Create Date: 2026-09-14

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0002_user_subscriptions'
down_revision: Union[str, None] = '0001_subscription_tiers'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create user_subscriptions with at most one active row per user."""

    op.create_table(
        'user_subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tier_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('subscription_tiers.id'), nullable=False),

        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('billing_cycle', sa.String(20), nullable=False, server_default='monthly'),
        sa.Column('is_recurring', sa.Boolean, nullable=False, server_default='true'),

        # Cancellation
        sa.Column('cancel_at_period_end', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('cancellation_reason', sa.String(500)),
        sa.Column('cancellation_requested_at', sa.DateTime(timezone=True)),

        # Quota period and yearly hard limit
        sa.Column('period_start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('subscription_end_date', sa.DateTime(timezone=True)),

        # Usage
        sa.Column('tokens_used_current_period', sa.Integer, nullable=False, server_default='0'),
        sa.Column('token_limit_override', sa.Integer),
        sa.Column('papers_accessed_current_period', sa.Integer, nullable=False, server_default='0'),
        sa.Column('accessed_paper_ids', postgresql.ARRAY(postgresql.UUID(as_uuid=True)),
                  nullable=False, server_default=sa.text("'{}'::uuid[]")),

        # Selections
        sa.Column('selected_grade_id', postgresql.UUID(as_uuid=True)),
        sa.Column('selected_subject_ids', postgresql.ARRAY(postgresql.UUID(as_uuid=True))),

        # Payment provenance; FK to payment_transactions added in 0003
        sa.Column('payment_provider', sa.String(20)),
        sa.Column('payment_type', sa.String(20)),
        sa.Column('provider_subscription_id', sa.String(255)),
        sa.Column('last_payment_date', sa.DateTime(timezone=True)),
        sa.Column('source_transaction_id', postgresql.UUID(as_uuid=True), unique=True),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_index('ix_user_subscriptions_user_id', 'user_subscriptions', ['user_id'])
    op.create_index(
        'ix_user_subscriptions_provider_subscription_id',
        'user_subscriptions',
        ['provider_subscription_id'],
    )
    op.create_index(
        'ix_user_subscriptions_status_period_end',
        'user_subscriptions',
        ['status', 'period_end_date'],
    )
    op.create_index(
        'uq_user_subscriptions_one_active',
        'user_subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.execute('ALTER TABLE user_subscriptions ENABLE ROW LEVEL SECURITY')

    op.execute("""
        CREATE POLICY "Users can view own subscriptions"
        ON user_subscriptions FOR SELECT
        TO authenticated
        USING (user_id = auth.uid())
    """)

    op.execute("""
        CREATE POLICY "Service role manages subscriptions"
        ON user_subscriptions FOR ALL
        TO service_role
        USING (true)
        WITH CHECK (true)
    """)


def downgrade() -> None:
    op.execute('DROP POLICY IF EXISTS "Service role manages subscriptions" ON user_subscriptions')
    op.execute('DROP POLICY IF EXISTS "Users can view own subscriptions" ON user_subscriptions')
    op.drop_index('uq_user_subscriptions_one_active', table_name='user_subscriptions')
    op.drop_index('ix_user_subscriptions_status_period_end', table_name='user_subscriptions')
    op.drop_index('ix_user_subscriptions_provider_subscription_id', table_name='user_subscriptions')
    op.drop_index('ix_user_subscriptions_user_id', table_name='user_subscriptions')
    op.drop_table('user_subscriptions')
