"""Add payment transactions ledger

Revision ID: 0003
Revises: 0002_user_subscriptions
Create Date: 2026-09-15

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0003_payment_transactions'
down_revision: Union[str, None] = '0002_user_subscriptions'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create payment_transactions and link subscriptions to their source payment."""

    op.create_table(
        'payment_transactions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tier_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('subscription_tiers.id'), nullable=False),

        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('billing_cycle', sa.String(20), nullable=False, server_default='monthly'),
        sa.Column('payment_provider', sa.String(20), nullable=False),
        sa.Column('payment_type', sa.String(20), nullable=False, server_default='one_time'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),

        # Provider references
        sa.Column('external_transaction_id', sa.String(255)),
        sa.Column('provider_subscription_id', sa.String(255)),

        # Selections carried to the provisioned subscription
        sa.Column('selected_grade_id', postgresql.UUID(as_uuid=True)),
        sa.Column('selected_subject_ids', postgresql.ARRAY(postgresql.UUID(as_uuid=True))),

        # Provisioning outcome
        sa.Column('provisioning_status', sa.String(20), nullable=False, server_default='not_started'),
        sa.Column('subscription_id', postgresql.UUID(as_uuid=True)),
        sa.Column('error_message', sa.Text),
        sa.Column('completed_at', sa.DateTime(timezone=True)),

        # Manual approval
        sa.Column('approved_by', postgresql.UUID(as_uuid=True)),
        sa.Column('approved_at', sa.DateTime(timezone=True)),
        sa.Column('approval_notes', sa.Text),

        sa.Column('metadata', postgresql.JSONB),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.UniqueConstraint(
            'payment_provider',
            'external_transaction_id',
            name='uq_payment_transactions_provider_external_id',
        ),
    )

    op.create_index('ix_payment_transactions_user_id', 'payment_transactions', ['user_id'])
    op.create_index('ix_payment_transactions_status', 'payment_transactions', ['status'])
    op.create_index(
        'ix_payment_transactions_provider_subscription_id',
        'payment_transactions',
        ['provider_subscription_id'],
    )

    op.create_foreign_key(
        'fk_user_subscriptions_source_transaction',
        'user_subscriptions',
        'payment_transactions',
        ['source_transaction_id'],
        ['id'],
    )

    op.execute('ALTER TABLE payment_transactions ENABLE ROW LEVEL SECURITY')

    op.execute("""
        CREATE POLICY "Users can view own payments"
        ON payment_transactions FOR SELECT
        TO authenticated
        USING (user_id = auth.uid())
    """)

    op.execute("""
        CREATE POLICY "Service role manages payments"
        ON payment_transactions FOR ALL
        TO service_role
        USING (true)
        WITH CHECK (true)
    """)


def downgrade() -> None:
    op.execute('DROP POLICY IF EXISTS "Service role manages payments" ON payment_transactions')
    op.execute('DROP POLICY IF EXISTS "Users can view own payments" ON payment_transactions')
    op.drop_constraint(
        'fk_user_subscriptions_source_transaction', 'user_subscriptions', type_='foreignkey'
    )
    op.drop_index('ix_payment_transactions_provider_subscription_id', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_status', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_user_id', table_name='payment_transactions')
    op.drop_table('payment_transactions')
