"""Add referral points ledger

Revision ID: 0004
Revises: 0003_payment_transactions
Create Date: 2026-09-21

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0004_referral_points'
down_revision: Union[str, None] = '0003_payment_transactions'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                     server_default=sa.text('gen_random_uuid()'))


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create referral codes, referrals, balances, ledger and award log."""

    op.create_table(
        'referral_codes',
        _uuid_pk(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column('code', sa.String(32), nullable=False, unique=True),
        *_timestamps(),
    )

    op.create_table(
        'referrals',
        _uuid_pk(),
        sa.Column('referrer_id', postgresql.UUID(as_uuid=True), nullable=False),
        # A user can be referred once
        sa.Column('referred_id', postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column('referral_code', sa.String(32), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('points_awarded', sa.Integer, nullable=False, server_default='0'),
        sa.Column('times_awarded', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_awarded_at', sa.DateTime(timezone=True)),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
        sa.Column('subscription_tier_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('subscription_tiers.id')),
        *_timestamps(),
    )
    op.create_index('ix_referrals_referrer_id', 'referrals', ['referrer_id'])

    op.create_table(
        'user_referral_points',
        _uuid_pk(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column('points_balance', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_earned', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_spent', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_referrals', sa.Integer, nullable=False, server_default='0'),
        sa.Column('successful_referrals', sa.Integer, nullable=False, server_default='0'),
        *_timestamps(),
    )

    op.create_table(
        'referral_transactions',
        _uuid_pk(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('points', sa.Integer, nullable=False),
        sa.Column('balance_after', sa.Integer, nullable=False),
        sa.Column('referral_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('referrals.id')),
        sa.Column('subscription_id', postgresql.UUID(as_uuid=True)),
        sa.Column('description', sa.Text),
        *_timestamps(),
    )
    op.create_index('ix_referral_transactions_user_id', 'referral_transactions', ['user_id'])

    op.create_table(
        'referral_points_log',
        _uuid_pk(),
        sa.Column('subscription_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True)),
        sa.Column('referrer_id', postgresql.UUID(as_uuid=True)),
        sa.Column('tier_name', sa.String(50)),
        sa.Column('points', sa.Integer, nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('reason', sa.Text),
        *_timestamps(),
    )
    op.create_index('ix_referral_points_log_subscription_id', 'referral_points_log', ['subscription_id'])
    # Backstop against double awards from concurrent evaluations
    op.create_index(
        'uq_referral_points_log_awarded',
        'referral_points_log',
        ['referrer_id', 'subscription_id'],
        unique=True,
        postgresql_where=sa.text("status = 'awarded'"),
    )

    for table in ('referral_codes', 'user_referral_points', 'referral_transactions'):
        op.execute(f'ALTER TABLE {table} ENABLE ROW LEVEL SECURITY')
        op.execute(f"""
            CREATE POLICY "Users can view own {table}"
            ON {table} FOR SELECT
            TO authenticated
            USING (user_id = auth.uid())
        """)

    op.execute('ALTER TABLE referrals ENABLE ROW LEVEL SECURITY')
    op.execute("""
        CREATE POLICY "Users can view own referrals"
        ON referrals FOR SELECT
        TO authenticated
        USING (referrer_id = auth.uid() OR referred_id = auth.uid())
    """)

    # Audit log is service-only
    op.execute('ALTER TABLE referral_points_log ENABLE ROW LEVEL SECURITY')

    for table in (
        'referral_codes',
        'referrals',
        'user_referral_points',
        'referral_transactions',
        'referral_points_log',
    ):
        op.execute(f"""
            CREATE POLICY "Service role manages {table}"
            ON {table} FOR ALL
            TO service_role
            USING (true)
            WITH CHECK (true)
        """)


def downgrade() -> None:
    op.drop_index('uq_referral_points_log_awarded', table_name='referral_points_log')
    op.drop_index('ix_referral_points_log_subscription_id', table_name='referral_points_log')
    op.drop_table('referral_points_log')
    op.drop_index('ix_referral_transactions_user_id', table_name='referral_transactions')
    op.drop_table('referral_transactions')
    op.drop_table('user_referral_points')
    op.drop_index('ix_referrals_referrer_id', table_name='referrals')
    op.drop_table('referrals')
    op.drop_table('referral_codes')
