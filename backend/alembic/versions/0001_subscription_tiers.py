"""Add subscription tier catalog

Revision ID: 0001
Revises:
Create Date: 2026-09-14

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_subscription_tiers'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create subscription_tiers and seed the four launch tiers."""

    tiers = op.create_table(
        'subscription_tiers',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(50), nullable=False, unique=True),
        sa.Column('display_name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text),

        # Pricing
        sa.Column('price_monthly', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('price_yearly', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),

        # Quotas (NULL = unlimited)
        sa.Column('token_limit', sa.Integer),
        sa.Column('papers_limit', sa.Integer),
        sa.Column('max_subjects', sa.Integer),

        # Capabilities
        sa.Column('can_select_grade', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('can_select_subjects', sa.Boolean, nullable=False, server_default='false'),

        # Referral policy
        sa.Column('referral_points_awarded', sa.Integer, nullable=False, server_default='0'),
        sa.Column('referral_award_on_renewal', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('points_cost', sa.Integer),

        # Catalog state
        sa.Column('coming_soon', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('display_order', sa.Integer, nullable=False, server_default='0'),
        sa.Column('ai_model_id', postgresql.UUID(as_uuid=True)),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.bulk_insert(tiers, [
        {
            'name': 'free',
            'display_name': 'Free',
            'description': 'Two recent papers and a monthly token allowance',
            'price_monthly': 0,
            'price_yearly': 0,
            'token_limit': 50000,
            'papers_limit': 2,
            'max_subjects': None,
            'can_select_grade': False,
            'can_select_subjects': False,
            'referral_points_awarded': 0,
            'points_cost': None,
            'display_order': 0,
        },
        {
            'name': 'student_lite',
            'display_name': 'Student Lite',
            'description': 'One subject of your grade',
            'price_monthly': 4.99,
            'price_yearly': 49.99,
            'token_limit': 200000,
            'papers_limit': None,
            'max_subjects': 1,
            'can_select_grade': True,
            'can_select_subjects': True,
            'referral_points_awarded': 100,
            'points_cost': 500,
            'display_order': 1,
        },
        {
            'name': 'student',
            'display_name': 'Student',
            'description': 'Up to three subjects of your grade',
            'price_monthly': 9.99,
            'price_yearly': 99.99,
            'token_limit': 500000,
            'papers_limit': None,
            'max_subjects': 3,
            'can_select_grade': True,
            'can_select_subjects': True,
            'referral_points_awarded': 150,
            'points_cost': 1000,
            'display_order': 2,
        },
        {
            'name': 'pro',
            'display_name': 'Pro',
            'description': 'Every paper, unlimited tokens',
            'price_monthly': 19.99,
            'price_yearly': 199.99,
            'token_limit': None,
            'papers_limit': None,
            'max_subjects': None,
            'can_select_grade': False,
            'can_select_subjects': False,
            'referral_points_awarded': 250,
            'points_cost': 2000,
            'display_order': 3,
        },
    ])

    op.execute('ALTER TABLE subscription_tiers ENABLE ROW LEVEL SECURITY')

    # Catalog is public
    op.execute("""
        CREATE POLICY "Anyone can view tiers"
        ON subscription_tiers FOR SELECT
        TO anon, authenticated
        USING (is_active = true)
    """)

    op.execute("""
        CREATE POLICY "Service role manages tiers"
        ON subscription_tiers FOR ALL
        TO service_role
        USING (true)
        WITH CHECK (true)
    """)


def downgrade() -> None:
    op.execute('DROP POLICY IF EXISTS "Service role manages tiers" ON subscription_tiers')
    op.execute('DROP POLICY IF EXISTS "Anyone can view tiers" ON subscription_tiers')
    op.drop_table('subscription_tiers')
