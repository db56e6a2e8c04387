"""initial schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Tenants and subscriptions
    # ========================================================================
    op.create_table(
        'organizations',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(255), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('organization_id', sa.String(64), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('plan_type', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='TRIALING'),
        sa.Column('billing_cycle', sa.String(20), nullable=False, server_default='MONTHLY'),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('external_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('organization_id', name='uq_subscription_organization'),
        sa.CheckConstraint('current_period_end >= current_period_start', name='ck_subscription_period_order'),
    )
    op.create_index('idx_subscriptions_status', 'subscriptions', ['status'])

    # ========================================================================
    # Plan features and limits (reference data)
    # ========================================================================
    op.create_table(
        'plan_features',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False, unique=True),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('unit_label', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_table(
        'plan_limits',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('plan_type', sa.String(20), nullable=False),
        sa.Column('feature_id', sa.String(64), sa.ForeignKey('plan_features.id'), nullable=False),
        sa.Column('value', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_unlimited', sa.Boolean(), nullable=False, server_default=sa.false()),

        sa.UniqueConstraint('plan_type', 'feature_id', name='uq_plan_limit_plan_feature'),
        sa.CheckConstraint('value >= 0', name='ck_plan_limit_value_non_negative'),
    )
    op.create_index('idx_plan_limits_feature_id', 'plan_limits', ['feature_id'])

    # ========================================================================
    # Credit ledger
    # ========================================================================
    op.create_table(
        'credit_balances',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('organization_id', sa.String(64), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('feature_id', sa.String(64), sa.ForeignKey('plan_features.id'), nullable=False),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('organization_id', 'feature_id', name='uq_credit_balance_org_feature'),
        sa.CheckConstraint('balance >= 0', name='ck_credit_balance_non_negative'),
    )

    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('balance_id', sa.String(64), sa.ForeignKey('credit_balances.id'), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('amount <> 0', name='ck_credit_transaction_amount_non_zero'),
    )
    op.create_index('idx_credit_transactions_balance_created', 'credit_transactions', ['balance_id', 'created_at'])
    op.create_index('idx_credit_transactions_type', 'credit_transactions', ['type'])

    # ========================================================================
    # Counter usage
    # ========================================================================
    op.create_table(
        'usage_records',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('organization_id', sa.String(64), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('feature_id', sa.String(64), sa.ForeignKey('plan_features.id'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('metadata', JSONB(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('quantity > 0', name='ck_usage_record_quantity_positive'),
    )
    op.create_index('idx_usage_records_org_feature', 'usage_records', ['organization_id', 'feature_id'])
    op.create_index('idx_usage_records_timestamp', 'usage_records', ['timestamp'])

    # ========================================================================
    # Model costs, add-ons and bots
    # ========================================================================
    op.create_table(
        'model_credit_costs',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('model_name', sa.String(255), nullable=False),
        sa.Column('credits_per_query', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),

        sa.CheckConstraint('credits_per_query > 0', name='ck_model_credit_cost_positive'),
    )
    op.create_index('idx_model_credit_costs_model_name', 'model_credit_costs', ['model_name'])

    op.create_table(
        'add_ons',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('feature_id', sa.String(64), sa.ForeignKey('plan_features.id'), nullable=False),
        sa.Column('min_quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('max_quantity', sa.Integer(), nullable=True),
    )

    op.create_table(
        'add_on_subscriptions',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('organization_id', sa.String(64), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('add_on_id', sa.String(64), sa.ForeignKey('add_ons.id'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE'),

        sa.CheckConstraint('quantity > 0', name='ck_add_on_subscription_quantity_positive'),
    )
    op.create_index('idx_add_on_subscriptions_org_status', 'add_on_subscriptions', ['organization_id', 'status'])

    op.create_table(
        'bots',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('organization_id', sa.String(64), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index('idx_bots_org_active', 'bots', ['organization_id', 'is_active'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('bots')
    op.drop_table('add_on_subscriptions')
    op.drop_table('add_ons')
    op.drop_table('model_credit_costs')
    op.drop_table('usage_records')
    op.drop_table('credit_transactions')
    op.drop_table('credit_balances')
    op.drop_table('plan_limits')
    op.drop_table('plan_features')
    op.drop_table('subscriptions')
    op.drop_table('organizations')
