"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create token ledger schema."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('auth_subject', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('roles', sa.JSON(), nullable=False, server_default=sa.text("'[\"user\"]'")),
        sa.Column('workspace_id', sa.String(255), nullable=True),
        sa.Column('onboarding_tokens_granted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.UniqueConstraint('auth_subject', name='uq_users_auth_subject'),
    )

    # ========================================================================
    # Create token_accounts table
    # ========================================================================
    op.create_table(
        'token_accounts',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('workspace_id', sa.String(255), nullable=True),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('lifetime_tokens_purchased', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('lifetime_tokens_used', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('lifetime_actual_tokens_used', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('lifetime_spent_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('auto_recharge_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_recharge_threshold', sa.BigInteger(), nullable=True),
        sa.Column('auto_recharge_amount', sa.BigInteger(), nullable=True),
        sa.Column('external_customer_id', sa.String(255), nullable=True),
        sa.Column('default_payment_method_id', sa.String(255), nullable=True),
        sa.Column('transaction_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_purchase_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('user_id', name='uq_token_accounts_user_id'),
        sa.CheckConstraint("status IN ('active', 'suspended', 'blocked')", name='ck_token_account_status'),
        sa.CheckConstraint('transaction_count >= 0', name='ck_transaction_count_non_negative'),
        sa.CheckConstraint(
            'auto_recharge_threshold IS NULL OR auto_recharge_threshold >= 0',
            name='ck_auto_recharge_threshold_non_negative',
        ),
        sa.CheckConstraint(
            'auto_recharge_amount IS NULL OR auto_recharge_amount > 0',
            name='ck_auto_recharge_amount_positive',
        ),
    )
    op.create_index('idx_token_accounts_status', 'token_accounts', ['status'])
    op.create_index('idx_token_accounts_external_customer', 'token_accounts', ['external_customer_id'])

    # ========================================================================
    # Create token_usage table
    # ========================================================================
    op.create_table(
        'token_usage',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('workspace_id', sa.String(255), nullable=False),
        sa.Column('project_id', sa.String(255), nullable=True),
        sa.Column('content_piece_id', sa.String(255), nullable=True),
        sa.Column('operation_type', sa.String(50), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('input_tokens', sa.Integer(), nullable=True),
        sa.Column('output_tokens', sa.Integer(), nullable=True),
        sa.Column('total_tokens', sa.Integer(), nullable=True),
        sa.Column('image_count', sa.Integer(), nullable=True),
        sa.Column('image_size', sa.String(50), nullable=True),
        sa.Column('billable_tokens', sa.BigInteger(), nullable=False),
        sa.Column('actual_tokens', sa.BigInteger(), nullable=False),
        sa.Column('charge_type', sa.String(20), nullable=False),
        sa.Column('multiplier', sa.Float(), nullable=True),
        sa.Column('fixed_cost', sa.BigInteger(), nullable=True),
        sa.Column('request_metadata', sa.Text(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('billable_tokens >= 0', name='ck_usage_billable_non_negative'),
        sa.CheckConstraint("charge_type IN ('multiplier', 'fixed')", name='ck_usage_charge_type'),
    )
    op.create_index('idx_token_usage_user_created', 'token_usage', ['user_id', 'created_at'])
    op.create_index('idx_token_usage_operation', 'token_usage', ['operation_type'])
    op.create_index('idx_token_usage_model', 'token_usage', ['provider', 'model'])

    # ========================================================================
    # Create token_transactions table (append-only)
    # ========================================================================
    op.create_table(
        'token_transactions',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', sa.Uuid(), sa.ForeignKey('token_accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('workspace_id', sa.String(255), nullable=True),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('balance_before', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('amount_cents', sa.BigInteger(), nullable=True),
        sa.Column('usage_id', sa.Uuid(), sa.ForeignKey('token_usage.id', ondelete='SET NULL'), nullable=True),
        sa.Column('external_payment_ref', sa.String(255), nullable=True),
        sa.Column('admin_user_id', sa.Uuid(), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('balance_after = balance_before + amount', name='ck_transaction_balance_chain'),
        sa.CheckConstraint(
            "transaction_type IN ('bonus', 'purchase', 'usage', 'admin_grant', "
            "'admin_deduction', 'refund', 'auto_recharge')",
            name='ck_transaction_type',
        ),
        sa.CheckConstraint('sequence > 0', name='ck_transaction_sequence_positive'),
        sa.UniqueConstraint('account_id', 'sequence', name='uq_transaction_account_sequence'),
        sa.UniqueConstraint('account_id', 'idempotency_key', name='uq_transaction_account_idempotency'),
    )
    op.create_index('idx_token_transactions_user_created', 'token_transactions', ['user_id', 'created_at'])
    op.create_index('idx_token_transactions_type', 'token_transactions', ['transaction_type'])
    op.create_index('idx_token_transactions_payment_ref', 'token_transactions', ['external_payment_ref'])

    # ========================================================================
    # Create token_packages table
    # ========================================================================
    op.create_table(
        'token_packages',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('package_name', sa.String(100), nullable=False),
        sa.Column('token_amount', sa.BigInteger(), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('stripe_price_id', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_popular', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('token_amount > 0', name='ck_package_tokens_positive'),
        sa.CheckConstraint('price_cents > 0', name='ck_package_price_positive'),
    )
    op.create_index('idx_token_packages_active_sort', 'token_packages', ['active', 'sort_order'])

    # ========================================================================
    # Create system_settings table (single row)
    # ========================================================================
    op.create_table(
        'system_settings',
        sa.Column('id', sa.Integer(), primary_key=True, server_default='1'),
        sa.Column('default_token_multiplier', sa.Float(), nullable=False),
        sa.Column('image_generation_cost_dalle3', sa.Integer(), nullable=False),
        sa.Column('image_generation_cost_dalle2', sa.Integer(), nullable=False),
        sa.Column('image_generation_cost_google', sa.Integer(), nullable=False),
        sa.Column('tokens_per_usd', sa.Integer(), nullable=False),
        sa.Column('min_purchase_amount_cents', sa.Integer(), nullable=False),
        sa.Column('new_user_bonus_tokens', sa.BigInteger(), nullable=False),
        sa.Column('low_balance_threshold', sa.BigInteger(), nullable=False),
        sa.Column('critical_balance_threshold', sa.BigInteger(), nullable=False),
        sa.Column('updated_by', sa.Uuid(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('id = 1', name='ck_system_settings_single_row'),
    )


def downgrade() -> None:
    """Drop token ledger schema."""
    op.drop_table('system_settings')
    op.drop_index('idx_token_packages_active_sort', table_name='token_packages')
    op.drop_table('token_packages')
    op.drop_index('idx_token_transactions_payment_ref', table_name='token_transactions')
    op.drop_index('idx_token_transactions_type', table_name='token_transactions')
    op.drop_index('idx_token_transactions_user_created', table_name='token_transactions')
    op.drop_table('token_transactions')
    op.drop_index('idx_token_usage_model', table_name='token_usage')
    op.drop_index('idx_token_usage_operation', table_name='token_usage')
    op.drop_index('idx_token_usage_user_created', table_name='token_usage')
    op.drop_table('token_usage')
    op.drop_index('idx_token_accounts_external_customer', table_name='token_accounts')
    op.drop_index('idx_token_accounts_status', table_name='token_accounts')
    op.drop_table('token_accounts')
    op.drop_table('users')
