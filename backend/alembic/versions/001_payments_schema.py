"""payments_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users (projection of the identity service)
    op.create_table(
        'users',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='active'),
        sa.Column('user_role', sa.String(50), nullable=False, server_default='user'),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('uuid'),
        sa.UniqueConstraint('email'),
    )
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('idx_user_status', 'users', ['status'])

    # Membership plans
    op.create_table(
        'membership_plans',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('plan_id', sa.String(50), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('monthly_price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('yearly_price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('uuid'),
        sa.UniqueConstraint('plan_id'),
    )
    op.create_index('idx_membership_plan_active', 'membership_plans', ['active'])

    # Subscriptions
    op.create_table(
        'subscriptions',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='active'),
        sa.Column('plan_id', sa.String(50), nullable=False),
        sa.Column('billing_cycle', sa.String(20), nullable=False, server_default='monthly'),
        sa.Column('scheduled_plan_id', sa.String(50), nullable=True),
        sa.Column('transaction_id', sa.String(36), nullable=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('uuid'),
        sa.ForeignKeyConstraint(['plan_id'], ['membership_plans.plan_id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.uuid']),
    )
    op.create_index('idx_subscription_user_id', 'subscriptions', ['user_id'])
    op.create_index('idx_subscription_status', 'subscriptions', ['status'])

    # Products
    op.create_table(
        'products',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('product_type', sa.String(50), nullable=False, server_default='product'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('creator_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('uuid'),
        sa.ForeignKeyConstraint(['creator_id'], ['users.uuid']),
    )
    op.create_index('idx_product_type', 'products', ['product_type'])
    op.create_index('idx_product_creator_id', 'products', ['creator_id'])

    # Transactions
    op.create_table(
        'transactions',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('subject_type', sa.String(50), nullable=False),
        sa.Column('subject_id', sa.String(64), nullable=False),
        sa.Column('billing_cycle', sa.String(20), nullable=True),
        sa.Column('payer_id', sa.String(36), nullable=True),
        sa.Column('guest_email', sa.String(255), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('gateway', sa.String(20), nullable=False),
        sa.Column('state', sa.String(20), nullable=False, server_default='created'),
        sa.Column('external_ref', sa.String(255), nullable=True),
        sa.Column('client_secret', sa.String(255), nullable=True),
        sa.Column('redirect_url', sa.Text(), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('confirm_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('settled_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('uuid'),
        sa.ForeignKeyConstraint(['payer_id'], ['users.uuid']),
        sa.UniqueConstraint('gateway', 'external_ref', name='uq_transaction_gateway_external_ref'),
        sa.UniqueConstraint('payer_id', 'idempotency_key', name='uq_transaction_payer_idempotency_key'),
        sa.CheckConstraint('amount_cents >= 0', name='ck_transaction_amount_non_negative'),
    )
    op.create_index('idx_transaction_payer_id', 'transactions', ['payer_id'])
    op.create_index('idx_transaction_state', 'transactions', ['state'])
    op.create_index('idx_transaction_subject', 'transactions', ['subject_type', 'subject_id'])

    # Purchases
    op.create_table(
        'purchases',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('product_type', sa.String(50), nullable=False),
        sa.Column('transaction_id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('guest_email', sa.String(255), nullable=True),
        sa.Column('product_id', sa.String(36), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('purchased_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('uuid'),
        sa.ForeignKeyConstraint(['transaction_id'], ['transactions.uuid']),
        sa.ForeignKeyConstraint(['user_id'], ['users.uuid']),
        sa.ForeignKeyConstraint(['product_id'], ['products.uuid']),
        sa.UniqueConstraint('transaction_id'),
    )
    op.create_index('idx_purchase_user_id', 'purchases', ['user_id'])
    op.create_index('idx_purchase_product_id', 'purchases', ['product_id'])

    # Ad campaigns
    op.create_table(
        'ad_campaigns',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('duration_days', sa.Integer(), nullable=False, server_default='7'),
        sa.Column('status', sa.String(50), nullable=False, server_default='draft'),
        sa.Column('owner_id', sa.String(36), nullable=False),
        sa.Column('transaction_id', sa.String(36), nullable=True),
        sa.Column('starts_at', sa.DateTime(), nullable=True),
        sa.Column('ends_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('uuid'),
        sa.ForeignKeyConstraint(['owner_id'], ['users.uuid']),
    )
    op.create_index('idx_ad_campaign_owner_id', 'ad_campaigns', ['owner_id'])
    op.create_index('idx_ad_campaign_status', 'ad_campaigns', ['status'])

    # Wallets and ledger
    op.create_table(
        'wallet_balances',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('holder_id', sa.String(36), nullable=False),
        sa.Column('available_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('held_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pending_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lifetime_earnings_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_withdrawn_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('uuid'),
        sa.ForeignKeyConstraint(['holder_id'], ['users.uuid']),
        sa.UniqueConstraint('holder_id'),
        # Ledger guards never let a bucket go negative; enforce it in the schema too
        sa.CheckConstraint('available_cents >= 0', name='ck_wallet_available_non_negative'),
        sa.CheckConstraint('held_cents >= 0', name='ck_wallet_held_non_negative'),
        sa.CheckConstraint('pending_cents >= 0', name='ck_wallet_pending_non_negative'),
    )

    op.create_table(
        'ledger_entries',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('entry_type', sa.String(50), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('reference_id', sa.String(36), nullable=True),
        sa.Column('holder_id', sa.String(36), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('uuid'),
        sa.ForeignKeyConstraint(['holder_id'], ['users.uuid']),
    )
    op.create_index('idx_ledger_entry_holder_id', 'ledger_entries', ['holder_id'])
    op.create_index('idx_ledger_entry_type', 'ledger_entries', ['entry_type'])
    op.create_index('idx_ledger_entry_reference_id', 'ledger_entries', ['reference_id'])

    # Creator earnings
    op.create_table(
        'earnings_events',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('creator_id', sa.String(36), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('source_transaction_id', sa.String(36), nullable=True),
        sa.Column('source_product_id', sa.String(36), nullable=True),
        sa.Column('gross_amount_cents', sa.Integer(), nullable=False),
        sa.Column('creator_amount_cents', sa.Integer(), nullable=False),
        sa.Column('platform_amount_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('event_date', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('matured_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('uuid'),
        sa.ForeignKeyConstraint(['creator_id'], ['users.uuid']),
        sa.ForeignKeyConstraint(['source_transaction_id'], ['transactions.uuid']),
        sa.ForeignKeyConstraint(['source_product_id'], ['products.uuid']),
        sa.UniqueConstraint('source_transaction_id'),
    )
    op.create_index('idx_earnings_event_creator_id', 'earnings_events', ['creator_id'])
    op.create_index('idx_earnings_event_status', 'earnings_events', ['status'])

    op.create_table(
        'settlement_runs',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('settlement_date', sa.String(10), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='running'),
        sa.Column('creators_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('events_matured', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_matured_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('run_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('uuid'),
        sa.UniqueConstraint('settlement_date'),
    )

    op.create_table(
        'product_download_stats',
        sa.Column('product_id', sa.String(36), nullable=False),
        sa.Column('free_downloads', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_milestone_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_download_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('product_id'),
        sa.ForeignKeyConstraint(['product_id'], ['products.uuid']),
    )

    # Payouts
    op.create_table(
        'payout_accounts',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('account_type', sa.String(20), nullable=False),
        sa.Column('account_name', sa.String(255), nullable=False),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('uuid'),
        sa.ForeignKeyConstraint(['user_id'], ['users.uuid']),
    )
    op.create_index('idx_payout_account_user_id', 'payout_accounts', ['user_id'])

    op.create_table(
        'payout_requests',
        sa.Column('uuid', sa.String(36), nullable=False),
        sa.Column('creator_id', sa.String(36), nullable=False),
        sa.Column('amount_requested_cents', sa.Integer(), nullable=False),
        sa.Column('payout_method', sa.String(20), nullable=False),
        sa.Column('payout_account_id', sa.String(36), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='awaiting_admin'),
        sa.Column('creator_notes', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('payment_reference', sa.String(255), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('processed_by', sa.String(36), nullable=True),
        sa.Column('finalized_by_job', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('requested_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('decided_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('payout_date', sa.DateTime(), nullable=True),
        sa.Column('finalized_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('uuid'),
        sa.ForeignKeyConstraint(['creator_id'], ['users.uuid']),
        sa.ForeignKeyConstraint(['payout_account_id'], ['payout_accounts.uuid']),
        sa.ForeignKeyConstraint(['processed_by'], ['users.uuid']),
    )
    op.create_index('idx_payout_request_creator_id', 'payout_requests', ['creator_id'])
    op.create_index('idx_payout_request_status', 'payout_requests', ['status'])
    op.create_index('idx_payout_request_payout_date', 'payout_requests', ['payout_date'])


def downgrade() -> None:
    op.drop_table('payout_requests')
    op.drop_table('payout_accounts')
    op.drop_table('product_download_stats')
    op.drop_table('settlement_runs')
    op.drop_table('earnings_events')
    op.drop_table('ledger_entries')
    op.drop_table('wallet_balances')
    op.drop_table('ad_campaigns')
    op.drop_table('purchases')
    op.drop_table('transactions')
    op.drop_table('products')
    op.drop_table('subscriptions')
    op.drop_table('membership_plans')
    op.drop_table('users')
