"""initial schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        'id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')
    )


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()'))


def upgrade() -> None:
    """Create billing engine schema."""

    # ========================================================================
    # Create customers table
    # ========================================================================
    op.create_table(
        'customers',
        _id_column(),
        sa.Column('owner_kind', sa.String(30), nullable=False),
        sa.Column('owner_ref', sa.String(255), nullable=False),
        sa.Column('default_currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('email', sa.String(255), nullable=True),
        _timestamp('converted_at', nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),

        # Constraints
        sa.CheckConstraint(
            "owner_kind IN ('user', 'organization', 'guest')", name='ck_customer_owner_kind'
        ),
        sa.UniqueConstraint('owner_kind', 'owner_ref', name='uq_customer_owner'),
    )
    op.create_index('idx_customers_owner_ref', 'customers', ['owner_ref'])

    # ========================================================================
    # Create payment_providers table
    # ========================================================================
    op.create_table(
        'payment_providers',
        sa.Column('id', sa.String(50), primary_key=True),
        sa.Column('adapter_kind', sa.String(50), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('supports_subscriptions', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('supports_saved_methods', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('config', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _timestamp('created_at'),
        _timestamp('updated_at'),
    )

    # ========================================================================
    # Create provider_customers table
    # ========================================================================
    op.create_table(
        'provider_customers',
        _id_column(),
        sa.Column('customer_id', UUID(as_uuid=True), nullable=False),
        sa.Column('provider_id', sa.String(50), nullable=False),
        sa.Column('provider_customer_ref', sa.String(255), nullable=False),
        _timestamp('created_at'),

        # Constraints
        sa.UniqueConstraint('customer_id', 'provider_id', name='uq_provider_customer'),
        sa.UniqueConstraint('provider_id', 'provider_customer_ref', name='uq_provider_customer_ref'),
        sa.ForeignKeyConstraint(
            ['customer_id'], ['customers.id'], name='fk_provider_customers_customer', ondelete='CASCADE'
        ),
    )

    # ========================================================================
    # Create payment_methods table
    # ========================================================================
    op.create_table(
        'payment_methods',
        _id_column(),
        sa.Column('customer_id', UUID(as_uuid=True), nullable=False),
        sa.Column('provider_id', sa.String(50), nullable=False),
        sa.Column('provider_method_ref', sa.String(255), nullable=False),
        sa.Column('payment_type', sa.String(50), nullable=False, server_default='card'),
        sa.Column('last_four', sa.String(4), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        _timestamp('created_at'),

        # Constraints
        sa.UniqueConstraint('provider_id', 'provider_method_ref', name='uq_payment_method_ref'),
        sa.ForeignKeyConstraint(
            ['customer_id'], ['customers.id'], name='fk_payment_methods_customer', ondelete='CASCADE'
        ),
    )
    op.create_index('ix_payment_methods_customer_id', 'payment_methods', ['customer_id'])

    # ========================================================================
    # Create account_balances table
    # ========================================================================
    op.create_table(
        'account_balances',
        _id_column(),
        sa.Column('owner_ref', sa.String(255), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('reference_code', sa.String(100), nullable=False, server_default='main_wallet'),
        sa.Column('balance_type', sa.String(50), nullable=False, server_default='general'),
        sa.Column('current_balance_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('credit_limit_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('minimum_balance_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('held_cents', sa.BigInteger(), nullable=False, server_default='0'),
        _timestamp('expires_at', nullable=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='active'),
        sa.Column('version', sa.BigInteger(), nullable=False, server_default='0'),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        _timestamp('last_transaction_at', nullable=True),

        # Constraints
        sa.CheckConstraint('credit_limit_cents >= 0', name='ck_balance_credit_limit_non_negative'),
        sa.CheckConstraint('held_cents >= 0', name='ck_balance_held_non_negative'),
        sa.CheckConstraint('version >= 0', name='ck_balance_version_non_negative'),
        sa.CheckConstraint("status IN ('active', 'frozen', 'suspended')", name='ck_balance_status'),
        sa.UniqueConstraint('owner_ref', 'currency', 'reference_code', name='uq_account_balance'),
    )
    op.create_index('idx_account_balances_owner', 'account_balances', ['owner_ref'])
    op.create_index('idx_account_balances_status', 'account_balances', ['status'])

    # ========================================================================
    # Create account_transactions table
    # ========================================================================
    op.create_table(
        'account_transactions',
        _id_column(),
        sa.Column('balance_id', UUID(as_uuid=True), nullable=False),
        sa.Column('transaction_type', sa.String(30), nullable=False),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('balance_before_cents', sa.BigInteger(), nullable=False),
        sa.Column('balance_after_cents', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='completed'),
        sa.Column('sequence', sa.BigInteger(), nullable=True),
        sa.Column('is_hold', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('payment_id', UUID(as_uuid=True), nullable=True),
        _timestamp('created_at'),
        _timestamp('completed_at', nullable=True),

        # Constraints
        sa.CheckConstraint('amount_cents > 0', name='ck_transaction_amount_positive'),
        sa.CheckConstraint(
            "transaction_type IN ('credit', 'debit', 'refund', 'adjustment', 'fee')",
            name='ck_transaction_type',
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'reversed')", name='ck_transaction_status'
        ),
        sa.UniqueConstraint('balance_id', 'idempotency_key', name='uq_transaction_idempotency'),
        sa.UniqueConstraint('balance_id', 'sequence', name='uq_transaction_sequence'),
        sa.ForeignKeyConstraint(
            ['balance_id'], ['account_balances.id'], name='fk_transactions_balance', ondelete='RESTRICT'
        ),
    )
    op.create_index('idx_account_transactions_balance', 'account_transactions', ['balance_id'])
    op.create_index('idx_account_transactions_status', 'account_transactions', ['status'])
    op.create_index(
        'idx_account_transactions_payment', 'account_transactions', ['payment_id'],
        postgresql_where=sa.text('payment_id IS NOT NULL'),
    )

    # ========================================================================
    # Create payments table
    # ========================================================================
    op.create_table(
        'payments',
        _id_column(),
        sa.Column('idempotency_key', sa.String(255), nullable=False, unique=True),
        sa.Column('owner_ref', sa.String(255), nullable=True),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='pending'),
        sa.Column('payment_priority', sa.String(30), nullable=False),
        sa.Column('account_balance_id', UUID(as_uuid=True), nullable=True),
        sa.Column('payment_method_id', UUID(as_uuid=True), nullable=True),
        sa.Column('provider_id', sa.String(50), nullable=True),
        sa.Column('provider_ref', sa.String(255), nullable=True),
        sa.Column('planned', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('balance_portion_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('provider_portion_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('shortfall_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('balance_transaction_id', UUID(as_uuid=True), nullable=True),
        sa.Column('compensated', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('failure_code', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('schedule_id', UUID(as_uuid=True), nullable=True),
        _timestamp('billing_period', nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        _timestamp('completed_at', nullable=True),

        # Constraints
        sa.CheckConstraint('amount_cents > 0', name='ck_payment_amount_positive'),
        sa.CheckConstraint('balance_portion_cents >= 0', name='ck_payment_balance_portion'),
        sa.CheckConstraint('provider_portion_cents >= 0', name='ck_payment_provider_portion'),
    )
    op.create_index('idx_payments_provider_ref', 'payments', ['provider_id', 'provider_ref'])
    op.create_index(
        'idx_payments_schedule', 'payments', ['schedule_id'],
        postgresql_where=sa.text('schedule_id IS NOT NULL'),
    )
    op.create_index('idx_payments_status', 'payments', ['status'])

    # ========================================================================
    # Create payment_events table
    # ========================================================================
    op.create_table(
        'payment_events',
        _id_column(),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', UUID(as_uuid=True), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('data', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _timestamp('created_at'),
    )
    op.create_index('idx_payment_events_entity', 'payment_events', ['entity_type', 'entity_id'])
    op.create_index('idx_payment_events_type', 'payment_events', ['event_type'])

    # ========================================================================
    # Create billing_schedules table
    # ========================================================================
    op.create_table(
        'billing_schedules',
        _id_column(),
        sa.Column('owner_ref', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('schedule_type', sa.String(30), nullable=False, server_default='recurring'),
        sa.Column('category', sa.String(50), nullable=True),
        sa.Column('reference_code', sa.String(100), nullable=True),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('interval_unit', sa.String(30), nullable=False),
        sa.Column('interval_multiplier', sa.Integer(), nullable=False, server_default='1'),
        _timestamp('start_date'),
        _timestamp('end_date', nullable=True),
        _timestamp('next_billing_date'),
        _timestamp('last_billed_at', nullable=True),
        sa.Column('payment_method_id', UUID(as_uuid=True), nullable=True),
        sa.Column('account_balance_id', UUID(as_uuid=True), nullable=True),
        sa.Column('payment_priority', sa.String(30), nullable=False, server_default='balance_first'),
        sa.Column('provider_cap_cents', sa.BigInteger(), nullable=True),
        sa.Column('allow_partial', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('status', sa.String(30), nullable=False, server_default='active'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('last_failure_reason', sa.Text(), nullable=True),
        _timestamp('locked_until', nullable=True),
        sa.Column('locked_by', sa.String(255), nullable=True),
        sa.Column('notify_before_days', sa.Integer(), nullable=True),
        _timestamp('last_notification_sent', nullable=True),
        sa.Column('external_ref', sa.String(255), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),

        # Constraints
        sa.CheckConstraint('amount_cents > 0', name='ck_schedule_amount_positive'),
        sa.CheckConstraint('interval_multiplier BETWEEN 1 AND 12', name='ck_schedule_interval_multiplier'),
        sa.CheckConstraint('retry_count >= 0', name='ck_schedule_retry_count'),
        sa.CheckConstraint('max_retries >= 1', name='ck_schedule_max_retries'),
        sa.CheckConstraint(
            'notify_before_days IS NULL OR notify_before_days BETWEEN 0 AND 30',
            name='ck_schedule_notify_before_days',
        ),
        sa.CheckConstraint(
            "status IN ('active', 'past_due', 'paused', 'suspended', 'cancelled', 'completed', 'failed')",
            name='ck_schedule_status',
        ),
    )
    op.create_index('idx_billing_schedules_due', 'billing_schedules', ['status', 'next_billing_date'])
    op.create_index('idx_billing_schedules_owner', 'billing_schedules', ['owner_ref'])
    op.create_index(
        'idx_billing_schedules_external_ref', 'billing_schedules', ['external_ref'],
        postgresql_where=sa.text('external_ref IS NOT NULL'),
    )

    # ========================================================================
    # Create billing_schedule_executions table
    # ========================================================================
    op.create_table(
        'billing_schedule_executions',
        _id_column(),
        sa.Column('schedule_id', UUID(as_uuid=True), nullable=False),
        _timestamp('billing_period'),
        sa.Column('attempt', sa.Integer(), nullable=False),
        sa.Column('execution_status', sa.String(30), nullable=False),
        sa.Column('attempted_amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('charged_amount_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('payment_source', sa.String(30), nullable=True),
        sa.Column('payment_id', UUID(as_uuid=True), nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        _timestamp('executed_at'),

        # Constraints
        sa.CheckConstraint(
            "execution_status IN ('success', 'failed', 'partial')", name='ck_execution_status'
        ),
        sa.UniqueConstraint('schedule_id', 'billing_period', 'attempt', name='uq_execution_attempt'),
        sa.ForeignKeyConstraint(
            ['schedule_id'], ['billing_schedules.id'], name='fk_executions_schedule', ondelete='CASCADE'
        ),
    )
    op.create_index('idx_billing_executions_schedule', 'billing_schedule_executions', ['schedule_id'])
    op.create_index('idx_billing_executions_status', 'billing_schedule_executions', ['execution_status'])

    # ========================================================================
    # Create webhook_events table
    # ========================================================================
    op.create_table(
        'webhook_events',
        _id_column(),
        sa.Column('provider_id', sa.String(50), nullable=False),
        sa.Column('provider_event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('payload', JSONB(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        _timestamp('received_at'),
        _timestamp('processed_at', nullable=True),

        # Constraints
        sa.UniqueConstraint('provider_id', 'provider_event_id', name='uq_webhook_provider_event'),
    )
    op.create_index(
        'idx_webhook_events_processed', 'webhook_events', ['processed'],
        postgresql_where=sa.text('processed = false'),
    )


def downgrade() -> None:
    """Drop billing engine schema."""
    op.drop_table('webhook_events')
    op.drop_table('billing_schedule_executions')
    op.drop_table('billing_schedules')
    op.drop_table('payment_events')
    op.drop_table('payments')
    op.drop_table('account_transactions')
    op.drop_table('account_balances')
    op.drop_table('payment_methods')
    op.drop_table('provider_customers')
    op.drop_table('payment_providers')
    op.drop_table('customers')
