"""initial ledger schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create tenant accounts and the append-only ledger."""

    # ========================================================================
    # Create tenant_accounts table
    # ========================================================================
    op.create_table(
        'tenant_accounts',
        sa.Column('tenant_id', sa.String(255), primary_key=True),
        sa.Column('plan_id', sa.String(50), nullable=False, server_default='starter'),
        sa.Column('subscription_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('topoff_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('initial_subscription_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('initial_topoff_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('credits_used_this_cycle', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('overage_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_usage_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('billing_cycle_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('billing_cycle_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('external_subscription_id', sa.String(255), nullable=True),
        sa.Column('external_customer_id', sa.String(255), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('subscription_credits >= 0', name='ck_subscription_credits_non_negative'),
        sa.CheckConstraint('topoff_credits >= 0', name='ck_topoff_credits_non_negative'),
        sa.CheckConstraint('credits_used_this_cycle >= 0', name='ck_cycle_usage_non_negative'),
        sa.CheckConstraint('overage_credits >= 0', name='ck_overage_non_negative'),
        sa.CheckConstraint(
            "status IN ('active', 'warning', 'exhausted', 'past_due', 'suspended', 'canceled')",
            name='ck_tenant_account_status',
        ),
        sa.UniqueConstraint('external_subscription_id', name='uq_tenant_external_subscription'),
    )

    op.create_index(
        'idx_tenant_accounts_customer', 'tenant_accounts', ['external_customer_id'],
        postgresql_where=sa.text('external_customer_id IS NOT NULL'),
    )
    op.create_index('idx_tenant_accounts_status', 'tenant_accounts', ['status'])

    # ========================================================================
    # Create ledger_entries table
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('tenant_id', sa.String(255), nullable=False),
        sa.Column('entry_type', sa.String(20), nullable=False),
        sa.Column('pool', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('subscription_balance_after', sa.BigInteger(), nullable=False),
        sa.Column('topoff_balance_after', sa.BigInteger(), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('external_reference', sa.String(255), nullable=True),
        sa.Column('action', sa.String(50), nullable=True),
        sa.Column('credits_requested', sa.BigInteger(), nullable=True),
        sa.Column('overage_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('untracked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('overage_credits >= 0', name='ck_entry_overage_non_negative'),
        sa.CheckConstraint(
            'balance_after = subscription_balance_after + topoff_balance_after',
            name='ck_entry_balance_consistency',
        ),
        sa.CheckConstraint(
            "entry_type IN ('allocation', 'usage', 'purchase', 'adjustment', 'plan_change')",
            name='ck_entry_type',
        ),
        sa.CheckConstraint("pool IN ('subscription', 'topoff')", name='ck_entry_pool'),
        sa.UniqueConstraint('external_reference', name='uq_ledger_external_reference'),
    )

    op.create_index('idx_ledger_entries_tenant_created', 'ledger_entries', ['tenant_id', 'created_at'])
    op.create_index('idx_ledger_entries_entry_type', 'ledger_entries', ['entry_type'])

    # Committed entries are immutable even outside the ORM
    op.execute(
        """
        CREATE OR REPLACE FUNCTION ledger_entries_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'ledger_entries is append-only';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_ledger_entries_immutable
        BEFORE UPDATE OR DELETE ON ledger_entries
        FOR EACH ROW EXECUTE FUNCTION ledger_entries_immutable();
        """
    )


def downgrade() -> None:
    """Drop all tables."""
    op.execute('DROP TRIGGER IF EXISTS trg_ledger_entries_immutable ON ledger_entries')
    op.execute('DROP FUNCTION IF EXISTS ledger_entries_immutable()')
    op.drop_table('ledger_entries')
    op.drop_table('tenant_accounts')
