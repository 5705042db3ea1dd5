"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


REQUEST_STATUSES = (
    "'created', 'paid', 'queued', 'assigned', 'allocated', 'in_progress', "
    "'completed', 'failed', 'refunded', 'cancelled'"
)


def upgrade() -> None:
    """Create the fulfillment engine schema."""

    # ========================================================================
    # Create wallets table
    # ========================================================================
    op.create_table(
        'wallets',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('balance_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='NGN'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('balance_minor >= 0', name='ck_wallet_balance_non_negative'),
        sa.UniqueConstraint('user_id', name='uq_wallets_user_id'),
    )

    # ========================================================================
    # Create ledger_entries table
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('direction', sa.String(20), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('request_id', UUID(as_uuid=True), nullable=True),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('amount_minor != 0', name='ck_ledger_amount_non_zero'),
        sa.CheckConstraint('balance_after >= 0', name='ck_ledger_balance_after_non_negative'),
        sa.UniqueConstraint('idempotency_key', name='uq_ledger_idempotency_key'),
    )
    op.create_index('idx_ledger_entries_user_created', 'ledger_entries', ['user_id', 'created_at'])
    op.create_index('idx_ledger_entries_request_id', 'ledger_entries', ['request_id'])

    # ========================================================================
    # Create agents and agent_categories tables
    # ========================================================================
    op.create_table(
        'agents',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('is_available', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('max_active_requests', sa.Integer(), nullable=False, server_default='20'),
        sa.Column('current_active_requests', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_completed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_processed_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('current_active_requests >= 0', name='ck_agent_load_non_negative'),
        sa.CheckConstraint('max_active_requests > 0', name='ck_agent_capacity_positive'),
        sa.CheckConstraint('total_completed >= 0', name='ck_agent_completed_non_negative'),
    )
    op.create_index('idx_agents_available_load', 'agents', ['is_available', 'current_active_requests'])

    op.create_table(
        'agent_categories',
        sa.Column('agent_id', UUID(as_uuid=True), primary_key=True),
        sa.Column('category', sa.String(30), primary_key=True),

        sa.ForeignKeyConstraint(['agent_id'], ['agents.id'], name='fk_agent_categories_agent', ondelete='CASCADE'),
    )
    op.create_index('idx_agent_categories_category', 'agent_categories', ['category'])

    # ========================================================================
    # Create inventory_codes table
    # ========================================================================
    op.create_table(
        'inventory_codes',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('category', sa.String(30), nullable=False),
        sa.Column('code_value', sa.String(100), nullable=False),
        sa.Column('serial', sa.String(100), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='unused'),
        sa.Column('reserved_for', UUID(as_uuid=True), nullable=True),
        sa.Column('reserved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('category', 'code_value', name='uq_inventory_category_code'),
        sa.CheckConstraint("status IN ('unused', 'reserved', 'used')", name='ck_inventory_status'),
        sa.CheckConstraint("status = 'unused' OR reserved_for IS NOT NULL", name='ck_inventory_reservation_owner'),
    )
    op.create_index('idx_inventory_codes_category_status', 'inventory_codes', ['category', 'status'])
    op.create_index(
        'idx_inventory_codes_reserved_for',
        'inventory_codes',
        ['reserved_for'],
        postgresql_where=sa.text('reserved_for IS NOT NULL'),
    )

    # ========================================================================
    # Create service_requests table
    # ========================================================================
    op.create_table(
        'service_requests',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('category', sa.String(30), nullable=False),
        sa.Column('service_code', sa.String(100), nullable=False),
        sa.Column('payload', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('fee_minor', sa.BigInteger(), nullable=False),
        sa.Column('paid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(20), nullable=False, server_default='created'),
        sa.Column('assigned_agent_id', UUID(as_uuid=True), nullable=True),
        sa.Column('allocated_inventory_id', UUID(as_uuid=True), nullable=True),
        sa.Column('result', JSONB(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('requires_intervention', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed_amount_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('fee_minor >= 0', name='ck_request_fee_non_negative'),
        sa.CheckConstraint('retry_count >= 0', name='ck_request_retry_non_negative'),
        sa.CheckConstraint('retry_count <= max_retries', name='ck_request_retry_bounded'),
        sa.CheckConstraint(
            'assigned_agent_id IS NULL OR allocated_inventory_id IS NULL',
            name='ck_request_single_fulfiller',
        ),
        sa.CheckConstraint(
            "paid OR status IN ('created', 'cancelled')",
            name='ck_request_paid_before_progress',
        ),
        sa.CheckConstraint(f'status IN ({REQUEST_STATUSES})', name='ck_request_status'),
        sa.ForeignKeyConstraint(['assigned_agent_id'], ['agents.id'], name='fk_requests_agent', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(
            ['allocated_inventory_id'], ['inventory_codes.id'], name='fk_requests_inventory', ondelete='RESTRICT'
        ),
    )
    op.create_index('idx_service_requests_status_created', 'service_requests', ['status', 'created_at'])
    op.create_index('idx_service_requests_category_status', 'service_requests', ['category', 'status'])
    op.create_index('idx_service_requests_user_id', 'service_requests', ['user_id'])
    op.create_index('idx_service_requests_agent_status', 'service_requests', ['assigned_agent_id', 'status'])

    # ========================================================================
    # Create request_activity table
    # ========================================================================
    op.create_table(
        'request_activity',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('request_id', UUID(as_uuid=True), nullable=False),
        sa.Column('actor_type', sa.String(20), nullable=False),
        sa.Column('actor_id', sa.String(255), nullable=True),
        sa.Column('previous_status', sa.String(20), nullable=True),
        sa.Column('new_status', sa.String(20), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.ForeignKeyConstraint(['request_id'], ['service_requests.id'], name='fk_activity_request', ondelete='CASCADE'),
    )
    op.create_index('idx_request_activity_request_created', 'request_activity', ['request_id', 'created_at'])

    # ========================================================================
    # Create service_pricing table
    # ========================================================================
    op.create_table(
        'service_pricing',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('service_code', sa.String(100), nullable=False),
        sa.Column('price_minor', sa.BigInteger(), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('price_minor >= 0', name='ck_pricing_non_negative'),
        sa.UniqueConstraint('service_code', name='uq_service_pricing_code'),
    )


def downgrade() -> None:
    """Drop the fulfillment engine schema."""
    op.drop_table('service_pricing')
    op.drop_table('request_activity')
    op.drop_table('service_requests')
    op.drop_table('inventory_codes')
    op.drop_table('agent_categories')
    op.drop_table('agents')
    op.drop_table('ledger_entries')
    op.drop_table('wallets')
