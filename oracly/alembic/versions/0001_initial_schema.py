"""initial schema: integrations, sync cursors, trades, transfers

Revision ID: 0001
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None

provider_type = sa.Enum('BINANCE', name='providertype')
sync_status = sa.Enum('NEVER_SYNCED', 'SYNCING', 'SUCCESS', 'FAILED', 'PARTIAL', name='syncstatus')
trade_type = sa.Enum('SPOT', 'CONVERT', 'FIAT', name='tradetype')


def upgrade():
    # Integrations
    op.create_table('integrations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('provider', provider_type, nullable=False),
        sa.Column('display_name', sa.String(length=100), nullable=True),
        sa.Column('read_only', sa.Boolean(), nullable=False),
        sa.Column('encrypted_api_key', sa.Text(), nullable=False),
        sa.Column('encrypted_api_secret', sa.Text(), nullable=False),
        sa.Column('scopes', sa.JSON(), nullable=True),
        sa.Column('sync_status', sync_status, nullable=False),
        sa.Column('sync_started_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_attempt', sa.DateTime(), nullable=True),
        sa.Column('last_successful_sync', sa.DateTime(), nullable=True),
        sa.Column('sync_error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'provider', name='uq_integration_user_provider')
    )
    op.create_index(op.f('ix_integrations_user_id'), 'integrations', ['user_id'], unique=False)
    op.create_index('idx_integrations_sync_status', 'integrations', ['sync_status'], unique=False)

    # Resumable cursors
    op.create_table('integration_sync_states',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('integration_id', sa.Integer(), nullable=False),
        sa.Column('dataset', sa.String(length=50), nullable=False),
        sa.Column('scope', sa.String(length=50), nullable=False),
        sa.Column('cursor', sa.JSON(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['integration_id'], ['integrations.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('integration_id', 'dataset', 'scope', name='uq_sync_state_integration_dataset_scope')
    )
    op.create_index(op.f('ix_integration_sync_states_integration_id'), 'integration_sync_states', ['integration_id'], unique=False)

    # Trades (spot fills and conversions)
    op.create_table('trades',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('integration_id', sa.Integer(), nullable=False),
        sa.Column('provider_trade_id', sa.String(length=100), nullable=False),
        sa.Column('symbol', sa.String(length=50), nullable=False),
        sa.Column('base_asset', sa.String(length=20), nullable=True),
        sa.Column('quote_asset', sa.String(length=20), nullable=True),
        sa.Column('side', sa.String(length=10), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=False),
        sa.Column('price', sa.Float(), nullable=False),
        sa.Column('quote_quantity', sa.Float(), nullable=True),
        sa.Column('fee', sa.Float(), nullable=True),
        sa.Column('fee_asset', sa.String(length=20), nullable=True),
        sa.Column('is_maker', sa.Boolean(), nullable=True),
        sa.Column('executed_at', sa.BigInteger(), nullable=False),
        sa.Column('trade_type', trade_type, nullable=False),
        sa.Column('from_asset', sa.String(length=20), nullable=True),
        sa.Column('from_amount', sa.Float(), nullable=True),
        sa.Column('to_asset', sa.String(length=20), nullable=True),
        sa.Column('to_amount', sa.Float(), nullable=True),
        sa.Column('raw', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['integration_id'], ['integrations.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('integration_id', 'symbol', 'provider_trade_id', name='uq_trade_integration_symbol_provider_id')
    )
    op.create_index(op.f('ix_trades_id'), 'trades', ['id'], unique=False)
    op.create_index(op.f('ix_trades_symbol'), 'trades', ['symbol'], unique=False)
    op.create_index('idx_trades_integration_time', 'trades', ['integration_id', 'executed_at'], unique=False)

    # Deposits
    op.create_table('deposits',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('integration_id', sa.Integer(), nullable=False),
        sa.Column('deposit_id', sa.String(length=100), nullable=False),
        sa.Column('tx_id', sa.String(length=255), nullable=True),
        sa.Column('coin', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('network', sa.String(length=50), nullable=True),
        sa.Column('address', sa.String(length=255), nullable=True),
        sa.Column('address_tag', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('insert_time', sa.BigInteger(), nullable=False),
        sa.Column('raw', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['integration_id'], ['integrations.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('integration_id', 'deposit_id', name='uq_deposit_integration_provider_id')
    )
    op.create_index(op.f('ix_deposits_id'), 'deposits', ['id'], unique=False)
    op.create_index(op.f('ix_deposits_coin'), 'deposits', ['coin'], unique=False)
    op.create_index('idx_deposits_integration_time', 'deposits', ['integration_id', 'insert_time'], unique=False)

    # Withdrawals
    op.create_table('withdrawals',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('integration_id', sa.Integer(), nullable=False),
        sa.Column('withdraw_id', sa.String(length=100), nullable=False),
        sa.Column('tx_id', sa.String(length=255), nullable=True),
        sa.Column('coin', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('network', sa.String(length=50), nullable=True),
        sa.Column('address', sa.String(length=255), nullable=True),
        sa.Column('address_tag', sa.String(length=100), nullable=True),
        sa.Column('fee', sa.Float(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('apply_time', sa.BigInteger(), nullable=False),
        sa.Column('update_time', sa.BigInteger(), nullable=True),
        sa.Column('raw', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['integration_id'], ['integrations.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('integration_id', 'withdraw_id', name='uq_withdrawal_integration_provider_id')
    )
    op.create_index(op.f('ix_withdrawals_id'), 'withdrawals', ['id'], unique=False)
    op.create_index(op.f('ix_withdrawals_coin'), 'withdrawals', ['coin'], unique=False)
    op.create_index('idx_withdrawals_integration_time', 'withdrawals', ['integration_id', 'apply_time'], unique=False)


def downgrade():
    op.drop_table('withdrawals')
    op.drop_table('deposits')
    op.drop_table('trades')
    op.drop_table('integration_sync_states')
    op.drop_table('integrations')
    bind = op.get_bind()
    trade_type.drop(bind, checkfirst=True)
    sync_status.drop(bind, checkfirst=True)
    provider_type.drop(bind, checkfirst=True)
