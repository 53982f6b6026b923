"""Initial migration

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

def upgrade() -> None:
    # Create users table
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=50), nullable=False),
        sa.Column('api_key', sa.String(length=64), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='member'),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('credits >= 0', name='ck_users_credits_non_negative'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username'),
        sa.UniqueConstraint('api_key')
    )

    # Create virtual_machines table
    op.create_table('virtual_machines',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('owner_id', sa.Integer(), nullable=False),
        sa.Column('runtime_handle', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=63), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('port', sa.Integer(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('image', sa.String(length=255), nullable=False),
        sa.Column('memory_limit', sa.BigInteger(), nullable=False),
        sa.Column('cpu_shares', sa.Integer(), nullable=False),
        sa.Column('last_started_at', sa.DateTime(), nullable=True),
        sa.Column('last_stopped_at', sa.DateTime(), nullable=True),
        sa.Column('terminated_at', sa.DateTime(), nullable=True),
        sa.Column('total_runtime_seconds', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('credits_consumed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['owner_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('runtime_handle'),
        sa.UniqueConstraint('port')
    )

    # Create indexes
    op.create_index('ix_virtual_machines_owner_id', 'virtual_machines', ['owner_id'])
    op.create_index('ix_virtual_machines_owner_status', 'virtual_machines', ['owner_id', 'status'])

def downgrade() -> None:
    op.drop_index('ix_virtual_machines_owner_status')
    op.drop_index('ix_virtual_machines_owner_id')
    op.drop_table('virtual_machines')
    op.drop_table('users')
