"""create_idempotency_tables

Revision ID: 20261019_1200_idempotency
Revises: None
Create Date: 2026-10-19 12:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_1200_idempotency'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """
    Create idempotency_keys (durable replay records) and payments.
    """
    # Create idempotency_keys table
    op.create_table(
        'idempotency_keys',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('operation', sa.String(length=512), nullable=False),
        sa.Column('payload_fingerprint', sa.String(length=64), nullable=True),
        sa.Column('status_code', sa.Integer(), nullable=False),
        sa.Column('response_body', sa.JSON(), nullable=True),
        sa.Column('response_encoding', sa.String(length=16), nullable=True),
        sa.Column('response_headers', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        # Correctness backstop when two attempts race past the lock
        sa.UniqueConstraint('key', 'operation', name='uq_idempotency_key_operation')
    )
    op.create_index('ix_idempotency_keys_key', 'idempotency_keys', ['key'])
    op.create_index('ix_idempotency_created_at', 'idempotency_keys', ['created_at'])

    # Create payments table
    op.create_table(
        'payments',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('refunded_amount', sa.Integer(), server_default='0', nullable=False),
        sa.Column('customer_id', sa.String(length=255), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=50), server_default='pending', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_payments_customer_id', 'payments', ['customer_id'])


def downgrade() -> None:
    """
    Drop payments and idempotency_keys.
    """
    op.drop_index('ix_payments_customer_id', table_name='payments')
    op.drop_table('payments')

    op.drop_index('ix_idempotency_created_at', table_name='idempotency_keys')
    op.drop_index('ix_idempotency_keys_key', table_name='idempotency_keys')
    op.drop_table('idempotency_keys')
