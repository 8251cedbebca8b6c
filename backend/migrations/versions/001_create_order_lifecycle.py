"""
Alembic migration: Create the order lifecycle schema.

Creates the orders table with its assignment and completion constraints, the
append-only order_status_history audit trail, the financial_transactions
ledger written at completion, and platform_settings for admin-configured
values such as the commission rate.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    """
    Create order lifecycle tables, indexes and constraints.
    """
    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('customer_id', sa.Uuid(as_uuid=True), nullable=False,
                  comment='Customer who placed the order'),
        sa.Column('driver_id', sa.Uuid(as_uuid=True), nullable=True,
                  comment='Driver who claimed the order'),
        sa.Column('status', sa.String(length=32), nullable=False,
                  server_default='available', comment='Current delivery status'),
        sa.Column('payment_status', sa.String(length=32), nullable=False,
                  server_default='pending', comment='Current payment status'),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('pickup_location', JSON_TYPE, nullable=False),
        sa.Column('dropoff_location', JSON_TYPE, nullable=False),
        sa.Column('driver_location', JSON_TYPE, nullable=True),
        sa.Column('package_details', sa.String(length=1000), nullable=True),
        sa.Column('notes', sa.String(length=1000), nullable=True),
        sa.Column('estimated_distance', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('estimated_duration', sa.Integer(), nullable=True),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('commission_rate', sa.Numeric(precision=5, scale=2), nullable=True,
                  comment='Commission percentage snapshotted at completion'),
        sa.Column('platform_commission', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('driver_payout', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('actual_pickup_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_delivery_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by', sa.Uuid(as_uuid=True), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=500), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('price >= 0', name='ck_orders_price_non_negative'),
        sa.CheckConstraint(
            'commission_rate IS NULL OR '
            '(commission_rate >= 0 AND commission_rate <= 100)',
            name='ck_orders_commission_rate_range',
        ),
        sa.CheckConstraint(
            "status = 'cancelled' "
            "OR (status = 'available' AND driver_id IS NULL) "
            "OR (status <> 'available' AND driver_id IS NOT NULL)",
            name='ck_orders_driver_matches_status',
        ),
        comment='Delivery orders; source of truth for status and assignment',
    )
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_driver_id', 'orders', ['driver_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])
    op.create_index('ix_orders_driver_status', 'orders', ['driver_id', 'status'])
    op.create_index('ix_orders_customer_status', 'orders', ['customer_id', 'status'])

    op.create_table(
        'order_status_history',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            'order_id',
            sa.Uuid(as_uuid=True),
            sa.ForeignKey('orders.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('from_status', sa.String(length=32), nullable=False),
        sa.Column('to_status', sa.String(length=32), nullable=False),
        sa.Column('actor_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('driver_location', JSON_TYPE, nullable=True),
        sa.Column('reason', sa.String(length=500), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        'ix_order_status_history_order_id',
        'order_status_history',
        ['order_id'],
    )

    op.create_table(
        'financial_transactions',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            'order_id',
            sa.Uuid(as_uuid=True),
            sa.ForeignKey('orders.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('driver_id', sa.Uuid(as_uuid=True), nullable=True),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('transaction_type', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False,
                  server_default='completed'),
        *_timestamps(),
        sa.CheckConstraint('amount >= 0', name='ck_financial_transactions_amount'),
    )
    op.create_index(
        'ix_financial_transactions_order_id',
        'financial_transactions',
        ['order_id'],
    )
    op.create_index(
        'ix_financial_transactions_driver_id',
        'financial_transactions',
        ['driver_id'],
    )
    op.create_index(
        'ix_financial_transactions_order_type',
        'financial_transactions',
        ['order_id', 'transaction_type'],
        unique=True,
    )

    op.create_table(
        'platform_settings',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('key', sa.String(length=100), nullable=False, unique=True),
        sa.Column('value', sa.String(length=255), nullable=False),
        *_timestamps(),
    )


def downgrade() -> None:
    """
    Drop order lifecycle tables.
    """
    op.drop_table('platform_settings')

    op.drop_index('ix_financial_transactions_order_type', table_name='financial_transactions')
    op.drop_index('ix_financial_transactions_driver_id', table_name='financial_transactions')
    op.drop_index('ix_financial_transactions_order_id', table_name='financial_transactions')
    op.drop_table('financial_transactions')

    op.drop_index('ix_order_status_history_order_id', table_name='order_status_history')
    op.drop_table('order_status_history')

    op.drop_index('ix_orders_customer_status', table_name='orders')
    op.drop_index('ix_orders_driver_status', table_name='orders')
    op.drop_index('ix_orders_status_created', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_orders_driver_id', table_name='orders')
    op.drop_index('ix_orders_customer_id', table_name='orders')
    op.drop_table('orders')
