"""checkout tables

Revision ID: 3a1f0c9d7e21
Revises:
Create Date: 2026-10-19 10:12:44.301522

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3a1f0c9d7e21'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=True, unique=True),
        sa.Column('name', sa.String(length=128), nullable=True),
        _ts('created_at'),
    )
    op.create_index('ix_users_public_id', 'users', ['public_id'], unique=True)

    op.create_table(
        'address',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('full_name', sa.String(length=128), nullable=True),
        sa.Column('line1', sa.String(), nullable=False),
        sa.Column('line2', sa.String(), nullable=True),
        sa.Column('city', sa.String(), nullable=False),
        sa.Column('state', sa.String(), nullable=True),
        sa.Column('postal_code', sa.String(), nullable=False),
        sa.Column('country', sa.String(), nullable=False),
        sa.Column('phone', sa.String(), nullable=True),
        _ts('created_at'),
        _ts('deleted_at', nullable=True),
    )
    op.create_index('ix_address_user_id', 'address', ['user_id'])

    op.create_table(
        'product',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('sku', sa.String(length=128), nullable=True),
        sa.Column('price', sa.BigInteger(), nullable=False),
        sa.Column('online_price', sa.BigInteger(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        _ts('created_at'),
        _ts('updated_at'),
    )
    op.create_index('ix_product_status', 'product', ['status'])

    op.create_table(
        'cart',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        _ts('created_at'),
        _ts('updated_at'),
    )
    op.create_index('ix_cart_user_id', 'cart', ['user_id'], unique=True)

    op.create_table(
        'cartitem',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('cart_id', sa.Integer(), sa.ForeignKey('cart.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('product.id', ondelete='CASCADE'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        _ts('created_at'),
        sa.UniqueConstraint('cart_id', 'product_id', name='uq_cart_product'),
    )
    op.create_index('ix_cartitem_cart_id', 'cartitem', ['cart_id'])

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(), nullable=False),
        sa.Column('order_number', sa.String(length=32), nullable=False, unique=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('payment_status', sa.String(length=16), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('settlement_timing', sa.String(length=16), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('subtotal', sa.BigInteger(), nullable=False),
        sa.Column('tax', sa.BigInteger(), nullable=False),
        sa.Column('shipping', sa.BigInteger(), nullable=False),
        sa.Column('total', sa.BigInteger(), nullable=False),
        sa.Column('shipping_address', sa.JSON(), nullable=False),
        sa.Column('billing_address', sa.JSON(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        _ts('stock_committed_at', nullable=True),
        sa.Column('cancellation_reason', sa.String(length=255), nullable=True),
        sa.Column('cancellation_notes', sa.Text(), nullable=True),
        sa.Column('cancelled_by', sa.String(length=16), nullable=True),
        _ts('cancelled_at', nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
    )
    op.create_index('ix_orders_public_id', 'orders', ['public_id'], unique=True)
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_cancelled_by', 'orders', ['cancelled_by'])
    op.create_index('ix_orders_cancelled_at', 'orders', ['cancelled_at'])
    op.create_index('ix_orders_user_pending_checkout', 'orders',
                    ['user_id', 'payment_method', 'payment_status', 'created_at'])
    op.create_index('ix_orders_status_cancelled_at', 'orders', ['status', 'cancelled_at'])

    op.create_table(
        'orderitem',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('product.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.BigInteger(), nullable=False),
        sa.Column('total_price', sa.BigInteger(), nullable=False),
        sa.UniqueConstraint('order_id', 'product_id', name='uq_order_product'),
    )
    op.create_index('ix_orderitem_order_id', 'orderitem', ['order_id'])

    op.create_table(
        'payment',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('correlation_id', sa.String(length=128), nullable=True, unique=True),
        sa.Column('capture_id', sa.String(length=128), nullable=True),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('refunded_amount', sa.BigInteger(), nullable=False),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
        _ts('paid_at', nullable=True),
    )
    op.create_index('ix_payment_public_id', 'payment', ['public_id'], unique=True)
    op.create_index('ix_payment_capture_id', 'payment', ['capture_id'])
    op.create_index('ix_payment_status', 'payment', ['status'])

    op.create_table(
        'paymentwebhookevent',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_event_id', sa.String(length=128), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=True),
        sa.Column('correlation_id', sa.String(length=128), nullable=True),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        _ts('processed_at', nullable=True),
        _ts('created_at'),
        sa.UniqueConstraint('provider', 'provider_event_id', name='uq_webhook_provider_event'),
    )
    op.create_index('ix_paymentwebhookevent_provider', 'paymentwebhookevent', ['provider'])
    op.create_index('ix_paymentwebhookevent_correlation_id', 'paymentwebhookevent', ['correlation_id'])
    op.create_index('ix_paymentwebhookevent_order_id', 'paymentwebhookevent', ['order_id'])
    op.create_index('ix_paymentwebhookevent_processed_at', 'paymentwebhookevent', ['processed_at'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('paymentwebhookevent')
    op.drop_table('payment')
    op.drop_table('orderitem')
    op.drop_table('orders')
    op.drop_table('cartitem')
    op.drop_table('cart')
    op.drop_table('product')
    op.drop_table('address')
    op.drop_table('users')
