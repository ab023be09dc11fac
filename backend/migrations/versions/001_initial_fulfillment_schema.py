"""
Alembic migration: Initial fulfillment pipeline schema.

Creates orders and their line items, the append-only processing signal log,
operator alerts, and the auto-gift execution and approval token tables,
with the indexes the retry scheduler, timeout monitor and releaser scan on.

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


ORDER_STATUSES = (
    'pending',
    'payment_confirmed',
    'processing',
    'submitted',
    'retry_pending',
    'scheduled',
    'completed',
    'shipped',
    'cancelled',
)

PAYMENT_STATUSES = ('pending', 'succeeded', 'failed')

ZINC_STATUSES = (
    'submitting',
    'submitted',
    'placed',
    'shipped',
    'delivered',
    'failed',
    'cancelled',
)

EXECUTION_STATUSES = (
    'selected',
    'awaiting_approval',
    'approved',
    'order_created',
    'rejected',
    'expired',
    'failed',
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
            comment='Timestamp when record was last updated',
        ),
    ]


def _id() -> sa.Column:
    return sa.Column(
        'id',
        postgresql.UUID(as_uuid=True),
        nullable=False,
        server_default=sa.text('gen_random_uuid()'),
        comment='Unique identifier for the record',
    )


def upgrade() -> None:
    """
    Create the fulfillment pipeline tables.

    Enum types store the lowercase member values used throughout the
    application.
    """
    postgresql.ENUM(*ORDER_STATUSES, name='order_status').create(op.get_bind())
    postgresql.ENUM(*PAYMENT_STATUSES, name='order_payment_status').create(op.get_bind())
    postgresql.ENUM(*ZINC_STATUSES, name='zinc_status').create(op.get_bind())
    postgresql.ENUM(
        *EXECUTION_STATUSES, name='auto_gift_execution_status'
    ).create(op.get_bind())

    op.create_table(
        'orders',
        _id(),
        sa.Column('order_number', sa.String(length=32), nullable=False,
                  comment='Human-readable order number'),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=True,
                  comment='Purchasing user, null for guest checkout'),
        sa.Column('subtotal', sa.Numeric(10, 2), nullable=False,
                  server_default=sa.text('0')),
        sa.Column('shipping_cost', sa.Numeric(10, 2), nullable=False,
                  server_default=sa.text('0')),
        sa.Column('tax_amount', sa.Numeric(10, 2), nullable=False,
                  server_default=sa.text('0')),
        sa.Column('total_amount', sa.Numeric(10, 2), nullable=False,
                  server_default=sa.text('0')),
        sa.Column('currency', sa.String(length=3), nullable=False,
                  server_default=sa.text("'usd'")),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True,
                  comment='Payment processor payment-intent id'),
        sa.Column(
            'payment_status',
            postgresql.ENUM(*PAYMENT_STATUSES, name='order_payment_status',
                            create_type=False),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column(
            'status',
            postgresql.ENUM(*ORDER_STATUSES, name='order_status', create_type=False),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column('zinc_order_id', sa.String(length=255), nullable=True,
                  comment='Vendor order handle'),
        sa.Column(
            'zinc_status',
            postgresql.ENUM(*ZINC_STATUSES, name='zinc_status', create_type=False),
            nullable=True,
        ),
        sa.Column('tracking_number', sa.String(length=255), nullable=True),
        sa.Column('vendor_error', postgresql.JSONB(), nullable=True,
                  comment='Last vendor rejection detail, operator facing only'),
        sa.Column('webhook_token', sa.String(length=64), nullable=True,
                  comment='Secret authenticating vendor webhook callbacks'),
        sa.Column('shipping_address', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('gift_options', postgresql.JSONB(), nullable=True),
        sa.Column('scheduled_delivery_date', sa.Date(), nullable=True),
        sa.Column('is_auto_gift', sa.Boolean(), nullable=False,
                  server_default=sa.text('false')),
        sa.Column('auto_gift_context', postgresql.JSONB(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False,
                  server_default=sa.text('0')),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_reason', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number'),
        sa.UniqueConstraint('payment_intent_id', name='uq_orders_payment_intent_id'),
        sa.UniqueConstraint('zinc_order_id', name='uq_orders_zinc_order_id'),
        sa.CheckConstraint('retry_count >= 0',
                           name='ck_orders_retry_count_non_negative'),
        sa.CheckConstraint('total_amount >= 0', name='ck_orders_total_non_negative'),
        comment='Customer orders tracked from payment capture to fulfillment',
    )

    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_retry_due', 'orders', ['status', 'next_retry_at'])
    op.create_index(
        'ix_orders_vendor_progress',
        'orders',
        ['status', 'zinc_status', 'updated_at'],
    )
    op.create_index(
        'ix_orders_scheduled',
        'orders',
        ['status', 'scheduled_delivery_date'],
    )
    op.create_index(
        'ix_orders_payment_reconciliation',
        'orders',
        ['status', 'payment_status', 'updated_at'],
    )

    op.create_table(
        'order_items',
        _id(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False,
                  comment='Vendor product identifier'),
        sa.Column('product_name', sa.String(length=500), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False,
                  server_default=sa.text('1')),
        sa.Column('unit_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('recipient_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('recipient_name', sa.String(length=255), nullable=True),
        sa.Column('delivery_group_id', sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
        sa.ForeignKeyConstraint(
            ['order_id'],
            ['orders.id'],
            name='fk_order_items_order_id',
            ondelete='CASCADE',
        ),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.CheckConstraint('unit_price >= 0',
                           name='ck_order_items_price_non_negative'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'order_processing_signals',
        _id(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('trigger_source', sa.String(length=32), nullable=False,
                  comment='Trigger source tag that fired the invocation'),
        sa.Column('metadata', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
            comment='Timestamp when record was created',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_order_processing_signals'),
        sa.ForeignKeyConstraint(
            ['order_id'],
            ['orders.id'],
            name='fk_order_processing_signals_order_id',
            ondelete='CASCADE',
        ),
        comment='Append-only audit log of orchestration invocations',
    )
    op.create_index(
        'ix_processing_signals_order_created',
        'order_processing_signals',
        ['order_id', 'created_at'],
    )

    op.create_table(
        'alerts',
        _id(),
        sa.Column('alert_type', sa.String(length=64), nullable=False),
        sa.Column('severity', sa.String(length=16), nullable=False,
                  server_default=sa.text("'warning'")),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('details', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_by', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_alerts'),
        comment='Operator alerts raised by automated recovery',
    )
    op.create_index('ix_alerts_unresolved', 'alerts', ['resolved_at', 'created_at'])

    op.create_table(
        'auto_gift_executions',
        _id(),
        sa.Column('rule_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('recipient_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            'status',
            postgresql.ENUM(*EXECUTION_STATUSES, name='auto_gift_execution_status',
                            create_type=False),
            nullable=False,
            server_default=sa.text("'selected'"),
        ),
        sa.Column('selected_products', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'[]'::jsonb")),
        sa.Column('confidence_score', sa.Numeric(4, 3), nullable=False),
        sa.Column('discovery_method', sa.String(length=64), nullable=False),
        sa.Column('total_amount', sa.Numeric(10, 2), nullable=False,
                  server_default=sa.text('0')),
        sa.Column('currency', sa.String(length=3), nullable=False,
                  server_default=sa.text("'usd'")),
        sa.Column('shipping_address', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('payment_method_id', sa.String(length=255), nullable=True),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_auto_gift_executions'),
        sa.ForeignKeyConstraint(
            ['order_id'],
            ['orders.id'],
            name='fk_auto_gift_executions_order_id',
            ondelete='SET NULL',
        ),
    )
    op.create_index(
        'ix_auto_gift_executions_rule_id', 'auto_gift_executions', ['rule_id']
    )
    op.create_index(
        'ix_auto_gift_executions_user_id', 'auto_gift_executions', ['user_id']
    )
    op.create_index(
        'ix_auto_gift_executions_status',
        'auto_gift_executions',
        ['status', 'updated_at'],
    )

    op.create_table(
        'auto_gift_approval_tokens',
        _id(),
        sa.Column('execution_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('token', sa.String(length=64), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_via', sa.String(length=16), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_auto_gift_approval_tokens'),
        sa.ForeignKeyConstraint(
            ['execution_id'],
            ['auto_gift_executions.id'],
            name='fk_auto_gift_approval_tokens_execution_id',
            ondelete='CASCADE',
        ),
        sa.UniqueConstraint('execution_id',
                            name='uq_auto_gift_approval_tokens_execution_id'),
        sa.UniqueConstraint('token', name='uq_auto_gift_approval_tokens_token'),
    )


def downgrade() -> None:
    """Drop the fulfillment pipeline tables and enum types."""
    op.drop_table('auto_gift_approval_tokens')

    op.drop_index('ix_auto_gift_executions_status', table_name='auto_gift_executions')
    op.drop_index('ix_auto_gift_executions_user_id', table_name='auto_gift_executions')
    op.drop_index('ix_auto_gift_executions_rule_id', table_name='auto_gift_executions')
    op.drop_table('auto_gift_executions')

    op.drop_index('ix_alerts_unresolved', table_name='alerts')
    op.drop_table('alerts')

    op.drop_index(
        'ix_processing_signals_order_created',
        table_name='order_processing_signals',
    )
    op.drop_table('order_processing_signals')

    op.drop_index('ix_order_items_order_id', table_name='order_items')
    op.drop_table('order_items')

    for index in (
        'ix_orders_payment_reconciliation',
        'ix_orders_scheduled',
        'ix_orders_vendor_progress',
        'ix_orders_retry_due',
        'ix_orders_status',
        'ix_orders_user_id',
    ):
        op.drop_index(index, table_name='orders')
    op.drop_table('orders')

    op.execute('DROP TYPE IF EXISTS auto_gift_execution_status')
    op.execute('DROP TYPE IF EXISTS zinc_status')
    op.execute('DROP TYPE IF EXISTS order_payment_status')
    op.execute('DROP TYPE IF EXISTS order_status')
