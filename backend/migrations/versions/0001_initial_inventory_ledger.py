"""initial inventory ledger schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the complete schema:
- users / session_tokens: staff accounts and API bearer tokens
- outlets, products, product_variants: locations and catalog (soft lifecycle)
- stocks: per-(outlet, variant) quantity cache, CHECK qty >= 0
- stock_movements: append-only ledger, unique per cause
- stock_ins / stock_transfers / stock_adjustments / stock_opnames: documents
- orders / order_items: sales from every channel
- channel_sku_maps, webhook_events: marketplace integration
- csv_import_batches / csv_import_rows: batch import workflow
- outbox_messages: notification outbox
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _now():
    return sa.text('CURRENT_TIMESTAMP')


def _lifecycle_columns():
    return [
        sa.Column('lifecycle', sa.String(length=16), nullable=False, server_default='ACTIVE'),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    ]


def _created_updated():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
    ]


def upgrade():
    # ============================================================================
    # users / session_tokens
    # ============================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False, server_default='STAFF'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username', name='uq_users_username'),
        sa.UniqueConstraint('email', name='uq_users_email'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'session_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_session_tokens_user', 'session_tokens', ['user_id'])
    op.create_index('ix_session_tokens_token_hash', 'session_tokens', ['token_hash'], unique=True)
    op.create_index('ix_session_tokens_expires_at', 'session_tokens', ['expires_at'])

    # ============================================================================
    # outlets / products / product_variants
    # ============================================================================
    op.create_table(
        'outlets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False, server_default='WAREHOUSE'),
        *_lifecycle_columns(),
        *_created_updated(),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_outlets_type_lifecycle', 'outlets', ['type', 'lifecycle'])
    op.create_index('ix_outlets_lifecycle', 'outlets', ['lifecycle'])

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('category', sa.String(length=120), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        *_lifecycle_columns(),
        *_created_updated(),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_name', 'products', ['name'])
    op.create_index('ix_products_lifecycle', 'products', ['lifecycle'])

    op.create_table(
        'product_variants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('size', sa.String(length=32), nullable=True),
        sa.Column('color', sa.String(length=64), nullable=True),
        sa.Column('price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('min_qty', sa.Integer(), nullable=False, server_default='0'),
        *_lifecycle_columns(),
        *_created_updated(),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku', name='uq_product_variants_sku'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_variants_product', 'product_variants', ['product_id'])
    op.create_index('ix_product_variants_lifecycle', 'product_variants', ['lifecycle'])

    # ============================================================================
    # stocks + stock_movements: cache and append-only ledger
    # ============================================================================
    op.create_table(
        'stocks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('outlet_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.ForeignKeyConstraint(['outlet_id'], ['outlets.id'], ),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('outlet_id', 'variant_id', name='uq_stocks_outlet_variant'),
        sa.CheckConstraint('qty >= 0', name='ck_stocks_qty_non_negative'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stocks_variant', 'stocks', ['variant_id'])

    op.create_table(
        'stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('outlet_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.Column('quantity_delta', sa.Integer(), nullable=False),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('ref_type', sa.String(length=32), nullable=False),
        sa.Column('ref_id', sa.String(length=64), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.ForeignKeyConstraint(['outlet_id'], ['outlets.id'], ),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'ref_type', 'ref_id', 'variant_id', 'outlet_id', 'type',
            name='uq_stock_movements_cause'
        ),
        sqlite_autoincrement=True
    )
    op.create_index('ix_movements_outlet_variant', 'stock_movements', ['outlet_id', 'variant_id'])
    op.create_index('ix_movements_ref', 'stock_movements', ['ref_type', 'ref_id'])
    op.create_index('ix_movements_occurred', 'stock_movements', ['occurred_at'])
    op.create_index('ix_stock_movements_type', 'stock_movements', ['type'])

    # ============================================================================
    # Stock documents
    # ============================================================================
    op.create_table(
        'stock_ins',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('outlet_id', sa.Integer(), nullable=False),
        sa.Column('supplier', sa.String(length=255), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['outlet_id'], ['outlets.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_ins_outlet_occurred', 'stock_ins', ['outlet_id', 'occurred_at'])

    op.create_table(
        'stock_in_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('stock_in_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['stock_in_id'], ['stock_ins.id'], ),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stock_in_id', 'variant_id', name='uq_stock_in_items_variant'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_in_items_stock_in_id', 'stock_in_items', ['stock_in_id'])

    op.create_table(
        'stock_transfers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('from_outlet_id', sa.Integer(), nullable=False),
        sa.Column('to_outlet_id', sa.Integer(), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['from_outlet_id'], ['outlets.id'], ),
        sa.ForeignKeyConstraint(['to_outlet_id'], ['outlets.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('from_outlet_id <> to_outlet_id', name='ck_stock_transfers_distinct_outlets'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_transfers_from_to', 'stock_transfers', ['from_outlet_id', 'to_outlet_id'])

    op.create_table(
        'stock_transfer_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('transfer_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['transfer_id'], ['stock_transfers.id'], ),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transfer_id', 'variant_id', name='uq_stock_transfer_items_variant'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_transfer_items_transfer_id', 'stock_transfer_items', ['transfer_id'])

    op.create_table(
        'stock_adjustments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('outlet_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('delta_qty', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['outlet_id'], ['outlets.id'], ),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('delta_qty <> 0', name='ck_stock_adjustments_nonzero'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_adjustments_outlet_id', 'stock_adjustments', ['outlet_id'])
    op.create_index('ix_stock_adjustments_variant_id', 'stock_adjustments', ['variant_id'])

    op.create_table(
        'stock_opnames',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('outlet_id', sa.Integer(), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['outlet_id'], ['outlets.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_opnames_outlet_occurred', 'stock_opnames', ['outlet_id', 'occurred_at'])

    op.create_table(
        'stock_opname_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('opname_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('system_qty', sa.Integer(), nullable=False),
        sa.Column('counted_qty', sa.Integer(), nullable=False),
        sa.Column('diff_qty', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['opname_id'], ['stock_opnames.id'], ),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('opname_id', 'variant_id', name='uq_stock_opname_items_variant'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_opname_items_opname_id', 'stock_opname_items', ['opname_id'])

    # ============================================================================
    # orders / order_items
    # ============================================================================
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_code', sa.String(length=64), nullable=False),
        sa.Column('channel', sa.String(length=32), nullable=False),
        sa.Column('source', sa.String(length=16), nullable=False, server_default='MANUAL'),
        sa.Column('outlet_id', sa.Integer(), nullable=False),
        sa.Column('external_order_id', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PAID'),
        sa.Column('total_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('ordered_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        *_created_updated(),
        sa.ForeignKeyConstraint(['outlet_id'], ['outlets.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_code', name='uq_orders_order_code'),
        sa.UniqueConstraint('channel', 'external_order_id', name='uq_orders_channel_external'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_orders_channel_status', 'orders', ['channel', 'status'])
    op.create_index('ix_orders_ordered_at', 'orders', ['ordered_at'])
    op.create_index('ix_orders_outlet_id', 'orders', ['outlet_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.Column('price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('subtotal', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_variant_id', 'order_items', ['variant_id'])

    # ============================================================================
    # Marketplace integration
    # ============================================================================
    op.create_table(
        'channel_sku_maps',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('channel', sa.String(length=32), nullable=False),
        sa.Column('external_sku_id', sa.String(length=128), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        *_created_updated(),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('channel', 'external_sku_id', name='uq_channel_sku_maps_channel_sku'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_channel_sku_maps_variant', 'channel_sku_maps', ['variant_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('channel', sa.String(length=32), nullable=False),
        sa.Column('idempotency_key', sa.String(length=64), nullable=False),
        sa.Column('external_order_id', sa.String(length=128), nullable=True),
        sa.Column('external_event_id', sa.String(length=128), nullable=True),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='RECEIVED'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key', name='uq_webhook_events_idempotency_key'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_webhook_events_channel_status', 'webhook_events', ['channel', 'status'])
    op.create_index('ix_webhook_events_external_order', 'webhook_events', ['channel', 'external_order_id'])
    op.create_index('ix_webhook_events_received_at', 'webhook_events', ['received_at'])

    # ============================================================================
    # CSV batch import
    # ============================================================================
    op.create_table(
        'csv_import_batches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('channel', sa.String(length=32), nullable=False),
        sa.Column('outlet_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='NEEDS_MAPPING'),
        sa.Column('mapping', sa.Text(), nullable=False),
        sa.Column('source_file_name', sa.String(length=255), nullable=True),
        sa.Column('total_rows', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('imported_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['outlet_id'], ['outlets.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_csv_import_batches_channel_status', 'csv_import_batches', ['channel', 'status'])
    op.create_index('ix_csv_import_batches_status', 'csv_import_batches', ['status'])

    op.create_table(
        'csv_import_rows',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('batch_id', sa.Integer(), nullable=False),
        sa.Column('row_number', sa.Integer(), nullable=False),
        sa.Column('external_order_id', sa.String(length=128), nullable=False),
        sa.Column('external_sku_id', sa.String(length=128), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.Column('price', sa.Integer(), nullable=True),
        sa.Column('date_raw', sa.String(length=64), nullable=True),
        sa.Column('variant_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['batch_id'], ['csv_import_batches.id'], ),
        sa.ForeignKeyConstraint(['variant_id'], ['product_variants.id'], ),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('batch_id', 'row_number', name='uq_csv_import_rows_batch_row'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_csv_import_rows_batch_status', 'csv_import_rows', ['batch_id', 'status'])
    op.create_index('ix_csv_import_rows_batch_id', 'csv_import_rows', ['batch_id'])

    # ============================================================================
    # outbox_messages
    # ============================================================================
    op.create_table(
        'outbox_messages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('topic', sa.String(length=64), nullable=False),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_outbox_messages_status_created', 'outbox_messages', ['status', 'created_at'])
    op.create_index('ix_outbox_messages_topic', 'outbox_messages', ['topic'])


def downgrade():
    for table in (
        'outbox_messages',
        'csv_import_rows',
        'csv_import_batches',
        'webhook_events',
        'channel_sku_maps',
        'order_items',
        'orders',
        'stock_opname_items',
        'stock_opnames',
        'stock_adjustments',
        'stock_transfer_items',
        'stock_transfers',
        'stock_in_items',
        'stock_ins',
        'stock_movements',
        'stocks',
        'product_variants',
        'products',
        'outlets',
        'session_tokens',
        'users',
    ):
        op.drop_table(table)
