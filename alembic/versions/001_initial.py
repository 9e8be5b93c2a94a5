"""Initial schema

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Products table
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('canonical_url', sa.Text(), nullable=False),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('primary_image_url', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('canonical_url')
    )

    # Variants table
    op.create_table(
        'variants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('attributes', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('sku', sa.String(length=128), nullable=True),
        sa.Column('current_price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('current_stock_status', sa.String(length=16), nullable=False),
        sa.Column('last_checked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE')
    )

    # History tables
    op.create_table(
        'variant_price_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('recorded_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['variant_id'], ['variants.id'], ondelete='CASCADE')
    )

    op.create_table(
        'variant_stock_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('recorded_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['variant_id'], ['variants.id'], ondelete='CASCADE')
    )

    # Tracking registry
    op.create_table(
        'tracked_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('price_threshold_percent', sa.Numeric(precision=5, scale=2), nullable=False),
        sa.Column('notify_restock', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['variant_id'], ['variants.id'], ondelete='SET NULL')
    )

    # Check runs
    op.create_table(
        'check_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=False),
        sa.Column('details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE')
    )

    # Create indexes
    op.create_index('ix_variants_product_id', 'variants', ['product_id'])
    op.create_index('ix_variants_product_sku', 'variants', ['product_id', 'sku'])
    op.create_index('ix_price_history_variant_id', 'variant_price_history', ['variant_id', 'id'])
    op.create_index('ix_stock_history_variant_id', 'variant_stock_history', ['variant_id', 'id'])
    op.create_index('ix_tracked_items_user_id', 'tracked_items', ['user_id'])
    op.create_index('ix_tracked_items_product_id', 'tracked_items', ['product_id'])
    op.create_index('ix_check_runs_product_finished', 'check_runs', ['product_id', 'finished_at'])
    op.create_index('ix_check_runs_started_at', 'check_runs', ['started_at'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_check_runs_started_at', table_name='check_runs')
    op.drop_index('ix_check_runs_product_finished', table_name='check_runs')
    op.drop_index('ix_tracked_items_product_id', table_name='tracked_items')
    op.drop_index('ix_tracked_items_user_id', table_name='tracked_items')
    op.drop_index('ix_stock_history_variant_id', table_name='variant_stock_history')
    op.drop_index('ix_price_history_variant_id', table_name='variant_price_history')
    op.drop_index('ix_variants_product_sku', table_name='variants')
    op.drop_index('ix_variants_product_id', table_name='variants')

    # Drop tables
    op.drop_table('check_runs')
    op.drop_table('tracked_items')
    op.drop_table('variant_stock_history')
    op.drop_table('variant_price_history')
    op.drop_table('variants')
    op.drop_table('products')
