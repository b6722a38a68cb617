"""Add image_assets table

Revision ID: 001_image_assets
Revises:
Create Date: 2026-10-17

Creates the manifest table for processed images:
- image_assets: one immutable row per completed upload, derivative
  manifest stored as JSON
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_image_assets'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'image_assets',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('bucket', sa.String(), nullable=False),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('kind', sa.String(), nullable=False, server_default='gallery'),
        sa.Column('entity_slug', sa.String(), nullable=False, server_default=''),
        sa.Column('mime', sa.String(), nullable=False),
        sa.Column('content_hash', sa.String(), nullable=True),
        sa.Column('width', sa.Integer(), nullable=False),
        sa.Column('height', sa.Integer(), nullable=False),
        sa.Column('bytes', sa.Integer(), nullable=False),
        sa.Column('format', sa.String(), nullable=False, server_default='WEBP'),
        sa.Column('blurhash', sa.String(), nullable=False),
        sa.Column('avg_color', sa.String(), nullable=False),
        sa.Column('alt', sa.String(), nullable=False),
        sa.Column('derivatives', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_index('ix_image_assets_key', 'image_assets', ['key'])
    op.create_index('ix_image_assets_kind', 'image_assets', ['kind'])
    op.create_index('ix_image_assets_entity_slug', 'image_assets', ['entity_slug'])


def downgrade() -> None:
    op.drop_index('ix_image_assets_entity_slug', table_name='image_assets')
    op.drop_index('ix_image_assets_kind', table_name='image_assets')
    op.drop_index('ix_image_assets_key', table_name='image_assets')
    op.drop_table('image_assets')
