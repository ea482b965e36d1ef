"""Create storage items and audio blobs tables

Revision ID: create_storage_tables
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = 'create_storage_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if 'storage_items' not in existing_tables:
        op.create_table(
            'storage_items',
            sa.Column('key', sa.Text, primary_key=True),
            sa.Column('data', postgresql.JSONB, nullable=True),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
        )

    if 'audio_blobs' not in existing_tables:
        op.create_table(
            'audio_blobs',
            sa.Column('id', sa.Text, primary_key=True),
            sa.Column('subtopic_id', sa.Text, nullable=False),
            sa.Column('prop_index', sa.Integer, nullable=False, server_default='0'),
            sa.Column('audio_index', sa.Integer, nullable=False, server_default='0'),
            sa.Column('mime_type', sa.Text, nullable=False, server_default='audio/webm'),
            sa.Column('data', postgresql.BYTEA, nullable=False),
            sa.Column('timestamp', sa.BigInteger),
        )

    # Re-inspect after potential table creation to apply missing indexes.
    inspector = sa.inspect(bind)
    existing_indexes = {idx['name'] for idx in inspector.get_indexes('audio_blobs')}

    if 'idx_audio_blobs_subtopic' not in existing_indexes:
        op.create_index('idx_audio_blobs_subtopic', 'audio_blobs', ['subtopic_id'])


def downgrade():
    op.drop_index('idx_audio_blobs_subtopic', table_name='audio_blobs')
    op.drop_table('audio_blobs')
    op.drop_table('storage_items')
