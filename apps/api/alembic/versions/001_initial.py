"""Initial migration

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Resources table
    op.create_table(
        'resources',
        sa.Column('id', sa.String(60), primary_key=True),
        sa.Column('owner_key', sa.String(80), nullable=False),
        sa.Column('kind', sa.String(30), nullable=False),
        sa.Column('name', sa.String(120), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('style', sa.JSON(), nullable=True),
        sa.Column('content', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_resources_owner_key', 'resources', ['owner_key'])
    op.create_index('ix_resources_kind', 'resources', ['kind'])

    # Characters table
    op.create_table(
        'characters',
        sa.Column('id', sa.String(60), primary_key=True),
        sa.Column('owner_key', sa.String(80), nullable=False),
        sa.Column('name', sa.String(80), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('personality', sa.Text(), nullable=False, server_default=''),
        sa.Column('prompt_fragment', sa.Text(), nullable=False, server_default=''),
        sa.Column('style_id', sa.String(60), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_characters_owner_key', 'characters', ['owner_key'])

    # Styled reference portraits (one per character and style)
    op.create_table(
        'styled_portraits',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('character_id', sa.String(60), sa.ForeignKey('characters.id'), nullable=False),
        sa.Column('style_id', sa.String(60), nullable=False),
        sa.Column('image_url', sa.String(500), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.UniqueConstraint('character_id', 'style_id', name='uq_styled_portrait_character_style'),
    )
    op.create_index('ix_styled_portraits_character_id', 'styled_portraits', ['character_id'])

    # Assets table
    op.create_table(
        'assets',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('owner_id', sa.String(60), sa.ForeignKey('resources.id'), nullable=False),
        sa.Column('asset_kind', sa.String(40), nullable=False),
        sa.Column('asset_key', sa.String(120), nullable=False),
        sa.Column('current_version', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.UniqueConstraint('owner_id', 'asset_kind', 'asset_key', name='uq_asset_owner_kind_key'),
    )
    op.create_index('ix_assets_owner_id', 'assets', ['owner_id'])

    # Asset versions table
    op.create_table(
        'asset_versions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('asset_id', sa.Integer(), sa.ForeignKey('assets.id'), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('image_url', sa.String(500), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=True),
        sa.Column('params', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('asset_id', 'version', name='uq_asset_version'),
    )
    op.create_index('ix_asset_versions_asset_id', 'asset_versions', ['asset_id'])


def downgrade() -> None:
    op.drop_table('asset_versions')
    op.drop_table('assets')
    op.drop_table('styled_portraits')
    op.drop_table('characters')
    op.drop_table('resources')
