"""create_book_table

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-17 09:12:40.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
import sqlmodel

from bookmeta.util.db import TEXT_INDEX_DDL


# revision identifiers, used by Alembic.
revision: str = '1a2b3c4d5e6f'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'book',
        sa.Column('id', sqlmodel.sql.sqltypes.AutoString(length=24), nullable=False),
        sa.Column('primary_id', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('secondary_id', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('tertiary_id', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('isbn10', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('isbn13', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('title', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('authors_text', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('volume_info', sa.JSON(), nullable=False),
        sa.Column('sale_info', sa.JSON(), nullable=True),
        sa.Column('api_source', sa.Enum('primary', 'secondary', 'tertiary', name='apisource'), nullable=False),
        sa.Column('cached_at', sa.DateTime(), nullable=False),
        sa.Column('last_updated', sa.DateTime(), nullable=False),
        sa.Column('last_accessed', sa.DateTime(), nullable=False),
        sa.Column('usage_count', sa.Integer(), nullable=False),
        sa.Column('rating_average', sa.Float(), nullable=True),
        sa.Column('ratings_count', sa.Integer(), nullable=False),
        sa.Column('total_reads', sa.Integer(), nullable=False),
        sa.Column('total_likes', sa.Integer(), nullable=False),
        sa.Column('total_to_be_read', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('primary_id'),
        sa.UniqueConstraint('secondary_id'),
        sa.UniqueConstraint('tertiary_id'),
        sa.UniqueConstraint('isbn10'),
        sa.UniqueConstraint('isbn13'),
    )
    op.create_index('ix_book_title', 'book', ['title'])

    # full-text index is SQLite only; other databases use the substring search
    if op.get_bind().dialect.name == 'sqlite':
        for statement in TEXT_INDEX_DDL:
            op.execute(statement)


def downgrade() -> None:
    if op.get_bind().dialect.name == 'sqlite':
        for trigger in ('book_text_au', 'book_text_ad', 'book_text_ai'):
            op.execute(f'DROP TRIGGER IF EXISTS {trigger}')
        op.execute('DROP TABLE IF EXISTS book_text')
    op.drop_index('ix_book_title', table_name='book')
    op.drop_table('book')
