"""News ingestion schema

Revision ID: 3b9e1c42d7a0
Revises: 
Create Date: 2026-10-17 09:12:41.503118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3b9e1c42d7a0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table('news_issues',
        sa.Column('id', sa.Integer(), sa.Identity(), nullable=False),
        sa.Column('series', sa.Text(), nullable=False),
        sa.Column('issue_number', sa.Integer(), nullable=False),
        sa.Column('issue_date', sa.Text(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('day', sa.Integer(), nullable=True),
        sa.Column('board_id', sa.Text(), nullable=True),
        sa.Column('detail_url', sa.Text(), nullable=True),
        sa.Column('image_urls', postgresql.ARRAY(sa.Text()), server_default='{}', nullable=False),
        sa.Column('page_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('source_type', sa.Text(), server_default='web', nullable=False),
        sa.Column('status', sa.Text(), server_default='pending', nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('series', 'issue_number', name='uq_news_issues_series_number'),
        sa.CheckConstraint("status IN ('pending', 'processing', 'completed', 'failed')", name='ck_news_issues_status'),
    )
    op.create_index('ix_news_issues_status', 'news_issues', ['status'])

    op.create_table('news_pages',
        sa.Column('id', sa.Integer(), sa.Identity(), nullable=False),
        sa.Column('issue_id', sa.Integer(), nullable=False),
        sa.Column('page_number', sa.Integer(), nullable=False),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('file_hash', sa.Text(), nullable=True),
        sa.Column('ocr_text', sa.Text(), nullable=True),
        sa.Column('ocr_provider', sa.Text(), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('warnings', postgresql.JSONB(), server_default='[]', nullable=False),
        sa.Column('status', sa.Text(), server_default='pending', nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['issue_id'], ['news_issues.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('issue_id', 'page_number', name='uq_news_pages_issue_page'),
    )
    op.create_index('ix_news_pages_file_hash', 'news_pages', ['file_hash'])

    op.create_table('news_segments',
        sa.Column('id', sa.Integer(), sa.Identity(), nullable=False),
        sa.Column('issue_id', sa.Integer(), nullable=False),
        sa.Column('page_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('article_type', sa.Text(), nullable=True),
        sa.Column('speaker', sa.Text(), nullable=True),
        sa.Column('event_name', sa.Text(), nullable=True),
        sa.Column('event_date', sa.Text(), nullable=True),
        sa.Column('bible_references', postgresql.ARRAY(sa.Text()), server_default='{}', nullable=False),
        sa.Column('keywords', postgresql.ARRAY(sa.Text()), server_default='{}', nullable=False),
        sa.Column('continues_from_previous', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('continues_to_next', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.ForeignKeyConstraint(['issue_id'], ['news_issues.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['page_id'], ['news_pages.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_news_segments_page_id', 'news_segments', ['page_id'])

    op.create_table('news_chunks',
        sa.Column('id', sa.Integer(), sa.Identity(), nullable=False),
        sa.Column('segment_id', sa.Integer(), nullable=False),
        sa.Column('chunk_index', sa.Integer(), nullable=False),
        sa.Column('chunk_text', sa.Text(), nullable=False),
        sa.Column('issue_number', sa.Integer(), nullable=False),
        sa.Column('issue_date', sa.Text(), nullable=False),
        sa.Column('page_number', sa.Integer(), nullable=False),
        sa.Column('article_title', sa.Text(), nullable=False),
        sa.Column('article_type', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['segment_id'], ['news_segments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('segment_id', 'chunk_index', name='uq_news_chunks_segment_index'),
    )
    # 1536 dimensions, text-embedding-3-small
    op.execute("ALTER TABLE news_chunks ADD COLUMN embedding vector(1536) NOT NULL")
    op.execute(
        "CREATE INDEX ix_news_chunks_embedding ON news_chunks "
        "USING hnsw (embedding vector_cosine_ops)"
    )

    op.create_table('church_members',
        sa.Column('id', sa.Integer(), sa.Identity(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('position', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table('ocr_corrections',
        sa.Column('id', sa.Integer(), sa.Identity(), nullable=False),
        sa.Column('wrong_text', sa.Text(), nullable=False),
        sa.Column('correct_text', sa.Text(), nullable=False),
        sa.Column('category', sa.Text(), nullable=True),
        sa.Column('confidence', sa.Float(), server_default='1.0', nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table('church_places',
        sa.Column('id', sa.Integer(), sa.Identity(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('aliases', postgresql.ARRAY(sa.Text()), server_default='{}', nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table('api_keys',
        sa.Column('id', sa.Integer(), sa.Identity(), nullable=False),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('api_key', sa.Text(), nullable=False),
        sa.Column('priority', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('api_keys')
    op.drop_table('church_places')
    op.drop_table('ocr_corrections')
    op.drop_table('church_members')
    op.drop_table('news_chunks')
    op.drop_table('news_segments')
    op.drop_table('news_pages')
    op.drop_table('news_issues')
