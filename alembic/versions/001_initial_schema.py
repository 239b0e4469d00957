"""initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB
from pgvector.sqlalchemy import Vector

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # pgvector for embeddings, pg_trgm for lexical similarity
    op.execute('CREATE EXTENSION IF NOT EXISTS vector')
    op.execute('CREATE EXTENSION IF NOT EXISTS pg_trgm')

    # Create decisions table
    op.create_table(
        'decisions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('owner_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='DRAFTING'),
        sa.Column('subject', sa.Text(), nullable=False),
        sa.Column('context', sa.Text(), nullable=False),
        sa.Column('expected_outcome', sa.Text(), nullable=False),
        sa.Column('rationale', sa.Text(), nullable=False),
        sa.Column('raw_input', sa.Text(), nullable=True),
        sa.Column('plan', JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('draft_plan', JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('similarity_references', JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('success_driver', sa.Text(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('search_text', sa.Text(), nullable=True),
        sa.Column('outcome', sa.String(20), nullable=True),
        sa.Column('reflection', sa.Text(), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('DRAFTING', 'ACTIVE', 'COMPLETED', 'ARCHIVED')", name='ck_decisions_status'
        ),
        sa.CheckConstraint(
            "outcome IS NULL OR outcome IN ('SUCCESS', 'PARTIAL', 'FAILURE')", name='ck_decisions_outcome'
        ),
    )
    op.create_index('ix_decisions_owner_id', 'decisions', ['owner_id'])
    op.create_index('ix_decisions_created_at', 'decisions', ['created_at'])
    op.create_index('ix_decisions_owner_status', 'decisions', ['owner_id', 'status'])
    op.execute(
        'CREATE INDEX ix_decisions_search_text_trgm ON decisions '
        'USING gin (search_text gin_trgm_ops)'
    )

    # Create decision_embeddings table
    op.create_table(
        'decision_embeddings',
        sa.Column('decision_id', UUID(as_uuid=True), sa.ForeignKey('decisions.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('owner_id', sa.String(255), nullable=False),
        sa.Column('vector', Vector(1536), nullable=False),
        sa.Column('content_hash', sa.String(64), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_decision_embeddings_owner_id', 'decision_embeddings', ['owner_id'])
    op.execute(
        'CREATE INDEX ix_decision_embeddings_vector_hnsw ON decision_embeddings '
        'USING hnsw (vector vector_cosine_ops)'
    )

    # Create background_jobs table
    op.create_table(
        'background_jobs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('payload', JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'done', 'failed')", name='ck_background_jobs_status'
        ),
    )
    op.create_index('idx_jobs_poll', 'background_jobs', ['status', 'next_retry_at'])


def downgrade() -> None:
    op.drop_table('background_jobs')
    op.drop_table('decision_embeddings')
    op.drop_table('decisions')
    op.execute('DROP EXTENSION IF EXISTS pg_trgm')
    op.execute('DROP EXTENSION IF EXISTS vector')
