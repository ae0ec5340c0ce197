"""create webhook retry jobs table

Revision ID: 001
Revises: 
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # status as VARCHAR, not a native enum
    op.create_table(
        'webhook_retry_jobs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('webhook_url', sa.Text(), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('status', sa.String(9), nullable=False, server_default='pending'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_status_code', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.CheckConstraint('attempt_count <= max_retries', name='ck_webhook_retry_jobs_attempt_bound'),
    )
    op.create_index('ix_webhook_retry_jobs_due', 'webhook_retry_jobs', ['status', 'next_retry_at'])
    op.create_index('ix_webhook_retry_jobs_created_at', 'webhook_retry_jobs', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_webhook_retry_jobs_created_at', table_name='webhook_retry_jobs')
    op.drop_index('ix_webhook_retry_jobs_due', table_name='webhook_retry_jobs')
    op.drop_table('webhook_retry_jobs')
