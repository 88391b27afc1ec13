"""Pipeline run ledger tables

Revision ID: 001_pipeline_ledger
Revises:
Create Date: 2026-10-19

Creates:
- pipeline_runs: one row per orchestrator invocation
- pipeline_stage_runs: one row per (run, stage), unique on the pair
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_pipeline_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ==========================================================================
    # Runs
    # ==========================================================================

    op.create_table(
        'pipeline_runs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('trigger_type', sa.String(length=50), nullable=False),
        sa.Column('source', sa.String(length=50), nullable=False, server_default='pipeline'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='started'),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_pipeline_runs_started', 'pipeline_runs', ['started_at'])
    op.create_index('idx_pipeline_runs_status', 'pipeline_runs', ['status'])

    # ==========================================================================
    # Stage runs
    # ==========================================================================

    op.create_table(
        'pipeline_stage_runs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('pipeline_run_id', sa.Uuid(), nullable=False),
        sa.Column('stage', sa.String(length=50), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='started'),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['pipeline_run_id'], ['pipeline_runs.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('pipeline_run_id', 'stage', name='idx_pipeline_stage_run_unique'),
    )
    op.create_index('idx_pipeline_stage_stage', 'pipeline_stage_runs', ['stage'])
    op.create_index(
        'idx_pipeline_stage_status_completed',
        'pipeline_stage_runs',
        ['stage', 'status', 'completed_at'],
    )


def downgrade() -> None:
    op.drop_index('idx_pipeline_stage_status_completed', table_name='pipeline_stage_runs')
    op.drop_index('idx_pipeline_stage_stage', table_name='pipeline_stage_runs')
    op.drop_table('pipeline_stage_runs')

    op.drop_index('idx_pipeline_runs_status', table_name='pipeline_runs')
    op.drop_index('idx_pipeline_runs_started', table_name='pipeline_runs')
    op.drop_table('pipeline_runs')
