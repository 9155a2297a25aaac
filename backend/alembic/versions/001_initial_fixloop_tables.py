"""Initial fixloop tables

Revision ID: 001_initial_fixloop
Revises:
Create Date: 2026-10-18

Creates all tables for:
- Sessions (fix_sessions)
- Issues and the attempt ledger (fix_issues, fix_attempts)
- Checkpoints (fix_checkpoints)
- Metrics snapshots (metrics_snapshots)
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial_fixloop'
down_revision = None
branch_labels = None
depends_on = None


# Enums are stored by member name, as the ORM models do
session_status_enum = sa.Enum(
    'PENDING', 'RUNNING', 'PAUSED', 'COMPLETED', 'FAILED', 'STOPPED', 'TIMEOUT',
    name='sessionstatus',
)
control_signal_enum = sa.Enum('PAUSE', 'RESUME', 'STOP', name='controlsignal')
issue_status_enum = sa.Enum(
    'PENDING', 'IN_PROGRESS', 'RESOLVED', 'FAILED', 'SKIPPED',
    name='issuestatus',
)
issue_severity_enum = sa.Enum('CRITICAL', 'HIGH', 'MEDIUM', 'LOW', 'INFO', name='issueseverity')
issue_category_enum = sa.Enum(
    'ERROR', 'SECURITY', 'PERFORMANCE', 'WARNING', 'COMPLEXITY', 'MAINTAINABILITY', 'STYLE',
    name='issuecategory',
)
attempt_outcome_enum = sa.Enum(
    'RESOLVED', 'VERIFICATION_FAILED', 'INVALID_DIFF', 'DECLINED', 'PROVIDER_ERROR', 'ABORTED',
    name='attemptoutcome',
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # ==========================================================================
    # Sessions
    # ==========================================================================

    op.create_table(
        'fix_sessions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('repository_path', sa.String(length=1024), nullable=False),
        sa.Column('base_branch', sa.String(length=255), nullable=True),
        sa.Column('cleaning_branch', sa.String(length=255), nullable=True),
        sa.Column('status', session_status_enum, nullable=False),
        sa.Column('control_signal', control_signal_enum, nullable=True),
        sa.Column('current_issue_id', sa.String(length=36), nullable=True),
        sa.Column('config', sa.JSON(), nullable=False),
        sa.Column('total_issues', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('resolved_issues', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_issues', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped_issues', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paused_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_fix_sessions_status', 'fix_sessions', ['status'])

    # ==========================================================================
    # Issues
    # ==========================================================================

    op.create_table(
        'fix_issues',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('session_id', sa.String(length=36), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=100), nullable=False),
        sa.Column('category', issue_category_enum, nullable=False),
        sa.Column('severity', issue_severity_enum, nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('file_path', sa.String(length=1024), nullable=False),
        sa.Column('line', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('column_number', sa.Integer(), nullable=True),
        sa.Column('end_line', sa.Integer(), nullable=True),
        sa.Column('end_column', sa.Integer(), nullable=True),
        sa.Column('source', sa.String(length=50), nullable=False, server_default='static'),
        sa.Column('rule', sa.String(length=255), nullable=True),
        sa.Column('code_snippet', sa.Text(), nullable=True),
        sa.Column('suggested_fix', sa.Text(), nullable=True),
        sa.Column('status', issue_status_enum, nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('commit_hash', sa.String(length=64), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['session_id'], ['fix_sessions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_fix_issues_session_id', 'fix_issues', ['session_id'])
    op.create_index('ix_fix_issues_severity', 'fix_issues', ['severity'])
    op.create_index('ix_fix_issues_status', 'fix_issues', ['status'])

    # ==========================================================================
    # Checkpoints
    # ==========================================================================

    op.create_table(
        'fix_checkpoints',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('session_id', sa.String(length=36), nullable=False),
        sa.Column('commit_hash', sa.String(length=64), nullable=False),
        sa.Column('tag', sa.String(length=255), nullable=False),
        sa.Column('branch', sa.String(length=255), nullable=True),
        sa.Column('description', sa.String(length=500), nullable=False),
        sa.Column('issue_progress', sa.JSON(), nullable=False),
        sa.Column('metrics', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['session_id'], ['fix_sessions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_fix_checkpoints_session_id', 'fix_checkpoints', ['session_id'])

    # ==========================================================================
    # Attempt ledger and metrics
    # ==========================================================================

    op.create_table(
        'fix_attempts',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('session_id', sa.String(length=36), nullable=False),
        sa.Column('issue_id', sa.String(length=36), nullable=False),
        sa.Column('attempt', sa.Integer(), nullable=False),
        sa.Column('outcome', attempt_outcome_enum, nullable=False),
        sa.Column('verification_status', sa.String(length=20), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tokens_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lines_added', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lines_removed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('files', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['session_id'], ['fix_sessions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['issue_id'], ['fix_issues.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_fix_attempts_session_id', 'fix_attempts', ['session_id'])
    op.create_index('ix_fix_attempts_issue_id', 'fix_attempts', ['issue_id'])

    op.create_table(
        'metrics_snapshots',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('session_id', sa.String(length=36), nullable=False),
        sa.Column('metrics', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['session_id'], ['fix_sessions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_metrics_snapshots_session_id', 'metrics_snapshots', ['session_id'])


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table('metrics_snapshots')
    op.drop_table('fix_attempts')
    op.drop_table('fix_checkpoints')
    op.drop_table('fix_issues')
    op.drop_table('fix_sessions')

    # Named enum types only exist on PostgreSQL
    bind = op.get_bind()
    for enum in (
        attempt_outcome_enum,
        issue_category_enum,
        issue_severity_enum,
        issue_status_enum,
        control_signal_enum,
        session_status_enum,
    ):
        enum.drop(bind, checkfirst=True)
