"""Baseline migration - subjects, automation rules and sequences

Revision ID: 0001_baseline
Revises: 
Create Date: 2026-10-19

Creates the subject store, the rule/execution audit tables, sequence
enrollments with their step log, and the webhook fences.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    """Create engine tables."""

    # ==========================================================================
    # Subjects
    # ==========================================================================
    op.create_table(
        'subjects',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('phone', sa.String(40), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('phase_override', sa.String(50), nullable=True),
        sa.Column('phase_timestamps', sa.JSON(), nullable=False),
        sa.Column('tasks', sa.JSON(), nullable=False),
        sa.Column('notes', sa.JSON(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('archived', sa.Boolean(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_subjects_entity_archived', 'subjects', ['entity_type', 'archived'])
    op.create_index('idx_subjects_email', 'subjects', ['email'])

    # ==========================================================================
    # Automation rules
    # ==========================================================================
    op.create_table(
        'automation_rules',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('trigger_type', sa.String(50), nullable=False),
        sa.Column('entity_type', sa.String(20), nullable=True),
        sa.Column('conditions', sa.JSON(), nullable=False),
        sa.Column('action_type', sa.String(50), nullable=False),
        sa.Column('message_template', sa.Text(), nullable=False),
        sa.Column('action_config', sa.JSON(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_rules_trigger_enabled', 'automation_rules', ['trigger_type', 'enabled'])

    op.create_table(
        'automation_executions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('rule_id', sa.Uuid(), nullable=False),
        sa.Column('subject_id', sa.Uuid(), nullable=False),
        sa.Column('trigger_type', sa.String(50), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=True),
        sa.Column('dedupe_key', sa.String(400), nullable=True),
        sa.Column('trigger_context', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('executed_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['rule_id'], ['automation_rules.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['subject_id'], ['subjects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dedupe_key'),
    )
    op.create_index('idx_exec_rule', 'automation_executions', ['rule_id', 'executed_at'])
    op.create_index('idx_exec_subject', 'automation_executions', ['subject_id'])

    # ==========================================================================
    # Sequences
    # ==========================================================================
    op.create_table(
        'sequences',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('entity_type', sa.String(20), nullable=True),
        sa.Column('steps', sa.JSON(), nullable=False),
        sa.Column('trigger_phase', sa.String(50), nullable=True),
        sa.Column('stop_on_response', sa.Boolean(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'sequence_enrollments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('subject_id', sa.Uuid(), nullable=False),
        sa.Column('sequence_id', sa.Uuid(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('current_step', sa.Integer(), nullable=False),
        sa.Column('start_from_step', sa.Integer(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('started_by', sa.String(255), nullable=False),
        sa.Column('cancel_reason', sa.String(30), nullable=True),
        sa.Column('cancelled_by', sa.String(255), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_step_executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['subject_id'], ['subjects.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['sequence_id'], ['sequences.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    # At most one active enrollment per (subject, sequence)
    op.create_index(
        'uq_enrollment_active',
        'sequence_enrollments',
        ['subject_id', 'sequence_id'],
        unique=True,
        sqlite_where=sa.text("status = 'active'"),
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index('idx_enrollment_subject', 'sequence_enrollments', ['subject_id', 'started_at'])

    op.create_table(
        'sequence_log',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('enrollment_id', sa.Uuid(), nullable=False),
        sa.Column('sequence_id', sa.Uuid(), nullable=False),
        sa.Column('subject_id', sa.Uuid(), nullable=False),
        sa.Column('step_index', sa.Integer(), nullable=False),
        sa.Column('action_type', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['enrollment_id'], ['sequence_enrollments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['sequence_id'], ['sequences.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['subject_id'], ['subjects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('enrollment_id', 'step_index', name='uq_sequence_log_step'),
    )
    op.create_index('idx_sequence_log_pair', 'sequence_log', ['sequence_id', 'subject_id', 'status'])
    op.create_index('idx_sequence_log_due', 'sequence_log', ['status', 'scheduled_at'])

    # ==========================================================================
    # Webhook fences
    # ==========================================================================
    op.create_table(
        'inbound_message_log',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('external_message_id', sa.String(255), nullable=False),
        sa.Column('from_phone', sa.String(40), nullable=False),
        sa.Column('to_phone', sa.String(40), nullable=False),
        sa.Column('message_text', sa.Text(), nullable=False),
        sa.Column('matched_entity_type', sa.String(20), nullable=True),
        sa.Column('matched_subject_id', sa.Uuid(), nullable=True),
        sa.Column('automation_fired', sa.Boolean(), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['matched_subject_id'], ['subjects.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_message_id'),
    )

    op.create_table(
        'intake_api_keys',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('key', sa.String(128), nullable=False),
        sa.Column('source', sa.String(100), nullable=False),
        sa.Column('label', sa.String(255), nullable=True),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key'),
    )


def downgrade() -> None:
    """Drop engine tables."""
    op.drop_table('intake_api_keys')
    op.drop_table('inbound_message_log')
    op.drop_index('idx_sequence_log_due', table_name='sequence_log')
    op.drop_index('idx_sequence_log_pair', table_name='sequence_log')
    op.drop_table('sequence_log')
    op.drop_index('idx_enrollment_subject', table_name='sequence_enrollments')
    op.drop_index('uq_enrollment_active', table_name='sequence_enrollments')
    op.drop_table('sequence_enrollments')
    op.drop_table('sequences')
    op.drop_index('idx_exec_subject', table_name='automation_executions')
    op.drop_index('idx_exec_rule', table_name='automation_executions')
    op.drop_table('automation_executions')
    op.drop_index('idx_rules_trigger_enabled', table_name='automation_rules')
    op.drop_table('automation_rules')
    op.drop_index('idx_subjects_email', table_name='subjects')
    op.drop_index('idx_subjects_entity_archived', table_name='subjects')
    op.drop_table('subjects')
