"""create handler, exam session and custody tables

Revision ID: a1c3e5f7b9d2
Revises:
Create Date: 2026-10-18 09:12:44.310552
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = 'a1c3e5f7b9d2'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

handler_role = sa.Enum('ADMIN', 'INVIGILATOR', 'LECTURER', 'DEPARTMENT_HEAD', 'FACULTY_OFFICER', name='handlerrole')
batch_status = sa.Enum(
    'NOT_STARTED', 'IN_PROGRESS', 'SUBMITTED', 'IN_TRANSIT', 'WITH_LECTURER',
    'UNDER_GRADING', 'GRADED', 'RETURNED', 'COMPLETED', name='batchstatus'
)
attendance_status = sa.Enum('ENTERED', 'SUBMITTED', name='attendancestatus')
transfer_status = sa.Enum('PENDING', 'CONFIRMED', 'DISCREPANCY_REPORTED', 'RESOLVED', 'REJECTED', name='transferstatus')

OPEN_TRANSFER_CLAUSE = sa.text("status IN ('PENDING', 'DISCREPANCY_REPORTED')")


def _audit_columns():
    return [
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.Column('created_by', sa.Integer()),
        sa.Column('updated_by', sa.Integer()),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        *_audit_columns(),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('role', handler_role, nullable=False),
        sa.Column('phone', sa.String(length=20)),
        sa.Column('department', sa.String(length=150)),
        sa.Column('is_active', sa.Boolean(), nullable=False),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'exam_sessions',
        *_audit_columns(),
        sa.Column('course_code', sa.String(length=20), nullable=False),
        sa.Column('course_name', sa.String(length=255), nullable=False),
        sa.Column('venue', sa.String(length=150)),
        sa.Column('department', sa.String(length=150)),
        sa.Column('faculty', sa.String(length=150)),
        sa.Column('exam_date', sa.DateTime(timezone=True)),
        sa.Column('status', batch_status, nullable=False),
        sa.Column('expected_script_count', sa.Integer(), nullable=False),
    )
    op.create_index('ix_exam_sessions_id', 'exam_sessions', ['id'])
    op.create_index('ix_exam_sessions_course_code', 'exam_sessions', ['course_code'])

    op.create_table(
        'exam_attendances',
        *_audit_columns(),
        sa.Column('exam_session_id', sa.Integer(), sa.ForeignKey('exam_sessions.id'), nullable=False),
        sa.Column('student_index', sa.String(length=50), nullable=False),
        sa.Column('entry_time', sa.DateTime(timezone=True)),
        sa.Column('exit_time', sa.DateTime(timezone=True)),
        sa.Column('submission_time', sa.DateTime(timezone=True)),
        sa.Column('status', attendance_status, nullable=False),
    )
    op.create_index('ix_exam_attendances_id', 'exam_attendances', ['id'])
    op.create_index('ix_exam_attendances_exam_session_id', 'exam_attendances', ['exam_session_id'])

    op.create_table(
        'batch_transfers',
        *_audit_columns(),
        sa.Column('exam_session_id', sa.Integer(), sa.ForeignKey('exam_sessions.id'), nullable=False),
        sa.Column('from_handler_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('to_handler_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('status', transfer_status, nullable=False),
        sa.Column('scripts_expected', sa.Integer(), nullable=False),
        sa.Column('scripts_received', sa.Integer()),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(timezone=True)),
        sa.Column('location', sa.String(length=255)),
        sa.Column('discrepancy_note', sa.Text()),
        sa.Column('rejection_reason', sa.Text()),
        sa.Column('rejected_at', sa.DateTime(timezone=True)),
        sa.Column('resolution_note', sa.Text()),
        sa.Column('resolved_by', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('resolved_at', sa.DateTime(timezone=True)),
        sa.CheckConstraint('scripts_expected >= 0', name='ck_batch_transfers_expected_non_negative'),
        sa.CheckConstraint(
            'scripts_received IS NULL OR scripts_received >= 0',
            name='ck_batch_transfers_received_non_negative',
        ),
    )
    op.create_index('ix_batch_transfers_id', 'batch_transfers', ['id'])
    op.create_index('ix_batch_transfers_exam_session_id', 'batch_transfers', ['exam_session_id'])
    op.create_index('ix_batch_transfers_from_handler_id', 'batch_transfers', ['from_handler_id'])
    op.create_index('ix_batch_transfers_to_handler_id', 'batch_transfers', ['to_handler_id'])
    op.create_index(
        'uq_batch_transfers_open_per_session',
        'batch_transfers',
        ['exam_session_id'],
        unique=True,
        postgresql_where=OPEN_TRANSFER_CLAUSE,
        sqlite_where=OPEN_TRANSFER_CLAUSE,
    )

    op.create_table(
        'audit_logs',
        *_audit_columns(),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('resource', sa.String(length=100), nullable=False),
        sa.Column('resource_id', sa.Integer()),
        sa.Column('exam_session_id', sa.Integer(), sa.ForeignKey('exam_sessions.id')),
        sa.Column('changes', sa.JSON()),
        sa.Column('details', sa.JSON()),
        sa.Column('ip_address', sa.String(length=45)),
        sa.Column('user_agent', sa.Text()),
        sa.Column('endpoint', sa.String(length=255)),
        sa.Column('request_id', sa.String(length=100)),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_audit_logs_id', 'audit_logs', ['id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_exam_session_id', 'audit_logs', ['exam_session_id'])
    print("✓ [a1c3e5f7b9d2] Created custody tables")


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_index('uq_batch_transfers_open_per_session', table_name='batch_transfers')
    op.drop_table('batch_transfers')
    op.drop_table('exam_attendances')
    op.drop_table('exam_sessions')
    op.drop_table('users')
    for enum_type in (transfer_status, attendance_status, batch_status, handler_role):
        enum_type.drop(op.get_bind(), checkfirst=True)
