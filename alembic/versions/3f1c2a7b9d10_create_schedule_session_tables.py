"""create_schedule_session_tables

Revision ID: 3f1c2a7b9d10
Revises:
Create Date: 2025-10-01 10:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c2a7b9d10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'branches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('open_time', sa.String(), nullable=True),
        sa.Column('close_time', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('branches', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_branches_id'), ['id'], unique=False)

    op.create_table(
        'rooms',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['branch_id'], ['branches.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('rooms', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_rooms_id'), ['id'], unique=False)
        batch_op.create_index(batch_op.f('ix_rooms_branch_id'), ['branch_id'], unique=False)

    op.create_table(
        'group_members',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('group_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('payment_status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('group_members', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_group_members_id'), ['id'], unique=False)
        batch_op.create_index(batch_op.f('ix_group_members_group_id'), ['group_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_group_members_user_id'), ['user_id'], unique=False)

    op.create_table(
        'schedules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('schedule_name', sa.String(length=100), nullable=False),
        sa.Column('schedule_type', sa.String(length=50), nullable=False),
        sa.Column('group_id', sa.Integer(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('recurring_pattern', sa.String(length=50), nullable=False),
        sa.Column('total_hours', sa.Float(), nullable=False),
        sa.Column('hours_per_session', sa.Float(), nullable=False),
        sa.Column('session_per_week', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('estimated_end_date', sa.Date(), nullable=True),
        sa.Column('actual_end_date', sa.Date(), nullable=True),
        sa.Column('session_start_time', sa.String(length=5), nullable=True),
        sa.Column('session_slots', sa.JSON(), nullable=True),
        sa.Column('custom_recurring_days', sa.JSON(), nullable=True),
        sa.Column('default_teacher_id', sa.Integer(), nullable=True),
        sa.Column('default_room_id', sa.Integer(), nullable=True),
        sa.Column('branch_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='assigned'),
        sa.Column('auto_reschedule', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['default_room_id'], ['rooms.id'], ),
        sa.ForeignKeyConstraint(['branch_id'], ['branches.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('schedules', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_schedules_id'), ['id'], unique=False)
        batch_op.create_index(batch_op.f('ix_schedules_group_id'), ['group_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_schedules_default_teacher_id'), ['default_teacher_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_schedules_default_room_id'), ['default_room_id'], unique=False)

    op.create_table(
        'schedule_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('schedule_id', sa.Integer(), nullable=False),
        sa.Column('session_date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=False),
        sa.Column('end_time', sa.Time(), nullable=False),
        sa.Column('session_number', sa.Integer(), nullable=False),
        sa.Column('week_number', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='scheduled'),
        sa.Column('cancelling_reason', sa.Text(), nullable=True),
        sa.Column('is_makeup', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('makeup_for_session_id', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('assigned_teacher_id', sa.Integer(), nullable=True),
        sa.Column('room_id', sa.Integer(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('confirmed_by_user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['schedule_id'], ['schedules.id'], ),
        sa.ForeignKeyConstraint(['makeup_for_session_id'], ['schedule_sessions.id'], ),
        sa.ForeignKeyConstraint(['room_id'], ['rooms.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('schedule_sessions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_schedule_sessions_id'), ['id'], unique=False)
        batch_op.create_index(batch_op.f('ix_schedule_sessions_schedule_id'), ['schedule_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_schedule_sessions_assigned_teacher_id'), ['assigned_teacher_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_schedule_sessions_room_id'), ['room_id'], unique=False)
        batch_op.create_index('ix_schedule_sessions_date_room', ['session_date', 'room_id'], unique=False)
        batch_op.create_index('ix_schedule_sessions_date_teacher', ['session_date', 'assigned_teacher_id'], unique=False)

    op.create_table(
        'schedule_participants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('schedule_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(length=50), nullable=False, server_default='participant'),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='invited'),
        sa.ForeignKeyConstraint(['schedule_id'], ['schedules.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('schedule_participants', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_schedule_participants_id'), ['id'], unique=False)
        batch_op.create_index(batch_op.f('ix_schedule_participants_schedule_id'), ['schedule_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_schedule_participants_user_id'), ['user_id'], unique=False)


def downgrade() -> None:
    op.drop_table('schedule_participants')
    op.drop_table('schedule_sessions')
    op.drop_table('schedules')
    op.drop_table('group_members')
    op.drop_table('rooms')
    op.drop_table('branches')
