"""initial schema: messages, conditions, reminder schedule, check-ins, deliveries, notifications

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-12
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

def upgrade() -> None:
    op.create_table('messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_messages_user_id', 'messages', ['user_id'])

    op.create_table('message_conditions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('message_id', sa.Integer(), sa.ForeignKey('messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('condition_type', sa.String(length=32), nullable=False),
        sa.Column('hours_threshold', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('minutes_threshold', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('trigger_date', sa.DateTime(), nullable=True),
        sa.Column('recurring_pattern', sa.JSON(), nullable=True),
        sa.Column('panic_config', sa.JSON(), nullable=True),
        sa.Column('panic_triggered_at', sa.DateTime(), nullable=True),
        sa.Column('recipients', sa.JSON(), nullable=False),
        sa.Column('last_checked', sa.DateTime(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('reminder_minutes', sa.JSON(), nullable=False),
        sa.Column('schedule_version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_message_conditions_message_id', 'message_conditions', ['message_id'], unique=True)

    op.create_table('reminder_schedule',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('condition_id', sa.Integer(), sa.ForeignKey('message_conditions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('message_id', sa.Integer(), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(), nullable=False),
        sa.Column('reminder_type', sa.String(length=16), nullable=False, server_default='reminder'),
        sa.Column('priority', sa.String(length=16), nullable=False, server_default='normal'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('last_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_reminder_schedule_condition_id', 'reminder_schedule', ['condition_id'])
    op.create_index('ix_reminder_schedule_message_id', 'reminder_schedule', ['message_id'])
    # due scanning
    op.create_index('ix_reminder_schedule_due', 'reminder_schedule', ['status', 'scheduled_at'])
    # one pending row per planned notification
    op.create_index(
        'uq_reminder_schedule_pending', 'reminder_schedule',
        ['condition_id', 'reminder_type', 'scheduled_at'],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    op.create_table('check_ins',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('method', sa.String(length=32), nullable=False, server_default='app'),
    )
    op.create_index('ix_check_ins_user_id', 'check_ins', ['user_id'])

    op.create_table('delivered_messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('message_id', sa.Integer(), sa.ForeignKey('messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('condition_id', sa.Integer(), sa.ForeignKey('message_conditions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('entry_id', sa.Integer(), sa.ForeignKey('reminder_schedule.id', ondelete='CASCADE'), nullable=False),
        sa.Column('delivered_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_delivered_messages_message_id', 'delivered_messages', ['message_id'])
    op.create_index('ix_delivered_messages_condition_id', 'delivered_messages', ['condition_id'])

    op.create_table('notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=64), nullable=False),
        sa.Column('message', sa.String(length=1024), nullable=False),
        sa.Column('entry_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.text('false')),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])


def downgrade() -> None:
    op.drop_index('ix_notifications_user_id', table_name='notifications')
    op.drop_table('notifications')
    op.drop_index('ix_delivered_messages_condition_id', table_name='delivered_messages')
    op.drop_index('ix_delivered_messages_message_id', table_name='delivered_messages')
    op.drop_table('delivered_messages')
    op.drop_index('ix_check_ins_user_id', table_name='check_ins')
    op.drop_table('check_ins')
    op.drop_index('uq_reminder_schedule_pending', table_name='reminder_schedule')
    op.drop_index('ix_reminder_schedule_due', table_name='reminder_schedule')
    op.drop_index('ix_reminder_schedule_message_id', table_name='reminder_schedule')
    op.drop_index('ix_reminder_schedule_condition_id', table_name='reminder_schedule')
    op.drop_table('reminder_schedule')
    op.drop_index('ix_message_conditions_message_id', table_name='message_conditions')
    op.drop_table('message_conditions')
    op.drop_index('ix_messages_user_id', table_name='messages')
    op.drop_table('messages')
