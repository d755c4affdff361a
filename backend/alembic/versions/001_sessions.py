"""sessions, session_members and room_messages

Revision ID: 001_sessions
Revises: 
Create Date: 2026-10-19 10:00:00

Matchmaking schema: sessions with a guarded member_count seat counter,
one membership row per (session, participant), and room chat messages.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_sessions'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'sessions',
        sa.Column('id', sa.String(36), primary_key=True, nullable=False),
        sa.Column('topic', sa.String(120), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='forming'),
        sa.Column('capacity', sa.Integer(), nullable=False),
        sa.Column('member_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('capacity > 0', name='session_capacity_positive'),
        sa.CheckConstraint('member_count >= 0', name='session_member_count_non_negative'),
        sa.CheckConstraint(
            "status IN ('forming', 'active', 'closed')", name='session_status_valid'
        ),
    )
    op.create_index('ix_sessions_topic', 'sessions', ['topic'])
    op.create_index('ix_sessions_status', 'sessions', ['status'])
    op.create_index('ix_sessions_created_at', 'sessions', ['created_at'])
    op.create_index(
        'idx_sessions_topic_status_created', 'sessions', ['topic', 'status', 'created_at']
    )

    op.create_table(
        'session_members',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'session_id',
            sa.String(36),
            sa.ForeignKey('sessions.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('participant_key', sa.String(128), nullable=False),
        sa.Column('display_name', sa.String(64), nullable=True),
        sa.Column('joined_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('session_id', 'participant_key', name='uq_session_member'),
    )
    op.create_index('idx_session_members_joined', 'session_members', ['session_id', 'joined_at'])
    op.create_index('idx_session_members_participant', 'session_members', ['participant_key'])

    op.create_table(
        'room_messages',
        sa.Column('id', sa.String(36), primary_key=True, nullable=False),
        sa.Column(
            'session_id',
            sa.String(36),
            sa.ForeignKey('sessions.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('participant_key', sa.String(128), nullable=False),
        sa.Column('display_name', sa.String(64), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        'idx_room_messages_session_created', 'room_messages', ['session_id', 'created_at']
    )


def downgrade():
    op.drop_index('idx_room_messages_session_created', table_name='room_messages')
    op.drop_table('room_messages')
    op.drop_index('idx_session_members_participant', table_name='session_members')
    op.drop_index('idx_session_members_joined', table_name='session_members')
    op.drop_table('session_members')
    op.drop_index('idx_sessions_topic_status_created', table_name='sessions')
    op.drop_index('ix_sessions_created_at', table_name='sessions')
    op.drop_index('ix_sessions_status', table_name='sessions')
    op.drop_index('ix_sessions_topic', table_name='sessions')
    op.drop_table('sessions')
