# alembic/versions/20261019_000001_chats_messages.py
"""chats and messages

Revision ID: 20261019_000001_chats_messages
Revises:
Create Date: 2026-10-19

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_000001_chats_messages'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'chats',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('mode', sa.String(length=16), nullable=False, server_default='project'),
        sa.Column('provider', sa.String(length=32), nullable=False, server_default='openai'),
        sa.Column('model', sa.String(length=128), nullable=True),
        sa.Column('project_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=256), nullable=True),
        sa.Column('instructions', sa.Text(), nullable=True),
        sa.Column('message_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.CheckConstraint("mode in ('project','general')", name='ck_chats_mode'),
    )
    op.create_index('ix_chats_project_id', 'chats', ['project_id'])
    op.create_index('ix_chats_user_id', 'chats', ['user_id'])

    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('chat_id', sa.Integer(), sa.ForeignKey('chats.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.CheckConstraint("role in ('user','assistant','system')", name='ck_messages_role'),
    )
    op.create_index('ix_messages_chat_id', 'messages', ['chat_id'])
    op.create_index('ix_messages_created_at', 'messages', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_messages_created_at', table_name='messages')
    op.drop_index('ix_messages_chat_id', table_name='messages')
    op.drop_table('messages')

    op.drop_index('ix_chats_user_id', table_name='chats')
    op.drop_index('ix_chats_project_id', table_name='chats')
    op.drop_table('chats')
