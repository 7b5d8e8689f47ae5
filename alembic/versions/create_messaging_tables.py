"""Create conversations, members, messages, read markers and reactions

Revision ID: create_messaging_tables
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'create_messaging_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'conversations',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('is_group', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('group_name', sa.String(length=100), nullable=True),
        sa.Column('group_admin_id', sa.BigInteger(), sa.ForeignKey('users.account_id'), nullable=True),
        sa.Column('pair_key', sa.String(), nullable=True),
        sa.Column('last_message', sa.String(length=200), nullable=True),
        sa.Column('last_message_by', sa.BigInteger(), sa.ForeignKey('users.account_id'), nullable=True),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('pair_key'),
    )
    op.create_index('ix_conversations_last_message_at', 'conversations', ['last_message_at'])
    op.create_index('ix_conversations_is_active', 'conversations', ['is_active'])

    op.create_table(
        'conversation_members',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('conversation_id', sa.Uuid(), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('user_id', sa.BigInteger(), sa.ForeignKey('users.account_id'), nullable=False),
        sa.Column('joined_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('conversation_id', 'user_id', name='uq_conversation_members_conversation_user'),
    )
    op.create_index('ix_conversation_members_conversation_id', 'conversation_members', ['conversation_id'])
    op.create_index('ix_conversation_members_user_id', 'conversation_members', ['user_id'])

    op.create_table(
        'messages',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('conversation_id', sa.Uuid(), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('sender_id', sa.BigInteger(), sa.ForeignKey('users.account_id'), nullable=False),
        sa.Column('message_text', sa.Text(), nullable=False),
        sa.Column('message_type', sa.String(length=16), nullable=False, server_default='text'),
        sa.Column('media_url', sa.String(), nullable=True),
        sa.Column('location_name', sa.String(), nullable=True),
        sa.Column('location_lat', sa.Float(), nullable=True),
        sa.Column('location_lng', sa.Float(), nullable=True),
        sa.Column('is_delivered', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('reply_to_id', sa.Uuid(), sa.ForeignKey('messages.id', ondelete='SET NULL'), nullable=True),
        sa.Column('client_message_id', sa.String(), nullable=True),
        sa.Column('is_blocked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('blocked_reason', sa.String(), nullable=True),
        sa.Column('blocked_by', sa.BigInteger(), sa.ForeignKey('users.account_id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'conversation_id', 'sender_id', 'client_message_id',
            name='uq_messages_conversation_sender_client_id',
        ),
    )
    op.create_index('ix_messages_conversation_id', 'messages', ['conversation_id'])
    op.create_index('ix_messages_sender_id', 'messages', ['sender_id'])
    op.create_index('ix_messages_client_message_id', 'messages', ['client_message_id'])
    op.create_index('ix_messages_is_blocked', 'messages', ['is_blocked'])
    op.create_index('ix_messages_created_at', 'messages', ['created_at'])
    # History pages walk (conversation_id, created_at DESC, id DESC)
    op.create_index(
        'ix_messages_conversation_created_id', 'messages', ['conversation_id', 'created_at', 'id']
    )

    op.create_table(
        'message_reads',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('message_id', sa.Uuid(), sa.ForeignKey('messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.BigInteger(), sa.ForeignKey('users.account_id'), nullable=False),
        sa.Column('read_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('message_id', 'user_id', name='uq_message_reads_message_user'),
    )
    op.create_index('ix_message_reads_message_id', 'message_reads', ['message_id'])
    op.create_index('ix_message_reads_user_id', 'message_reads', ['user_id'])

    op.create_table(
        'message_reactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('message_id', sa.Uuid(), sa.ForeignKey('messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.BigInteger(), sa.ForeignKey('users.account_id'), nullable=False),
        sa.Column('emoji', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('message_id', 'user_id', name='uq_message_reactions_message_user'),
    )
    op.create_index('ix_message_reactions_message_id', 'message_reactions', ['message_id'])


def downgrade():
    op.drop_table('message_reactions')
    op.drop_table('message_reads')
    op.drop_table('messages')
    op.drop_table('conversation_members')
    op.drop_table('conversations')
