"""initial

Revision ID: 0001
Revises: 
Create Date: 2026-01-01 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

revision = '0001'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE = sa.text("status IN ('pending', 'accepted')")

def upgrade():
    op.create_table('profiles',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=False),
        sa.Column('avatar_url', sa.String(), nullable=True),
        sa.Column('field_of_study', sa.String(255), nullable=True),
        sa.Column('year', sa.Integer, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False)
    )
    op.create_index('ix_profiles_id', 'profiles', ['id'])
    op.create_index('ix_profiles_email', 'profiles', ['email'], unique=True)
    op.create_table('user_interests',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.Integer, sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('category', sa.String(100), nullable=False),
        sa.UniqueConstraint('user_id', 'category', name='uix_user_interest')
    )
    op.create_index('ix_user_interests_user_id', 'user_interests', ['user_id'])
    op.create_table('friend_requests',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('sender_id', sa.Integer, sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('receiver_id', sa.Integer, sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('pair_key', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False)
    )
    op.create_index('ix_friend_requests_sender_id', 'friend_requests', ['sender_id'])
    op.create_index('ix_friend_requests_receiver_id', 'friend_requests', ['receiver_id'])
    op.create_index('ix_friend_requests_pair_key', 'friend_requests', ['pair_key'])
    op.create_index('ix_friend_requests_created_at', 'friend_requests', ['created_at'])
    # at most one pending or accepted row per unordered pair
    op.create_index('uix_friend_requests_active_pair', 'friend_requests', ['pair_key'], unique=True,
                    postgresql_where=ACTIVE, sqlite_where=ACTIVE)
    op.create_table('messages',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('sender_id', sa.Integer, sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('receiver_id', sa.Integer, sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('media_url', sa.String(), nullable=True),
        sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False)
    )
    op.create_index('ix_messages_sender_id', 'messages', ['sender_id'])
    op.create_index('ix_messages_receiver_id', 'messages', ['receiver_id'])
    op.create_index('ix_messages_created_at', 'messages', ['created_at'])
    op.create_index('ix_messages_pair_created', 'messages', ['sender_id', 'receiver_id', 'created_at'])

def downgrade():
    op.drop_table('messages')
    op.drop_index('uix_friend_requests_active_pair', table_name='friend_requests')
    op.drop_table('friend_requests')
    op.drop_table('user_interests')
    op.drop_table('profiles')
