"""create_workspace_sync_schema

Revision ID: 3f1c9a7d2b60
Revises:
Create Date: 2026-10-19 10:12:44.201377

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1c9a7d2b60'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('sharing_public_key', sa.Text(), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('plan', sa.Enum('free', 'premium', name='subscription_plan_enum'), nullable=False, server_default='free'),
        sa.Column('status', sa.Enum('active', 'cancelled', 'expired', name='subscription_status_enum'), nullable=False, server_default='active'),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_subscriptions_user_started', 'subscriptions', ['user_id', 'started_at'])

    op.create_table(
        'workspaces',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('encrypted_data', sa.Text(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('last_client_id', sa.String(), nullable=True),
        sa.CheckConstraint('version >= 0', name='ck_workspaces_version_non_negative'),
    )

    op.create_table(
        'shared_tables',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('owner_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('source_table_id', sa.String(), nullable=False),
        sa.Column('encrypted_table_data', sa.Text(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('wrapped_dek_for_owner', sa.Text(), nullable=True),
        sa.Column('last_pushed_by_user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('last_resolved_at', sa.DateTime(), nullable=True),
        sa.Column('last_resolved_by_user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('owner_id', 'source_table_id', name='uq_shared_tables_owner_source'),
    )

    op.create_table(
        'shared_table_recipients',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('shared_table_id', sa.Integer(), sa.ForeignKey('shared_tables.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('encrypted_dek', sa.Text(), nullable=False),
        sa.Column('permission', sa.Enum('view', 'edit', name='share_permission_enum'), nullable=False, server_default='view'),
        sa.Column('always_accept_from', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('shared_table_id', 'user_id', name='uq_shared_table_recipient'),
    )
    op.create_index('ix_shared_table_recipients_user', 'shared_table_recipients', ['user_id'])

    op.create_table(
        'shared_table_pushes',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('shared_table_id', sa.Integer(), sa.ForeignKey('shared_tables.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('encrypted_table_data', sa.Text(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('pushed_at', sa.DateTime(), nullable=False),
    )
    op.create_index(
        'ix_shared_table_pushes_table_pushed',
        'shared_table_pushes',
        ['shared_table_id', 'pushed_at']
    )


def downgrade() -> None:
    op.drop_index('ix_shared_table_pushes_table_pushed', table_name='shared_table_pushes')
    op.drop_table('shared_table_pushes')
    op.drop_index('ix_shared_table_recipients_user', table_name='shared_table_recipients')
    op.drop_table('shared_table_recipients')
    op.drop_table('shared_tables')
    op.drop_table('workspaces')
    op.drop_index('ix_subscriptions_user_started', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')

    op.execute("DROP TYPE IF EXISTS share_permission_enum")
    op.execute("DROP TYPE IF EXISTS subscription_status_enum")
    op.execute("DROP TYPE IF EXISTS subscription_plan_enum")
