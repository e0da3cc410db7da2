"""initial billing schema: users, plans, subscription mirror, grants, usage, events, notifications

Revision ID: 0b1f6c2a9e10
Revises:
Create Date: 2026-10-19 10:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0b1f6c2a9e10'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'user_roles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="CASCADE"),
        sa.UniqueConstraint('user_id', 'role', name='uq_user_roles_user_role'),
    )
    op.create_index('ix_user_roles_user_id', 'user_roles', ['user_id'])

    op.create_table(
        'plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tier', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=80), nullable=False),
        sa.Column('daily_limit', sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column('limit_period', sa.String(length=16), nullable=False, server_default=sa.text("'daily'")),
        sa.Column('has_watermark', sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column('has_editor', sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column('has_history', sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column('external_price_ids', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.CheckConstraint("limit_period IN ('daily','weekly','monthly')", name='ck_plans_limit_period_valid'),
    )
    op.create_index('ix_plans_tier', 'plans', ['tier'])
    op.create_index(
        'uq_plans_active_tier', 'plans', ['tier'], unique=True,
        postgresql_where=sa.text("is_active"), sqlite_where=sa.text("is_active"),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('tier', sa.String(length=32), nullable=False, server_default=sa.text("'free'")),
        sa.Column('external_subscription_id', sa.String(length=64), nullable=True),
        sa.Column('external_customer_id', sa.String(length=64), nullable=True),
        sa.Column('external_price_id', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default=sa.text("'active'")),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_payment_count', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('last_payment_failure_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="RESTRICT"),
        sa.CheckConstraint("status IN ('active','past_due','cancelled')", name='ck_subscriptions_status_valid'),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'], unique=True)
    op.create_index('ix_subscriptions_external_subscription_id', 'subscriptions', ['external_subscription_id'], unique=True)
    op.create_index('ix_subscriptions_external_customer_id', 'subscriptions', ['external_customer_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_current_period_end', 'subscriptions', ['current_period_end'])

    op.create_table(
        'manual_grants',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('tier', sa.String(length=32), nullable=False),
        sa.Column('custom_daily_limit', sa.Integer(), nullable=True),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column('granted_by', sa.String(length=320), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="CASCADE"),
    )
    op.create_index('ix_manual_grants_user_id', 'manual_grants', ['user_id'], unique=True)

    op.create_table(
        'usage_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('usage_date', sa.Date(), nullable=False),
        sa.Column('units_consumed', sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="CASCADE"),
        sa.UniqueConstraint('user_id', 'usage_date', name='uq_usage_records_user_date'),
    )
    op.create_index('ix_usage_records_user_id', 'usage_records', ['user_id'])

    op.create_table(
        'billing_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('external_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=80), nullable=False),
        sa.Column('signature_valid', sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column('retries', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_billing_events_external_event_id', 'billing_events', ['external_event_id'], unique=True)
    op.create_index('ix_billing_events_event_type', 'billing_events', ['event_type'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=40), nullable=False),
        sa.Column('titles', sa.JSON(), nullable=False),
        sa.Column('messages', sa.JSON(), nullable=False),
        sa.Column('action_url', sa.String(length=255), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="CASCADE"),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_type', 'notifications', ['type'])


def downgrade():
    op.drop_table('notifications')
    op.drop_table('billing_events')
    op.drop_table('usage_records')
    op.drop_table('manual_grants')
    op.drop_table('subscriptions')
    op.drop_table('plans')
    op.drop_table('user_roles')
    op.drop_table('users')
