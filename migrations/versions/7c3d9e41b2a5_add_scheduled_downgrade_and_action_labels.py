"""add subscriptions.scheduled_downgrade_tier and notifications.action_labels

Revision ID: 7c3d9e41b2a5
Revises: 0b1f6c2a9e10
Create Date: 2026-10-19 14:20:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c3d9e41b2a5'
down_revision = '0b1f6c2a9e10'
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("subscriptions") as batch_op:
        batch_op.add_column(sa.Column("scheduled_downgrade_tier", sa.String(length=32), nullable=True))
    with op.batch_alter_table("notifications") as batch_op:
        batch_op.add_column(sa.Column("action_labels", sa.JSON(), nullable=True))


def downgrade():
    with op.batch_alter_table("notifications") as batch_op:
        batch_op.drop_column("action_labels")
    with op.batch_alter_table("subscriptions") as batch_op:
        batch_op.drop_column("scheduled_downgrade_tier")
